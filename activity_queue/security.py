from __future__ import annotations

import hmac
from functools import lru_cache

from fastapi import Header, HTTPException, Request, status

from .config import Settings, load_settings

_LOOPBACK = ("127.0.0.1", "::1")


@lru_cache(maxsize=1)
def _settings() -> Settings:
    return load_settings()


def _bearer(authorization: str | None) -> str:
    scheme, _, credential = (authorization or "").partition(" ")
    return credential.strip() if scheme == "Bearer" else ""


def _require_token(authorization: str | None, expected: str, env_name: str) -> None:
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{env_name} is not configured",
        )
    provided = _bearer(authorization)
    if not provided or not hmac.compare_digest(provided, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid bearer token",
        )


def _require_allowed_client(request: Request, settings: Settings) -> None:
    if not settings.allowed_ips:
        return
    client_ip = request.client.host if request.client else None
    if client_ip in _LOOPBACK or client_ip in settings.allowed_ips:
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=f"Client IP not allowed: {client_ip}",
    )


def verify_request_security(
    request: Request,
    authorization: str | None = Header(default=None),
) -> None:
    settings = _settings()
    _require_token(authorization, settings.api_token, "QUEUE_API_TOKEN")
    _require_allowed_client(request, settings)


def verify_admin_security(
    request: Request,
    authorization: str | None = Header(default=None),
) -> None:
    """Queue maintenance endpoints; QUEUE_ADMIN_TOKEN when set, else the API token."""
    settings = _settings()
    if settings.admin_token:
        _require_token(authorization, settings.admin_token, "QUEUE_ADMIN_TOKEN")
    else:
        _require_token(authorization, settings.api_token, "QUEUE_API_TOKEN")
    _require_allowed_client(request, settings)
