from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class CleanupRequest(BaseModel):
    older_than_days: int | None = Field(default=None, ge=1, le=3650)
    actor: str = Field(default="admin", max_length=80)


class ResetStuckRequest(BaseModel):
    stuck_timeout_ms: int | None = Field(default=None, ge=1)
    actor: str = Field(default="admin", max_length=80)


class AdminActionResponse(BaseModel):
    status: Literal["ok", "error"]
    action: str
    affected: int
    message: str
