"""
Pydantic models for records and request/response schemas.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class Surface(str, Enum):
    """Login entry point."""

    FRONTEND = "frontend"
    BACKEND = "backend"


class LoginAttempt(BaseModel):
    """A single failed login."""

    id: int | None = None
    ip: str = ""
    username: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=utcnow)


class Ban(BaseModel):
    """A ban on either an IP address or a username."""

    id: int | None = None
    ip: str | None = None
    username: str | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _exactly_one_key(self) -> Ban:
        if (self.ip is None) == (self.username is None):
            raise ValueError("a ban needs exactly one of ip or username")
        return self


class FailedLoginRequest(BaseModel):
    """Failed login reported by the host authentication pipeline."""

    ip: str = Field(default="", max_length=64)
    username: str = Field(default="", max_length=255)
    surface: Surface


class FailedLoginResult(BaseModel):
    """Outcome of recording a failed login."""

    recorded: bool = False
    banned: bool = False
    ip_count: int = 0
    user_count: int = 0
    ip_banned: bool = False
    username_banned: bool = False
    delay_seconds: int = 0


class BanStatus(BaseModel):
    """Whether an IP and/or username is currently banned."""

    banned: bool
    ip_banned: bool = False
    username_banned: bool = False


class PruneResult(BaseModel):
    """Rows removed by a retention pass."""

    attempts_deleted: int
    bans_deleted: int
