"""
Account records and request/response models for the token lifecycle.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from pydantic import BaseModel

from shared.errors import DirectoryAccessException

Claim = Tuple[str, str]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UserAccount:
    """A directory user as seen by the token lifecycle."""

    id: str
    username: str
    email: str
    password_hash: str
    email_confirmed: bool = False
    lockout_enabled: bool = True
    access_failed_count: int = 0
    lockout_end: Optional[datetime] = None
    refresh_token: Optional[str] = None
    refresh_token_expiry: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    roles: List[str] = field(default_factory=list)
    claims: List[Claim] = field(default_factory=list)

    def is_locked_out(self, now: datetime) -> bool:
        return self.lockout_enabled and self.lockout_end is not None and self.lockout_end > now


class LoginRequest(BaseModel):
    """Credentials presented at sign-in."""
    email: str
    password: str


class RefreshRequest(BaseModel):
    """Expired access token plus the refresh secret issued with it."""
    token: str
    refresh_token: str


class AuthResponse(BaseModel):
    """Result of authenticate and refresh."""

    success: bool
    message: Optional[str] = None
    error_code: Optional[str] = None
    token: Optional[str] = None
    refresh_token: Optional[str] = None
    user_id: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    roles: Optional[List[str]] = None

    @classmethod
    def failure(cls, exc: DirectoryAccessException) -> "AuthResponse":
        return cls(success=False, message=exc.message, error_code=exc.code)
