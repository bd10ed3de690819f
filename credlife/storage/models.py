from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional

MAX_OTP_ATTEMPTS = 5
OTP_LENGTH = 6
OTP_TTL = timedelta(minutes=5)
DEFAULT_SESSION_TTL = timedelta(hours=24)


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


class OTPPurpose(str, Enum):
    """What an OTP may be spent on."""

    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


@dataclass
class OTP:
    id: str
    email: str
    purpose: OTPPurpose
    code: str
    expires_at: datetime
    created_at: datetime
    updated_at: datetime
    attempts: int = 0

    @classmethod
    def new(cls, email: str, purpose: OTPPurpose, code: str, now: datetime) -> "OTP":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            purpose=OTPPurpose(purpose),
            code=code,
            attempts=0,
            expires_at=now + OTP_TTL,
            created_at=now,
            updated_at=now,
        )

    def is_expired(self, now: datetime) -> bool:
        # Valid up to but not including expires_at
        return now >= self.expires_at

    def is_max_attempts_reached(self) -> bool:
        return self.attempts >= MAX_OTP_ATTEMPTS


@dataclass
class SessionInfo:
    id: str
    expires_at: datetime
    last_used_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass
class Session:
    account_id: str
    token_hash: str
    id: Optional[str] = None
    is_active: bool = True
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        if self.expires_at is None:
            return False
        return now >= self.expires_at

    def to_session_info(self) -> SessionInfo:
        return SessionInfo(
            id=self.id or "",
            expires_at=self.expires_at,
            last_used_at=self.last_used_at,
            user_agent=self.user_agent,
            ip_address=self.ip_address,
        )


@dataclass
class RevocationResult:
    """Outcome of a best-effort bulk session deactivation."""

    account_id: str
    deactivated: int = 0
    failed: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed
