from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol

from credlife.logging import get_logger
from credlife.service.errors import BackendUnavailable, SessionNotFound
from credlife.service.tokens import hash_token
from credlife.storage.models import (
    DEFAULT_SESSION_TTL,
    OTP,
    OTPPurpose,
    RevocationResult,
    Session,
    SessionInfo,
    utcnow,
)

logger = get_logger(__name__)


class CredentialStore(Protocol):
    async def create_otp(self, email: str, purpose: OTPPurpose) -> OTP: ...

    async def validate_otp(self, email: str, purpose: OTPPurpose, code: str) -> OTP: ...

    async def delete_otp(self, email: str, purpose: OTPPurpose) -> None: ...

    async def create_session(self, session: Session) -> Session: ...

    async def get_session_by_token(self, token_hash: str) -> Optional[Session]: ...

    async def get_sessions_by_account_id(self, account_id: str) -> List[Session]: ...

    async def update_session_last_used(self, token_hash: str) -> bool: ...

    async def deactivate_session(self, token_hash: str) -> None: ...

    async def deactivate_all_user_sessions(self, account_id: str) -> RevocationResult: ...


class CredentialService:
    """Account flows that drive the OTP and session state machines.

    Raw bearer tokens enter here and are hashed before touching any store.
    """

    def __init__(
        self,
        repository: CredentialStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        session_ttl: timedelta = DEFAULT_SESSION_TTL,
    ) -> None:
        self.repository = repository
        self._clock = clock
        self.session_ttl = session_ttl

    # ------------------------------------------------------------------ OTP

    async def issue_otp(self, email: str, purpose: OTPPurpose) -> OTP:
        """Issue a fresh code, replacing any outstanding one for the same purpose."""

        return await self.repository.create_otp(email, OTPPurpose(purpose))

    async def verify_otp(self, email: str, purpose: OTPPurpose, code: str) -> OTP:
        """Validate a code and consume it."""

        purpose = OTPPurpose(purpose)
        otp = await self.repository.validate_otp(email, purpose, code)
        await self._consume(email, purpose, otp)
        logger.info("otp_verified", purpose=purpose.value, otp_id=otp.id)
        return otp

    async def _consume(self, email: str, purpose: OTPPurpose, otp: OTP) -> None:
        try:
            await self.repository.delete_otp(email, purpose)
        except BackendUnavailable as exc:
            # Validation already succeeded; the code expires on its own
            logger.warning(
                "otp_consume_failed",
                purpose=purpose.value,
                otp_id=otp.id,
                error=exc.message,
            )

    # ------------------------------------------------------------- Sessions

    async def open_session(
        self,
        account_id: str,
        token: str,
        *,
        ttl: Optional[timedelta] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session:
        session = Session(
            account_id=account_id,
            token_hash=hash_token(token),
            expires_at=self._clock() + (ttl or self.session_ttl),
            user_agent=user_agent,
            ip_address=ip_address,
        )
        return await self.repository.create_session(session)

    async def authenticate(self, token: str) -> Session:
        token_hash = hash_token(token)
        session = await self.repository.get_session_by_token(token_hash)
        if session is None:
            raise SessionNotFound()
        if await self.repository.update_session_last_used(token_hash):
            session.last_used_at = self._clock()
        return session

    async def describe_session(self, token: str) -> SessionInfo:
        session = await self.repository.get_session_by_token(hash_token(token))
        if session is None:
            raise SessionNotFound()
        return session.to_session_info()

    async def list_sessions(self, account_id: str) -> List[SessionInfo]:
        sessions = await self.repository.get_sessions_by_account_id(account_id)
        return [s.to_session_info() for s in sessions]

    async def rotate_session(
        self,
        old_token: str,
        new_token: str,
        *,
        ttl: Optional[timedelta] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session:
        """Replace a live session with a new one for the same account."""

        old_hash = hash_token(old_token)
        current = await self.repository.get_session_by_token(old_hash)
        if current is None:
            raise SessionNotFound()
        try:
            await self.repository.deactivate_session(old_hash)
        except BackendUnavailable as exc:
            logger.warning(
                "session_rotation_deactivate_failed",
                session_id=current.id,
                error=exc.message,
            )
        rotated = await self.open_session(
            current.account_id,
            new_token,
            ttl=ttl,
            user_agent=user_agent or current.user_agent,
            ip_address=ip_address or current.ip_address,
        )
        logger.info(
            "session_rotated",
            account_id=current.account_id,
            previous_session_id=current.id,
            session_id=rotated.id,
        )
        return rotated

    async def close_session(self, token: str) -> None:
        await self.repository.deactivate_session(hash_token(token))

    async def revoke_account_sessions(self, account_id: str) -> RevocationResult:
        """Deactivate every session of an account, e.g. after a password change."""

        result = await self.repository.deactivate_all_user_sessions(account_id)
        if not result.complete:
            logger.warning(
                "session_revocation_incomplete",
                account_id=account_id,
                failed=len(result.failed),
            )
        return result

    async def reset_password_with_otp(
        self, email: str, code: str, account_id: str
    ) -> RevocationResult:
        """Check a password-reset code, then revoke every session of the account.

        The code is consumed only after revocation so a failed revocation can be
        retried with the same code.
        """

        purpose = OTPPurpose.PASSWORD_RESET
        otp = await self.repository.validate_otp(email, purpose, code)
        result = await self.revoke_account_sessions(account_id)
        await self._consume(email, purpose, otp)
        logger.info("password_reset_sessions_revoked", account_id=account_id)
        return result
