from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from credlife.logging import get_logger
from credlife.service.errors import (
    BackendUnavailable,
    CredentialNotFound,
    ServiceError,
    ValidationFailed,
)
from credlife.service.otp import OTPRepository
from credlife.service.sessions import SessionRepository
from credlife.storage.models import OTP, OTPPurpose, RevocationResult, Session

logger = get_logger(__name__)

R = TypeVar("R")
T = TypeVar("T")


def _backend_name(repo: Any) -> str:
    return getattr(repo, "backend", type(repo).__name__)


@dataclass
class HybridRepositoryConfig:
    use_cache_for_otp: bool = True
    use_cache_for_session: bool = True
    enable_fallback: bool = True
    # Off: backend failures and missing credentials reroute. On: every
    # rejection reroutes too, including a wrong code or an expired OTP.
    fallback_on_rejection: bool = False


class HybridCredentialRepository:
    """Route each credential class to a primary tier with durable fallback.

    The router keeps no state of its own. A call that fails on the primary, or
    finds nothing there, is retried once on the durable tier; its result is
    never copied back. Credentials written to the durable tier while the cache
    was down therefore stay reachable after it recovers, so consuming an OTP
    and deactivating sessions are applied to both tiers.
    """

    def __init__(
        self,
        *,
        durable_otp: OTPRepository,
        durable_sessions: SessionRepository,
        cache_otp: Optional[OTPRepository] = None,
        cache_sessions: Optional[SessionRepository] = None,
        config: Optional[HybridRepositoryConfig] = None,
    ) -> None:
        self.config = config or HybridRepositoryConfig()
        if self.config.use_cache_for_otp and cache_otp is not None:
            self.otp_primary: OTPRepository = cache_otp
            self.otp_secondary: Optional[OTPRepository] = durable_otp
        else:
            self.otp_primary = durable_otp
            self.otp_secondary = None
        if self.config.use_cache_for_session and cache_sessions is not None:
            self.session_primary: SessionRepository = cache_sessions
            self.session_secondary: Optional[SessionRepository] = durable_sessions
        else:
            self.session_primary = durable_sessions
            self.session_secondary = None

    def _should_fall_back(self, exc: ServiceError) -> bool:
        if isinstance(exc, (BackendUnavailable, ValidationFailed, CredentialNotFound)):
            return True
        return self.config.fallback_on_rejection

    async def _route(
        self,
        operation: str,
        primary: R,
        secondary: Optional[R],
        call: Callable[[R], Awaitable[T]],
        missing: Optional[Callable[[T], bool]] = None,
    ) -> T:
        can_fall_back = secondary is not None and self.config.enable_fallback
        try:
            result = await call(primary)
        except ServiceError as exc:
            if not can_fall_back or not self._should_fall_back(exc):
                raise
            logger.warning(
                "credential_fallback",
                operation=operation,
                primary=_backend_name(primary),
                error_type=type(exc).__name__,
                error=exc.message,
            )
            return await call(secondary)
        if can_fall_back and missing is not None and missing(result):
            logger.debug(
                "credential_fallback",
                operation=operation,
                primary=_backend_name(primary),
                error_type="not_found",
            )
            return await call(secondary)
        return result

    async def _invalidate(
        self,
        operation: str,
        primary: R,
        secondary: Optional[R],
        call: Callable[[R], Awaitable[T]],
    ) -> List[T]:
        """Apply a removal to the primary and then to the durable tier.

        A backend failure on one tier is logged and the other still runs; the
        call fails only when no tier completed. Rejections propagate.
        """

        if secondary is None or not self.config.enable_fallback:
            return [await call(primary)]
        results: List[T] = []
        first_error: Optional[BackendUnavailable] = None
        for repo in (primary, secondary):
            try:
                results.append(await call(repo))
            except BackendUnavailable as exc:
                first_error = first_error or exc
                logger.warning(
                    "credential_invalidation_failed",
                    operation=operation,
                    backend=_backend_name(repo),
                    error_type=type(exc).__name__,
                    error=exc.message,
                )
        if not results:
            raise first_error
        return results

    async def _cleanup(
        self, operation: str, tiers: List[R], call: Callable[[R], Awaitable[int]]
    ) -> int:
        removed = 0
        failed: List[str] = []
        for repo in tiers:
            backend = _backend_name(repo)
            try:
                removed += await call(repo)
            except ServiceError as exc:
                failed.append(backend)
                logger.error(
                    "cleanup_tier_failed",
                    operation=operation,
                    backend=backend,
                    error_type=type(exc).__name__,
                    error=exc.message,
                )
        if failed:
            raise BackendUnavailable(
                f"{operation} failed on: {', '.join(failed)}",
                operation=operation,
                detail={"failed_backends": failed, "removed": removed},
            )
        return removed

    # ------------------------------------------------------------------ OTP

    async def create_otp(self, email: str, purpose: OTPPurpose) -> OTP:
        return await self._route(
            "create_otp",
            self.otp_primary,
            self.otp_secondary,
            lambda repo: repo.create_otp(email, purpose),
        )

    async def get_otp(self, email: str, purpose: OTPPurpose) -> Optional[OTP]:
        return await self._route(
            "get_otp",
            self.otp_primary,
            self.otp_secondary,
            lambda repo: repo.get_otp(email, purpose),
            missing=lambda otp: otp is None,
        )

    async def validate_otp(self, email: str, purpose: OTPPurpose, code: str) -> OTP:
        return await self._route(
            "validate_otp",
            self.otp_primary,
            self.otp_secondary,
            lambda repo: repo.validate_otp(email, purpose, code),
        )

    async def delete_otp(self, email: str, purpose: OTPPurpose) -> None:
        await self._invalidate(
            "delete_otp",
            self.otp_primary,
            self.otp_secondary,
            lambda repo: repo.delete_otp(email, purpose),
        )

    async def cleanup_expired_otps(self) -> int:
        tiers = [self.otp_primary] + ([self.otp_secondary] if self.otp_secondary else [])
        return await self._cleanup(
            "cleanup_expired_otps", tiers, lambda repo: repo.cleanup_expired_otps()
        )

    # ------------------------------------------------------------- Sessions

    async def create_session(self, session: Session) -> Session:
        return await self._route(
            "create_session",
            self.session_primary,
            self.session_secondary,
            lambda repo: repo.create_session(session),
        )

    async def get_session_by_token(self, token_hash: str) -> Optional[Session]:
        return await self._route(
            "get_session_by_token",
            self.session_primary,
            self.session_secondary,
            lambda repo: repo.get_session_by_token(token_hash),
            missing=lambda session: session is None,
        )

    async def get_sessions_by_account_id(self, account_id: str) -> List[Session]:
        return await self._route(
            "get_sessions_by_account_id",
            self.session_primary,
            self.session_secondary,
            lambda repo: repo.get_sessions_by_account_id(account_id),
            missing=lambda sessions: not sessions,
        )

    async def update_session_last_used(self, token_hash: str) -> bool:
        return await self._route(
            "update_session_last_used",
            self.session_primary,
            self.session_secondary,
            lambda repo: repo.update_session_last_used(token_hash),
            missing=lambda updated: not updated,
        )

    async def deactivate_session(self, token_hash: str) -> None:
        await self._invalidate(
            "deactivate_session",
            self.session_primary,
            self.session_secondary,
            lambda repo: repo.deactivate_session(token_hash),
        )

    async def deactivate_all_user_sessions(self, account_id: str) -> RevocationResult:
        results = await self._invalidate(
            "deactivate_all_user_sessions",
            self.session_primary,
            self.session_secondary,
            lambda repo: repo.deactivate_all_user_sessions(account_id),
        )
        combined = RevocationResult(account_id=account_id)
        for result in results:
            combined.deactivated += result.deactivated
            combined.failed.extend(result.failed)
        return combined

    async def cleanup_expired_sessions(self) -> int:
        tiers = [self.session_primary] + (
            [self.session_secondary] if self.session_secondary else []
        )
        return await self._cleanup(
            "cleanup_expired_sessions", tiers, lambda repo: repo.cleanup_expired_sessions()
        )
