"""Bearer session state machine.

Sessions start active and end either deactivated or expired; both are terminal.
Only ``last_used_at`` advances on a live session. Lookups always go through the
token hash.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol

from credlife.logging import get_logger
from credlife.service.backend_calls import DEFAULT_OPERATION_TIMEOUT_SECONDS, BoundedCaller
from credlife.service.errors import (
    BackendUnavailable,
    ConflictError,
    ValidationError,
    ValidationFailed,
)
from credlife.storage.common import (
    DESCENDING,
    SESSION_COLLECTION,
    DocumentStore,
    EphemeralStore,
    as_utc,
    session_from_document,
    session_from_payload,
    session_to_document,
    session_to_payload,
)
from credlife.storage.errors import ConstraintViolation
from credlife.storage.models import DEFAULT_SESSION_TTL, RevocationResult, Session, utcnow

logger = get_logger(__name__)

DEFAULT_TTL_GRACE_SECONDS = 60
DEFAULT_REFRESH_THRESHOLD_SECONDS = 3600
# The per-account index outlives its longest member by this much
INDEX_TTL_PADDING_SECONDS = 3600


class SessionRepository(Protocol):
    async def create_session(self, session: Session) -> Session: ...

    async def get_session_by_token(self, token_hash: str) -> Optional[Session]: ...

    async def get_sessions_by_account_id(self, account_id: str) -> List[Session]: ...

    async def update_session_last_used(self, token_hash: str) -> bool: ...

    async def deactivate_session(self, token_hash: str) -> None: ...

    async def deactivate_all_user_sessions(self, account_id: str) -> RevocationResult: ...

    async def cleanup_expired_sessions(self) -> int: ...


def _prepare_new_session(session: Session, now: datetime) -> Session:
    if session.expires_at is None:
        session.expires_at = now + DEFAULT_SESSION_TTL
    else:
        session.expires_at = as_utc(session.expires_at)
        if session.expires_at <= now:
            raise ValidationError(
                "session expiry must be in the future",
                detail={"field": "expires_at"},
            )
    session.id = session.id or str(uuid.uuid4())
    session.is_active = True
    session.created_at = now
    session.last_used_at = now
    return session


def _sort_by_last_used(sessions: List[Session]) -> List[Session]:
    floor = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(sessions, key=lambda s: s.last_used_at or floor, reverse=True)


class DurableSessionRepository:
    """Sessions as rows; ``expires_at`` is compared on every read."""

    backend = "durable"

    def __init__(
        self,
        store: DocumentStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS,
    ) -> None:
        self.collection = store.collection(SESSION_COLLECTION)
        self._clock = clock
        self._calls = BoundedCaller(self.backend, timeout_seconds)

    def _load(self, doc: dict) -> Session:
        try:
            return session_from_document(doc)
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationFailed(
                "stored session is malformed", detail={"backend": self.backend}
            ) from exc

    async def _deactivate_by_id(self, session_id: str) -> int:
        return await self._calls.run(
            "deactivate_session",
            self.collection.update,
            {"id": session_id, "is_active": True},
            {"$set": {"is_active": False}},
        )

    async def create_session(self, session: Session) -> Session:
        session = _prepare_new_session(session, self._clock())
        try:
            await self._calls.run(
                "create_session", self.collection.create, session_to_document(session)
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "session token already in use", detail={"field": "token_hash"}
            ) from exc
        logger.info(
            "session_created",
            backend=self.backend,
            session_id=session.id,
            account_id=session.account_id,
        )
        return session

    async def get_session_by_token(self, token_hash: str) -> Optional[Session]:
        doc = await self._calls.run(
            "get_session",
            self.collection.find_one,
            {"token_hash": token_hash, "is_active": True},
        )
        if doc is None:
            return None
        session = self._load(doc)
        if session.is_expired(self._clock()):
            try:
                await self._deactivate_by_id(session.id)
                logger.info("session_expired", backend=self.backend, session_id=session.id)
            except BackendUnavailable as exc:
                logger.warning(
                    "session_expire_deactivation_failed",
                    backend=self.backend,
                    session_id=session.id,
                    error=exc.message,
                )
            return None
        return session

    async def get_sessions_by_account_id(self, account_id: str) -> List[Session]:
        docs = await self._calls.run(
            "list_sessions",
            self.collection.find,
            {"account_id": account_id, "is_active": True},
            [("last_used_at", DESCENDING)],
        )
        now = self._clock()
        sessions = [self._load(doc) for doc in docs]
        return _sort_by_last_used([s for s in sessions if not s.is_expired(now)])

    async def update_session_last_used(self, token_hash: str) -> bool:
        session = await self.get_session_by_token(token_hash)
        if session is None:
            return False
        updated = await self._calls.run(
            "touch_session",
            self.collection.update,
            {"id": session.id, "is_active": True},
            {"$set": {"last_used_at": self._clock()}},
        )
        return updated > 0

    async def deactivate_session(self, token_hash: str) -> None:
        updated = await self._calls.run(
            "deactivate_session",
            self.collection.update,
            {"token_hash": token_hash, "is_active": True},
            {"$set": {"is_active": False}},
        )
        if updated:
            logger.info("session_deactivated", backend=self.backend, token_hash=token_hash)

    async def deactivate_all_user_sessions(self, account_id: str) -> RevocationResult:
        docs = await self._calls.run(
            "list_sessions",
            self.collection.find,
            {"account_id": account_id, "is_active": True},
        )
        result = RevocationResult(account_id=account_id)
        first_error: Optional[BackendUnavailable] = None
        for doc in docs:
            try:
                await self._deactivate_by_id(doc["id"])
                result.deactivated += 1
            except BackendUnavailable as exc:
                first_error = first_error or exc
                result.failed.append(doc["token_hash"])
                logger.warning(
                    "session_deactivation_failed",
                    backend=self.backend,
                    token_hash=doc["token_hash"],
                    error=exc.message,
                )

        if result.failed:
            # One account-wide sweep for whatever the per-session updates missed
            try:
                swept = await self._calls.run(
                    "deactivate_account_sessions",
                    self.collection.update,
                    {"account_id": account_id, "is_active": True},
                    {"$set": {"is_active": False}},
                )
            except BackendUnavailable as exc:
                logger.error(
                    "session_bulk_deactivation_incomplete",
                    backend=self.backend,
                    account_id=account_id,
                    failed=len(result.failed),
                    error=exc.message,
                )
                raise first_error from exc
            result.deactivated += swept
            result.failed = []

        logger.info(
            "sessions_revoked",
            backend=self.backend,
            account_id=account_id,
            deactivated=result.deactivated,
        )
        return result

    async def cleanup_expired_sessions(self) -> int:
        removed = await self._calls.run(
            "cleanup_sessions",
            self.collection.delete,
            {"$or": [{"expires_at": {"$lte": self._clock()}}, {"is_active": False}]},
        )
        if removed:
            logger.info("session_cleanup_completed", backend=self.backend, removed=removed)
        return removed


class CacheSessionRepository:
    """Sessions as Redis keys whose TTL follows the session's lifetime.

    ``session:{hash}`` holds the JSON payload, ``session_last_used:{hash}`` a
    unix timestamp and ``user_sessions:{account}`` the set of hashes used for
    enumeration and bulk revocation. Index members may outlive their payload;
    reads and cleanup prune them.
    """

    backend = "cache"

    def __init__(
        self,
        cache: EphemeralStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS,
        ttl_grace_seconds: int = DEFAULT_TTL_GRACE_SECONDS,
        refresh_threshold_seconds: int = DEFAULT_REFRESH_THRESHOLD_SECONDS,
    ) -> None:
        self.cache = cache
        self._clock = clock
        self._calls = BoundedCaller(self.backend, timeout_seconds)
        self._grace = ttl_grace_seconds
        self._refresh_threshold = refresh_threshold_seconds

    @staticmethod
    def _session_key(token_hash: str) -> str:
        return f"session:{token_hash}"

    @staticmethod
    def _last_used_key(token_hash: str) -> str:
        return f"session_last_used:{token_hash}"

    @staticmethod
    def _index_key(account_id: str) -> str:
        return f"user_sessions:{account_id}"

    def _lifetime_ttl(self, session: Session, now: datetime) -> int:
        remaining = int((session.expires_at - now).total_seconds())
        return max(1, remaining + self._grace)

    async def _load(self, token_hash: str) -> Optional[Session]:
        raw = await self._calls.wait("get_session", self.cache.get(self._session_key(token_hash)))
        if raw is None:
            return None
        try:
            session = session_from_payload(raw)
        except ValueError as exc:
            raise ValidationFailed(
                "cached session payload is corrupt", detail={"backend": self.backend}
            ) from exc
        last_used = await self._calls.wait(
            "get_session_last_used", self.cache.get(self._last_used_key(token_hash))
        )
        if last_used is not None:
            try:
                session.last_used_at = datetime.fromtimestamp(float(last_used), tz=timezone.utc)
            except ValueError:
                logger.debug("session_last_used_unreadable", token_hash=token_hash)
        return session

    async def _deactivate(self, token_hash: str, account_id: Optional[str]) -> bool:
        """Drop a session's keys and index entry; True if a payload was removed."""

        removed = await self._calls.wait(
            "deactivate_session", self.cache.delete(self._session_key(token_hash))
        )
        await self._calls.wait(
            "clear_last_used", self.cache.delete(self._last_used_key(token_hash))
        )
        if account_id:
            await self._calls.wait(
                "unindex_session", self.cache.srem(self._index_key(account_id), token_hash)
            )
        return removed > 0

    async def create_session(self, session: Session) -> Session:
        now = self._clock()
        session = _prepare_new_session(session, now)
        session_key = self._session_key(session.token_hash)
        if await self._calls.wait("session_exists", self.cache.exists(session_key)):
            raise ConflictError("session token already in use", detail={"field": "token_hash"})

        ttl = self._lifetime_ttl(session, now)
        index_key = self._index_key(session.account_id)
        # Index first: an interrupted create leaves a member without payload,
        # which reads prune
        await self._calls.wait("index_session", self.cache.sadd(index_key, session.token_hash))
        index_ttl = ttl + INDEX_TTL_PADDING_SECONDS
        current = await self._calls.wait("get_index_ttl", self.cache.ttl(index_key))
        if current < index_ttl:
            await self._calls.wait("expire_index", self.cache.expire(index_key, index_ttl))

        await self._calls.wait(
            "create_session",
            self.cache.set_many(
                {
                    session_key: session_to_payload(session),
                    self._last_used_key(session.token_hash): str(int(now.timestamp())),
                },
                ttl,
            ),
        )
        logger.info(
            "session_created",
            backend=self.backend,
            session_id=session.id,
            account_id=session.account_id,
        )
        return session

    async def get_session_by_token(self, token_hash: str) -> Optional[Session]:
        session = await self._load(token_hash)
        if session is None or not session.is_active:
            return None
        if session.is_expired(self._clock()):
            try:
                await self._deactivate(token_hash, session.account_id)
                logger.info("session_expired", backend=self.backend, session_id=session.id)
            except BackendUnavailable as exc:
                logger.warning(
                    "session_expire_deactivation_failed",
                    backend=self.backend,
                    session_id=session.id,
                    error=exc.message,
                )
            return None
        return session

    async def get_sessions_by_account_id(self, account_id: str) -> List[Session]:
        index_key = self._index_key(account_id)
        members = await self._calls.wait("list_sessions", self.cache.smembers(index_key))
        now = self._clock()
        sessions: List[Session] = []
        for token_hash in sorted(members):
            session = await self._load(token_hash)
            if session is None:
                await self._calls.wait("prune_index", self.cache.srem(index_key, token_hash))
                continue
            if session.is_active and not session.is_expired(now):
                sessions.append(session)
        return _sort_by_last_used(sessions)

    async def update_session_last_used(self, token_hash: str) -> bool:
        session = await self.get_session_by_token(token_hash)
        if session is None:
            return False
        now = self._clock()
        session.last_used_at = now
        session_key = self._session_key(token_hash)
        remaining = await self._calls.wait("get_session_ttl", self.cache.ttl(session_key))
        if remaining < 0:
            # Evicted between the read and now
            return False
        ttl = remaining
        if remaining < self._refresh_threshold:
            ttl = self._lifetime_ttl(session, now)
            logger.debug("session_ttl_refreshed", session_id=session.id, ttl=ttl)
        await self._calls.wait(
            "touch_session",
            self.cache.set_many(
                {
                    session_key: session_to_payload(session),
                    self._last_used_key(token_hash): str(int(now.timestamp())),
                },
                ttl,
            ),
        )
        return True

    async def deactivate_session(self, token_hash: str) -> None:
        raw = await self._calls.wait("get_session", self.cache.get(self._session_key(token_hash)))
        account_id = None
        if raw is not None:
            try:
                account_id = session_from_payload(raw).account_id
            except ValueError:
                logger.warning("session_payload_corrupt", token_hash=token_hash)
        await self._deactivate(token_hash, account_id)
        if raw is not None:
            logger.info("session_deactivated", backend=self.backend, token_hash=token_hash)

    async def deactivate_all_user_sessions(self, account_id: str) -> RevocationResult:
        index_key = self._index_key(account_id)
        members = await self._calls.wait("list_sessions", self.cache.smembers(index_key))
        result = RevocationResult(account_id=account_id)
        pending = sorted(members)
        # A second pass gives transiently failing members one retry
        for _ in range(2):
            failed: List[str] = []
            for token_hash in pending:
                try:
                    if await self._deactivate(token_hash, account_id):
                        result.deactivated += 1
                except BackendUnavailable as exc:
                    failed.append(token_hash)
                    logger.warning(
                        "session_deactivation_failed",
                        backend=self.backend,
                        token_hash=token_hash,
                        error=exc.message,
                    )
            pending = failed
            if not pending:
                break
        result.failed = pending

        if not result.failed:
            await self._calls.wait("clear_index", self.cache.delete(index_key))
        logger.info(
            "sessions_revoked",
            backend=self.backend,
            account_id=account_id,
            deactivated=result.deactivated,
            failed=len(result.failed),
        )
        return result

    async def cleanup_expired_sessions(self) -> int:
        index_keys = await self._calls.wait("scan_indexes", self.cache.scan_keys("user_sessions:*"))
        now = self._clock()
        removed = 0
        for index_key in index_keys:
            account_id = index_key.split(":", 1)[1]
            members = await self._calls.wait("list_sessions", self.cache.smembers(index_key))
            for token_hash in sorted(members):
                try:
                    session = await self._load(token_hash)
                except ValidationFailed:
                    session = None
                    logger.warning("session_payload_corrupt", token_hash=token_hash)
                if session is None or not session.is_active or session.is_expired(now):
                    await self._deactivate(token_hash, account_id)
                    removed += 1
        if removed:
            logger.info("session_cleanup_completed", backend=self.backend, removed=removed)
        return removed
