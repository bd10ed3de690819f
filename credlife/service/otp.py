"""One-time passcode state machine.

An OTP moves from absent to active (attempts 0..max-1) and from there to
consumed, expired or exhausted before it is removed. Both implementations below
walk the same transitions; they differ only in how expiry and the attempt
counter are stored.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Protocol

from credlife.logging import get_logger
from credlife.service.backend_calls import DEFAULT_OPERATION_TIMEOUT_SECONDS, BoundedCaller
from credlife.service.errors import (
    ConflictError,
    OTPAttemptsExhausted,
    OTPExpired,
    OTPMismatch,
    OTPNotFound,
    ValidationFailed,
)
from credlife.service.tokens import codes_match, generate_otp_code
from credlife.storage.common import (
    OTP_COLLECTION,
    DocumentStore,
    EphemeralStore,
    otp_from_document,
    otp_from_payload,
    otp_to_document,
    otp_to_payload,
)
from credlife.storage.errors import ConstraintViolation
from credlife.storage.models import OTP, OTP_TTL, OTPPurpose, utcnow

logger = get_logger(__name__)

DEFAULT_TTL_GRACE_SECONDS = 60


class OTPRepository(Protocol):
    async def create_otp(self, email: str, purpose: OTPPurpose) -> OTP: ...

    async def get_otp(self, email: str, purpose: OTPPurpose) -> Optional[OTP]: ...

    async def validate_otp(self, email: str, purpose: OTPPurpose, code: str) -> OTP: ...

    async def delete_otp(self, email: str, purpose: OTPPurpose) -> None: ...

    async def cleanup_expired_otps(self) -> int: ...


class DurableOTPRepository:
    """OTPs as rows; expiry is checked on every read."""

    backend = "durable"

    def __init__(
        self,
        store: DocumentStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS,
        code_generator: Callable[[], str] = generate_otp_code,
    ) -> None:
        self.collection = store.collection(OTP_COLLECTION)
        self._clock = clock
        self._calls = BoundedCaller(self.backend, timeout_seconds)
        self._generate_code = code_generator

    @staticmethod
    def _key_filter(email: str, purpose: OTPPurpose) -> dict:
        return {"email": email, "purpose": OTPPurpose(purpose).value}

    async def _delete_by_id(self, otp_id: str) -> None:
        await self._calls.run("delete_otp", self.collection.delete, {"id": otp_id})

    async def create_otp(self, email: str, purpose: OTPPurpose) -> OTP:
        purpose = OTPPurpose(purpose)
        await self._calls.run(
            "invalidate_otp", self.collection.delete, self._key_filter(email, purpose)
        )
        otp = OTP.new(email, purpose, self._generate_code(), self._clock())
        try:
            await self._calls.run("create_otp", self.collection.create, otp_to_document(otp))
        except ConstraintViolation as exc:
            # A concurrent create for the same key landed between delete and insert
            raise ConflictError(
                "otp already issued", detail={"purpose": purpose.value}
            ) from exc
        logger.info("otp_created", backend=self.backend, purpose=purpose.value, otp_id=otp.id)
        return otp

    async def get_otp(self, email: str, purpose: OTPPurpose) -> Optional[OTP]:
        doc = await self._calls.run(
            "get_otp", self.collection.find_one, self._key_filter(email, purpose)
        )
        if doc is None:
            return None
        try:
            return otp_from_document(doc)
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationFailed(
                "stored otp is malformed", detail={"backend": self.backend}
            ) from exc

    async def validate_otp(self, email: str, purpose: OTPPurpose, code: str) -> OTP:
        otp = await self.get_otp(email, purpose)
        if otp is None:
            raise OTPNotFound()
        now = self._clock()
        if otp.is_expired(now):
            await self._delete_by_id(otp.id)
            logger.info("otp_expired", backend=self.backend, otp_id=otp.id)
            raise OTPExpired()
        if otp.is_max_attempts_reached():
            await self._delete_by_id(otp.id)
            logger.warning("otp_attempts_exhausted", backend=self.backend, otp_id=otp.id)
            raise OTPAttemptsExhausted()
        if not codes_match(otp.code, code):
            # attempts = attempts + 1 in a single statement
            await self._calls.run(
                "increment_otp_attempts",
                self.collection.update,
                {"id": otp.id},
                {"$inc": {"attempts": 1}, "$set": {"updated_at": now}},
            )
            logger.info(
                "otp_validation_failed",
                backend=self.backend,
                otp_id=otp.id,
                attempts=otp.attempts + 1,
            )
            raise OTPMismatch()
        return otp

    async def delete_otp(self, email: str, purpose: OTPPurpose) -> None:
        await self._calls.run("delete_otp", self.collection.delete, self._key_filter(email, purpose))

    async def cleanup_expired_otps(self) -> int:
        expired = await self._calls.run(
            "find_expired_otps",
            self.collection.find,
            {"expires_at": {"$lte": self._clock()}},
        )
        removed = 0
        # Delete by id so an OTP re-issued since the scan survives
        for doc in expired:
            removed += await self._calls.run(
                "delete_expired_otp", self.collection.delete, {"id": doc["id"]}
            )
        if removed:
            logger.info("otp_cleanup_completed", backend=self.backend, removed=removed)
        return removed


class CacheOTPRepository:
    """OTPs as Redis keys with native expiry and an INCR attempts counter.

    Layout per (email, purpose): ``otp:`` holds the code, ``otp_data:`` the
    JSON payload and ``otp_attempts:`` the counter. The payload key marks
    presence; the counter is merged into the payload on read.
    """

    backend = "cache"

    def __init__(
        self,
        cache: EphemeralStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS,
        ttl_grace_seconds: int = DEFAULT_TTL_GRACE_SECONDS,
        code_generator: Callable[[], str] = generate_otp_code,
    ) -> None:
        self.cache = cache
        self._clock = clock
        self._calls = BoundedCaller(self.backend, timeout_seconds)
        self._grace = ttl_grace_seconds
        self._generate_code = code_generator

    @staticmethod
    def _keys(email: str, purpose: OTPPurpose) -> tuple[str, str, str]:
        suffix = f"{email}:{OTPPurpose(purpose).value}"
        return f"otp:{suffix}", f"otp_data:{suffix}", f"otp_attempts:{suffix}"

    async def create_otp(self, email: str, purpose: OTPPurpose) -> OTP:
        purpose = OTPPurpose(purpose)
        code_key, data_key, attempts_key = self._keys(email, purpose)
        await self._calls.wait("invalidate_otp", self.cache.delete(code_key, data_key, attempts_key))
        otp = OTP.new(email, purpose, self._generate_code(), self._clock())
        ttl = int(OTP_TTL.total_seconds()) + self._grace
        await self._calls.wait(
            "create_otp",
            self.cache.set_many(
                {attempts_key: "0", code_key: otp.code, data_key: otp_to_payload(otp)}, ttl
            ),
        )
        logger.info("otp_created", backend=self.backend, purpose=purpose.value, otp_id=otp.id)
        return otp

    async def get_otp(self, email: str, purpose: OTPPurpose) -> Optional[OTP]:
        _, data_key, attempts_key = self._keys(email, purpose)
        raw = await self._calls.wait("get_otp", self.cache.get(data_key))
        if raw is None:
            return None
        try:
            otp = otp_from_payload(raw)
        except ValueError as exc:
            raise ValidationFailed(
                "cached otp payload is corrupt", detail={"backend": self.backend}
            ) from exc
        counter = await self._calls.wait("get_otp_attempts", self.cache.get(attempts_key))
        try:
            otp.attempts = max(0, int(counter)) if counter is not None else 0
        except ValueError:
            otp.attempts = 0
        return otp

    async def validate_otp(self, email: str, purpose: OTPPurpose, code: str) -> OTP:
        otp = await self.get_otp(email, purpose)
        if otp is None:
            raise OTPNotFound()
        if otp.is_expired(self._clock()):
            await self.delete_otp(email, purpose)
            logger.info("otp_expired", backend=self.backend, otp_id=otp.id)
            raise OTPExpired()
        if otp.is_max_attempts_reached():
            await self.delete_otp(email, purpose)
            logger.warning("otp_attempts_exhausted", backend=self.backend, otp_id=otp.id)
            raise OTPAttemptsExhausted()
        if not codes_match(otp.code, code):
            _, data_key, attempts_key = self._keys(email, purpose)
            attempts = await self._calls.wait("increment_otp_attempts", self.cache.incr(attempts_key))
            remaining = await self._calls.wait("get_otp_ttl", self.cache.ttl(data_key))
            if remaining > 0:
                await self._calls.wait(
                    "expire_otp_attempts", self.cache.expire(attempts_key, remaining)
                )
            logger.info(
                "otp_validation_failed",
                backend=self.backend,
                otp_id=otp.id,
                attempts=attempts,
            )
            raise OTPMismatch()
        return otp

    async def delete_otp(self, email: str, purpose: OTPPurpose) -> None:
        await self._calls.wait("delete_otp", self.cache.delete(*self._keys(email, purpose)))

    async def cleanup_expired_otps(self) -> int:
        # Redis expires OTP keys on its own
        return 0
