"""Background worker that sweeps expired credentials.

Native TTL removes most cached OTPs and sessions on its own; the durable tier
has no expiry, and the cache's per-account session indexes accumulate members
whose payload has gone. This worker periodically runs both sweeps.
"""

from __future__ import annotations

import asyncio
from typing import Dict, Optional, Protocol

from credlife.logging import get_logger
from credlife.service.errors import ServiceError

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 300
MAX_BACKOFF_SECONDS = 3600


class Sweepable(Protocol):
    async def cleanup_expired_otps(self) -> int: ...

    async def cleanup_expired_sessions(self) -> int: ...


class CleanupWorker:
    """Run credential sweeps on a fixed interval with backoff on failure."""

    def __init__(
        self,
        repository: Sweepable,
        *,
        interval: int = DEFAULT_INTERVAL_SECONDS,
    ) -> None:
        self.repository = repository
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.consecutive_errors = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background worker."""
        if self._running:
            logger.warning("cleanup_worker_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("cleanup_worker_started", interval=self.interval)

    async def stop(self) -> None:
        """Stop the background worker."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logger.debug("cleanup_worker_task_cancelled")
            self._task = None
        logger.info("cleanup_worker_stopped")

    async def run_once(self) -> Dict[str, int]:
        """Run both sweeps; a failing sweep does not skip the other."""

        counts = {"otps": 0, "sessions": 0}
        first_error: Optional[ServiceError] = None
        try:
            counts["otps"] = await self.repository.cleanup_expired_otps()
        except ServiceError as exc:
            first_error = exc
            logger.error("otp_sweep_failed", error=exc.message, error_type=type(exc).__name__)
        try:
            counts["sessions"] = await self.repository.cleanup_expired_sessions()
        except ServiceError as exc:
            first_error = first_error or exc
            logger.error(
                "session_sweep_failed", error=exc.message, error_type=type(exc).__name__
            )
        if first_error is not None:
            raise first_error
        logger.info("cleanup_sweep_completed", **counts)
        return counts

    def backoff_seconds(self) -> int:
        """Delay before the next sweep given the current failure streak."""

        if self.consecutive_errors <= 3:
            return self.interval
        return min(MAX_BACKOFF_SECONDS, self.interval * (2 ** (self.consecutive_errors - 3)))

    async def _run_loop(self) -> None:
        """Main worker loop."""
        while self._running:
            try:
                await self.run_once()
                self.consecutive_errors = 0
            except Exception as exc:
                self.consecutive_errors += 1
                logger.error(
                    "cleanup_worker_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=self.consecutive_errors,
                )
                if self.consecutive_errors > 3:
                    logger.warning(
                        "cleanup_worker_backoff",
                        backoff_seconds=self.backoff_seconds(),
                        consecutive_errors=self.consecutive_errors,
                    )

            await asyncio.sleep(self.backoff_seconds())
