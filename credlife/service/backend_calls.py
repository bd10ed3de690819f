from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from credlife.service.errors import BackendUnavailable, OperationTimeout, ValidationFailed
from credlife.storage.errors import StorageError, StorageUnavailable

T = TypeVar("T")

DEFAULT_OPERATION_TIMEOUT_SECONDS = 5.0


class BoundedCaller:
    """Run store calls under a deadline and translate store failures.

    Durable adapters are synchronous and run in a worker thread; ephemeral
    adapters are awaited directly. Cancellation of the calling task is never
    translated.
    """

    def __init__(
        self, backend: str, timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS
    ) -> None:
        self.backend = backend
        self.timeout_seconds = timeout_seconds

    async def _bounded(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise OperationTimeout(
                f"{self.backend} {operation} timed out after {self.timeout_seconds}s",
                backend=self.backend,
                operation=operation,
            ) from exc
        except StorageUnavailable as exc:
            raise BackendUnavailable(
                exc.message, backend=self.backend, operation=operation
            ) from exc
        except StorageError as exc:
            raise ValidationFailed(
                f"{self.backend} {operation} failed",
                detail={"backend": self.backend, "operation": operation},
            ) from exc

    async def run(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        """Call a blocking store method in a thread."""

        return await self._bounded(operation, asyncio.to_thread(func, *args))

    async def wait(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Await an async store method."""

        return await self._bounded(operation, awaitable)
