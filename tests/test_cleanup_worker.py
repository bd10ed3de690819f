import asyncio

import pytest

from credlife.service.cleanup_worker import MAX_BACKOFF_SECONDS, CleanupWorker
from credlife.service.errors import BackendUnavailable


class StubRepository:
    def __init__(self, otps=0, sessions=0, otp_error=None, session_error=None):
        self.otps = otps
        self.sessions = sessions
        self.otp_error = otp_error
        self.session_error = session_error
        self.calls = []

    async def cleanup_expired_otps(self):
        self.calls.append("otps")
        if self.otp_error:
            raise self.otp_error
        return self.otps

    async def cleanup_expired_sessions(self):
        self.calls.append("sessions")
        if self.session_error:
            raise self.session_error
        return self.sessions


async def test_run_once_reports_counts():
    worker = CleanupWorker(StubRepository(otps=2, sessions=5))
    assert await worker.run_once() == {"otps": 2, "sessions": 5}


async def test_failing_sweep_does_not_skip_the_other():
    repository = StubRepository(
        sessions=3, otp_error=BackendUnavailable("down", backend="durable")
    )
    worker = CleanupWorker(repository)

    with pytest.raises(BackendUnavailable):
        await worker.run_once()
    assert repository.calls == ["otps", "sessions"]


async def test_first_error_wins():
    otp_error = BackendUnavailable("otp sweep down", backend="durable")
    repository = StubRepository(
        otp_error=otp_error,
        session_error=BackendUnavailable("session sweep down", backend="cache"),
    )

    with pytest.raises(BackendUnavailable) as excinfo:
        await CleanupWorker(repository).run_once()
    assert excinfo.value is otp_error


def test_backoff_grows_after_three_failures():
    worker = CleanupWorker(StubRepository(), interval=300)

    delays = []
    for errors in range(0, 8):
        worker.consecutive_errors = errors
        delays.append(worker.backoff_seconds())

    assert delays[:4] == [300, 300, 300, 300]
    assert delays[4] == 600
    assert delays[5] == 1200
    assert delays[6] == 2400
    assert delays[7] == MAX_BACKOFF_SECONDS


async def test_start_and_stop():
    repository = StubRepository()
    worker = CleanupWorker(repository, interval=3600)

    await worker.start()
    assert worker.running
    await worker.start()  # second start is a no-op
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    await worker.stop()

    assert not worker.running
    assert repository.calls[:2] == ["otps", "sessions"]


async def test_loop_counts_consecutive_errors():
    repository = StubRepository(otp_error=BackendUnavailable("down", backend="durable"))
    worker = CleanupWorker(repository, interval=3600)

    await worker.start()
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    await worker.stop()

    assert worker.consecutive_errors == 1
