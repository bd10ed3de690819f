import pytest
from pydantic import ValidationError

from credlife.config import Settings, get_settings, reset_settings_cache
from credlife.service import runtime as runtime_module
from credlife.service.otp import CacheOTPRepository, DurableOTPRepository
from credlife.service.runtime import Runtime, _mask_url_password, reset_runtime_for_tests
from credlife.service.sessions import CacheSessionRepository, DurableSessionRepository
from credlife.storage.memory import MemoryDocumentStore, MemoryKeyValueStore


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.use_cache_for_otp is True
        assert settings.use_cache_for_session is True
        assert settings.enable_fallback is True
        assert settings.fallback_on_rejection is False
        assert settings.store_operation_timeout_seconds == 5.0
        assert settings.ephemeral_ttl_grace_seconds == 60
        assert settings.session_ttl_refresh_threshold_seconds == 3600

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("USE_CACHE_FOR_OTP", "false")
        monkeypatch.setenv("FALLBACK_ON_REJECTION", "true")
        monkeypatch.setenv("STORE_OPERATION_TIMEOUT_SECONDS", "1.5")

        settings = Settings.from_env()

        assert settings.use_cache_for_otp is False
        assert settings.fallback_on_rejection is True
        assert settings.store_operation_timeout_seconds == 1.5

    def test_dotenv_file_is_read_below_environment(self, monkeypatch, tmp_path):
        (tmp_path / ".env").write_text(
            "CLEANUP_INTERVAL_SECONDS=120\nEPHEMERAL_TTL_GRACE_SECONDS=30\n"
        )
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("CLEANUP_INTERVAL_SECONDS", raising=False)
        monkeypatch.setenv("EPHEMERAL_TTL_GRACE_SECONDS", "90")

        settings = Settings.from_env()

        assert settings.cleanup_interval_seconds == 120
        assert settings.ephemeral_ttl_grace_seconds == 90

    @pytest.mark.parametrize(
        "field,value",
        [
            ("store_operation_timeout_seconds", 0),
            ("cleanup_interval_seconds", -1),
            ("session_ttl_refresh_threshold_seconds", 0),
            ("ephemeral_ttl_grace_seconds", -5),
        ],
    )
    def test_rejects_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            Settings(**{field: value})

    def test_settings_are_cached_until_reset(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("CLEANUP_INTERVAL_SECONDS", "42")
        reset_settings_cache()
        assert get_settings().cleanup_interval_seconds == 42


class TestMaskUrl:
    def test_masks_password(self):
        assert _mask_url_password("redis://:secret@localhost:6379/0") == "redis://:***@localhost:6379/0"
        assert (
            _mask_url_password("postgresql://app:secret@db:5432/creds")
            == "postgresql://app:***@db:5432/creds"
        )

    def test_leaves_url_without_password(self):
        assert _mask_url_password("redis://localhost:6379/0") == "redis://localhost:6379/0"
        assert _mask_url_password(None) is None


class FailingRedisCache:
    def __init__(self, redis_url, *, socket_timeout):
        self.redis_url = redis_url

    def verify_connection(self):
        raise ConnectionError("connection refused")


class TestRuntimeWiring:
    def test_memory_runtime_serves_from_cache_first(self, clock):
        runtime = Runtime(Settings(use_memory_store=True, test_mode=True), clock=clock)

        assert isinstance(runtime.store, MemoryDocumentStore)
        assert isinstance(runtime.cache, MemoryKeyValueStore)
        assert isinstance(runtime.repository.otp_primary, CacheOTPRepository)
        assert isinstance(runtime.repository.otp_secondary, DurableOTPRepository)
        assert isinstance(runtime.repository.session_primary, CacheSessionRepository)
        assert runtime.credentials.repository is runtime.repository
        assert runtime.cleanup_worker.repository is runtime.repository

    def test_cache_can_be_disabled_per_class(self, clock):
        runtime = Runtime(
            Settings(use_memory_store=True, test_mode=True, use_cache_for_session=False),
            clock=clock,
        )

        assert isinstance(runtime.repository.otp_primary, CacheOTPRepository)
        assert isinstance(runtime.repository.session_primary, DurableSessionRepository)
        assert runtime.repository.session_secondary is None

    def test_missing_redis_is_fatal_outside_dev(self, monkeypatch):
        monkeypatch.setattr(runtime_module, "PostgresDocumentStore", lambda dsn: MemoryDocumentStore())
        monkeypatch.setattr(runtime_module, "RedisCache", FailingRedisCache)

        with pytest.raises(RuntimeError, match="Redis is required"):
            Runtime(Settings(use_memory_store=False, test_mode=False))

    def test_missing_redis_runs_durable_only_in_dev(self, monkeypatch):
        monkeypatch.setattr(runtime_module, "PostgresDocumentStore", lambda dsn: MemoryDocumentStore())
        monkeypatch.setattr(runtime_module, "RedisCache", FailingRedisCache)

        runtime = Runtime(
            Settings(use_memory_store=False, test_mode=False, allow_redis_fallback_dev=True)
        )

        assert runtime.cache is None
        assert isinstance(runtime.repository.otp_primary, DurableOTPRepository)
        assert isinstance(runtime.repository.session_primary, DurableSessionRepository)

    async def test_aclose_stops_worker(self, clock):
        runtime = Runtime(Settings(use_memory_store=True, test_mode=True), clock=clock)
        await runtime.cleanup_worker.start()

        await runtime.aclose()

        assert runtime.cleanup_worker.running is False

    def test_reset_requires_test_mode(self, monkeypatch):
        monkeypatch.setenv("TEST_MODE", "false")
        with pytest.raises(RuntimeError):
            reset_runtime_for_tests()

    def test_reset_builds_fresh_runtime(self):
        first = reset_runtime_for_tests()
        second = reset_runtime_for_tests()
        assert first is not second
        assert runtime_module.get_runtime() is second

    def test_reset_closes_previous_cache_and_store(self, monkeypatch):
        closed = []

        class RecordingCache:
            async def close(self):
                closed.append("cache")

        class RecordingStore:
            def close(self):
                closed.append("store")

        class PreviousRuntime:
            cache = RecordingCache()
            store = RecordingStore()

        monkeypatch.setattr(runtime_module, "runtime", PreviousRuntime())

        reset_runtime_for_tests()

        assert closed == ["cache", "store"]
