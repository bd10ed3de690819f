from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential stores and their routing."""

    database_url: str = env_field(
        "postgresql://localhost:5432/credlife", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Run both tiers in process memory (development and tests only)",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )

    # Hybrid routing
    use_cache_for_otp: bool = env_field(
        True,
        "USE_CACHE_FOR_OTP",
        description="Serve OTPs from the ephemeral tier with durable fallback",
    )
    use_cache_for_session: bool = env_field(
        True,
        "USE_CACHE_FOR_SESSION",
        description="Serve sessions from the ephemeral tier with durable fallback",
    )
    enable_fallback: bool = env_field(True, "ENABLE_FALLBACK")
    fallback_on_rejection: bool = env_field(
        False,
        "FALLBACK_ON_REJECTION",
        description=(
            "Also retry against the durable tier when the primary rejects a "
            "credential (expired, mismatch, exhausted), not only on backend failure or not found"
        ),
    )

    # Store behaviour
    store_operation_timeout_seconds: float = env_field(
        5.0, "STORE_OPERATION_TIMEOUT_SECONDS"
    )
    session_ttl_refresh_threshold_seconds: int = env_field(
        3600,
        "SESSION_TTL_REFRESH_THRESHOLD_SECONDS",
        description="Re-arm a cached session's TTL when fewer seconds than this remain",
    )
    ephemeral_ttl_grace_seconds: int = env_field(
        60,
        "EPHEMERAL_TTL_GRACE_SECONDS",
        description="Extra key lifetime past expiry so expiry is observed before eviction",
    )

    # Cleanup worker
    cleanup_worker_enabled: bool = env_field(True, "CLEANUP_WORKER_ENABLED")
    cleanup_interval_seconds: int = env_field(300, "CLEANUP_INTERVAL_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("store_operation_timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("store operation timeout must be positive")
        return value

    @field_validator("cleanup_interval_seconds", "session_ttl_refresh_threshold_seconds")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("interval must be positive")
        return value

    @field_validator("ephemeral_ttl_grace_seconds")
    @classmethod
    def _validate_grace(cls, value: int) -> int:
        if value < 0:
            raise ValueError("grace period cannot be negative")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
