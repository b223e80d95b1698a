from __future__ import annotations

from common_core.config import settings


class ConfigError(RuntimeError):
    pass


def _must_set(name: str, value: str, min_len: int = 32) -> None:
    if not value:
        raise ConfigError(f"{name} is required")
    if value.strip().upper() == "CHANGE_ME":
        raise ConfigError(f"{name} must not be CHANGE_ME")
    if len(value) < min_len:
        raise ConfigError(f"{name} must be at least {min_len} chars")


def _must_be_positive(name: str, value: float) -> None:
    if value <= 0:
        raise ConfigError(f"{name} must be > 0")


def validate_runtime_settings() -> None:
    _must_set("JWT_SECRET", settings.jwt_secret, 32)
    _must_be_positive("RETRY_MAX_ATTEMPTS", settings.retry_max_attempts)
    _must_be_positive("WORKER_POLL_SEC", settings.worker_poll_sec)
    _must_be_positive("SYNC_INTERVAL_SEC", settings.sync_interval_sec)
