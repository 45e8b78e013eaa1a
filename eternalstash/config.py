"""Configuration loading from environment variables."""

from __future__ import annotations

import os

from eternalstash.models.config import (
    APIConfig,
    EternalStashConfig,
    KubernetesConfig,
    LogConfig,
    RecorderConfig,
    StoreConfig,
)

_CREDENTIAL_MODES = ("auto", "in-cluster", "kubeconfig")


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"ETERNALSTASH_{key}", default)


def _env_bool(key: str, default: bool = False) -> bool:
    val = _env(key, str(default).lower())
    return val.lower() in ("true", "1", "yes")


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    val = int(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _env_float(key: str, default: float) -> float:
    return float(_env(key, str(default)))


def _validate_credentials(mode: str, kubeconfig: str) -> str:
    mode = mode.lower()
    if mode not in _CREDENTIAL_MODES:
        raise ValueError(f"Invalid credentials source: {mode}. Must be one of {_CREDENTIAL_MODES}")
    # An explicit path only makes sense for kubeconfig loading
    if kubeconfig and mode == "auto":
        return "kubeconfig"
    if kubeconfig and mode == "in-cluster":
        raise ValueError("ETERNALSTASH_KUBECONFIG cannot be combined with in-cluster credentials")
    return mode


def _validate_store_uri(value: str) -> str:
    if not value.startswith(("mongodb://", "mongodb+srv://", "memory://")):
        raise ValueError(f"Invalid store uri: {value}. Expected mongodb://, mongodb+srv:// or memory://")
    return value


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def _validate_log_format(value: str) -> str:
    if value.lower() not in ("json", "console"):
        raise ValueError(f"Invalid log format: {value}. Must be 'json' or 'console'")
    return value.lower()


def load_config() -> EternalStashConfig:
    """Load configuration from ETERNALSTASH_* environment variables."""
    kubeconfig = _env("KUBECONFIG", "")
    return EternalStashConfig(
        kubernetes=KubernetesConfig(
            credentials=_validate_credentials(_env("CREDENTIALS", "auto"), kubeconfig),
            kubeconfig=kubeconfig,
            namespace=_env("NAMESPACE", ""),
            resync_interval=_env_int("RESYNC_INTERVAL", 30, min_val=5, max_val=3600),
            request_timeout=_env_int("REQUEST_TIMEOUT", 30, min_val=1, max_val=300),
        ),
        store=StoreConfig(
            uri=_validate_store_uri(_env("STORE_URI", "mongodb://localhost:27017")),
            database=_env("STORE_DATABASE", "eternalstash"),
            collection=_env("STORE_COLLECTION", "images"),
        ),
        recorder=RecorderConfig(
            max_retries=_env_int("RECORD_MAX_RETRIES", 3, min_val=0, max_val=10),
            backoff_seconds=_env_float("RECORD_BACKOFF", 0.5),
            backoff_max_seconds=_env_float("RECORD_BACKOFF_MAX", 10.0),
        ),
        api=APIConfig(
            host=_env("API_HOST", "0.0.0.0"),
            port=_env_int("API_PORT", 8080, min_val=1024, max_val=65535),
            wait_for_sync=_env_bool("WAIT_FOR_SYNC", True),
            sync_timeout=_env_int("SYNC_TIMEOUT", 60, min_val=1, max_val=3600),
        ),
        log=LogConfig(
            level=_validate_log_level(_env("LOG_LEVEL", "info")),
            format=_validate_log_format(_env("LOG_FORMAT", "json")),
        ),
    )
