"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class KubernetesConfig:
    """Cluster access and watch configuration."""

    credentials: str = "auto"
    kubeconfig: str = ""
    namespace: str = ""
    resync_interval: int = 30
    request_timeout: int = 30


@dataclass
class StoreConfig:
    """Persistence endpoint configuration."""

    uri: str = "mongodb://localhost:27017"
    database: str = "eternalstash"
    collection: str = "images"


@dataclass
class RecorderConfig:
    """Usage recorder retry configuration."""

    max_retries: int = 3
    backoff_seconds: float = 0.5
    backoff_max_seconds: float = 10.0


@dataclass
class APIConfig:
    """Query API configuration."""

    host: str = "0.0.0.0"
    port: int = 8080
    wait_for_sync: bool = True
    sync_timeout: int = 60


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"
    format: str = "json"


@dataclass
class EternalStashConfig:
    """Top-level EternalStash configuration."""

    kubernetes: KubernetesConfig = field(default_factory=KubernetesConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    recorder: RecorderConfig = field(default_factory=RecorderConfig)
    api: APIConfig = field(default_factory=APIConfig)
    log: LogConfig = field(default_factory=LogConfig)
