"""Core data structures for EternalStash."""

from eternalstash.models.config import EternalStashConfig
from eternalstash.models.events import (
    ImageUsageEvent,
    NotificationType,
    SignalKind,
    UsageKind,
    format_rfc3339,
)
from eternalstash.models.resources import (
    CacheEntry,
    CacheState,
    ContainerStatus,
    ObservedChange,
    ResourceKey,
    WatchedResource,
    WatchNotification,
)

__all__ = [
    "CacheEntry",
    "CacheState",
    "ContainerStatus",
    "EternalStashConfig",
    "ImageUsageEvent",
    "NotificationType",
    "ObservedChange",
    "ResourceKey",
    "SignalKind",
    "UsageKind",
    "WatchNotification",
    "WatchedResource",
    "format_rfc3339",
]
