"""Watched resource snapshots, cache entries and watch notifications."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from eternalstash.models.events import NotificationType, SignalKind

ResourceKey = tuple[str, str]


class CacheState(StrEnum):
    """Reflector synchronisation state."""

    UNSYNCED = "unsynced"
    SYNCING = "syncing"
    SYNCED = "synced"


@dataclass(frozen=True)
class ContainerStatus:
    """Runtime status of one container: the image actually pulled."""

    name: str
    image: str
    image_id: str


@dataclass(frozen=True)
class WatchedResource:
    """Observed copy of a pod. Owned by the cluster; never mutated here."""

    name: str
    namespace: str
    phase: str = ""
    start_time: datetime | None = None
    containers: tuple[str, ...] = ()
    container_statuses: tuple[ContainerStatus, ...] = ()
    resource_version: str = ""

    @property
    def key(self) -> ResourceKey:
        return (self.namespace, self.name)


@dataclass(frozen=True)
class WatchNotification:
    """Tagged change notification delivered by a ClusterEventSource.

    ``resource`` is None only for tombstones, which carry nothing but the key.
    A tombstone may also carry a stale resource when the source had one.
    """

    type: NotificationType
    key: ResourceKey
    resource: WatchedResource | None = None
    is_tombstone: bool = False
    resource_version: str = ""

    @classmethod
    def of(cls, type_: NotificationType, resource: WatchedResource) -> WatchNotification:
        return cls(
            type=type_,
            key=resource.key,
            resource=resource,
            resource_version=resource.resource_version,
        )

    @classmethod
    def tombstone(cls, key: ResourceKey, resource: WatchedResource | None = None) -> WatchNotification:
        return cls(type=NotificationType.DELETE, key=key, resource=resource, is_tombstone=True)


@dataclass
class CacheEntry:
    """Last-known snapshot for one key, maintained by the watch loop."""

    resource: WatchedResource
    resource_version: str
    generation: int


@dataclass(frozen=True)
class ObservedChange:
    """Add or delete transition emitted by the cache for the normalizer.

    For OBSERVED_ADD, ``containers`` names the containers whose current
    start time has not been signalled before.  For OBSERVED_DELETE it names
    every container with a status in the final snapshot.
    """

    kind: SignalKind
    resource: WatchedResource
    containers: tuple[str, ...] = ()
    from_tombstone: bool = False
