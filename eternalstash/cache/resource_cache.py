"""In-memory reflected pod cache with a 3-state sync model.

The watch loop is the only writer.  Every mutation returns the add/delete
transitions it caused as ObservedChange signals; the caller hands them to the
normalizer.  Readers (API, sync checks, tests) go through the lock and only
ever see immutable WatchedResource snapshots.

State machine:
    UNSYNCED --replace()--> SYNCING --mark_synced()--> SYNCED

Once SYNCED the cache stays SYNCED across later relists; a relist only
reconciles content.
"""

from __future__ import annotations

import asyncio
import threading

import structlog

from eternalstash.models.events import NotificationType, SignalKind, format_rfc3339
from eternalstash.models.resources import (
    CacheEntry,
    CacheState,
    ContainerStatus,
    ObservedChange,
    ResourceKey,
    WatchedResource,
    WatchNotification,
)
from eternalstash.observability.metrics import cache_entries, lost_deletes_total, notifications_total

_log = structlog.get_logger(component="cache.resource_cache")


class ResourceCache:
    """Local, eventually-consistent mirror of the watched pod set."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._store: dict[ResourceKey, CacheEntry] = {}
        # key -> {(container, startedAt)} already signalled as observed-add
        self._signalled: dict[ResourceKey, set[tuple[str, str]]] = {}
        self._state = CacheState.UNSYNCED
        self._synced = asyncio.Event()
        self._generation = 0
        self._resource_version = ""
        self._closed = False
        self.lost_deletes = 0

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def state(self) -> CacheState:
        return self._state

    @property
    def resource_version(self) -> str:
        """Version of the most recent listing or notification applied."""
        return self._resource_version

    @property
    def closed(self) -> bool:
        return self._closed

    def get(self, namespace: str, name: str) -> WatchedResource | None:
        with self._lock:
            entry = self._store.get((namespace, name))
            return entry.resource if entry is not None else None

    def entry(self, namespace: str, name: str) -> CacheEntry | None:
        with self._lock:
            entry = self._store.get((namespace, name))
            if entry is None:
                return None
            return CacheEntry(entry.resource, entry.resource_version, entry.generation)

    def snapshot(self) -> dict[ResourceKey, WatchedResource]:
        """Point-in-time copy of the whole cache."""
        with self._lock:
            return {key: entry.resource for key, entry in self._store.items()}

    def keys(self) -> list[ResourceKey]:
        with self._lock:
            return list(self._store)

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    async def wait_until_synced(self, timeout: float) -> bool:
        """Block until the cache is SYNCED or *timeout* seconds elapse."""
        if self._state == CacheState.SYNCED:
            return True
        try:
            await asyncio.wait_for(self._synced.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    # ------------------------------------------------------------------
    # Write side (watch loop only)
    # ------------------------------------------------------------------

    def replace(self, resources: list[WatchedResource], resource_version: str) -> list[ObservedChange]:
        """Reconcile the cache against a full listing.

        Cached keys missing from the listing were deleted while we were not
        watching; they are removed through a tombstone so the last-known state
        still produces delete records.
        """
        if self._closed:
            return []
        listed = {resource.key for resource in resources}
        with self._lock:
            vanished = [key for key in self._store if key not in listed]

        signals: list[ObservedChange] = []
        for key in vanished:
            signals.extend(self._delete(WatchNotification.tombstone(key)))
        for resource in resources:
            signals.extend(self._upsert(resource, resource.resource_version))

        with self._lock:
            self._resource_version = resource_version
            if self._state == CacheState.UNSYNCED:
                self._state = CacheState.SYNCING
        _log.info(
            "cache_replaced",
            listed=len(resources),
            vanished=len(vanished),
            resource_version=resource_version,
            state=self._state.value,
        )
        return signals

    def mark_synced(self) -> None:
        """Record that every signal from the initial listing has been handled."""
        with self._lock:
            if self._state != CacheState.SYNCING:
                return
            self._state = CacheState.SYNCED
        self._synced.set()
        _log.info("cache_synced", entries=len(self))

    def apply(self, notification: WatchNotification) -> list[ObservedChange]:
        """Apply one notification in arrival order and return its transitions."""
        if self._closed:
            _log.debug("cache_closed_notification_ignored", key="/".join(notification.key))
            return []
        notifications_total.labels(type=notification.type.value).inc()

        if notification.type == NotificationType.DELETE:
            return self._delete(notification)
        if notification.resource is None:
            # ADD/UPDATE always carry an object; treat a bare key as a refresh of nothing
            _log.warning("cache_upsert_without_object", key="/".join(notification.key))
            return []
        return self._upsert(notification.resource, notification.resource_version)

    def close(self) -> None:
        """Refuse all further mutation. Reads keep working."""
        self._closed = True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _upsert(self, resource: WatchedResource, resource_version: str) -> list[ObservedChange]:
        with self._lock:
            self._generation += 1
            self._store[resource.key] = CacheEntry(
                resource=resource,
                resource_version=resource_version or resource.resource_version,
                generation=self._generation,
            )
            if resource_version:
                self._resource_version = resource_version
            signal = self._pending_add(resource)
            size = len(self._store)
        cache_entries.set(size)
        return [signal] if signal is not None else []

    def _pending_add(self, resource: WatchedResource) -> ObservedChange | None:
        """Containers whose current start time has not been signalled yet.

        Caller holds the lock.  A pod without a start time is not running yet
        and signals nothing; a later UPDATE carrying the time will.  The same
        holds per container until its status reports the resolved image ID.
        """
        if resource.start_time is None:
            return None
        started_at = format_rfc3339(resource.start_time)
        seen = self._signalled.setdefault(resource.key, set())
        fresh = tuple(
            status.name
            for status in _resolved(resource)
            if (status.name, started_at) not in seen
        )
        if not fresh:
            return None
        seen.update((name, started_at) for name in fresh)
        return ObservedChange(kind=SignalKind.OBSERVED_ADD, resource=resource, containers=fresh)

    def _delete(self, notification: WatchNotification) -> list[ObservedChange]:
        key = notification.key
        tombstone = notification.is_tombstone or notification.resource is None
        with self._lock:
            entry = self._store.pop(key, None)
            self._signalled.pop(key, None)
            size = len(self._store)
        cache_entries.set(size)

        final: WatchedResource | None
        if tombstone:
            final = entry.resource if entry is not None else notification.resource
        else:
            final = notification.resource

        if final is None:
            self.lost_deletes += 1
            lost_deletes_total.labels(stage="cache").inc()
            _log.warning(
                "delete_lost_no_final_state",
                namespace=key[0],
                pod=key[1],
                lost_deletes_total=self.lost_deletes,
            )
            return []

        return [
            ObservedChange(
                kind=SignalKind.OBSERVED_DELETE,
                resource=final,
                containers=tuple(status.name for status in _resolved(final)),
                from_tombstone=tombstone,
            )
        ]


def _resolved(resource: WatchedResource) -> list[ContainerStatus]:
    """Container statuses whose image has been pulled and pinned to an ID."""
    return [status for status in resource.container_statuses if status.image_id]
