"""EventNormalizer: ObservedChange -> ImageUsageEvent.

One event per container status.  Add events take the pod's start time and an
empty ``deleted_at``; delete events mirror them with ``deleted_at`` set to the
wall clock at processing time, since the cluster's own deletion timestamp is
missing on hard deletes and tombstones.
"""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol

import structlog

from eternalstash.models.events import ImageUsageEvent, SignalKind, format_rfc3339
from eternalstash.models.resources import ObservedChange
from eternalstash.observability.metrics import lost_deletes_total

_log = structlog.get_logger(component="normalizer")

_DEDUP_CAPACITY = 50_000


class _RecorderProto(Protocol):
    """Minimal recorder interface required by EventNormalizer."""

    def submit(self, event: ImageUsageEvent) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class EventNormalizer:
    """Converts cache transitions into usage events, at most once per dedup key.

    The in-process guard remembers the most recent ``dedup_capacity`` keys so
    redelivered signals cost nothing; the record store's uniqueness on the
    same key covers anything older and survives restarts.
    """

    def __init__(
        self,
        recorder: _RecorderProto | None = None,
        clock: Callable[[], datetime] = _utcnow,
        dedup_capacity: int = _DEDUP_CAPACITY,
    ) -> None:
        self._recorder = recorder
        self._clock = clock
        self._capacity = dedup_capacity
        self._seen: OrderedDict[str, None] = OrderedDict()
        self.lost_deletes = 0
        self.duplicates = 0

    async def handle(self, signal: ObservedChange) -> None:
        """Normalize *signal* and submit every resulting event for recording."""
        events = self.normalize(signal)
        if self._recorder is None:
            return
        for event in events:
            self._recorder.submit(event)

    def normalize(self, signal: ObservedChange) -> list[ImageUsageEvent]:
        resource = signal.resource
        deleting = signal.kind == SignalKind.OBSERVED_DELETE

        if deleting and signal.from_tombstone and not resource.container_statuses:
            self.lost_deletes += 1
            lost_deletes_total.labels(stage="normalizer").inc()
            _log.warning(
                "tombstone_without_container_statuses",
                namespace=resource.namespace,
                pod=resource.name,
                lost_deletes_total=self.lost_deletes,
            )
            return []
        if resource.start_time is None:
            _log.debug("pod_not_started_skipped", namespace=resource.namespace, pod=resource.name)
            return []

        started_at = format_rfc3339(resource.start_time)
        deleted_at = format_rfc3339(self._clock()) if deleting else ""
        wanted = set(signal.containers)

        events: list[ImageUsageEvent] = []
        for status in resource.container_statuses:
            if status.name not in wanted:
                continue
            event = ImageUsageEvent(
                pod=resource.name,
                namespace=resource.namespace,
                container=status.name,
                image=status.image,
                image_id=status.image_id,
                started_at=started_at,
                deleted_at=deleted_at,
            )
            if self._seen_before(event.dedup_key):
                self.duplicates += 1
                continue
            events.append(event)

        if events:
            _log.info(
                "usage_events_normalized",
                kind=signal.kind.value,
                namespace=resource.namespace,
                pod=resource.name,
                containers=[event.container for event in events],
            )
        return events

    def _seen_before(self, key: str) -> bool:
        if key in self._seen:
            self._seen.move_to_end(key)
            return True
        self._seen[key] = None
        if len(self._seen) > self._capacity:
            self._seen.popitem(last=False)
        return False
