"""Shared fixtures for EternalStash integration tests.

Wires the real cache, watcher, normalizer, recorder and in-memory store
together behind a scripted event source, so whole pipelines run without a
Kubernetes cluster or a MongoDB server.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, datetime

import pytest

from eternalstash.cache.resource_cache import ResourceCache
from eternalstash.collector.source import ClusterEventSource
from eternalstash.collector.watcher import PodWatcher
from eternalstash.models.events import NotificationType
from eternalstash.models.resources import ContainerStatus, WatchedResource, WatchNotification
from eternalstash.normalizer import EventNormalizer
from eternalstash.recorder import MemoryUsageStore, UsageRecorder

# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------

START = datetime(2024, 1, 1, 0, 0, 0, tzinfo=UTC)
NOW = datetime(2024, 1, 1, 1, 0, 0, tzinfo=UTC)


def fixed_clock() -> datetime:
    return NOW


# ---------------------------------------------------------------------------
# Pod / notification factories
# ---------------------------------------------------------------------------


def make_pod(
    name: str = "web-1",
    namespace: str = "default",
    started: datetime | None = START,
    containers: tuple[tuple[str, str, str], ...] = (("app", "nginx:1.25", "sha256:abc"),),
    rv: str = "1",
) -> WatchedResource:
    """Create a WatchedResource with one running nginx container by default."""
    return WatchedResource(
        name=name,
        namespace=namespace,
        phase="Running" if started is not None else "Pending",
        start_time=started,
        containers=tuple(container[0] for container in containers),
        container_statuses=tuple(ContainerStatus(*container) for container in containers),
        resource_version=rv,
    )


def added(pod: WatchedResource) -> WatchNotification:
    return WatchNotification.of(NotificationType.ADD, pod)


def updated(pod: WatchedResource) -> WatchNotification:
    return WatchNotification.of(NotificationType.UPDATE, pod)


def deleted(pod: WatchedResource) -> WatchNotification:
    return WatchNotification.of(NotificationType.DELETE, pod)


# ---------------------------------------------------------------------------
# Scripted event source
# ---------------------------------------------------------------------------

Session = tuple[object, list[object]]


class FakeEventSource(ClusterEventSource):
    """Replays scripted list/watch sessions.

    Each session is ``(listing, notifications)``: ``listing`` is either a
    ``(pods, resource_version)`` tuple or an exception to raise from
    list_initial; ``notifications`` may contain exceptions to raise mid-stream.
    When the script is exhausted, list_initial blocks until cancelled.
    """

    def __init__(self, sessions: list[Session]) -> None:
        self._sessions = list(sessions)
        self._current: list[object] = []
        self.list_calls = 0
        self.closed = False
        self.exhausted = asyncio.Event()

    async def list_initial(self) -> tuple[list[WatchedResource], str]:
        self.list_calls += 1
        if not self._sessions:
            self.exhausted.set()
            await asyncio.Event().wait()
        listing, self._current = self._sessions.pop(0)
        if isinstance(listing, BaseException):
            raise listing
        return listing  # type: ignore[return-value]

    async def watch(self, from_version: str) -> AsyncIterator[WatchNotification]:
        for item in self._current:
            if isinstance(item, BaseException):
                raise item
            yield item  # type: ignore[misc]

    async def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


@dataclass
class Pipeline:
    """Every component of one watch-and-record pipeline."""

    source: FakeEventSource
    cache: ResourceCache
    watcher: PodWatcher
    normalizer: EventNormalizer
    recorder: UsageRecorder
    store: MemoryUsageStore

    async def run(self, timeout: float = 2.0) -> list[dict[str, str]]:
        """Play the whole script, stop the watcher, drain writes, return the store."""
        await self.watcher.start()
        await asyncio.wait_for(self.source.exhausted.wait(), timeout=timeout)
        await self.watcher.stop()
        await self.recorder.drain()
        return await self.store.list_all()

    @property
    def lost_deletes(self) -> int:
        return self.cache.lost_deletes + self.normalizer.lost_deletes


def build_pipeline(sessions: list[Session], store: MemoryUsageStore | None = None) -> Pipeline:
    """Assemble a pipeline the same way the application bootstrap does."""
    store = store if store is not None else MemoryUsageStore()
    recorder = UsageRecorder(store, max_retries=0, backoff_seconds=0.0)
    normalizer = EventNormalizer(recorder=recorder, clock=fixed_clock)
    source = FakeEventSource(sessions)
    cache = ResourceCache()
    watcher = PodWatcher(source, cache, min_session_seconds=0.0)
    watcher.add_handler(normalizer.handle)
    return Pipeline(source, cache, watcher, normalizer, recorder, store)


@pytest.fixture()
def memory_store() -> MemoryUsageStore:
    return MemoryUsageStore()
