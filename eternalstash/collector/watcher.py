"""PodWatcher: the long-running list/watch loop.

One asyncio task owns the loop and is the only writer of the ResourceCache:

    list -> cache.replace -> dispatch signals -> watch -> cache.apply -> dispatch ...

Whenever the watch stream ends (server timeout = periodic resync, network
reset, rejected version) the loop relists from scratch.  A session that ends
at once without delivering anything is backed off like a failure.  Nothing
raised by a single notification or handler ever stops it; only ``stop()`` does.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable

import structlog

from eternalstash.cache.resource_cache import ResourceCache
from eternalstash.collector.source import ClusterEventSource
from eternalstash.errors import SourceRejected, SourceUnavailable
from eternalstash.models.resources import ObservedChange
from eternalstash.observability.metrics import relists_total

_log = structlog.get_logger(component="collector.watcher")

_BACKOFF_MIN_S = 1.0
_BACKOFF_MAX_S = 60.0
_MIN_SESSION_S = 1.0
_GONE = 410

ChangeHandler = Callable[[ObservedChange], Awaitable[None]]


class PodWatcher:
    """Drives a ClusterEventSource into a ResourceCache and fans out transitions.

    Args:
        source:  Cluster event source (list + watch).
        cache:   Cache this watcher exclusively mutates.
        min_session_seconds: A watch session that delivers nothing and ends
                 sooner than this counts as a failure and is backed off.
    """

    def __init__(
        self,
        source: ClusterEventSource,
        cache: ResourceCache,
        min_session_seconds: float = _MIN_SESSION_S,
    ) -> None:
        self._source = source
        self._cache = cache
        self._min_session_s = min_session_seconds
        self._handlers: list[ChangeHandler] = []
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._stop_event = asyncio.Event()
        self._backoff_s = _BACKOFF_MIN_S
        self._consecutive_failures = 0
        self.relists = 0
        self.handler_errors = 0

    @property
    def cache(self) -> ResourceCache:
        return self._cache

    def add_handler(self, handler: ChangeHandler) -> None:
        """Register an async callable invoked for every add/delete transition."""
        self._handlers.append(handler)

    async def wait_until_synced(self, timeout: float) -> bool:
        return await self._cache.wait_until_synced(timeout)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Launch the watch loop as a background task. Idempotent."""
        if self._task is not None and not self._task.done():
            return
        self._running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="pod-watcher")
        _log.info("pod_watcher_started")

    async def stop(self) -> None:
        """Stop consuming the stream and release the connection.

        The cache is closed before the task is cancelled, so nothing is
        mutated once stop has been requested.
        """
        if not self._running and self._task is None:
            return
        self._running = False
        self._stop_event.set()
        self._cache.close()
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        await self._source.close()
        _log.info("pod_watcher_stopped", relists=self.relists)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        reason = "initial"
        while self._running:
            try:
                healthy = await self._list_and_watch(reason)
                reason = "resync"
                if not healthy and self._running:
                    self._consecutive_failures += 1
                    await self._backoff("short_session")
            except SourceRejected as exc:
                reason = "rejected"
                self._consecutive_failures += 1
                if exc.status == _GONE and self._consecutive_failures == 1:
                    _log.info("watch_version_expired_relisting", error=str(exc))
                    continue
                _log.error("pod_source_rejected", error=str(exc), status=exc.status)
                await self._backoff("rejected")
            except SourceUnavailable as exc:
                reason = "unavailable"
                self._consecutive_failures += 1
                _log.warning(
                    "pod_source_unavailable",
                    error=str(exc),
                    consecutive_failures=self._consecutive_failures,
                )
                await self._backoff("unavailable")
            except Exception as exc:  # noqa: BLE001
                reason = "error"
                self._consecutive_failures += 1
                _log.error("watch_loop_unexpected_error", error=str(exc), error_type=type(exc).__name__)
                await self._backoff("error")

    async def _list_and_watch(self, reason: str) -> bool:
        """Run one list + watch session.

        Backoff is reset only once the session proves healthy: it delivered a
        notification or stayed open for the minimum session time.  Returns
        whether it did.
        """
        resources, version = await self._source.list_initial()
        if self._stop_event.is_set():
            return True
        self.relists += 1
        relists_total.labels(reason=reason).inc()

        await self._dispatch(self._cache.replace(resources, version))
        self._cache.mark_synced()

        loop = asyncio.get_running_loop()
        opened = loop.time()
        healthy = False
        try:
            async for notification in self._source.watch(version):
                if self._stop_event.is_set():
                    break
                if not healthy:
                    healthy = True
                    self._reset_backoff()
                await self._dispatch(self._cache.apply(notification))
        finally:
            if not healthy and loop.time() - opened >= self._min_session_s:
                healthy = True
                self._reset_backoff()
        _log.debug("watch_stream_ended", resource_version=self._cache.resource_version, healthy=healthy)
        return healthy

    async def _dispatch(self, signals: list[ObservedChange]) -> None:
        """Hand each transition to every handler; handler failures are contained."""
        for signal in signals:
            for handler in self._handlers:
                try:
                    await handler(signal)
                except Exception as exc:  # noqa: BLE001
                    self.handler_errors += 1
                    _log.error(
                        "change_handler_failed",
                        kind=signal.kind.value,
                        namespace=signal.resource.namespace,
                        pod=signal.resource.name,
                        error=str(exc),
                    )

    # ------------------------------------------------------------------
    # Back-off
    # ------------------------------------------------------------------

    async def _backoff(self, reason: str) -> None:
        """Sleep for the current delay (or until stopped), then double it."""
        delay = self._backoff_s
        _log.info("watch_backoff", reason=reason, delay_s=delay)
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        self._backoff_s = min(self._backoff_s * 2, _BACKOFF_MAX_S)

    def _reset_backoff(self) -> None:
        self._backoff_s = _BACKOFF_MIN_S
        self._consecutive_failures = 0
