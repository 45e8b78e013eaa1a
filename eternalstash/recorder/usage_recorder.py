"""UsageRecorder: idempotent, bounded-retry persistence of usage events.

``submit`` never blocks the watch loop: each event is written by its own
asyncio task.  A write that keeps failing is retried ``max_retries`` times with
doubling backoff and then dropped; the drop is logged and counted, and the
pipeline moves on.
"""

from __future__ import annotations

import asyncio

import structlog

from eternalstash.errors import PersistenceFailure
from eternalstash.models.events import ImageUsageEvent
from eternalstash.observability.metrics import records_dropped_total, records_total
from eternalstash.recorder.store import UsageStore

_log = structlog.get_logger(component="recorder")

_STOP_GRACE_SECONDS = 10.0


class UsageRecorder:
    """Writes ImageUsageEvents through a UsageStore.

    Args:
        store:               Backend enforcing dedup-key uniqueness.
        max_retries:         Retries after the first failed attempt.
        backoff_seconds:     Delay before the first retry.
        backoff_max_seconds: Cap for the doubling delay.
    """

    def __init__(
        self,
        store: UsageStore,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        backoff_max_seconds: float = 10.0,
    ) -> None:
        self._store = store
        self._max_retries = max_retries
        self._backoff_s = backoff_seconds
        self._backoff_max_s = backoff_max_seconds
        self._pending: set[asyncio.Task[bool]] = set()
        self.recorded = 0
        self.duplicates = 0
        self.dropped = 0

    @property
    def store(self) -> UsageStore:
        return self._store

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def record(self, event: ImageUsageEvent) -> bool:
        """Persist *event*; True if stored now, False if duplicate or dropped.

        Never raises for persistence errors.
        """
        delay = self._backoff_s
        attempt = 0
        while True:
            try:
                inserted = await self._store.insert(event)
            except PersistenceFailure as exc:
                if attempt >= self._max_retries:
                    self.dropped += 1
                    records_dropped_total.inc()
                    records_total.labels(kind=event.kind.value, outcome="dropped").inc()
                    _log.error(
                        "usage_record_dropped",
                        dedup_key=event.dedup_key,
                        attempts=attempt + 1,
                        error=str(exc),
                        records_dropped_total=self.dropped,
                    )
                    return False
                attempt += 1
                _log.warning(
                    "usage_record_retry",
                    dedup_key=event.dedup_key,
                    attempt=attempt,
                    delay_s=delay,
                    error=str(exc),
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._backoff_max_s)
                continue

            if inserted:
                self.recorded += 1
                records_total.labels(kind=event.kind.value, outcome="stored").inc()
                _log.info(
                    "usage_recorded",
                    kind=event.kind.value,
                    namespace=event.namespace,
                    pod=event.pod,
                    container=event.container,
                    image=event.image,
                )
            else:
                self.duplicates += 1
                records_total.labels(kind=event.kind.value, outcome="duplicate").inc()
            return inserted

    def submit(self, event: ImageUsageEvent) -> None:
        """Schedule :meth:`record` in the background and return immediately."""
        task = asyncio.create_task(self.record(event), name=f"record:{event.dedup_key}")
        self._pending.add(task)
        task.add_done_callback(self._on_done)

    async def drain(self) -> None:
        """Wait until every submitted write has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def stop(self, timeout: float = _STOP_GRACE_SECONDS) -> None:
        """Drain pending writes, cancelling whatever is left after *timeout*."""
        try:
            await asyncio.wait_for(self.drain(), timeout=timeout)
        except TimeoutError:
            _log.warning("recorder_stop_timed_out", abandoned=len(self._pending))
            for task in list(self._pending):
                task.cancel()
        await self._store.close()

    def _on_done(self, task: asyncio.Task[bool]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _log.error("usage_record_task_failed", task=task.get_name(), error=str(exc))
