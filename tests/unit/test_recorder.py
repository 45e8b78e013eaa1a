"""Unit tests for the usage recorder and its record stores.

Covers bounded retry with backoff, drop-and-continue, duplicate suppression
(including concurrent duplicate writes), background submission, and the
MongoDB store's error mapping.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from eternalstash.errors import PersistenceFailure
from eternalstash.models.config import StoreConfig
from eternalstash.models.events import ImageUsageEvent
from eternalstash.recorder import MemoryUsageStore, UsageRecorder, build_store
from eternalstash.recorder.store import MongoUsageStore, UsageStore

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _event(container: str = "app", deleted_at: str = "") -> ImageUsageEvent:
    return ImageUsageEvent(
        pod="web-1",
        namespace="default",
        container=container,
        image="nginx:1.25",
        image_id="sha256:abc",
        started_at="2024-01-01T00:00:00Z",
        deleted_at=deleted_at,
    )


class _FlakyStore(MemoryUsageStore):
    """Memory store whose first *failures* inserts raise PersistenceFailure."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self._failures = failures
        self.attempts = 0

    async def insert(self, event: ImageUsageEvent) -> bool:
        self.attempts += 1
        if self.attempts <= self._failures:
            raise PersistenceFailure("store unavailable")
        return await super().insert(event)


def _no_sleep():
    return patch("eternalstash.recorder.usage_recorder.asyncio.sleep", new=AsyncMock())


# ---------------------------------------------------------------------------
# record()
# ---------------------------------------------------------------------------


class TestRecord:
    async def test_first_insert_is_stored(self) -> None:
        store = MemoryUsageStore()
        recorder = UsageRecorder(store)

        assert await recorder.record(_event()) is True
        assert recorder.recorded == 1
        assert await store.list_all() == [_event().to_record()]

    async def test_duplicate_is_not_an_error(self) -> None:
        store = MemoryUsageStore()
        recorder = UsageRecorder(store)
        await recorder.record(_event())

        assert await recorder.record(_event()) is False
        assert recorder.duplicates == 1
        assert len(store) == 1

    async def test_add_and_delete_are_separate_rows(self) -> None:
        store = MemoryUsageStore()
        recorder = UsageRecorder(store)

        await recorder.record(_event())
        await recorder.record(_event(deleted_at="2024-01-01T01:00:00Z"))

        assert len(store) == 2

    async def test_transient_failure_is_retried(self) -> None:
        store = _FlakyStore(failures=2)
        recorder = UsageRecorder(store, max_retries=3, backoff_seconds=0.5)

        with _no_sleep() as sleep:
            assert await recorder.record(_event()) is True

        assert store.attempts == 3
        assert [call.args[0] for call in sleep.await_args_list] == [0.5, 1.0]

    async def test_backoff_is_capped(self) -> None:
        store = _FlakyStore(failures=4)
        recorder = UsageRecorder(store, max_retries=4, backoff_seconds=1.0, backoff_max_seconds=2.0)

        with _no_sleep() as sleep:
            await recorder.record(_event())

        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0, 2.0, 2.0]

    async def test_exhausted_retries_drop_the_event(self) -> None:
        store = _FlakyStore(failures=100)
        recorder = UsageRecorder(store, max_retries=2)

        with _no_sleep():
            assert await recorder.record(_event()) is False

        assert store.attempts == 3
        assert recorder.dropped == 1
        assert len(store) == 0

    async def test_drop_is_logged_with_running_total(self) -> None:
        store = _FlakyStore(failures=100)
        recorder = UsageRecorder(store, max_retries=0)

        with _no_sleep(), patch("eternalstash.recorder.usage_recorder._log") as log:
            await recorder.record(_event("first"))
            await recorder.record(_event("second"))

        totals = [call.kwargs["records_dropped_total"] for call in log.error.call_args_list]
        assert totals == [1, 2]

    async def test_pipeline_continues_after_a_drop(self) -> None:
        store = _FlakyStore(failures=1)
        recorder = UsageRecorder(store, max_retries=0)

        with _no_sleep():
            assert await recorder.record(_event("first")) is False
            assert await recorder.record(_event("second")) is True

        assert [row["container"] for row in await store.list_all()] == ["second"]

    async def test_concurrent_duplicates_store_one_row(self) -> None:
        store = MemoryUsageStore()
        recorder = UsageRecorder(store)

        results = await asyncio.gather(*(recorder.record(_event()) for _ in range(10)))

        assert results.count(True) == 1
        assert len(store) == 1


# ---------------------------------------------------------------------------
# submit() / drain() / stop()
# ---------------------------------------------------------------------------


class TestBackgroundSubmission:
    async def test_submit_returns_before_write_completes(self) -> None:
        store = MemoryUsageStore()
        recorder = UsageRecorder(store)

        recorder.submit(_event())
        assert recorder.pending == 1

        await recorder.drain()
        assert recorder.pending == 0
        assert len(store) == 1

    async def test_stop_drains_and_closes_store(self) -> None:
        store = MemoryUsageStore()
        store.close = AsyncMock()  # type: ignore[method-assign]
        recorder = UsageRecorder(store)
        recorder.submit(_event("a"))
        recorder.submit(_event("b"))

        await recorder.stop()

        assert len(store) == 2
        store.close.assert_awaited_once()

    async def test_stop_cancels_writes_that_outlive_the_grace_period(self) -> None:
        class _HangingStore(MemoryUsageStore):
            async def insert(self, event: ImageUsageEvent) -> bool:
                await asyncio.sleep(3600)
                return True

        recorder = UsageRecorder(_HangingStore())
        recorder.submit(_event())

        await recorder.stop(timeout=0.01)
        await asyncio.sleep(0.01)

        assert recorder.pending == 0


# ---------------------------------------------------------------------------
# MongoUsageStore
# ---------------------------------------------------------------------------


class TestMongoUsageStore:
    async def test_insert_uses_dedup_key_as_id(self) -> None:
        collection = MagicMock()
        collection.insert_one = AsyncMock()
        store = MongoUsageStore(collection)

        assert await store.insert(_event()) is True

        document = collection.insert_one.await_args.args[0]
        assert document["_id"] == _event().dedup_key
        assert document["imageID"] == "sha256:abc"
        assert document["deletedAt"] == ""

    async def test_duplicate_key_returns_false(self) -> None:
        collection = MagicMock()
        collection.insert_one = AsyncMock(side_effect=DuplicateKeyError("E11000 duplicate key"))

        assert await MongoUsageStore(collection).insert(_event()) is False

    async def test_driver_error_becomes_persistence_failure(self) -> None:
        collection = MagicMock()
        collection.insert_one = AsyncMock(side_effect=ServerSelectionTimeoutError("no servers"))

        with pytest.raises(PersistenceFailure):
            await MongoUsageStore(collection).insert(_event())

    async def test_list_all_excludes_id_and_fills_missing_fields(self) -> None:
        cursor = MagicMock()
        cursor.to_list = AsyncMock(
            return_value=[{"pod": "web-1", "container": "app", "image": "nginx:1.25", "namespace": "default"}]
        )
        collection = MagicMock()
        collection.find = MagicMock(return_value=cursor)

        rows = await MongoUsageStore(collection).list_all()

        collection.find.assert_called_once_with({}, {"_id": False})
        assert rows[0]["imageID"] == ""
        assert rows[0]["deletedAt"] == ""
        assert set(rows[0]) == {"pod", "container", "image", "imageID", "namespace", "startedAt", "deletedAt"}

    async def test_list_all_failure_is_persistence_failure(self) -> None:
        cursor = MagicMock()
        cursor.to_list = AsyncMock(side_effect=ServerSelectionTimeoutError("down"))
        collection = MagicMock()
        collection.find = MagicMock(return_value=cursor)

        with pytest.raises(PersistenceFailure):
            await MongoUsageStore(collection).list_all()

    async def test_ping_failure_is_persistence_failure(self) -> None:
        client = MagicMock()
        client.admin.command = AsyncMock(side_effect=ServerSelectionTimeoutError("down"))

        with pytest.raises(PersistenceFailure):
            await MongoUsageStore(MagicMock(), client=client).ping()

    async def test_close_closes_client(self) -> None:
        client = MagicMock()

        await MongoUsageStore(MagicMock(), client=client).close()

        client.close.assert_called_once()


class TestBuildStore:
    def test_memory_uri(self) -> None:
        assert isinstance(build_store(StoreConfig(uri="memory://")), MemoryUsageStore)

    def test_mongodb_uri(self) -> None:
        with patch("eternalstash.recorder.store.AsyncIOMotorClient") as client_cls:
            store = build_store(StoreConfig(uri="mongodb://db:27017", database="d", collection="c"))

        assert isinstance(store, MongoUsageStore)
        assert isinstance(store, UsageStore)
        client_cls.assert_called_once_with("mongodb://db:27017", serverSelectionTimeoutMS=5000)
