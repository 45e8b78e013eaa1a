"""Record stores.

Every store enforces uniqueness on ``ImageUsageEvent.dedup_key``: inserting
an event that is already stored is not an error, it just reports False.  That
makes retries and concurrent duplicate writes safe without any coordination
between writers.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any

import structlog
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from eternalstash.errors import PersistenceFailure
from eternalstash.models.config import StoreConfig
from eternalstash.models.events import ImageUsageEvent

_log = structlog.get_logger(component="recorder.store")

_SERVER_SELECTION_TIMEOUT_MS = 5000


class UsageStore(ABC):
    """Append-only sink for image usage records."""

    @abstractmethod
    async def insert(self, event: ImageUsageEvent) -> bool:
        """Persist *event* unless its dedup key is already stored.

        Returns:
            True  -- the event was stored by this call.
            False -- an event with the same dedup key already existed.

        Raises:
            PersistenceFailure: the write failed and may be retried.
        """

    @abstractmethod
    async def list_all(self) -> list[dict[str, str]]:
        """Every stored record in the outbound JSON schema, oldest first."""

    async def ping(self) -> None:  # noqa: B027
        """Check the store is reachable. Raises PersistenceFailure if not."""

    async def close(self) -> None:  # noqa: B027
        """Release connections held by the store."""


class MemoryUsageStore(UsageStore):
    """In-process store. Used with ``memory://`` and in tests."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._records: dict[str, dict[str, str]] = {}

    async def insert(self, event: ImageUsageEvent) -> bool:
        async with self._lock:
            if event.dedup_key in self._records:
                return False
            self._records[event.dedup_key] = event.to_record()
            return True

    async def list_all(self) -> list[dict[str, str]]:
        async with self._lock:
            return [dict(record) for record in self._records.values()]

    def __len__(self) -> int:
        return len(self._records)


class MongoUsageStore(UsageStore):
    """MongoDB collection keyed by dedup key (``_id``).

    Args:
        collection: motor AsyncIOMotorCollection.
        client:     Owning AsyncIOMotorClient, closed by :meth:`close`.
    """

    def __init__(self, collection: Any, client: Any = None) -> None:
        self._collection = collection
        self._client = client

    @classmethod
    def from_config(cls, config: StoreConfig) -> MongoUsageStore:
        client = AsyncIOMotorClient(config.uri, serverSelectionTimeoutMS=_SERVER_SELECTION_TIMEOUT_MS)
        return cls(client[config.database][config.collection], client=client)

    async def insert(self, event: ImageUsageEvent) -> bool:
        document = {"_id": event.dedup_key, **event.to_record()}
        try:
            await self._collection.insert_one(document)
        except DuplicateKeyError:
            _log.debug("usage_record_already_stored", dedup_key=event.dedup_key)
            return False
        except PyMongoError as exc:
            raise PersistenceFailure(f"insert failed for {event.dedup_key}: {exc}") from exc
        return True

    async def list_all(self) -> list[dict[str, str]]:
        try:
            cursor = self._collection.find({}, {"_id": False})
            documents = await cursor.to_list(length=None)
        except PyMongoError as exc:
            raise PersistenceFailure(f"query failed: {exc}") from exc
        return [ImageUsageEvent.from_record(document).to_record() for document in documents]

    async def ping(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.admin.command("ping")
        except PyMongoError as exc:
            raise PersistenceFailure(f"mongodb unreachable: {exc}") from exc

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()


def build_store(config: StoreConfig) -> UsageStore:
    """Pick the store backend from the configured URI scheme."""
    if config.uri.startswith("memory://"):
        _log.warning("using_in_memory_store_records_are_not_durable")
        return MemoryUsageStore()
    return MongoUsageStore.from_config(config)
