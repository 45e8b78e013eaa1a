"""Durable recording of ImageUsageEvents.

Submodules:
    store           -- UsageStore ABC with MongoDB (motor) and in-memory backends.
    usage_recorder  -- UsageRecorder: bounded-retry, idempotent, non-blocking writes.
"""

from eternalstash.recorder.store import MemoryUsageStore, MongoUsageStore, UsageStore, build_store
from eternalstash.recorder.usage_recorder import UsageRecorder

__all__ = ["MemoryUsageStore", "MongoUsageStore", "UsageRecorder", "UsageStore", "build_store"]
