"""Cache layer for EternalStash.

Provides the in-memory pod cache reflected from the Kubernetes watch stream.
The cache turns raw notifications into add/delete transitions; it never
talks to the network or the record store itself.

Submodules:
    resource_cache  -- Reflected pod cache with UNSYNCED/SYNCING/SYNCED model.
"""

from eternalstash.cache.resource_cache import ResourceCache

__all__ = ["ResourceCache"]
