"""Collector package for EternalStash.

Provides the Kubernetes list/watch integration that keeps the ResourceCache
current and feeds its transitions to the usage pipeline.

Submodules
----------
source   -- ClusterEventSource ABC and the kubernetes-asyncio pod source.
watcher  -- PodWatcher: list/watch loop, exponential back-off, periodic relist.
"""

from eternalstash.collector.source import ClusterEventSource, KubernetesPodSource
from eternalstash.collector.watcher import PodWatcher

__all__ = ["ClusterEventSource", "KubernetesPodSource", "PodWatcher"]
