"""Prometheus metrics for the watch-and-record pipeline.

Every non-fatal data loss path (lost deletes, malformed notifications, dropped
records) increments one of these counters and logs a warning carrying the
running total.  The counters live in prometheus_client's default REGISTRY,
which the service does not serve; an embedding process can expose it with
``prometheus_client.start_http_server``.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

notifications_total = Counter(
    "eternalstash_notifications_total",
    "Watch notifications applied to the resource cache.",
    ["type"],
)

lost_deletes_total = Counter(
    "eternalstash_lost_deletes_total",
    "Delete notifications whose final pod state could not be recovered.",
    ["stage"],
)

malformed_notifications_total = Counter(
    "eternalstash_malformed_notifications_total",
    "Watch notifications dropped because the object could not be parsed.",
)

records_total = Counter(
    "eternalstash_records_total",
    "Image usage records handed to the store, by outcome.",
    ["kind", "outcome"],
)

records_dropped_total = Counter(
    "eternalstash_records_dropped_total",
    "Image usage records dropped after exhausting persistence retries.",
)

relists_total = Counter(
    "eternalstash_relists_total",
    "Full pod relists performed by the watch loop.",
    ["reason"],
)

cache_entries = Gauge(
    "eternalstash_cache_entries",
    "Pods currently held in the reflected cache.",
)
