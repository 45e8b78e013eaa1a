"""Error taxonomy for the watch-and-record pipeline.

Only ``SourceRejected`` and ``SourceUnavailable`` ever reach the watch loop;
they change how the loop restarts, never whether it keeps running.
"""

from __future__ import annotations


class EternalStashError(Exception):
    """Base class for all EternalStash errors."""


class SourceUnavailable(EternalStashError):
    """Transient failure talking to the cluster API. Retry with backoff."""


class SourceRejected(EternalStashError):
    """The cluster API refused the request (expired version, auth).

    Fatal for the current list/watch session; the loop relists from scratch.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class MalformedNotification(EternalStashError):
    """A watch notification carried an object that cannot be parsed."""


class PersistenceFailure(EternalStashError):
    """The record store failed to persist an event."""


class SyncTimeout(EternalStashError):
    """The resource cache did not reach SYNCED within the allotted time."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"resource cache not synced after {timeout:g}s")
        self.timeout = timeout
