"""Core event data structures and enumerations."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum


class NotificationType(StrEnum):
    """Type of a change notification from the cluster event source."""

    ADD = "ADD"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SignalKind(StrEnum):
    """Transition observed by the resource cache."""

    OBSERVED_ADD = "observed_add"
    OBSERVED_DELETE = "observed_delete"


class UsageKind(StrEnum):
    """Which half of a container's lifetime an ImageUsageEvent records."""

    ADDED = "added"
    DELETED = "deleted"


def format_rfc3339(value: datetime) -> str:
    """Render *value* as an RFC3339 UTC timestamp with second precision.

    Naive datetimes are assumed to already be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class ImageUsageEvent:
    """Canonical image usage record.

    Produced by the EventNormalizer, persisted by the UsageRecorder.
    Immutable and append-only: a container's lifetime yields one record with
    an empty ``deleted_at`` and, later, one with it populated.
    """

    pod: str
    namespace: str
    container: str
    image: str
    image_id: str
    started_at: str
    deleted_at: str = ""

    @property
    def kind(self) -> UsageKind:
        return UsageKind.DELETED if self.deleted_at else UsageKind.ADDED

    @property
    def dedup_key(self) -> str:
        """Identifier under which this logical event is stored at most once."""
        return "/".join((self.namespace, self.pod, self.container, self.started_at, self.kind.value))

    def to_record(self) -> dict[str, str]:
        """Serialise to the outbound JSON record schema."""
        return {
            "pod": self.pod,
            "container": self.container,
            "image": self.image,
            "imageID": self.image_id,
            "namespace": self.namespace,
            "startedAt": self.started_at,
            "deletedAt": self.deleted_at,
        }

    @classmethod
    def from_record(cls, record: dict[str, object]) -> ImageUsageEvent:
        """Inverse of :meth:`to_record`. Missing fields become empty strings."""
        return cls(
            pod=str(record.get("pod", "")),
            namespace=str(record.get("namespace", "")),
            container=str(record.get("container", "")),
            image=str(record.get("image", "")),
            image_id=str(record.get("imageID", "")),
            started_at=str(record.get("startedAt", "")),
            deleted_at=str(record.get("deletedAt", "") or ""),
        )
