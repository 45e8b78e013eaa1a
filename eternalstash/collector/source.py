"""Cluster event sources.

A ClusterEventSource yields an initial bulk listing plus a stream of tagged
WatchNotifications.  Streams end whenever the server says so (watch timeout,
resync, network reset); the caller relists and watches again.

KubernetesPodSource is the production implementation on kubernetes-asyncio.
Every object is parsed from its camelCase wire dict, so listings and watch
events go through the same parser.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any

import aiohttp
import structlog
from kubernetes_asyncio import watch
from kubernetes_asyncio.client.exceptions import ApiException

from eternalstash.errors import (
    EternalStashError,
    MalformedNotification,
    SourceRejected,
    SourceUnavailable,
)
from eternalstash.models.events import NotificationType
from eternalstash.models.resources import ContainerStatus, ResourceKey, WatchedResource, WatchNotification
from eternalstash.observability.metrics import malformed_notifications_total

_log = structlog.get_logger(component="collector.source")

# Expired resource version (410) and auth failures end the session.
_REJECTED_STATUSES = frozenset({401, 403, 410})

_WATCH_TYPES = {
    "ADDED": NotificationType.ADD,
    "MODIFIED": NotificationType.UPDATE,
    "DELETED": NotificationType.DELETE,
}


class ClusterEventSource(ABC):
    """Read-only view of the authoritative pod store."""

    @abstractmethod
    async def list_initial(self) -> tuple[list[WatchedResource], str]:
        """Return every current pod and the resource version of the listing.

        Raises:
            SourceUnavailable: transient failure, retry with backoff.
            SourceRejected:    the server refused the request.
        """

    @abstractmethod
    def watch(self, from_version: str) -> AsyncIterator[WatchNotification]:
        """Stream notifications newer than *from_version* until the server ends it.

        Raises the same errors as :meth:`list_initial` from inside iteration.
        """

    async def close(self) -> None:  # noqa: B027
        """Release any connection held by the source."""


# ---------------------------------------------------------------------------
# Wire parsing
# ---------------------------------------------------------------------------


def _parse_time(value: object) -> datetime | None:
    """Parse a Kubernetes timestamp (RFC3339 string or datetime)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if not isinstance(value, str):
        raise MalformedNotification(f"unparseable timestamp: {value!r}")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise MalformedNotification(f"unparseable timestamp: {value!r}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def pod_key(raw: object) -> ResourceKey | None:
    """Best-effort (namespace, name) of a raw pod dict; None if unreadable."""
    if not isinstance(raw, dict):
        return None
    metadata = raw.get("metadata")
    if not isinstance(metadata, dict) or not metadata.get("name"):
        return None
    return (str(metadata.get("namespace") or ""), str(metadata["name"]))


def parse_pod(raw: object) -> WatchedResource:
    """Convert a camelCase pod dict into a WatchedResource.

    Raises:
        MalformedNotification: the dict does not describe a pod we can use.
    """
    if not isinstance(raw, dict):
        raise MalformedNotification(f"pod object is a {type(raw).__name__}, not a mapping")
    key = pod_key(raw)
    if key is None:
        raise MalformedNotification("pod object has no metadata.name")

    status = raw.get("status") or {}
    spec = raw.get("spec") or {}
    if not isinstance(status, dict) or not isinstance(spec, dict):
        raise MalformedNotification(f"pod {key[0]}/{key[1]} has non-object spec/status")

    statuses: list[ContainerStatus] = []
    for item in status.get("containerStatuses") or []:
        if not isinstance(item, dict) or not item.get("name"):
            raise MalformedNotification(f"pod {key[0]}/{key[1]} has an unnamed container status")
        statuses.append(
            ContainerStatus(
                name=str(item["name"]),
                image=str(item.get("image") or ""),
                image_id=str(item.get("imageID") or ""),
            )
        )

    containers = tuple(
        str(item["name"]) for item in spec.get("containers") or [] if isinstance(item, dict) and item.get("name")
    )
    metadata = raw["metadata"]
    return WatchedResource(
        name=key[1],
        namespace=key[0],
        phase=str(status.get("phase") or ""),
        start_time=_parse_time(status.get("startTime")),
        containers=containers,
        container_statuses=tuple(statuses),
        resource_version=str(metadata.get("resourceVersion") or ""),
    )


def _translate_api_exception(exc: ApiException) -> EternalStashError:
    status = getattr(exc, "status", None)
    if status in _REJECTED_STATUSES:
        return SourceRejected(f"pod api rejected request: {status} {exc.reason}", status=status)
    return SourceUnavailable(f"pod api unavailable: {status} {exc.reason}")


# ---------------------------------------------------------------------------
# kubernetes-asyncio implementation
# ---------------------------------------------------------------------------


class KubernetesPodSource(ClusterEventSource):
    """Pod list/watch against the Kubernetes API server.

    Args:
        api:             kubernetes_asyncio CoreV1Api.
        namespace:       Namespace to watch; empty watches every namespace.
        watch_timeout:   Server-side watch timeout in seconds.  When it
                         expires the stream ends and the caller relists, which
                         doubles as the periodic resync.
        request_timeout: Client-side timeout for list calls in seconds.
    """

    def __init__(
        self,
        api: Any,
        namespace: str = "",
        watch_timeout: int = 30,
        request_timeout: int = 30,
    ) -> None:
        self._api = api
        self._namespace = namespace
        self._watch_timeout = watch_timeout
        self._request_timeout = request_timeout
        self.malformed = 0

    def _list_kwargs(self) -> dict[str, Any]:
        return {"namespace": self._namespace} if self._namespace else {}

    def _list_func(self) -> Any:
        if self._namespace:
            return self._api.list_namespaced_pod
        return self._api.list_pod_for_all_namespaces

    def _to_raw(self, obj: object) -> object:
        if isinstance(obj, dict):
            return obj
        return self._api.api_client.sanitize_for_serialization(obj)

    async def list_initial(self) -> tuple[list[WatchedResource], str]:
        try:
            response = await self._list_func()(_request_timeout=self._request_timeout, **self._list_kwargs())
        except ApiException as exc:
            raise _translate_api_exception(exc) from exc
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise SourceUnavailable(f"pod list failed: {exc!r}") from exc

        resources: list[WatchedResource] = []
        for item in response.items or []:
            try:
                resources.append(parse_pod(self._to_raw(item)))
            except MalformedNotification as exc:
                self._count_malformed("list", str(exc))
        resource_version = str(getattr(response.metadata, "resource_version", "") or "")
        _log.debug("pods_listed", count=len(resources), resource_version=resource_version)
        return resources, resource_version

    async def watch(self, from_version: str) -> AsyncIterator[WatchNotification]:
        w = watch.Watch()
        kwargs = {
            "resource_version": from_version,
            "timeout_seconds": self._watch_timeout,
            "allow_watch_bookmarks": True,
            **self._list_kwargs(),
        }
        try:
            async with w.stream(self._list_func(), **kwargs) as stream:
                async for event in stream:
                    notification = self._convert(event)
                    if notification is not None:
                        yield notification
        except ApiException as exc:
            raise _translate_api_exception(exc) from exc
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise SourceUnavailable(f"pod watch failed: {exc!r}") from exc
        finally:
            w.stop()

    async def close(self) -> None:
        api_client = getattr(self._api, "api_client", None)
        if api_client is not None:
            await api_client.close()

    def _convert(self, event: object) -> WatchNotification | None:
        """Turn one kubernetes-asyncio watch event into a notification.

        Returns None for events that carry no pod change (bookmarks) and for
        malformed objects that cannot even be turned into a tombstone.
        """
        if not isinstance(event, dict):
            self._count_malformed("watch", f"event is {type(event).__name__}")
            return None
        event_type = str(event.get("type", ""))
        raw = event.get("raw_object")

        if event_type == "BOOKMARK":
            # Every session starts from a fresh list, so bookmarks are only keep-alives
            return None
        if event_type == "ERROR":
            code = raw.get("code") if isinstance(raw, dict) else None
            message = raw.get("message", "") if isinstance(raw, dict) else ""
            if code in _REJECTED_STATUSES:
                raise SourceRejected(f"watch error event: {code} {message}", status=code)
            raise SourceUnavailable(f"watch error event: {code} {message}")

        notification_type = _WATCH_TYPES.get(event_type)
        if notification_type is None:
            self._count_malformed("watch", f"unknown event type {event_type!r}")
            return None
        if raw is None:
            raw = self._to_raw(event.get("object"))

        try:
            resource = parse_pod(raw)
        except MalformedNotification as exc:
            key = pod_key(raw)
            if notification_type == NotificationType.DELETE and key is not None:
                _log.warning("delete_object_unparseable_using_tombstone", namespace=key[0], pod=key[1])
                return WatchNotification.tombstone(key)
            self._count_malformed("watch", str(exc))
            return None
        return WatchNotification.of(notification_type, resource)

    def _count_malformed(self, stage: str, reason: str) -> None:
        self.malformed += 1
        malformed_notifications_total.inc()
        _log.warning("malformed_notification_dropped", stage=stage, reason=reason, malformed_total=self.malformed)
