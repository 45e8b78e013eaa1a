"""Pydantic response schemas for the query API."""

from __future__ import annotations

from pydantic import BaseModel


class ImageRecord(BaseModel):
    """One stored image usage record. Field names are the wire names."""

    pod: str
    container: str
    image: str
    imageID: str  # noqa: N815
    namespace: str
    startedAt: str  # noqa: N815
    deletedAt: str = ""  # noqa: N815


class ErrorResponse(BaseModel):
    """Error envelope returned for every non-2xx response."""

    error: str
    detail: str
