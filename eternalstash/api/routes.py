"""Query API routes.

The read side is a pass-through over the record store: it never touches the
watch loop or the resource cache.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from eternalstash.api.schemas import ErrorResponse, ImageRecord
from eternalstash.errors import PersistenceFailure

_log = structlog.get_logger(component="api.routes")

router = APIRouter()


@router.get(
    "/images",
    response_model=list[ImageRecord],
    responses={503: {"model": ErrorResponse}},
)
async def list_images(request: Request) -> list[dict[str, str]] | JSONResponse:
    """Return every persisted image usage record."""
    store = request.app.state.store
    try:
        return await store.list_all()
    except PersistenceFailure as exc:
        _log.warning("image_query_failed", error=str(exc))
        return JSONResponse(
            status_code=503,
            content=ErrorResponse(error="STORE_UNAVAILABLE", detail="The record store is unavailable.").model_dump(),
        )
