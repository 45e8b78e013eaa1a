"""FastAPI application factory for the EternalStash query API.

Usage::

    from eternalstash.api.app import create_app

    app = create_app(store=store, config=config)

The factory is used by both the production bootstrap (``eternalstash.app``)
and unit tests.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from eternalstash.api.routes import router
from eternalstash.api.schemas import ErrorResponse

_log = structlog.get_logger(component="api.app")

_HTTP_ERROR_CODES = {404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}


def create_app(store: Any, config: Any = None) -> FastAPI:
    """Create and configure the EternalStash FastAPI application.

    Args:
        store:  UsageStore the ``/images`` route reads from.
        config: EternalStashConfig, kept on app.state for handlers.

    Returns:
        Configured FastAPI application, ready to be served by uvicorn.
    """
    from eternalstash import __version__

    app = FastAPI(
        title="EternalStash",
        summary="Container image usage history",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    app.state.store = store
    app.state.config = config

    app.include_router(router)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        _request: Request,
        exc: StarletteHTTPException,
    ) -> JSONResponse:
        """Wrap routing errors (unknown path, wrong method) in the error envelope."""
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=_HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
                detail=str(exc.detail),
            ).model_dump(),
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        """Catch-all for unhandled exceptions, never exposing stack traces."""
        _log.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error=str(exc),
        )
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="INTERNAL_ERROR",
                detail="An unexpected error occurred.",
            ).model_dump(),
        )

    return app
