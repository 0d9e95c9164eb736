"""Exception handlers for fastapi-pulse."""
from __future__ import annotations

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from fastapi_pulse.exceptions import (
    EndpointNotFound,
    EndpointNotScheduled,
    PulseError,
    StorageError,
)

logger = structlog.get_logger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[PulseError], int], ...] = (
    (EndpointNotFound, 404),
    (EndpointNotScheduled, 409),
    (StorageError, 503),
)


def status_for(exc: PulseError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def make_pulse_error_handler():
    """
    Handler for every :class:`~fastapi_pulse.exceptions.PulseError`.

    404 for unknown endpoints, 409 for endpoints that are not scheduled,
    503 when the store is unavailable. 5xx answers are logged at error level,
    the rest at info.
    """
    async def handler(request: Request, exc: PulseError) -> JSONResponse:
        status_code = status_for(exc)
        log = logger.error if status_code >= 500 else logger.info
        log(
            "api_error",
            path=request.url.path,
            method=request.method,
            status_code=status_code,
            error=exc.message,
            endpoint_id=exc.endpoint_id,
        )
        content = {"detail": exc.message}
        if exc.endpoint_id is not None:
            content["endpoint_id"] = exc.endpoint_id
        return JSONResponse(status_code=status_code, content=content)

    return handler
