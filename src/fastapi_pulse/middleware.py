from __future__ import annotations

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Assigns an id to every inbound request.

    - Reuses an incoming ``X-Request-ID`` header when present, else a UUID4.
    - Stored at ``request.state.request_id``.
    - Bound into structlog contextvars so every log line emitted while the
      request is handled carries ``request_id``.
    - Returned as the ``X-Request-ID`` response header so callers can correlate logs.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
