"""Correlation middleware for the harness app.

Every probe call gets a request ID (accepted from ``X-Request-ID`` when well
formed, generated otherwise) that is bound for log correlation and echoed on
the response. Completed calls are logged at debug level together with the
subject they addressed, which is usually what a failing test needs to see.
"""

from __future__ import annotations

import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from .observability import get_logger, request_id_ctx

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9-]{8,128}$")
# /state/<id>, /history/<id>, /user/<id>
_SUBJECT_PATH_RE = re.compile(r"^/(?:state|history|user)/(?P<subject>.+)$")


def _request_id(request: Request) -> str:
    candidate = request.headers.get(REQUEST_ID_HEADER, "")
    if _REQUEST_ID_RE.match(candidate):
        return candidate
    return str(uuid.uuid4())


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Bind a request ID for the duration of a call and log the outcome."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        rid = _request_id(request)
        match = _SUBJECT_PATH_RE.match(request.url.path)
        token = request_id_ctx.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            logger.debug(
                "probe_call",
                method=request.method,
                path=request.url.path,
                subject_id=match.group("subject") if match else None,
                status=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
        finally:
            request_id_ctx.reset(token)
        response.headers[REQUEST_ID_HEADER] = rid
        return response
