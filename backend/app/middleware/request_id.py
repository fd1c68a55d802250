"""
PostSnap Backend — Request ID Middleware
==========================================

What:  Tags each request with a short correlation id.
How:   Reuses the client's X-Request-ID when present, otherwise generates one;
       stores it in a ContextVar and echoes it back in the response header.
Who:   Every request. Error handlers put the id into JSON error bodies so a
       failed post upload can be matched to its server-side log lines.
"""

import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Coroutine-local: concurrent requests on one event loop each see their own id
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

REQUEST_ID_HEADER = "X-Request-ID"


def new_request_id() -> str:
    return uuid.uuid4().hex[:8]


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Assigns request.state.request_id and the X-Request-ID response header."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        rid = request.headers.get(REQUEST_ID_HEADER) or new_request_id()
        # Not reset afterwards: the catch-all 500 handler runs outside this
        # middleware and still reports the id
        request_id_var.set(rid)
        request.state.request_id = rid

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = rid
        return response
