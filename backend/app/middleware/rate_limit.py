"""
PostSnap Backend — Rate Limiting Middleware
=============================================

What:  Per-IP sliding-window limiter in front of every post endpoint.
How:   Keeps the timestamps of each IP's requests inside the window; a request
       that would exceed RATE_LIMIT_REQUESTS gets 429 with Retry-After.
Who:   Every request except health and API docs.

Single-process only: the counters live in this worker's memory.
"""

import logging
import time
from collections import defaultdict, deque
from typing import Deque, Dict, Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from app.config import settings
from app.exceptions import RateLimitExceededError
from app.middleware.request_id import request_id_var

logger = logging.getLogger(__name__)

# Sweep idle IPs after this many tracked requests
_SWEEP_EVERY = 1000


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    In-memory sliding window rate limiter.

    Limits default to settings.rate_limit_requests per settings.rate_limit_window
    seconds; both can be overridden per instance (tests use small values).
    """

    EXCLUDED_PATHS = frozenset({"/health", "/docs", "/openapi.json", "/redoc"})

    def __init__(
        self,
        app,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ):
        super().__init__(app)
        self.max_requests = max_requests or settings.rate_limit_requests
        self.window_seconds = window_seconds or settings.rate_limit_window
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._seen = 0

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in self.EXCLUDED_PATHS:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        now = time.time()
        window_start = now - self.window_seconds

        hits = self._hits[client_ip]
        while hits and hits[0] <= window_start:
            hits.popleft()

        if len(hits) >= self.max_requests:
            retry_after = int(hits[0] + self.window_seconds - now) + 1
            logger.warning(
                "Rate limit exceeded for %s: %d requests in %ds",
                client_ip,
                len(hits),
                self.window_seconds,
            )
            return self._reject(RateLimitExceededError(retry_after=retry_after))

        hits.append(now)
        self._seen += 1
        if self._seen % _SWEEP_EVERY == 0:
            self._sweep(window_start)

        return await call_next(request)

    @staticmethod
    def _reject(exc: RateLimitExceededError) -> JSONResponse:
        # Raised exceptions do not reach app handlers from BaseHTTPMiddleware
        return JSONResponse(
            status_code=429,
            content={
                "message": exc.message,
                "error": None,
                "code": exc.code,
                "details": {"retry_after": exc.retry_after},
                "request_id": request_id_var.get("") or None,
            },
            headers={"Retry-After": str(exc.retry_after)},
        )

    def _sweep(self, window_start: float) -> None:
        idle = [ip for ip, hits in self._hits.items() if not hits or hits[-1] <= window_start]
        for ip in idle:
            del self._hits[ip]
        if idle:
            logger.debug("Dropped rate-limit state for %d idle clients", len(idle))
