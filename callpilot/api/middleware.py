"""
API Middleware.

Request ID injection, rate limiting, and structured audit logging
for every incoming API request.
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from callpilot.logging_config import call_id_var, generate_trace_id, get_logger, trace_id_var

logger = get_logger(__name__)

RATE_LIMIT_WINDOW = 60  # seconds

# Twilio retries on 429, so provider callbacks are never throttled
EXEMPT_PREFIXES = ("/twilio/", "/health")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Inject a unique request ID into every request and response."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID", generate_trace_id())
        trace_id_var.set(request_id)
        call_id_var.set("")

        start = time.monotonic()

        response = await call_next(request)

        elapsed_ms = round((time.monotonic() - start) * 1000, 1)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time-Ms"] = str(elapsed_ms)

        logger.info(
            "api_request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            elapsed_ms=elapsed_ms,
            request_id=request_id,
        )

        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding-window rate limiter per client IP (single process)."""

    def __init__(self, app: ASGIApp, max_requests: int = 100) -> None:
        super().__init__(app)
        self._max_requests = max_requests
        self._counts: dict[str, list[float]] = defaultdict(list)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path.startswith(EXEMPT_PREFIXES):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        now = time.time()

        # Clean old entries
        self._counts[client_ip] = [
            t for t in self._counts[client_ip]
            if now - t < RATE_LIMIT_WINDOW
        ]

        if len(self._counts[client_ip]) >= self._max_requests:
            logger.warning("rate_limit_exceeded", client_ip=client_ip)
            return Response(
                content='{"error": "Rate limit exceeded"}',
                status_code=429,
                media_type="application/json",
                headers={"Retry-After": str(RATE_LIMIT_WINDOW)},
            )

        self._counts[client_ip].append(now)
        return await call_next(request)
