"""
ScanMaster - Security Middleware

Request/response middleware for:
- Request ID injection for tracing
- Client IP resolution (X-Forwarded-For aware)
- Request logging with request_id/client_ip bound to every log line
- Security headers
"""

import time
import uuid
from typing import Callable

from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


REQUEST_ID_HEADER = "X-Request-ID"


def get_client_ip(request: Request) -> str:
    """Extract client IP from request."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def get_user_agent(request: Request) -> str:
    """Extract user agent from request."""
    return request.headers.get("User-Agent", "unknown")[:512]


class SecurityMiddleware(BaseHTTPMiddleware):
    """
    Security-focused middleware for all incoming requests.

    Responsibilities:
    1. Reuse or generate X-Request-ID for distributed tracing
    2. Resolve the client IP once and expose it on request.state
    3. Log method, path, status and timing with request context bound
    4. Add security headers to response
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process each request through security pipeline."""
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        client_ip = get_client_ip(request)
        request.state.request_id = request_id
        request.state.client_ip = client_ip

        start_time = time.perf_counter()
        with logger.contextualize(request_id=request_id, client_ip=client_ip):
            response = await call_next(request)
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                "{} {} -> {} ({:.1f} ms)",
                request.method, request.url.path, response.status_code, duration_ms,
            )

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Cache-Control"] = "no-store"

        return response
