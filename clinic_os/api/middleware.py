"""API middleware for API-key authentication and request logging."""

import hmac
import logging
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging all requests."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        client = request.client.host if request.client else "unknown"

        logger.info(f"Request: {request.method} {request.url.path} client={client}")

        response = await call_next(request)

        duration = time.time() - start_time
        logger.info(
            f"Response: {request.method} {request.url.path} "
            f"status={response.status_code} duration={duration:.3f}s"
        )
        response.headers["X-Process-Time"] = f"{duration:.3f}"
        return response


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Rejects requests without the configured API key.

    The key may be sent as ``Authorization: Bearer <key>`` or ``X-API-Key``.
    Health probes and the docs stay open.
    """

    OPEN_PATHS = ("/health", "/health/ready", "/health/live", "/docs", "/openapi.json")

    def __init__(self, app, api_key: str):
        super().__init__(app)
        self.api_key = api_key

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.OPEN_PATHS:
            return await call_next(request)

        auth_header = request.headers.get("Authorization")
        provided_key = None
        if auth_header and auth_header.startswith("Bearer "):
            provided_key = auth_header[7:]
        else:
            provided_key = request.headers.get("X-API-Key")

        if not provided_key or not hmac.compare_digest(provided_key, self.api_key):
            logger.warning(
                f"Unauthorized request: {request.method} {request.url.path} "
                f"client={request.client.host if request.client else 'unknown'}"
            )
            return Response(
                content='{"error": "Unauthorized", "detail": "Invalid or missing API key"}',
                status_code=401,
                media_type="application/json",
            )

        return await call_next(request)
