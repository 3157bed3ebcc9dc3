"""
Access logging middleware.

Logs method, path, status code, duration and client address for every
HTTP request. Requests carrying a node secret are tagged as peer pushes.
WebSocket traffic is not logged here; issue and revoke keep their own
operation log.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from core.cert_sync import NODE_SECRET_HEADER

logger = logging.getLogger("proxy_cert_manager.access")

_EXCLUDED_PATHS = {"/health", "/docs", "/redoc", "/openapi.json", "/", "/certificates/processing"}


class RequestLoggerMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if path in _EXCLUDED_PATHS:
            return await call_next(request)

        start = time.monotonic()
        client_ip = request.client.host if request.client else "unknown"

        response: Response = await call_next(request)

        duration_ms = (time.monotonic() - start) * 1000
        caller = "peer" if NODE_SECRET_HEADER in request.headers else "client"

        logger.info(
            "%s %s %d %.1fms client=%s caller=%s",
            request.method,
            path,
            response.status_code,
            duration_ms,
            client_ip,
            caller,
        )
        return response
