"""
Access logging middleware: one JSON line per request.

Runs inside RequestIDMiddleware, so the request id is already on
request.state. user_id is set by the auth dependency and error by the
check-in error handler.
"""
import json
import logging
import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.exception(
                "Unhandled error on %s %s after %sms: %s",
                request.method,
                request.url.path,
                round(duration_ms, 2),
                str(e)
            )
            raise

        duration_ms = (time.time() - start_time) * 1000
        log_data = {
            "request_id": getattr(request.state, "request_id", None),
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": round(duration_ms, 2),
            "user_id": getattr(request.state, "user_id", None),
            "error": getattr(request.state, "error_code", None),
            "remote_addr": request.client.host if request.client else None,
        }
        logger.info(json.dumps(log_data))
        return response
