"""
Trace ID Middleware for FastAPI

Features:
- Generates unique id for each incoming request
- Stores it in a context variable for logging
- Returns X-Trace-ID header in response
- Logs request start/end with timing

When a practice user reports a failed segment save, the X-Trace-ID from the
response finds every related log line.
"""

import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from practice_crm.core.logging_config import get_logger, trace_id_var

logger = get_logger(__name__)


class TraceIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware that assigns a unique trace ID to each request.

    The trace ID is:
    1. Generated at request start (or taken from an incoming X-Trace-ID header)
    2. Stored in context variable (accessible by all loggers)
    3. Included in response header (X-Trace-ID)
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        # Format: req-xxxxxxxx (8 hex chars)
        trace_id = request.headers.get("X-Trace-ID") or f"req-{uuid.uuid4().hex[:8]}"
        token = trace_id_var.set(trace_id)

        start_time = time.perf_counter()

        # Get client IP (handle proxy headers)
        client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
        if not client_ip:
            client_ip = request.client.host if request.client else "unknown"

        logger.info(
            f"Request started: {request.method} {request.url.path} "
            f"client={client_ip}"
        )

        try:
            response = await call_next(request)

            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                f"Request completed: status={response.status_code} "
                f"duration={duration_ms:.2f}ms"
            )

            response.headers["X-Trace-ID"] = trace_id
            return response

        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.exception(
                f"Request failed: {request.method} {request.url.path} "
                f"duration={duration_ms:.2f}ms error={str(e)}"
            )
            raise
        finally:
            # Clear context variable to prevent leakage
            trace_id_var.reset(token)
