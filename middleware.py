"""Middleware for request/response processing in story-relay."""
import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("story-relay.middleware")

REQUEST_ID_HEADER = "X-Request-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assigns a request id and logs one line per request."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        request_id = request.headers.get(REQUEST_ID_HEADER) or f"req-{uuid.uuid4().hex[:12]}"
        request.state.request_id = request_id

        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        except Exception as e:
            logger.error(f"Request {request_id} error: {e}")
            raise
        finally:
            if request.method != "OPTIONS":
                duration_ms = (time.time() - start_time) * 1000
                principal = getattr(request.state, "principal", None)
                subject = principal.subject if principal is not None else "anonymous"
                logger.info(
                    f"{request.method} {request.url.path} -> {status_code} "
                    f"in {duration_ms:.1f}ms (request {request_id}, principal {subject})"
                )
