import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from drillity.core.logging import LOGGER_NAME, request_id_ctx_var


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Attach a request_id to each request and log completion."""

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)

        try:
            start = time.perf_counter()
            response = await call_next(request)
            duration_ms = (time.perf_counter() - start) * 1000

            response.headers[self.header_name] = rid

            logging.getLogger(LOGGER_NAME).info(
                "request.complete",
                extra={
                    "request_id": rid,
                    "path": request.url.path,
                    "method": request.method,
                    "status": getattr(response, "status_code", None),
                    "actor_id": getattr(request.state, "actor_id", None),
                    "duration_ms": round(duration_ms, 1),
                },
            )
            return response
        finally:
            request_id_ctx_var.reset(token)
