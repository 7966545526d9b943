import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from anygym.core.logging import latency_bucket_ms, request_id_ctx_var

REQUEST_ID_HEADER = "x-request-id"

logger = logging.getLogger("anygym.http")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Correlate each request: reuse the caller's x-request-id or mint one, echo it back."""

    def __init__(self, app, header_name: str = REQUEST_ID_HEADER):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        ctx_token = request_id_ctx_var.set(rid)
        started = time.perf_counter()
        status = None
        try:
            response = await call_next(request)
            status = response.status_code
            response.headers[self.header_name] = rid
            return response
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.info(
                "request.complete",
                extra={
                    "request_id": rid,
                    "method": request.method,
                    "path": request.url.path,
                    "status": status,
                    "latency_bucket": latency_bucket_ms(elapsed_ms),
                },
            )
            request_id_ctx_var.reset(ctx_token)
