import logging
import re
import time
from typing import Optional
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from gotcha.core.logging import LOGGER_NAME, latency_bucket_ms, request_id_ctx_var

# Caller-supplied ids are echoed only if they look like ids
_SAFE_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def _accept_incoming(value: Optional[str]) -> Optional[str]:
    if value and _SAFE_REQUEST_ID.match(value):
        return value
    return None


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id for the duration of the request and log one completion line."""

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name
        self.logger = logging.getLogger(LOGGER_NAME)

    async def dispatch(self, request, call_next):
        rid = _accept_incoming(request.headers.get(self.header_name)) or str(uuid4())
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)

        response.headers[self.header_name] = rid
        status = response.status_code
        self.logger.log(
            logging.WARNING if status >= 500 else logging.INFO,
            "request.complete",
            extra={
                "request_id": rid,
                "path": request.url.path,
                "method": request.method,
                "status": status,
                "latency_bucket": latency_bucket_ms((time.perf_counter() - started) * 1000),
            },
        )
        return response
