from __future__ import annotations
import logging
import time
import uuid
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

log = logging.getLogger("newsfeed.access")


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        req_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = req_id
        start = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
        finally:
            dur_ms = int((time.perf_counter() - start) * 1000)
            log.info("[REQ] %s %s %s %s %dms", req_id, request.method, request.url.path, status, dur_ms)
        # 回传响应头，便于排查
        response.headers["X-Request-ID"] = req_id
        return response
