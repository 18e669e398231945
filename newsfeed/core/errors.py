from __future__ import annotations
import logging
import traceback
import uuid
from fastapi import Request
from fastapi.responses import JSONResponse, Response
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from newsfeed.config import settings

log = logging.getLogger("newsfeed.core.errors")


class FeedError(Exception):
    """Base of the service error taxonomy.

    `stage` names the pipeline step that failed (auth, history, index, embed, ...),
    so callers can tell a retryable collaborator failure from a fatal one.
    """
    code = "INTERNAL_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, stage: str | None = None, retry_after: int | None = None):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.retry_after = retry_after

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.message}"
        return self.message


class Unauthenticated(FeedError):
    code = "UNAUTHENTICATED"
    status_code = 401


class Forbidden(FeedError):
    code = "FORBIDDEN"
    status_code = 403


class InvalidInput(FeedError):
    code = "INVALID_INPUT"
    status_code = 400


class NotFound(FeedError):
    code = "NOT_FOUND"
    status_code = 404


class _Unavailable(FeedError):
    status_code = 503
    retryable = True
    default_retry_after = 1

    def __init__(self, message: str, *, stage: str | None = None, retry_after: int | None = None):
        super().__init__(message, stage=stage,
                         retry_after=self.default_retry_after if retry_after is None else retry_after)


class ModelUnavailable(_Unavailable):
    code = "MODEL_UNAVAILABLE"
    default_retry_after = 5


class ResourceExhausted(_Unavailable):
    code = "RESOURCE_EXHAUSTED"


class FeedUnavailable(_Unavailable):
    code = "FEED_UNAVAILABLE"
    default_retry_after = 2


class StorageError(_Unavailable):
    code = "STORAGE_ERROR"
    default_retry_after = 2


class Inconsistent(FeedError):
    """Store/index divergence seen by the ingestion worker. Never rendered to feed callers."""
    code = "INCONSISTENT"


def _base_payload(code: str, message: str, detail: dict | None = None, trace_id: str | None = None):
    return {
        "ok": False,
        "error": {
            "code": code,
            "message": message,
            "detail": detail or {},
            "trace_id": trace_id or str(uuid.uuid4())
        }
    }


def _trace_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


async def feed_error_handler(request: Request, exc: FeedError):
    detail = {"path": request.url.path}
    if exc.stage:
        detail["stage"] = exc.stage
    headers = {}
    if exc.retry_after is not None:
        detail["retry_after"] = exc.retry_after
        headers["Retry-After"] = str(exc.retry_after)
    if exc.status_code >= 500:
        log.warning("%s at %s: %s", exc.code, request.url.path, exc)
    payload = _base_payload(code=exc.code, message=exc.message, detail=detail, trace_id=_trace_id(request))
    return JSONResponse(status_code=exc.status_code, content=payload, headers=headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    payload = _base_payload(
        code=f"HTTP_{exc.status_code}",
        message=exc.detail if isinstance(exc.detail, str) else "HTTP error",
        detail={"path": request.url.path},
        trace_id=_trace_id(request),
    )
    return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")}
        for e in exc.errors()
    ]
    payload = _base_payload(
        code=InvalidInput.code,
        message="Invalid request parameters",
        detail={"errors": errors},
        trace_id=_trace_id(request),
    )
    return JSONResponse(status_code=InvalidInput.status_code, content=payload)


async def generic_exception_handler(request: Request, exc: Exception):
    trace_id = _trace_id(request)
    log.exception("unhandled error trace_id=%s path=%s", trace_id, request.url.path)
    detail = {"path": request.url.path}
    if settings.DEBUG:
        detail["traceback"] = traceback.format_exception(type(exc), exc, exc.__traceback__, limit=8)
        detail["type"] = exc.__class__.__name__
    payload = _base_payload(code="INTERNAL_ERROR", message="Internal server error", detail=detail, trace_id=trace_id)
    return JSONResponse(status_code=500, content=payload)


async def client_disconnected_handler(request: Request, exc: Exception):
    # 对端已经走了，这个响应不会被读到；只留一条日志
    log.info("client went away trace_id=%s path=%s", _trace_id(request), request.url.path)
    return Response(status_code=499)
