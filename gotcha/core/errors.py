"""Error normalization and handlers.

Every failure leaving the API uses one envelope:

    {"error": {"code": ..., "message": ..., "status": ..., "request_id": ...}}

Codes are a stable vocabulary consumed by SDK callers.
"""

import logging
from typing import Dict, List, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from gotcha.core.logging import get_request_id


CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PATCH, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, Idempotency-Key",
}


class AppError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.headers = dict(headers or {})


class InvalidApiKeyError(AppError):
    code = "INVALID_API_KEY"
    status_code = 401


class OriginNotAllowedError(AppError):
    code = "ORIGIN_NOT_ALLOWED"
    status_code = 403


class ForbiddenError(AppError):
    code = "FORBIDDEN"
    status_code = 403


class RateLimitError(AppError):
    code = "RATE_LIMITED"
    status_code = 429


class ValidationError(AppError, ValueError):
    """Caller input error; carries per-field details."""
    code = "INVALID_REQUEST"
    status_code = 400

    def __init__(self, message: str, *, details: Optional[List[Dict[str, str]]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.details = details or []


class InternalError(AppError):
    code = "INTERNAL_ERROR"
    status_code = 500


ERROR_TYPES = {
    cls.code: cls
    for cls in (InvalidApiKeyError, OriginNotAllowedError, ForbiddenError, RateLimitError, ValidationError, InternalError)
}


def error_for_code(code: str, message: str, **kwargs) -> AppError:
    """Build the AppError subclass registered for a stable error code."""
    cls = ERROR_TYPES.get(code, AppError)
    return cls(message, **kwargs)


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, status: int, request_id: str, details: Optional[list] = None) -> dict:
    error = {"code": code, "message": message, "status": status, "request_id": request_id}
    if details:
        error["details"] = details
    return {"error": error}


def _respond(status: int, payload: dict, rid: str, extra_headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    response = JSONResponse(status_code=status, content=payload)
    for name, value in CORS_HEADERS.items():
        response.headers[name] = value
    for name, value in (extra_headers or {}).items():
        response.headers[name] = value
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    details = getattr(exc, "details", None)
    payload = _error_payload(exc.code, exc.message, exc.status_code, rid, details)
    logger = logging.getLogger("gotcha")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return _respond(exc.status_code, payload, rid, exc.headers)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    if exc.status_code == 404:
        code = "NOT_FOUND"
    elif exc.status_code == 405:
        code = "METHOD_NOT_ALLOWED"
    elif exc.status_code < 500:
        code = "INVALID_REQUEST"
    else:
        code = "INTERNAL_ERROR"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, exc.status_code, rid)
    logger = logging.getLogger("gotcha")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return _respond(exc.status_code, payload, rid, getattr(exc, "headers", None))


def validation_details(errors) -> List[Dict[str, str]]:
    """Flatten pydantic error dicts into {field, message} pairs."""
    details = []
    for err in errors:
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query")]
        message = err.get("msg", "Invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        details.append({"field": ".".join(loc) or "body", "message": message})
    return details


async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = validation_details(exc.errors())
    message = details[0]["message"] if details else "Invalid request body"
    return await app_error_handler(request, ValidationError(message, details=details))


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("gotcha")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "INTERNAL_ERROR"})
    payload = _error_payload("INTERNAL_ERROR", "An unexpected error occurred", 500, rid)
    return _respond(500, payload, rid)
