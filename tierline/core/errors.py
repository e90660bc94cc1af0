"""Error taxonomy and normalized HTTP handlers."""

import logging
import builtins
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from tierline.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.details = details or {}


class ValidationError(AppError, ValueError):
    """Bad input shape or enum value. Rejected with no side effect."""
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class ConflictError(AppError):
    """Uniqueness or idempotency violation. Rejected with no side effect."""
    code = "conflict"
    status_code = 409


class PreconditionError(AppError):
    """The operation would break an invariant (e.g. removing a referenced limit)."""
    code = "precondition_failed"
    status_code = 412


class LimitExceededError(AppError):
    """Enforcement denial. A business decision, not a system fault."""
    code = "limit_exceeded"
    status_code = 429

    def __init__(
        self,
        message: str,
        *,
        reason: str = "LIMIT_EXCEEDED",
        limit: Optional[int] = None,
        remaining: Optional[int] = None,
        current_usage: Optional[int] = None,
        **kwargs,
    ):
        details = {
            "reason": reason,
            "limit": limit,
            "remaining": remaining,
            "current_usage": current_usage,
        }
        super().__init__(message, details=details, **kwargs)
        self.reason = reason
        self.limit = limit
        self.remaining = remaining
        self.current_usage = current_usage


class TransientStoreError(AppError):
    """Ledger or database unavailable. Safe to retry the whole operation."""
    code = "transient_store_error"
    status_code = 503


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, details: Optional[Dict[str, Any]] = None) -> dict:
    error = {"code": code, "message": message, "request_id": request_id}
    if details:
        error.update(details)
    return {"error": error, "detail": message}


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.details)
    if isinstance(exc, LimitExceededError):
        # Ingestion callers read the denial at the top level
        payload.update({"allowed": False, **exc.details})
    logger = logging.getLogger("tierline")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("tierline")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _extract_request_id(request)
    fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
    message = f"Invalid request: {', '.join(fields)}" if fields else "Invalid request"
    payload = _error_payload(ValidationError.code, message, rid)
    logging.getLogger("tierline").warning(
        "request.invalid", extra={"request_id": rid, "error_code": ValidationError.code}
    )
    response = JSONResponse(status_code=400, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("tierline")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
