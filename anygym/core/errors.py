"""Error taxonomy and FastAPI handlers.

Every failure that reaches a caller is an AppError subclass carrying an HTTP
status and a stable machine-readable code. ConflictRace and DegradedResult are
raised and handled inside the services and never reach a handler.
"""

import logging
from typing import List, Optional
from uuid import uuid4

from starlette.exceptions import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from anygym.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class UnauthorizedError(AppError):
    code = "unauthorized"
    status_code = 401


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class QuotaExceededError(AppError):
    code = "quota_exceeded"
    status_code = 403


class SignatureInvalidError(AppError):
    code = "signature_invalid"
    status_code = 400


class UpstreamFailure(AppError):
    """Storage or a required external dependency is unavailable."""
    code = "upstream_failure"
    status_code = 500


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


class ConflictRace(Exception):
    """A concurrent writer won a uniqueness race; recovered by the caller."""


class DegradedResult(Exception):
    """A non-essential dependency failed; the caller continues on its fallback path."""


logger = logging.getLogger("anygym.errors")


def current_request_id(request: Request) -> str:
    """Middleware-assigned id, else the context one, else a fresh uuid."""
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def _respond(
    request: Request,
    status: int,
    code: str,
    message: str,
    *,
    request_id: Optional[str] = None,
    fields: Optional[List[str]] = None,
    exc_info: Optional[BaseException] = None,
) -> JSONResponse:
    rid = request_id or current_request_id(request)
    error = {"code": code, "message": message, "request_id": rid}
    if fields is not None:
        error["fields"] = fields

    logger.log(
        logging.ERROR if status >= 500 else logging.WARNING,
        "request.failed",
        exc_info=exc_info,
        extra={"request_id": rid, "error_code": code, "status": status, "path": request.url.path},
    )
    return JSONResponse(
        status_code=status,
        content={"error": error, "detail": message},
        headers={"x-request-id": rid},
    )


async def app_error_handler(request: Request, exc: AppError):
    return _respond(request, exc.status_code, exc.code, exc.message, request_id=exc.request_id)


async def http_error_handler(request: Request, exc: HTTPException):
    code = "not_found" if exc.status_code == 404 else "http_error"
    return _respond(request, exc.status_code, code, str(exc.detail or "HTTP error"))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    # Malformed bodies and params share the 400 validation contract
    fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
    return _respond(request, 400, ValidationError.code, "Invalid request", fields=fields)


async def unhandled_exception_handler(request: Request, exc: Exception):
    return _respond(request, 500, "internal_error", "Unexpected error", exc_info=exc)
