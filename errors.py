"""
Error taxonomy for the API.

Every error is an HTTPException so routes and services can raise them
directly; the handlers registered in main.py render them as
{"error": ..., "message": ...}. Internal failures never carry detail to the
caller, the full context goes to the log instead.
"""

import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ApiError(HTTPException):
    status_code = 500
    title = "Internal server error"

    def __init__(self, message: str = None, title: str = None):
        self.title = title or self.title
        super().__init__(status_code=self.status_code, detail=message or self.title)

    @property
    def message(self) -> str:
        return self.detail


class ValidationError(ApiError):
    status_code = 400
    title = "Validation failed"


class AuthenticationError(ApiError):
    status_code = 401
    title = "Unauthorized"


class AuthorizationError(ApiError):
    status_code = 403
    title = "Forbidden"


class NotFoundError(ApiError):
    status_code = 404
    title = "Not found"


class ConflictError(ApiError):
    status_code = 409
    title = "Conflict"


class RateLimitError(ApiError):
    status_code = 429
    title = "Rate limit exceeded"


class PersistenceError(ApiError):
    status_code = 500
    title = "Internal server error"


class UnknownError(ApiError):
    status_code = 500
    title = "Internal server error"


async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.title, "message": exc.message})


async def request_validation_handler(request: Request, exc: RequestValidationError):
    messages = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p != "body"]
        field = ".".join(loc)
        messages.append(f"{field}: {err.get('msg')}" if field else err.get("msg", "Invalid input"))
    return JSONResponse(
        status_code=400,
        content={"error": ValidationError.title, "message": ", ".join(messages) or "Invalid input"},
    )


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"error": UnknownError.title, "message": "Something went wrong. Please try again."},
    )
