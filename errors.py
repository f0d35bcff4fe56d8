"""
Error taxonomy and FastAPI exception handlers.

Not-found and unauthorized conditions are kept apart internally so they can be
logged, but are rendered to the client as a single access-denied response.
"""

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from logging_config import get_logger

logger = get_logger(__name__)


class APIError(Exception):
    status_code: int = 500
    default_error_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str = "An unexpected error occurred", error_code: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        result = {"code": self.error_code, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


class Unauthorized(APIError):
    """Caller holds no membership in the resource's owning workspace."""

    status_code = 401
    default_error_code = "UNAUTHORIZED"

    def __init__(self, message: str = "Unauthorized", error_code: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        super().__init__(message, error_code, details)


class NotFound(APIError):
    """A referenced id does not resolve in the store."""

    status_code = 404
    default_error_code = "NOT_FOUND"

    def __init__(self, message: str = "Not found", error_code: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        super().__init__(message, error_code, details)


class ValidationError(APIError):
    status_code = 400
    default_error_code = "VALIDATION_ERROR"

    def __init__(self, message: str = "Validation failed", error_code: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        super().__init__(message, error_code, details)


class StoreError(APIError):
    """The document store failed. Fatal for the request, never retried here."""

    status_code = 503
    default_error_code = "STORE_UNAVAILABLE"

    def __init__(self, message: str = "Document store unavailable", error_code: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        super().__init__(message, error_code, details)


def error_response(status_code: int, code: str, message: str, details: Optional[dict[str, Any]] = None) -> JSONResponse:
    error = {"code": code, "message": message}
    if details:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"error": error})


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    if isinstance(exc, StoreError):
        logger.error("store_error", path=request.url.path, message=exc.message)
    else:
        logger.info("api_error", path=request.url.path, code=exc.error_code, status=exc.status_code)
    return error_response(exc.status_code, exc.error_code, exc.message, exc.details or None)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = []
    for error in exc.errors():
        loc = ".".join(str(x) for x in error.get("loc", []))
        errors.append({"field": loc, "message": error.get("msg", "Invalid value")})
    logger.info("validation_error", path=request.url.path, errors=len(errors))
    return error_response(400, "VALIDATION_ERROR", "Request validation failed", {"errors": errors})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
