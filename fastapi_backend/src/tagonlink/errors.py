"""Error taxonomy and the JSON error envelope.

Every error response body has the shape
``{"error": str, "code"?: str, "details"?: str}``.
"""
import logging
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    validation = "validation"
    authentication = "authentication"
    authorization = "authorization"
    not_found = "not_found"
    conflict = "conflict"
    foreign_key = "foreign_key"
    undefined_table = "undefined_table"
    unavailable = "unavailable"
    infrastructure = "infrastructure"


class DatabaseError(Exception):
    """A failure raised by the persistence gateway, classified by SQLSTATE."""

    def __init__(self, kind: ErrorKind, message: str, pgcode: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.pgcode = pgcode


class ApiError(Exception):
    """An error that maps directly onto an HTTP response."""

    def __init__(
        self,
        status_code: int,
        error: str,
        code: Optional[str] = None,
        details: Optional[str] = None,
    ):
        super().__init__(error)
        self.status_code = status_code
        self.error = error
        self.code = code
        self.details = details

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error}
        if self.code:
            body["code"] = self.code
        if self.details:
            body["details"] = self.details
        return body


# PUBLIC_INTERFACE
def bad_request(error: str, code: Optional[str] = None) -> ApiError:
    return ApiError(status.HTTP_400_BAD_REQUEST, error, code)


# PUBLIC_INTERFACE
def not_found(entity: str) -> ApiError:
    return ApiError(status.HTTP_404_NOT_FOUND, f"{entity} not found.")


# PUBLIC_INTERFACE
def server_error(error: str, code: Optional[str] = None) -> ApiError:
    return ApiError(status.HTTP_500_INTERNAL_SERVER_ERROR, error, code)


def _format_validation_errors(exc: RequestValidationError) -> str:
    parts = []
    for e in exc.errors():
        # Drop the leading "body"/"path" segment.
        loc = [str(p) for p in e.get("loc", ())[1:]] or [str(p) for p in e.get("loc", ())]
        parts.append(f"{'.'.join(loc)}: {e.get('msg')}")
    return "; ".join(parts)


# PUBLIC_INTERFACE
def register_error_handlers(app: FastAPI) -> None:
    """Install handlers rendering every failure as the JSON error envelope."""

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.error)
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info("Validation error on %s: %s", request.url.path, exc.errors())
        error = ApiError(
            status.HTTP_400_BAD_REQUEST,
            "Invalid request data.",
            code="VALIDATION_ERROR",
            details=_format_validation_errors(exc),
        )
        return JSONResponse(status_code=error.status_code, content=error.to_response())

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled exception on %s: %s", request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "An unexpected error occurred.", "code": "INTERNAL_ERROR"},
        )
