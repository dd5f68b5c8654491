"""
Centralized API Error Handling
Provides consistent error responses and exception handling
"""

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Dict, Optional
import logging
import uuid

from storesync.api.exceptions import SyncAPIException
from storesync.api.schemas import APIErrorResponse, APIErrorDetail
from storesync.core.models import utc_now

logger = logging.getLogger(__name__)

# Fallback error codes for plain HTTPExceptions
ERROR_CODES = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    423: "LOCKED",
    500: "INTERNAL_ERROR",
    502: "BAD_GATEWAY",
    503: "SERVICE_UNAVAILABLE"
}


def error_response(message: str, error_code: str, status_code: int, request_id: Optional[str] = None,
                   details=None, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    """Create a standardized error response"""
    body = APIErrorResponse(
        error=message,
        error_code=error_code,
        details=details or [],
        request_id=request_id or str(uuid.uuid4()),
        timestamp=utc_now()
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode='json'), headers=headers)


async def sync_api_exception_handler(request: Request, exc: SyncAPIException) -> JSONResponse:
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(level, f"API error on {request.url.path}: {exc.detail} (code: {exc.error_code})")
    return error_response(str(exc.detail), exc.error_code, exc.status_code, headers=exc.headers)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """HTTP exceptions raised by FastAPI or the routes"""
    if isinstance(exc, SyncAPIException):
        return await sync_api_exception_handler(request, exc)
    error_code = ERROR_CODES.get(exc.status_code, "INTERNAL_ERROR")
    logger.warning(f"HTTP Exception on {request.url.path}: {exc.detail} (status: {exc.status_code})")
    return error_response(str(exc.detail), error_code, exc.status_code, headers=getattr(exc, 'headers', None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle Pydantic validation errors"""
    field_errors = [
        APIErrorDetail(
            field=" -> ".join(str(loc) for loc in error["loc"]),
            message=error["msg"],
            code=error["type"]
        )
        for error in exc.errors()
    ]
    logger.warning(f"Validation Error on {request.url.path}: {len(field_errors)} field errors")
    return error_response("Validation failed", "VALIDATION_ERROR", status.HTTP_422_UNPROCESSABLE_ENTITY,
                          details=field_errors)


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler"""
    request_id = str(uuid.uuid4())
    logger.error(f"Unhandled exception: {str(exc)} (request_id: {request_id})", exc_info=True)
    return error_response("Internal server error", "INTERNAL_ERROR",
                          status.HTTP_500_INTERNAL_SERVER_ERROR, request_id=request_id)


def register_exception_handlers(app):
    app.add_exception_handler(SyncAPIException, sync_api_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
