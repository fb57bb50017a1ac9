from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy.exc import SQLAlchemyError

from core.utils.logging import structured_logger
from .api_exceptions import APIException
from .utils import format_error_response, get_correlation_id


async def api_exception_handler(request: Request, exc: APIException) -> JSONResponse:
    """Handle custom API exceptions"""
    if exc.status_code >= 500:
        structured_logger.error(
            message=exc.message,
            endpoint=request.url.path,
            metadata={"error_code": exc.error_code, "correlation_id": exc.correlation_id, **exc.context},
        )
    body = format_error_response(
        message=exc.message,
        status_code=exc.status_code,
        error_code=exc.error_code,
        correlation_id=exc.correlation_id,
    )
    if exc.context:
        body["context"] = exc.context
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(body))


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle standard HTTP exceptions"""
    return JSONResponse(
        status_code=exc.status_code,
        content=format_error_response(
            message=exc.detail,
            status_code=exc.status_code,
            error_code=f"HTTP_{exc.status_code}"
        )
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle validation errors"""
    errors = {}
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"][1:])  # Skip 'body' prefix
        errors[field] = error["msg"]

    return JSONResponse(
        status_code=422,
        content=format_error_response(
            message="Validation failed",
            status_code=422,
            error_code="VALIDATION_ERROR",
            errors=errors
        )
    )


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Handle SQLAlchemy database errors"""
    correlation_id = get_correlation_id()

    structured_logger.error(
        message=f"Database error [{correlation_id}]",
        endpoint=request.url.path,
        exception=exc,
    )

    return JSONResponse(
        status_code=500,
        content=format_error_response(
            message="A database error occurred",
            status_code=500,
            error_code="DATABASE_ERROR",
            correlation_id=correlation_id
        )
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions"""
    correlation_id = get_correlation_id()

    structured_logger.critical(
        message=f"Unexpected error [{correlation_id}]",
        endpoint=request.url.path,
        exception=exc,
    )

    return JSONResponse(
        status_code=500,
        content=format_error_response(
            message="An unexpected error occurred",
            status_code=500,
            error_code="INTERNAL_ERROR",
            correlation_id=correlation_id
        )
    )
