import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.domain.exceptions import BookingEngineError

logger = logging.getLogger(__name__)


def _error_response(
    status_code: int,
    message: str,
    error: str,
    retryable: bool = False,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "message": message,
            "error": error,
            "retryable": retryable,
        },
    )


async def booking_engine_error_handler(request: Request, exc: BookingEngineError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.warning(
            "%s %s rejected with %s: %s",
            request.method,
            request.url.path,
            exc.status_code,
            exc,
        )
    return _error_response(exc.status_code, str(exc), type(exc).__name__, exc.retryable)


async def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.warning("%s %s hit a constraint: %s", request.method, request.url.path, exc.orig)
    return _error_response(409, "Request conflicts with a concurrent update", "ConflictError", True)


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return _error_response(exc.status_code, str(exc.detail), "HTTPException")


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())[1:])
        problems.append(f"{location}: {error.get('msg')}" if location else error.get("msg", ""))
    return _error_response(400, "; ".join(problems) or "Invalid request", "ValidationError")


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BookingEngineError, booking_engine_error_handler)
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
