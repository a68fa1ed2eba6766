import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException


logger = logging.getLogger(__name__)


class AppError(Exception):
    retryable = False

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ValidationError(AppError):
    """Malformed input, rejected before any store call."""

    def __init__(self, message: str):
        super().__init__(message, 422)


class Unauthenticated(AppError):
    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message, 401)


class PermissionDenied(AppError):
    def __init__(self, message: str):
        super().__init__(message, 403)


class NotFound(AppError):
    def __init__(self, message: str):
        super().__init__(message, 404)


class InvalidTransition(AppError):
    def __init__(self, message: str):
        super().__init__(message, 409)


class TransientStoreError(AppError):
    """Connectivity/index/availability failure. Safe to retry."""

    retryable = True

    def __init__(self, message: str, status_code: int = 503):
        super().__init__(message, status_code)


class RelayError(TransientStoreError):
    def __init__(self, message: str):
        super().__init__(message, 502)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(_: Request, exc: AppError):  # pragma: no cover
        logger.warning("%s: %s", type(exc).__name__, exc.message)
        content = {"detail": exc.message}
        if exc.retryable:
            content["retryable"] = True
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(PydanticValidationError)
    async def validation_error_handler(_: Request, exc: PydanticValidationError):  # pragma: no cover
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_: Request, exc: StarletteHTTPException):  # pragma: no cover
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
