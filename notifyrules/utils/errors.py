import traceback
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .logging import get_logger
from .responses import ResponseBuilder

logger = get_logger()


class NotifyRulesError(Exception):
    """Base for errors that carry a message, an error code and an HTTP status."""

    error_code = "INTERNAL_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code


class ConfigurationError(NotifyRulesError):
    """Malformed condition/action parameters or an unknown plugin tag."""

    error_code = "CONFIG_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST


class TransientEvaluationError(NotifyRulesError):
    """An external dependency of a plugin is temporarily unavailable."""

    error_code = "TRANSIENT_ERROR"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class ActionExecutionError(NotifyRulesError):
    """An action failed after its rule fired."""

    error_code = "ACTION_ERROR"


class StoreError(NotifyRulesError):
    """Persistence failure in the trigger, cache or launch stores."""

    error_code = "STORE_ERROR"


class RuleValidationError(NotifyRulesError):
    error_code = "RULE_VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(NotifyRulesError):
    error_code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, message: str = "Resource not found", error_code: Optional[str] = None):
        super().__init__(message, error_code)


def setup_error_handlers(app: FastAPI):
    """Setup custom error handlers."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        logger.error(f"HTTP Exception: {exc.status_code} - {exc.detail}")
        return ResponseBuilder.error(
            request=request,
            message=str(exc.detail),
            error_code="HTTP_ERROR",
            status_code=exc.status_code,
            meta={"http_status": exc.status_code},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(
        request: Request, exc: RequestValidationError
    ):
        logger.error(f"Request Validation Error: {exc.errors()}")

        formatted_errors = [
            {
                "field": " -> ".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]

        return ResponseBuilder.error(
            request=request,
            message="Request validation failed",
            errors=formatted_errors,
            error_code="VALIDATION_ERROR",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        )

    @app.exception_handler(NotifyRulesError)
    async def notifyrules_exception_handler(request: Request, exc: NotifyRulesError):
        logger.error(f"{type(exc).__name__}: {exc.message}")

        return ResponseBuilder.error(
            request=request,
            message=exc.message,
            error_code=exc.error_code,
            status_code=exc.status_code,
            meta={"error_type": type(exc).__name__},
        )

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError):
        logger.error(f"SQLAlchemy Error: {str(exc)}")

        # Don't expose internal database errors to users
        return ResponseBuilder.error(
            request=request,
            message="A database error occurred",
            error_code="DATABASE_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle all other unhandled exceptions"""
        logger.error(f"Unhandled Exception: {str(exc)}")
        logger.error(f"Traceback: {traceback.format_exc()}")

        return ResponseBuilder.error(
            request=request,
            message="An internal server error occurred",
            error_code="INTERNAL_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
