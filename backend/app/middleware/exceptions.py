"""Error taxonomy and exception handlers for consistent error responses.

Store, save-engine, lock and migration code converts raw database errors
into the `AdWizardException` subclasses below before they leave the
component; routers never see SQLAlchemy exceptions for wizard operations.
"""

import logging
import traceback
from typing import Union

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class AdWizardException(Exception):
    """Base exception for ad wizard application errors."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR",
        details: dict | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details
        super().__init__(self.message)


# ── Persistence ─────────────────────────────────────────────

class ConflictError(AdWizardException):
    """A version-gated write lost to a concurrent writer."""

    def __init__(self, message: str = "Concurrent update detected", error_code: str = "VERSION_CONFLICT"):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_code=error_code,
        )


class FatalSaveError(ConflictError):
    """Save abandoned after the retry ceiling; the caller may retry manually."""

    def __init__(self, message: str = "Progress could not be saved. Please try again.", attempts: int = 0):
        super().__init__(message=message, error_code="SAVE_ABANDONED")
        self.attempts = attempts
        self.details = {"attempts": attempts, "retryable": True}


class LockLostError(ConflictError):
    """The holder's lease expired or was taken over before it committed."""

    def __init__(self, message: str = "Lock lease lost before commit"):
        super().__init__(message=message, error_code="LOCK_LOST")


class LockContention(AdWizardException):
    """Another owner holds the lock; someone else is handling the operation."""

    def __init__(self, message: str = "Operation already in progress"):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_code="LOCK_CONTENTION",
        )


class TransientStoreError(AdWizardException):
    """Network/database failure that may succeed on retry."""

    def __init__(self, message: str = "Storage temporarily unavailable. Please try again."):
        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code="STORE_UNAVAILABLE",
        )


class WizardValidationError(AdWizardException):
    """Malformed wizard data; nothing was written."""

    def __init__(self, message: str, errors: list | None = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code="INVALID_WIZARD_DATA",
            details={"errors": errors} if errors else None,
        )


class FatalMigrationError(AdWizardException):
    """Migration retries exhausted; anonymous data left untouched."""

    def __init__(self, message: str = "We couldn't restore your progress. Please try again.", attempts: int = 0):
        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code="MIGRATION_FAILED",
            details={"attempts": attempts, "retryable": True},
        )
        self.attempts = attempts


class QueueFullError(AdWizardException):
    """In-process task queue reached its bound."""

    def __init__(self, message: str = "Too many pending requests. Please try again shortly."):
        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code="QUEUE_FULL",
        )


# ── Wizard flow ─────────────────────────────────────────────

class InvalidTransitionError(AdWizardException):
    """Step transition not allowed from the current state."""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code="INVALID_TRANSITION",
        )


class RegistrationRequiredError(AdWizardException):
    """Gallery (or another authenticated-only feature) reached anonymously."""

    def __init__(self, message: str = "Please sign up to continue"):
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            error_code="REGISTRATION_REQUIRED",
        )


class AuthenticationRequiredError(AdWizardException):
    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            error_code="AUTHENTICATION_REQUIRED",
        )


# ── Content generation ──────────────────────────────────────

class NoCreditsError(AdWizardException):
    """User has no generation credits left; the client should redirect to billing."""

    def __init__(self, message: str = "No credits available"):
        super().__init__(
            message=message,
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            error_code="NO_CREDITS",
        )


class TrialCompletedError(AdWizardException):
    """Anonymous trial already consumed its single generation."""

    def __init__(self, message: str = "Anonymous trial has been completed. Please sign up to continue."):
        super().__init__(
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            error_code="TRIAL_COMPLETED",
        )


class ContentGenerationError(AdWizardException):
    def __init__(self, message: str = "Content generation failed. Please try again."):
        super().__init__(
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            error_code="GENERATION_FAILED",
        )


# ── Response helpers / handlers ─────────────────────────────

def create_error_response(
    status_code: int,
    message: str,
    error_code: str = "ERROR",
    details: Union[dict, list, None] = None,
) -> JSONResponse:
    """Create standardized error response.

    Format:
    {
        "error": {
            "code": "ERROR_CODE",
            "message": "Human-readable error message",
            "details": {...}  // Optional additional details
        }
    }
    """
    content = {
        "error": {
            "code": error_code,
            "message": message,
        }
    }

    if details:
        content["error"]["details"] = details

    return JSONResponse(
        status_code=status_code,
        content=content,
    )


def _log_level(exc: AdWizardException) -> int:
    if isinstance(exc, FatalSaveError):
        return logging.WARNING
    if isinstance(exc, (ConflictError, LockContention)):
        return logging.INFO
    if exc.status_code >= 500:
        return logging.ERROR
    return logging.WARNING


async def adwizard_exception_handler(
    request: Request,
    exc: AdWizardException,
) -> JSONResponse:
    """Handle taxonomy exceptions.

    Version conflicts and lock contention log at INFO, abandoned saves at
    WARNING.  Storage and migration failures (5xx) log at ERROR.
    """
    logger.log(
        _log_level(exc),
        f"AdWizard exception: {exc.error_code} - {exc.message}",
        extra={
            "error_code": exc.error_code,
            "details": exc.details,
            "path": request.url.path,
            "method": request.method,
        },
    )

    return create_error_response(
        status_code=exc.status_code,
        message=exc.message,
        error_code=exc.error_code,
        details=exc.details,
    )


async def http_exception_handler(
    request: Request,
    exc: Union[HTTPException, StarletteHTTPException],
) -> JSONResponse:
    """Handle FastAPI HTTP exceptions."""
    if exc.status_code >= 500:
        logger.error(
            f"HTTP {exc.status_code}: {exc.detail}",
            extra={
                "path": request.url.path,
                "method": request.method,
            },
        )

    response = create_error_response(
        status_code=exc.status_code,
        message=str(exc.detail),
        error_code=f"HTTP_{exc.status_code}",
    )
    # Retry-After / X-RateLimit-* from the rate limiter
    if getattr(exc, "headers", None):
        response.headers.update(exc.headers)
    return response


async def validation_exception_handler(
    request: Request,
    exc: Union[RequestValidationError, ValidationError],
) -> JSONResponse:
    """Handle Pydantic validation errors."""
    logger.warning(
        f"Validation error on {request.url.path}",
        extra={
            "path": request.url.path,
            "method": request.method,
        },
    )

    errors = []
    for error in exc.errors():
        field = " -> ".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })

    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        message="Validation error",
        error_code="VALIDATION_ERROR",
        details={"errors": errors},
    )


async def operational_exception_handler(
    request: Request,
    exc: OperationalError,
) -> JSONResponse:
    """Handle database operational errors (connection issues, etc.)."""
    logger.error(
        f"Database operational error on {request.url.path}: {str(exc)}",
        extra={
            "path": request.url.path,
            "method": request.method,
        },
    )

    return create_error_response(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        message="Database temporarily unavailable. Please try again.",
        error_code="DATABASE_UNAVAILABLE",
    )


async def general_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle all other unhandled exceptions."""
    logger.error(
        f"Unhandled exception on {request.url.path}: {str(exc)}",
        extra={
            "path": request.url.path,
            "method": request.method,
            "traceback": traceback.format_exc(),
        },
        exc_info=True,
    )

    return create_error_response(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        error_code="INTERNAL_SERVER_ERROR",
    )


def register_exception_handlers(app):
    """Register all custom exception handlers with FastAPI app."""
    app.add_exception_handler(AdWizardException, adwizard_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValidationError, validation_exception_handler)
    app.add_exception_handler(OperationalError, operational_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
