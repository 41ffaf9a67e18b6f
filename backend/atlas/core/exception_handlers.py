"""
Exception handlers that map domain exceptions to HTTP responses.

Register these handlers in main.py to automatically convert domain exceptions
to appropriate HTTP status codes and response formats.
"""
import logging
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette import status

from atlas.core.exceptions import (
    AuthenticationRequiredError,
    AuthorizationError,
    BuildFailedError,
    DeploymentCancelledError,
    DomainException,
    HealthCheckTimeoutError,
    InvalidStateError,
    NotFoundError,
    OperationError,
    QuotaError,
    ServiceUnavailableError,
    ValidationError,
)

logger = logging.getLogger(__name__)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Log validation errors for debugging."""
    logger.error(f"Validation error on {request.method} {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": exc.errors()},
    )


def status_code_for(exc: DomainException) -> int:
    """Pick the HTTP status code for a domain exception."""
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, AuthenticationRequiredError):
        return status.HTTP_401_UNAUTHORIZED
    if isinstance(exc, AuthorizationError):
        return status.HTTP_403_FORBIDDEN
    if isinstance(exc, QuotaError):
        return status.HTTP_429_TOO_MANY_REQUESTS
    if isinstance(exc, (InvalidStateError, DeploymentCancelledError)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, ServiceUnavailableError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(exc, BuildFailedError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, HealthCheckTimeoutError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
    """
    Handle all domain exceptions and map to appropriate HTTP status codes.

    Services can raise domain exceptions without knowing about HTTP.
    """
    status_code = status_code_for(exc)

    if isinstance(exc, OperationError) or status_code == status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error(f"Operation error: {exc.message}", extra={"details": exc.details})

    content = {
        "detail": exc.message,
        "error_type": exc.__class__.__name__,
        "code": exc.code,
        **exc.details,
    }
    if isinstance(exc, BuildFailedError) and exc.logs:
        content["logs"] = exc.logs

    return JSONResponse(status_code=status_code, content=content)


def register_exception_handlers(app):
    """
    Register all exception handlers with the FastAPI app.

    Call this function in main.py after creating the app instance.
    """
    app.add_exception_handler(DomainException, domain_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
