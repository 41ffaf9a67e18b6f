"""
Custom exception hierarchy for domain-specific errors.

Services raise domain exceptions, and the exception handlers registered in
main.py map them to HTTP responses. Every exception carries a machine-readable
``code`` so callers can branch on the failure without parsing messages.
"""
from typing import Optional, Dict, Any


class DomainException(Exception):
    """Base exception for all domain errors."""

    code: str = "error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# =============================================================================
# Not Found Errors (404)
# =============================================================================

class NotFoundError(DomainException):
    """Base class for resource not found errors."""
    code = "not_found"


class ProjectNotFoundError(NotFoundError):
    """Project does not exist."""

    def __init__(self, identifier: str):
        super().__init__(f"Project not found: {identifier}", {"identifier": identifier})


class BuildNotFoundError(NotFoundError):
    """Build does not exist."""

    def __init__(self, identifier: str):
        super().__init__(f"Build not found: {identifier}", {"identifier": identifier})


class InstanceNotFoundError(NotFoundError):
    """Instance does not exist."""

    def __init__(self, identifier: str):
        super().__init__(f"Instance not found: {identifier}", {"identifier": identifier})


class SandboxNotFoundError(NotFoundError):
    """Sandbox (container) does not exist."""

    def __init__(self, sandbox_id: str):
        super().__init__(f"Sandbox not found: {sandbox_id}", {"sandbox_id": sandbox_id})


# =============================================================================
# Authorization Errors (401/403)
# =============================================================================

class AuthorizationError(DomainException):
    """Base class for authorization errors."""
    code = "forbidden"


class ForbiddenError(AuthorizationError):
    """Caller does not own the requested resource."""

    def __init__(self, resource_type: str, identifier: str):
        super().__init__(
            f"Access to {resource_type} {identifier} is forbidden",
            {"resource_type": resource_type, "identifier": identifier},
        )


class AuthenticationRequiredError(AuthorizationError):
    """No valid credentials were supplied."""

    code = "unauthenticated"

    def __init__(self):
        super().__init__("A valid API key is required", {})


# =============================================================================
# Validation Errors (400)
# =============================================================================

class ValidationError(DomainException):
    """Base class for validation errors."""
    code = "invalid"


class InvalidStateError(ValidationError):
    """Entity is not in a state that allows the operation."""

    code = "invalid_state"

    def __init__(self, resource_type: str, identifier: str, current_status: str, action: str):
        super().__init__(
            f"Cannot {action} {resource_type} {identifier} with status: {current_status}",
            {
                "resource_type": resource_type,
                "identifier": identifier,
                "current_status": current_status,
                "action": action,
            },
        )


# =============================================================================
# Quota Errors (429)
# =============================================================================

class QuotaError(DomainException):
    """Base class for admission-control denials."""
    code = "quota_exceeded"


class QuotaExceededError(QuotaError):
    """The user's quota does not allow the requested operation."""

    def __init__(self, reason: str, limit: str = "quota_exceeded"):
        self.reason = reason
        self.limit = limit
        super().__init__(reason, {"reason": reason, "limit": limit})


# =============================================================================
# Operation Errors (500)
# =============================================================================

class OperationError(DomainException):
    """Base class for operation failures."""
    code = "operation_failed"


class BuildFailedError(OperationError):
    """Build exited non-zero, timed out, or could not start."""

    code = "build_failed"

    def __init__(
        self,
        reason: str,
        exit_code: Optional[int] = None,
        logs: str = "",
        message: Optional[str] = None,
    ):
        self.reason = reason
        self.exit_code = exit_code
        self.logs = logs
        if message is None:
            if exit_code is not None:
                message = f"Build failed with exit code {exit_code}"
            else:
                message = f"Build failed: {reason}"
        super().__init__(message, {"reason": reason, "exit_code": exit_code})


class HealthCheckTimeoutError(OperationError):
    """Instance did not pass the health gate within its attempt budget."""

    code = "health_check_timeout"

    def __init__(self, port: int, attempts: int):
        self.port = port
        self.attempts = attempts
        super().__init__(
            f"Instance on port {port} failed health check after {attempts} attempts",
            {"port": port, "attempts": attempts},
        )


class SandboxRuntimeError(OperationError):
    """The sandbox runtime failed during a pipeline stage."""

    code = "runtime_error"

    def __init__(self, stage: str, reason: str):
        self.stage = stage
        self.reason = reason
        super().__init__(f"Runtime error during {stage}: {reason}", {"stage": stage, "reason": reason})


class DeploymentCancelledError(OperationError):
    """The deployment was stopped while it was still health-gating."""

    code = "cancelled"

    def __init__(self, instance_id: str):
        super().__init__(f"Deployment {instance_id} was cancelled", {"instance_id": instance_id})


class DatabaseError(OperationError):
    """Database operation failed."""

    code = "internal_error"

    def __init__(self, operation: str, reason: str):
        super().__init__(f"Database error during {operation}: {reason}", {"operation": operation, "reason": reason})


# =============================================================================
# Service Unavailable (503)
# =============================================================================

class ServiceUnavailableError(DomainException):
    """A shared resource or external service is unavailable."""

    code = "unavailable"

    def __init__(self, service: str, reason: str = "Service unavailable"):
        super().__init__(f"{service}: {reason}", {"service": service, "reason": reason})


class PortPoolExhaustedError(ServiceUnavailableError):
    """No free ports remain in the lease pool."""

    code = "port_pool_exhausted"

    def __init__(self, port_range_start: int, port_range_end: int):
        DomainException.__init__(
            self,
            f"No available ports in range {port_range_start}-{port_range_end}",
            {"port_range_start": port_range_start, "port_range_end": port_range_end},
        )
