"""Domain Errors - Centralized Exception Hierarchy"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base domain error - all errors extend this"""

    error_code: str = "DOMAIN_ERROR"
    http_status: int = 400

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to API response dict"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# Authorization Errors
class PermissionDeniedError(DomainError):
    """Caller role is not sufficient for the action"""
    error_code = "PERMISSION_DENIED"
    http_status = 403


# Validation Errors
class ValidationError(DomainError):
    """Input validation failed"""
    error_code = "VALIDATION_ERROR"
    http_status = 400


class DefinitionValidationError(ValidationError):
    """Process definition is malformed (rejected at registration)"""
    error_code = "DEFINITION_VALIDATION_ERROR"


class VariableValidationError(ValidationError):
    """Process variables do not satisfy the definition's schema"""
    error_code = "VARIABLE_VALIDATION_ERROR"


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "NOT_FOUND"
    http_status = 404


class UnknownDefinitionError(NotFoundError):
    """Process definition is not registered"""
    error_code = "UNKNOWN_DEFINITION"


class ProcessNotFoundError(NotFoundError):
    """Process instance not found"""
    error_code = "PROCESS_NOT_FOUND"


class UnknownStateError(NotFoundError):
    """State is not declared by the definition"""
    error_code = "UNKNOWN_STATE"


class TaskNotFoundError(NotFoundError):
    """Projected task not found"""
    error_code = "TASK_NOT_FOUND"


# Conflict Errors
class ConflictError(DomainError):
    """Resource conflict"""
    error_code = "CONFLICT"
    http_status = 409


class IllegalTransitionError(ConflictError):
    """Target state is not reachable from the current state"""
    error_code = "ILLEGAL_TRANSITION"


class TransitionGuardError(ConflictError):
    """Transition is declared but its guard conditions are not met"""
    error_code = "TRANSITION_GUARD_FAILED"


class InvalidStateError(ConflictError):
    """Action not valid for current process status"""
    error_code = "INVALID_STATE"


class ConcurrencyError(ConflictError):
    """Concurrent modification detected"""
    error_code = "CONCURRENCY_CONFLICT"


# Engine Errors
class EngineError(DomainError):
    """Process engine error"""
    error_code = "ENGINE_ERROR"
    http_status = 500


class HookExecutionError(EngineError):
    """Lifecycle hook failed (recorded in the audit log, never surfaced)"""
    error_code = "HOOK_EXECUTION_ERROR"

    def __init__(
        self,
        message: str,
        hook: str,
        state: str,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details={"hook": hook, "state": state, **(details or {})})
        self.hook = hook
        self.state = state


# External Service Errors
class ExternalServiceError(DomainError):
    """External service failure"""
    error_code = "EXTERNAL_SERVICE_ERROR"
    http_status = 502


class RemoteStoreError(ExternalServiceError):
    """Remote document store unreachable or returned an error"""
    error_code = "REMOTE_STORE_ERROR"


class RemoteConflictError(RemoteStoreError):
    """Remote store rejected a write because of a stale revision"""
    error_code = "REMOTE_CONFLICT"
    http_status = 409
