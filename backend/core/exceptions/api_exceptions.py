from fastapi import HTTPException
from datetime import datetime, timezone
from core.utils.uuid_utils import uuid7
from typing import Any, Dict, Optional


class APIException(HTTPException):
    """
    Base for errors raised by the services and rendered by
    api_exception_handler. Subclasses only pick a status, a code and a
    default message; keyword context (current status, resource, ...) is
    echoed back to the client.
    """
    default_status = 500
    default_code: Optional[str] = None
    default_message = "An unexpected API error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        **context: Any
    ):
        self.message = message or self.default_message
        status_code = status_code or self.default_status
        self.error_code = error_code or self.default_code or f"ERR_{status_code}"
        self.context: Dict[str, Any] = {key: value for key, value in context.items() if value is not None}
        self.correlation_id = str(uuid7())
        self.timestamp = datetime.now(timezone.utc).isoformat()

        super().__init__(status_code=status_code, detail=self.message)


class ValidationException(APIException):
    default_status = 422
    default_code = "VALIDATION_ERROR"
    default_message = "Validation failed"

    def __init__(self, message: Optional[str] = None, errors: Optional[Dict[str, Any]] = None):
        super().__init__(message, errors=errors)


class AuthenticationException(APIException):
    default_status = 401
    default_code = "AUTH_ERROR"
    default_message = "Authentication failed"


class AuthorizationException(APIException):
    default_status = 403
    default_code = "AUTHORIZATION_ERROR"
    default_message = "Access denied"


class NotFoundException(APIException):
    default_status = 404
    default_code = "NOT_FOUND"
    default_message = "Resource not found"

    def __init__(self, message: Optional[str] = None, resource: Optional[str] = None):
        super().__init__(message, resource=resource)


class ConflictException(APIException):
    """Concurrent update or idempotency clash; the client may retry"""
    default_status = 409
    default_code = "CONFLICT_ERROR"
    default_message = "Resource conflict"


class DatabaseException(APIException):
    default_status = 500
    default_code = "DATABASE_ERROR"
    default_message = "Database error occurred"


class InvalidTransitionException(APIException):
    """A lifecycle operation whose preconditions do not hold for the current status"""
    default_status = 400
    default_code = "INVALID_TRANSITION"
    default_message = "Invalid status transition"

    def __init__(self, message: Optional[str] = None, current_status: Optional[str] = None):
        super().__init__(message, current_status=current_status)


class AlreadyProcessedException(APIException):
    """Every target of the operation is already in its final state"""
    default_status = 409
    default_code = "ALREADY_PROCESSED"
    default_message = "Request already processed"


class DependencyFailureException(APIException):
    """Stock or wallet effect that could not be applied"""
    default_status = 502
    default_code = "DEPENDENCY_FAILURE"
    default_message = "Dependent operation failed"

    def __init__(self, message: Optional[str] = None, dependency: Optional[str] = None):
        super().__init__(message, dependency=dependency)
