"""
Custom Exceptions for the Consent Governance Engine

Provides a unified exception hierarchy for consent requests, grant
lifecycle transitions and audit persistence.

Access denial is not represented here: the access guard returns a
structured result instead of raising.
"""

from typing import Optional, Dict, Any

from .constants import ErrorCodes


class GovernanceError(Exception):
    """
    Base exception for all consent governance errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        error_code: str = "GOVERNANCE_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses"""
        result: Dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# INPUT ERRORS
# =============================================================================

class ValidationError(GovernanceError):
    """Raised when input is malformed or outside the allowed scope"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        if field:
            details["field"] = field
        self.field = field
        super().__init__(message, ErrorCodes.VALIDATION_ERROR, details)


class NotFoundError(GovernanceError):
    """
    Raised when a service, request or grant does not exist, or exists but
    is not owned by the claimed student.
    """

    def __init__(
        self,
        resource: str,
        resource_id: Optional[str] = None,
        message: Optional[str] = None
    ):
        details: Dict[str, Any] = {"resource": resource}
        if resource_id:
            details["resource_id"] = resource_id
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(
            message=message or f"{resource} not found",
            error_code=ErrorCodes.NOT_FOUND,
            details=details
        )


# =============================================================================
# STATE ERRORS
# =============================================================================

class ConflictError(GovernanceError):
    """Raised when a state transition is rejected"""

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        if current_state:
            details["current_state"] = current_state
        self.current_state = current_state
        super().__init__(message, ErrorCodes.CONFLICT, details)


# =============================================================================
# AUDIT ERRORS
# =============================================================================

class AuditFlushError(GovernanceError):
    """Raised by an audit sink when buffered entries could not be persisted"""

    def __init__(
        self,
        message: str = "Failed to persist audit entries",
        entry_count: Optional[int] = None
    ):
        details: Dict[str, Any] = {}
        if entry_count is not None:
            details["entry_count"] = entry_count
        super().__init__(message, ErrorCodes.AUDIT_FLUSH_ERROR, details)
