"""
Constants for the Consent Governance Engine

Centralized identifiers, error codes and pagination bounds.
"""

from typing import Final, Tuple

# =============================================================================
# SERVICE IDENTIFICATION
# =============================================================================

SERVICE_NAME: Final[str] = "consent-governance"
SERVICE_VERSION: Final[str] = "0.1.0"

# =============================================================================
# ID PREFIXES
# =============================================================================

class IdPrefixes:
    """Prefixes for generated record identifiers"""
    SERVICE: Final[str] = "svc"
    REQUEST: Final[str] = "req"
    GRANT: Final[str] = "grant"
    AUDIT: Final[str] = "audit"


# =============================================================================
# REDACTION
# =============================================================================

REDACTED_VALUE: Final[str] = "[REDACTED]"

DEFAULT_REDACTED_FIELDS: Final[Tuple[str, ...]] = (
    "password",
    "token",
    "secret",
    "apiKey",
    "authorization",
    "cookie",
    "ssn",
    "creditCard",
    "cvv",
)


# =============================================================================
# PAGINATION
# =============================================================================

class PaginationDefaults:
    """Default pagination parameters for list operations"""
    PAGE: Final[int] = 1
    LIMIT: Final[int] = 20
    MAX_LIMIT: Final[int] = 100
    SORT_BY: Final[str] = "created_at"
    SORT_ORDER: Final[str] = "desc"

    SORTABLE_REQUEST_COLUMNS: Final[Tuple[str, ...]] = (
        "created_at", "updated_at", "risk_score", "requested_duration"
    )


# =============================================================================
# ERROR CODES
# =============================================================================

class ErrorCodes:
    """Standardized error codes surfaced to callers"""
    VALIDATION_ERROR: Final[str] = "VALIDATION_ERROR"
    NOT_FOUND: Final[str] = "NOT_FOUND"
    CONFLICT: Final[str] = "CONFLICT"
    AUDIT_FLUSH_ERROR: Final[str] = "AUDIT_FLUSH_ERROR"
