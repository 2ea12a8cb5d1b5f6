"""
Utility functions for the consent governance engine
ID generation, input validation and time helpers
"""

from .ids import (
    generate_service_id,
    generate_request_id,
    generate_grant_id,
    generate_audit_id,
    validate_id,
)
from .clock import utc_now, as_utc
from .validators import (
    validate_student_id,
    validate_required_id,
    validate_field_names,
    validate_field_subset,
    validate_duration_days,
    validate_purpose,
    validate_enum,
    validate_reason,
    sanitize_audit_message,
)

__all__ = [
    # ID generation
    "generate_service_id",
    "generate_request_id",
    "generate_grant_id",
    "generate_audit_id",
    "validate_id",
    # Time
    "utc_now",
    "as_utc",
    # Validators
    "validate_student_id",
    "validate_required_id",
    "validate_field_names",
    "validate_field_subset",
    "validate_duration_days",
    "validate_purpose",
    "validate_enum",
    "validate_reason",
    "sanitize_audit_message",
]
