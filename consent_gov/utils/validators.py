"""
Input Validators for the Consent Governance Engine

Validation utilities for student and service identifiers, requested field
sets, access durations, purposes and enumerated values.
"""

import re
from enum import Enum
from typing import Optional, Any, List, Iterable, Type, TypeVar

from ..exceptions import ValidationError

E = TypeVar("E", bound=Enum)

# =============================================================================
# REGEX PATTERNS
# =============================================================================

STUDENT_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_.:-]{1,100}$")

# =============================================================================
# VALIDATION FUNCTIONS
# =============================================================================

def validate_student_id(
    student_id: Any,
    field_name: str = "student_id",
    required: bool = True
) -> Optional[str]:
    """
    Validate student ID format.

    Args:
        student_id: Student ID to validate
        field_name: Field name for error messages
        required: Whether the field is required

    Returns:
        Validated student ID string or None

    Raises:
        ValidationError: If validation fails
    """
    if student_id is None or (isinstance(student_id, str) and not student_id.strip()):
        if required:
            raise ValidationError(f"{field_name} is required", field=field_name)
        return None

    if not isinstance(student_id, str):
        raise ValidationError(f"{field_name} must be a string", field=field_name)

    student_id = student_id.strip()

    if not STUDENT_ID_PATTERN.match(student_id):
        raise ValidationError(
            f"{field_name} contains invalid characters or is too long",
            field=field_name
        )

    return student_id


def validate_required_id(value: Any, field_name: str) -> str:
    """Validate an opaque record identifier (service, request or grant)"""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required", field=field_name)
    return value.strip()


def validate_field_names(
    fields: Any,
    known_fields: Iterable[str],
    field_name: str = "requested_fields",
    max_count: Optional[int] = None,
    required: bool = True
) -> List[str]:
    """
    Validate a list of data field names against the field catalog.

    Duplicates are dropped; first-seen order is kept.

    Args:
        fields: List of field names to validate
        known_fields: Names present in the field catalog
        field_name: Field name for error messages
        max_count: Maximum number of distinct fields allowed
        required: Whether an empty list is rejected

    Returns:
        List of validated, de-duplicated field names

    Raises:
        ValidationError: If validation fails
    """
    if fields is None:
        if required:
            raise ValidationError(f"{field_name} is required", field=field_name)
        return []

    if isinstance(fields, (str, bytes)) or not isinstance(fields, (list, tuple, set, frozenset)):
        raise ValidationError(f"{field_name} must be a list", field=field_name)

    validated: List[str] = []
    for name in fields:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError(
                f"{field_name} contains an empty or non-string entry",
                field=field_name
            )
        name = name.strip()
        if name not in validated:
            validated.append(name)

    if required and not validated:
        raise ValidationError(
            f"At least one field must be given in {field_name}",
            field=field_name
        )

    if max_count is not None and len(validated) > max_count:
        raise ValidationError(
            f"{field_name} exceeds maximum of {max_count} fields",
            field=field_name,
            details={"count": len(validated), "max_count": max_count}
        )

    known = set(known_fields)
    invalid = [name for name in validated if name not in known]
    if invalid:
        raise ValidationError(
            f"Invalid fields: {', '.join(invalid)}",
            field=field_name,
            details={"invalid_fields": invalid}
        )

    return validated


def validate_field_subset(
    fields: Any,
    allowed: Iterable[str],
    field_name: str
) -> Optional[List[str]]:
    """
    Validate that an optional field list stays within an allowed set.

    Returns None when ``fields`` is None so callers can tell "not given"
    apart from "given but empty".
    """
    if fields is None:
        return None

    if isinstance(fields, (str, bytes)) or not isinstance(fields, (list, tuple, set, frozenset)):
        raise ValidationError(f"{field_name} must be a list", field=field_name)

    allowed_set = set(allowed)
    validated: List[str] = []
    for name in fields:
        if not isinstance(name, str):
            raise ValidationError(
                f"{field_name} contains a non-string entry",
                field=field_name
            )
        if name not in validated:
            validated.append(name)

    outside = [name for name in validated if name not in allowed_set]
    if outside:
        raise ValidationError(
            f"{field_name} must be a subset of the requested fields",
            field=field_name,
            details={"outside_request": outside}
        )

    return validated


def validate_duration_days(
    days: Any,
    field_name: str = "requested_duration",
    required: bool = True,
    min_days: int = 1,
    max_days: int = 365
) -> Optional[int]:
    """
    Validate an access duration in days.

    Args:
        days: Number of days to validate
        field_name: Field name for error messages
        required: Whether the field is required
        min_days: Minimum allowed days
        max_days: Maximum allowed days

    Returns:
        Validated days integer or None

    Raises:
        ValidationError: If validation fails
    """
    if days is None:
        if required:
            raise ValidationError(f"{field_name} is required", field=field_name)
        return None

    if isinstance(days, bool):
        raise ValidationError(f"{field_name} must be an integer", field=field_name)

    if isinstance(days, float):
        if not days.is_integer():
            raise ValidationError(f"{field_name} must be an integer", field=field_name)
        days = int(days)

    try:
        days_int = int(days)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an integer", field=field_name)

    if days_int < min_days or days_int > max_days:
        raise ValidationError(
            f"{field_name} must be between {min_days} and {max_days} days",
            field=field_name,
            details={"value": days_int}
        )

    return days_int


def validate_purpose(
    purpose: Any,
    field_name: str = "purpose",
    min_length: int = 10,
    max_length: int = 1000
) -> str:
    """Validate the free-text purpose of a consent request"""
    if not isinstance(purpose, str) or not purpose.strip():
        raise ValidationError(f"{field_name} is required", field=field_name)

    purpose = purpose.strip()

    if len(purpose) < min_length:
        raise ValidationError(
            f"{field_name} must be at least {min_length} characters",
            field=field_name
        )

    if len(purpose) > max_length:
        raise ValidationError(
            f"{field_name} cannot exceed {max_length} characters",
            field=field_name
        )

    return purpose


def validate_enum(
    value: Any,
    enum_cls: Type[E],
    field_name: str,
    required: bool = True
) -> Optional[E]:
    """
    Coerce a raw value into a member of ``enum_cls``.

    Accepts a member, its value, or its name in any case.

    Raises:
        ValidationError: If the value is not a member of the enumeration
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{field_name} is required", field=field_name)
        return None

    if isinstance(value, enum_cls):
        return value

    if isinstance(value, str):
        raw = value.strip()
        for member in enum_cls:
            if raw.lower() == str(member.value).lower() or raw.upper() == member.name:
                return member

    raise ValidationError(
        f"Invalid {field_name}: '{value}'",
        field=field_name,
        details={"valid_values": [m.value for m in enum_cls]}
    )


def validate_reason(
    reason: Any,
    field_name: str = "reason",
    max_length: int = 500
) -> str:
    """Validate a revocation reason"""
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationError(f"{field_name} is required", field=field_name)

    reason = reason.strip()
    if len(reason) > max_length:
        raise ValidationError(
            f"{field_name} cannot exceed {max_length} characters",
            field=field_name
        )
    return sanitize_audit_message(reason, max_length)


def sanitize_audit_message(message: str, max_length: int = 1000) -> str:
    """
    Sanitize a message for audit logging.

    Args:
        message: Message to sanitize
        max_length: Maximum allowed length

    Returns:
        Sanitized message safe for logging
    """
    if not message:
        return ""

    if len(message) > max_length:
        message = message[:max_length] + "...[truncated]"

    # Remove potential log injection characters
    message = message.replace("\n", " ").replace("\r", " ")

    message = ''.join(c for c in message if c.isprintable() or c == ' ')

    return message
