"""
ID generation and validation utilities
Unique identifiers for services, consent requests, grants and audit entries
"""

import uuid
from typing import Optional

from ..constants import IdPrefixes


def _prefixed(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def generate_service_id() -> str:
    """Generate service ID"""
    return _prefixed(IdPrefixes.SERVICE)


def generate_request_id() -> str:
    """Generate consent request ID"""
    return _prefixed(IdPrefixes.REQUEST)


def generate_grant_id() -> str:
    """Generate consent grant ID"""
    return _prefixed(IdPrefixes.GRANT)


def generate_audit_id() -> str:
    """Generate audit entry ID"""
    return _prefixed(IdPrefixes.AUDIT)


def validate_id(id_value: str, expected_prefix: Optional[str] = None) -> bool:
    """Validate ID format"""
    if not id_value or not isinstance(id_value, str):
        return False

    if expected_prefix and not id_value.startswith(f"{expected_prefix}_"):
        return False

    parts = id_value.split("_")
    if len(parts) < 2 or not parts[-1]:
        return False

    return True
