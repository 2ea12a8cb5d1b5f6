"""
Field-level access guard
Read-side authorization consulted before any student data is disclosed.
Denial is reported as a result, never raised.
"""

from typing import List, Optional, Tuple

from .grants import GrantStore
from .models import (
    AccessCheckResult,
    ConsentGrant,
    GrantInfo,
    MultiFieldAccessResult,
    NO_GRANT_REASON,
    field_not_approved_reason,
    grant_validity_error,
)
from ..utils.clock import Clock, utc_now


class AccessGuard:
    """Stateless checks built from GrantStore.find_active and grant validity"""

    def __init__(self, grants: GrantStore, clock: Optional[Clock] = None):
        self.grants = grants
        self.clock = clock or utc_now

    def _resolve(self, student_id: str,
                 service_id: str) -> Tuple[Optional[ConsentGrant], Optional[str]]:
        grant = self.grants.find_active(student_id, service_id)
        if grant is None:
            return None, NO_GRANT_REASON
        return grant, grant_validity_error(grant, self.clock())

    def check_field_access(self, student_id: str, service_id: str,
                           field: str) -> AccessCheckResult:
        """
        Check whether ``service_id`` may read ``field`` for ``student_id``.

        The first failing check decides the reason: missing grant, expiry,
        revocation, then field membership.
        """
        grant, error = self._resolve(student_id, service_id)
        if error is not None:
            return AccessCheckResult(allowed=False, field=field, reason=error)

        if field not in grant.approved_fields:
            return AccessCheckResult(
                allowed=False,
                field=field,
                reason=field_not_approved_reason(field),
                grant_id=grant.id,
            )

        return AccessCheckResult(
            allowed=True,
            field=field,
            grant_id=grant.id,
            expires_at=grant.expires_at,
        )

    def check_access(self, student_id: str, service_id: str, field: str) -> bool:
        return self.check_field_access(student_id, service_id, field).allowed

    def check_multi_field_access(self, student_id: str, service_id: str,
                                 fields: List[str]) -> MultiFieldAccessResult:
        grant, error = self._resolve(student_id, service_id)

        results: List[AccessCheckResult] = []
        for field in fields:
            if error is not None:
                results.append(AccessCheckResult(allowed=False, field=field, reason=error))
            elif field not in grant.approved_fields:
                results.append(AccessCheckResult(
                    allowed=False,
                    field=field,
                    reason=field_not_approved_reason(field),
                    grant_id=grant.id,
                ))
            else:
                results.append(AccessCheckResult(
                    allowed=True,
                    field=field,
                    grant_id=grant.id,
                    expires_at=grant.expires_at,
                ))

        allowed = [r.field for r in results if r.allowed]
        denied = [r.field for r in results if not r.allowed]
        return MultiFieldAccessResult(
            student_id=student_id,
            service_id=service_id,
            all_allowed=not denied,
            results=results,
            allowed_fields=allowed,
            denied_fields=denied,
        )

    def get_accessible_fields(self, student_id: str, service_id: str) -> List[str]:
        grant, error = self._resolve(student_id, service_id)
        if error is not None:
            return []
        return list(grant.approved_fields)

    def has_active_grant(self, student_id: str, service_id: str) -> bool:
        _, error = self._resolve(student_id, service_id)
        return error is None

    def get_grant_info(self, student_id: str, service_id: str) -> GrantInfo:
        grant = self.grants.find_active(student_id, service_id)
        if grant is None:
            return GrantInfo(has_grant=False)

        now = self.clock()
        is_valid = grant_validity_error(grant, now) is None
        remaining = max(0.0, (grant.expires_at - now).total_seconds()) if is_valid else 0.0
        return GrantInfo(
            has_grant=True,
            grant=grant,
            is_valid=is_valid,
            remaining_seconds=remaining,
        )
