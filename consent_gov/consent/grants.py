"""
Consent grant store
Issues, supersedes, expires and revokes grants while keeping at most one
active grant per student/service pair.
"""

import threading
from typing import List, Optional, Tuple
import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import (
    AuditAction,
    ConsentGrant,
    ConsentRequest,
    ConsentStatus,
    ExpirySweepResult,
    GrantState,
    RequestContext,
    check_grant_transition,
    grant_validity_error,
    request_sources,
)
from .storage import ConsentStorage
from ..audit.emitter import AuditEmitter
from ..exceptions import ConflictError, NotFoundError
from ..utils.clock import Clock, utc_now
from ..utils.validators import validate_reason, validate_required_id, validate_student_id

logger = structlog.get_logger(__name__)

# Grant states find_active may return; the caller judges expiry and revocation
LOOKUP_STATES = (GrantState.ACTIVE, GrantState.EXPIRED, GrantState.REVOKED)

PAIR_LOCK_STRIPES = 64


class GrantStore:
    """Owner of ConsentGrant persistence and lifecycle"""

    def __init__(self, storage: ConsentStorage, audit: Optional[AuditEmitter] = None,
                 clock: Optional[Clock] = None):
        self.storage = storage
        self.audit = audit
        self.clock = clock or utc_now
        self._pair_locks = tuple(threading.RLock() for _ in range(PAIR_LOCK_STRIPES))

    def pair_lock(self, student_id: str, service_id: str) -> threading.RLock:
        """
        Re-entrant lock serializing grant issuance for one student/service pair.

        Pairs share a fixed pool of striped locks, so unrelated pairs may
        occasionally wait on each other.
        """
        return self._pair_locks[hash((student_id, service_id)) % len(self._pair_locks)]

    def issue(self, request: ConsentRequest, approved_fields: List[str], duration_days: int,
              session: Optional[Session] = None,
              context: Optional[RequestContext] = None) -> Tuple[ConsentGrant, List[ConsentGrant]]:
        """
        Supersede the pair's active grant(s) and insert a new active grant.

        Both writes share one transaction. When ``session`` is given the
        caller owns the commit and must call ``record_issued`` once it has
        committed; otherwise audit entries are recorded here.

        Returns:
            The new grant and the grants it superseded

        Raises:
            ConflictError: If a concurrent writer issued an active grant for
                the same pair first
        """
        now = self.clock()
        grant = ConsentGrant.for_request(request, approved_fields, duration_days, now)

        with self.pair_lock(request.student_id, request.service_id):
            try:
                with self.storage.session_scope(session, "issue_grant") as s:
                    superseded = self.storage.supersede_active_grants(
                        request.student_id, request.service_id,
                        superseded_by=grant.id, now=now, session=s,
                    )
                    self.storage.add_grant(grant, session=s)
            except IntegrityError as e:
                logger.warning("Concurrent grant issuance rejected",
                               student_id=request.student_id,
                               service_id=request.service_id,
                               request_id=request.id)
                raise ConflictError(
                    "An active grant for this student and service was issued concurrently",
                    current_state=GrantState.ACTIVE.value,
                ) from e

        logger.info("Issued consent grant", grant_id=grant.id, request_id=request.id,
                    student_id=grant.student_id, service_id=grant.service_id,
                    superseded=len(superseded), expires_at=grant.expires_at.isoformat())

        if session is None:
            self.record_issued(grant, superseded, context)
        return grant, superseded

    def record_issued(self, grant: ConsentGrant, superseded: List[ConsentGrant],
                      context: Optional[RequestContext] = None) -> None:
        if self.audit is None:
            return
        for old in superseded:
            self.audit.log_event(
                AuditAction.GRANT_SUPERSEDED,
                student_id=old.student_id,
                service_id=old.service_id,
                request_id=old.request_id,
                grant_id=old.id,
                metadata={"superseded_by": grant.id},
                context=context,
            )
        self.audit.log_event(
            AuditAction.GRANT_CREATED,
            student_id=grant.student_id,
            service_id=grant.service_id,
            request_id=grant.request_id,
            grant_id=grant.id,
            metadata={
                "approved_fields": list(grant.approved_fields),
                "expires_at": grant.expires_at.isoformat(),
            },
            context=context,
        )

    def revoke(self, grant_id: str, student_id: str, reason: str) -> ConsentGrant:
        """
        Revoke a grant owned by ``student_id``. Irreversible.

        The originating request moves to REVOKED in the same transaction.

        Raises:
            NotFoundError: If the grant is missing or belongs to another student
            ConflictError: If the grant is already revoked
        """
        grant_id = validate_required_id(grant_id, "grant_id")
        student_id = validate_student_id(student_id)
        reason = validate_reason(reason)

        grant = self.storage.get_grant(grant_id)
        if grant is None or grant.student_id != student_id:
            raise NotFoundError("Consent grant", grant_id)

        check_grant_transition(grant.state, GrantState.REVOKED)

        now = self.clock()
        with self.storage.transaction("revoke_grant") as session:
            if not self.storage.revoke_grant(grant_id, student_id, reason, now, session=session):
                raise ConflictError("Grant is already revoked",
                                    current_state=GrantState.REVOKED.value)
            self.storage.update_request_status(
                grant.request_id, ConsentStatus.REVOKED,
                request_sources(ConsentStatus.REVOKED), now, session=session,
            )

        revoked = grant.transition(GrantState.REVOKED, now,
                                   revoked_at=now, revocation_reason=reason)
        logger.info("Revoked consent grant", grant_id=grant_id, student_id=student_id,
                    previous_state=grant.state.value)
        return revoked

    def process_expired(self) -> ExpirySweepResult:
        """
        Flip every overdue active grant to expired, along with the request
        that produced it.

        Each flip is a compare-and-set, so when sweeps overlap only the one
        that performed the flip records GRANT_EXPIRED.
        """
        now = self.clock()
        expired: List[ConsentGrant] = []

        for grant in self.storage.list_expiry_candidates(now):
            with self.storage.transaction("expire_grant") as session:
                if not self.storage.mark_grant_expired(grant.id, now, session=session):
                    continue
                self.storage.update_request_status(
                    grant.request_id, ConsentStatus.EXPIRED,
                    request_sources(ConsentStatus.EXPIRED), now, session=session,
                )
            flipped = grant.transition(GrantState.EXPIRED, now)
            expired.append(flipped)
            if self.audit is not None:
                self.audit.log_event(
                    AuditAction.GRANT_EXPIRED,
                    student_id=flipped.student_id,
                    service_id=flipped.service_id,
                    request_id=flipped.request_id,
                    grant_id=flipped.id,
                    metadata={"expired_at": flipped.expires_at.isoformat()},
                )

        if expired:
            logger.info("Processed expired grants", processed=len(expired))
        return ExpirySweepResult(processed=len(expired), grants=expired)

    def find_active(self, student_id: str, service_id: str) -> Optional[ConsentGrant]:
        """Newest grant of the pair that has not been superseded"""
        return self.storage.find_latest_grant(student_id, service_id, LOOKUP_STATES)

    def get(self, grant_id: str) -> Optional[ConsentGrant]:
        return self.storage.get_grant(grant_id)

    def list_active(self, student_id: str,
                    session: Optional[Session] = None) -> List[ConsentGrant]:
        """Grants currently authorizing access, newest first"""
        now = self.clock()
        grants = self.storage.list_grants(student_id, [GrantState.ACTIVE], session=session)
        return [g for g in grants if grant_validity_error(g, now) is None]

    def count_active(self, student_id: str, session: Optional[Session] = None) -> int:
        return len(self.list_active(student_id, session=session))

    def list_all(self, student_id: str) -> List[ConsentGrant]:
        return self.storage.list_grants(student_id)
