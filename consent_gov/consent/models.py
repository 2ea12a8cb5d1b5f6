"""
Consent data models
Services, data fields, consent requests, grants, audit entries and the
value objects returned by risk assessment and access checks.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Dict, Any, FrozenSet, Generic, TypeVar
from pydantic import BaseModel, Field, computed_field, field_validator

from ..exceptions import ConflictError
from ..utils.clock import utc_now
from ..utils.ids import (
    generate_service_id,
    generate_request_id,
    generate_grant_id,
    generate_audit_id,
)

T = TypeVar("T")


# =============================================================================
# ENUMERATIONS
# =============================================================================

class RiskCategory(str, Enum):
    """Risk category assigned to a registered service"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskLevel(str, Enum):
    """Risk level derived from a risk score"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DataFieldCategory(str, Enum):
    """Categories of student data fields"""
    CONTACT = "contact"
    ACADEMIC = "academic"
    FINANCIAL = "financial"
    PERSONAL = "personal"
    IDENTITY = "identity"
    BEHAVIORAL = "behavioral"


class ConsentStatus(str, Enum):
    """Consent request status"""
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"
    REVOKED = "revoked"


class GrantState(str, Enum):
    """Lifecycle state of a consent grant"""
    ACTIVE = "active"
    SUPERSEDED = "superseded"
    EXPIRED = "expired"
    REVOKED = "revoked"


class ResponseAction(str, Enum):
    """Student decision on a pending request"""
    APPROVE = "approve"
    DENY = "deny"


class RecommendedAction(str, Enum):
    """Action suggested to the student by the risk engine"""
    APPROVE = "approve"
    REVIEW = "review"
    DENY = "deny"


class RiskFactorCategory(str, Enum):
    """Contributors to a request's risk score"""
    FIELD_SENSITIVITY = "field_sensitivity"
    DURATION = "duration"
    SERVICE_RISK = "service_risk"
    STUDENT_RISK = "student_risk"
    PERMISSION_COUNT = "permission_count"


class RiskEventType(str, Enum):
    """Events handed to the external risk-scoring collaborator"""
    CONSENT_APPROVED = "consent_approved"
    CONSENT_DENIED = "consent_denied"
    CONSENT_REVOKED = "consent_revoked"


class AuditAction(str, Enum):
    """Lifecycle and access events written to the audit trail"""
    REQUEST_CREATED = "request_created"
    REQUEST_APPROVED = "request_approved"
    REQUEST_DENIED = "request_denied"
    REQUEST_MODIFIED = "request_modified"
    GRANT_CREATED = "grant_created"
    GRANT_SUPERSEDED = "grant_superseded"
    GRANT_EXPIRED = "grant_expired"
    GRANT_REVOKED = "grant_revoked"
    ACCESS_ALLOWED = "access_allowed"
    ACCESS_DENIED = "access_denied"
    FIELD_ACCESS_DENIED = "field_access_denied"
    # Fed in by upstream collaborators
    AUTH_DENIED = "auth_denied"
    THREAT_DETECTED = "threat_detected"


# =============================================================================
# STATE TRANSITIONS
# =============================================================================

REQUEST_TRANSITIONS: Dict[ConsentStatus, FrozenSet[ConsentStatus]] = {
    ConsentStatus.PENDING: frozenset({ConsentStatus.APPROVED, ConsentStatus.DENIED}),
    ConsentStatus.APPROVED: frozenset({ConsentStatus.EXPIRED, ConsentStatus.REVOKED}),
    ConsentStatus.DENIED: frozenset(),
    ConsentStatus.EXPIRED: frozenset({ConsentStatus.REVOKED}),
    ConsentStatus.REVOKED: frozenset(),
}

GRANT_TRANSITIONS: Dict[GrantState, FrozenSet[GrantState]] = {
    GrantState.ACTIVE: frozenset({GrantState.SUPERSEDED, GrantState.EXPIRED, GrantState.REVOKED}),
    GrantState.SUPERSEDED: frozenset({GrantState.REVOKED}),
    GrantState.EXPIRED: frozenset({GrantState.REVOKED}),
    GrantState.REVOKED: frozenset(),
}


def request_sources(target: ConsentStatus) -> FrozenSet[ConsentStatus]:
    """Statuses a request may move to ``target`` from"""
    return frozenset(s for s, targets in REQUEST_TRANSITIONS.items() if target in targets)


def grant_sources(target: GrantState) -> FrozenSet[GrantState]:
    """States a grant may move to ``target`` from"""
    return frozenset(s for s, targets in GRANT_TRANSITIONS.items() if target in targets)


def check_request_transition(current: ConsentStatus, target: ConsentStatus) -> None:
    if target not in REQUEST_TRANSITIONS[current]:
        raise ConflictError(
            f"Request has already been {current.value}",
            current_state=current.value,
        )


def check_grant_transition(current: GrantState, target: GrantState) -> None:
    if target not in GRANT_TRANSITIONS[current]:
        if current == GrantState.REVOKED:
            message = "Grant is already revoked"
        else:
            message = f"Grant cannot move from {current.value} to {target.value}"
        raise ConflictError(message, current_state=current.value)


# =============================================================================
# GRANT VALIDITY
# =============================================================================

NO_GRANT_REASON = "No active consent grant found"
GRANT_EXPIRED_REASON = "Consent grant has expired"
GRANT_REVOKED_REASON = "Consent grant has been revoked"


def field_not_approved_reason(field: str) -> str:
    return f"Field '{field}' is not included in approved fields"


def grant_validity_error(grant: "ConsentGrant", now: datetime) -> Optional[str]:
    """
    The single authority on whether a grant currently authorizes access.

    Expiry is checked before revocation so callers can tell a lapsed
    authorization apart from a withdrawn one. A superseded grant reports as
    expired. Returns None when the grant is valid.
    """
    if grant.state in (GrantState.EXPIRED, GrantState.SUPERSEDED) or now > grant.expires_at:
        return GRANT_EXPIRED_REASON
    if grant.state == GrantState.REVOKED:
        return GRANT_REVOKED_REASON
    return None


# =============================================================================
# REFERENCE DATA
# =============================================================================

class DataField(BaseModel):
    """A named student data attribute that services may request"""
    name: str
    label: str
    category: DataFieldCategory
    sensitivity_weight: int = Field(..., ge=0, le=100)
    description: Optional[str] = None

    model_config = {"frozen": True}


class Service(BaseModel):
    """Third-party service registered to request student data"""
    id: str = Field(default_factory=generate_service_id)
    name: str
    description: Optional[str] = None
    risk_category: RiskCategory = Field(default=RiskCategory.MEDIUM)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class RequestContext(BaseModel):
    """Caller details copied onto audit entries"""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


# =============================================================================
# CONSENT REQUEST & GRANT
# =============================================================================

class ConsentRequest(BaseModel):
    """A service's request for access to a student's data"""
    id: str = Field(default_factory=generate_request_id)
    student_id: str
    service_id: str
    requested_fields: List[str]
    purpose: str
    requested_duration: int = Field(..., ge=1)
    risk_score: int = Field(..., ge=0, le=100)
    status: ConsentStatus = Field(default=ConsentStatus.PENDING)

    denied_fields: Optional[List[str]] = None
    approved_duration: Optional[int] = None
    responded_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def is_pending(self) -> bool:
        return self.status == ConsentStatus.PENDING

    def transition(self, target: ConsentStatus, now: Optional[datetime] = None,
                   **changes: Any) -> "ConsentRequest":
        """Return a copy moved to ``target``; raises ConflictError if not allowed"""
        check_request_transition(self.status, target)
        now = now or utc_now()
        return self.model_copy(update={
            **changes,
            "status": target,
            "responded_at": now,
            "updated_at": now,
        })


class ConsentGrant(BaseModel):
    """Time-bounded, field-scoped authorization issued on approval"""
    id: str = Field(default_factory=generate_grant_id)
    student_id: str
    service_id: str
    request_id: str
    approved_fields: List[str]
    expires_at: datetime
    state: GrantState = Field(default=GrantState.ACTIVE)

    revoked_at: Optional[datetime] = None
    revocation_reason: Optional[str] = None
    superseded_by: Optional[str] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @computed_field  # type: ignore[misc]
    @property
    def is_revoked(self) -> bool:
        return self.state == GrantState.REVOKED

    @classmethod
    def for_request(cls, request: ConsentRequest, approved_fields: List[str],
                    duration_days: int, now: Optional[datetime] = None) -> "ConsentGrant":
        now = now or utc_now()
        return cls(
            student_id=request.student_id,
            service_id=request.service_id,
            request_id=request.id,
            approved_fields=list(approved_fields),
            expires_at=now + timedelta(days=duration_days),
            created_at=now,
            updated_at=now,
        )

    def validity_error(self, now: Optional[datetime] = None) -> Optional[str]:
        return grant_validity_error(self, now or utc_now())

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """Check if the grant currently authorizes access"""
        return self.validity_error(now) is None

    def transition(self, target: GrantState, now: Optional[datetime] = None,
                   **changes: Any) -> "ConsentGrant":
        """Return a copy moved to ``target``; raises ConflictError if not allowed"""
        check_grant_transition(self.state, target)
        return self.model_copy(update={
            **changes,
            "state": target,
            "updated_at": now or utc_now(),
        })


class ConsentAuditLog(BaseModel):
    """Append-only audit trail entry"""
    id: str = Field(default_factory=generate_audit_id)
    action: AuditAction
    student_id: str
    service_id: Optional[str] = None
    request_id: Optional[str] = None
    grant_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# RISK ASSESSMENT
# =============================================================================

class RiskFactor(BaseModel):
    """Individual contribution to a risk score"""
    name: str
    category: RiskFactorCategory
    contribution: int
    description: str


class RiskAssessment(BaseModel):
    """Risk assessment of a consent request"""
    risk_score: int = Field(..., ge=0, le=100)
    risk_level: RiskLevel
    factors: List[RiskFactor] = Field(default_factory=list)
    adjustment: int = 0
    recommendations: List[str] = Field(default_factory=list)
    recommended_action: RecommendedAction

    @property
    def base_score(self) -> int:
        return sum(f.contribution for f in self.factors)


class RiskEventMetadata(BaseModel):
    service_id: str
    service_name: str
    request_id: str
    risk_score: int
    fields: List[str]


class RiskEvent(BaseModel):
    """Consent decision forwarded to the external risk-scoring collaborator"""
    type: RiskEventType
    student_id: str
    impact: int
    metadata: RiskEventMetadata
    created_at: datetime = Field(default_factory=utc_now)


class ExplanationInput(BaseModel):
    """Structured request projection consumed by the explanation generator"""
    service_name: str
    service_description: Optional[str] = None
    requested_fields: List[DataField]
    purpose: str
    risk_score: int
    risk_level: RiskLevel
    student_risk_level: Optional[str] = None
    existing_permission_count: int
    recommended_action: RecommendedAction


# =============================================================================
# ACCESS CHECKS
# =============================================================================

class AccessCheckResult(BaseModel):
    """Outcome of a single field access check"""
    allowed: bool
    field: str
    reason: Optional[str] = None
    grant_id: Optional[str] = None
    expires_at: Optional[datetime] = None


class MultiFieldAccessResult(BaseModel):
    """Outcome of checking several fields against one grant"""
    student_id: str
    service_id: str
    all_allowed: bool
    results: List[AccessCheckResult]
    allowed_fields: List[str]
    denied_fields: List[str]


class GrantInfo(BaseModel):
    has_grant: bool
    grant: Optional[ConsentGrant] = None
    is_valid: bool = False
    remaining_seconds: Optional[float] = None


# =============================================================================
# OPERATION RESULTS
# =============================================================================

class ConsentRequestResult(BaseModel):
    request: ConsentRequest
    risk_assessment: RiskAssessment


class ConsentResponseResult(BaseModel):
    request: ConsentRequest
    grant: Optional[ConsentGrant] = None
    superseded_grants: List[ConsentGrant] = Field(default_factory=list)
    risk_event: Optional[RiskEvent] = None


class RevocationResult(BaseModel):
    grant: ConsentGrant
    risk_event: Optional[RiskEvent] = None


class ExpirySweepResult(BaseModel):
    processed: int
    grants: List[ConsentGrant] = Field(default_factory=list)


# =============================================================================
# QUERIES
# =============================================================================

class ConsentRequestFilter(BaseModel):
    """Filter options for listing consent requests"""
    status: Optional[List[ConsentStatus]] = None
    service_id: Optional[str] = None
    min_risk_score: Optional[int] = Field(default=None, ge=0, le=100)
    max_risk_score: Optional[int] = Field(default=None, ge=0, le=100)
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def _wrap_single_status(cls, value: Any) -> Any:
        if value is None or isinstance(value, (list, tuple, set)):
            return value
        return [value]


class PageRequest(BaseModel):
    page: int = 1
    limit: int = 20
    sort_by: str = "created_at"
    sort_order: str = "desc"


class PaginationInfo(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_more: bool


class Page(BaseModel, Generic[T]):
    """One page of a paginated listing"""
    data: List[T]
    pagination: PaginationInfo
