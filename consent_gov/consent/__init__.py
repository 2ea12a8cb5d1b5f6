"""
Consent governance module
Field-granular, time-bounded consent requests, grants and access checks
"""

from .models import (
    AccessCheckResult,
    AuditAction,
    ConsentAuditLog,
    ConsentGrant,
    ConsentRequest,
    ConsentRequestFilter,
    ConsentStatus,
    DataField,
    DataFieldCategory,
    GrantState,
    MultiFieldAccessResult,
    PageRequest,
    RequestContext,
    ResponseAction,
    RiskAssessment,
    RiskCategory,
    RiskEvent,
    RiskLevel,
    Service,
    grant_validity_error,
)
from .storage import ConsentStorage
from .risk import RiskEngine
from .grants import GrantStore
from .guard import AccessGuard
from .lifecycle import ConsentRequestManager
from .events import RiskEventQueue
from .service import ConsentService, get_consent_service

__all__ = [
    "AccessCheckResult",
    "AuditAction",
    "ConsentAuditLog",
    "ConsentGrant",
    "ConsentRequest",
    "ConsentRequestFilter",
    "ConsentStatus",
    "DataField",
    "DataFieldCategory",
    "GrantState",
    "MultiFieldAccessResult",
    "PageRequest",
    "RequestContext",
    "ResponseAction",
    "RiskAssessment",
    "RiskCategory",
    "RiskEvent",
    "RiskLevel",
    "Service",
    "grant_validity_error",
    "ConsentStorage",
    "RiskEngine",
    "GrantStore",
    "AccessGuard",
    "ConsentRequestManager",
    "RiskEventQueue",
    "ConsentService",
    "get_consent_service",
]
