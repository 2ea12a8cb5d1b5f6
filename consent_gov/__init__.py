"""
Consent Governance Engine
Consent requests, risk scoring, grant lifecycle and field-level access control
for third-party access to student data
"""

__version__ = "0.1.0"

# Core exports
from .config import GovernanceConfig, get_config, update_config
from .exceptions import (
    GovernanceError, ValidationError, NotFoundError, ConflictError, AuditFlushError
)
from .logging_config import configure_logging

# Consent governance (must load before audit)
from .consent import (
    ConsentService, get_consent_service,
    ConsentStorage, RiskEngine, GrantStore, AccessGuard, ConsentRequestManager,
    RiskEventQueue,
    ConsentRequest, ConsentGrant, ConsentStatus, GrantState, Service, DataField,
    RiskCategory, RiskLevel, ResponseAction, AuditAction, RequestContext,
)

# Audit trail
from .audit import AuditEmitter, RedactionPolicy, InMemoryAuditSink

__all__ = [
    # Config
    "GovernanceConfig",
    "get_config",
    "update_config",
    "configure_logging",

    # Errors
    "GovernanceError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "AuditFlushError",

    # Consent
    "ConsentService",
    "get_consent_service",
    "ConsentStorage",
    "RiskEngine",
    "GrantStore",
    "AccessGuard",
    "ConsentRequestManager",
    "RiskEventQueue",
    "ConsentRequest",
    "ConsentGrant",
    "ConsentStatus",
    "GrantState",
    "Service",
    "DataField",
    "RiskCategory",
    "RiskLevel",
    "ResponseAction",
    "AuditAction",
    "RequestContext",

    # Audit
    "AuditEmitter",
    "RedactionPolicy",
    "InMemoryAuditSink",
]
