"""
Consent governance service
Single entry point wiring storage, risk scoring, request lifecycle, grants,
the access guard and the audit trail together.
"""

from typing import Any, Dict, List, Optional, Union
import structlog

from .events import RiskEventQueue
from .grants import GrantStore
from .guard import AccessGuard
from .lifecycle import ConsentRequestManager, StudentRiskLookup
from .models import (
    AccessCheckResult,
    AuditAction,
    ConsentAuditLog,
    ConsentGrant,
    ConsentRequest,
    ConsentRequestFilter,
    ConsentRequestResult,
    ConsentResponseResult,
    DataField,
    ExpirySweepResult,
    ExplanationInput,
    GrantInfo,
    MultiFieldAccessResult,
    Page,
    PageRequest,
    RequestContext,
    ResponseAction,
    RevocationResult,
    RiskCategory,
    RiskEvent,
    RiskEventType,
    Service,
)
from .risk import RiskEngine
from .storage import ConsentStorage
from ..audit.emitter import AuditEmitter
from ..audit.redaction import RedactionPolicy
from ..config import GovernanceConfig, get_config
from ..constants import SERVICE_NAME, SERVICE_VERSION, PaginationDefaults
from ..exceptions import ConflictError, NotFoundError, ValidationError
from ..utils.clock import Clock, utc_now
from ..utils.validators import (
    validate_enum,
    validate_field_names,
    validate_required_id,
    validate_student_id,
)
from . import policy

logger = structlog.get_logger(__name__)

# Actions upstream collaborators may feed into the audit trail
EXTERNAL_AUDIT_ACTIONS = frozenset({AuditAction.AUTH_DENIED, AuditAction.THREAT_DETECTED})

MAX_SERVICE_NAME_LENGTH = 200


class ConsentService:
    """Consent governance operations for the transport layer"""

    def __init__(self, storage: Optional[ConsentStorage] = None,
                 config: Optional[GovernanceConfig] = None,
                 audit: Optional[AuditEmitter] = None,
                 redaction: Optional[RedactionPolicy] = None,
                 clock: Optional[Clock] = None,
                 student_risk_lookup: Optional[StudentRiskLookup] = None):
        self.config = config or get_config()
        self.storage = storage or ConsentStorage(self.config.database_url)
        self.clock = clock or utc_now
        self.audit = audit or AuditEmitter(self.storage, redaction=redaction, config=self.config)

        self.risk_engine = RiskEngine(self.config)
        self.events = RiskEventQueue()
        self.grants = GrantStore(self.storage, self.audit, self.clock)
        self.guard = AccessGuard(self.grants, self.clock)
        self.requests = ConsentRequestManager(
            self.storage,
            self.grants,
            self.risk_engine,
            audit=self.audit,
            events=self.events,
            config=self.config,
            clock=self.clock,
            student_risk_lookup=student_risk_lookup,
        )

    async def start(self) -> None:
        await self.audit.start()
        logger.info("Consent service started", service=SERVICE_NAME, version=SERVICE_VERSION)

    async def stop(self) -> None:
        await self.audit.stop()
        logger.info("Consent service stopped")

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def create_request(self, student_id: str, service_id: str, requested_fields: List[str],
                       purpose: str, requested_duration: int,
                       context: Optional[RequestContext] = None) -> ConsentRequestResult:
        return self.requests.create_request(student_id, service_id, requested_fields,
                                            purpose, requested_duration, context)

    def respond(self, request_id: str, student_id: str, action: Union[ResponseAction, str],
                modified_fields: Optional[List[str]] = None,
                modified_duration: Optional[int] = None,
                denied_fields: Optional[List[str]] = None,
                context: Optional[RequestContext] = None) -> ConsentResponseResult:
        return self.requests.respond(request_id, student_id, action, modified_fields,
                                     modified_duration, denied_fields, context)

    def list_history(self, student_id: str,
                     request_filter: Optional[Union[ConsentRequestFilter, Dict[str, Any]]] = None,
                     pagination: Optional[Union[PageRequest, Dict[str, Any]]] = None
                     ) -> Page[ConsentRequest]:
        return self.requests.list_history(student_id, request_filter, pagination)

    def list_pending(self, student_id: str) -> List[ConsentRequest]:
        return self.requests.list_pending(student_id)

    def get_explanation_input(self, request_id: str,
                              student_id: Optional[str] = None) -> ExplanationInput:
        return self.requests.get_explanation_input(request_id, student_id)

    # -------------------------------------------------------------------------
    # Grants
    # -------------------------------------------------------------------------

    def revoke(self, grant_id: str, student_id: str, reason: str,
               context: Optional[RequestContext] = None) -> RevocationResult:
        """Revoke a grant and report the revocation to audit and risk collaborators"""
        grant = self.grants.revoke(grant_id, student_id, reason)

        self.audit.log_event(
            AuditAction.GRANT_REVOKED,
            student_id=grant.student_id,
            service_id=grant.service_id,
            request_id=grant.request_id,
            grant_id=grant.id,
            metadata={"reason": grant.revocation_reason},
            context=context,
        )

        event: Optional[RiskEvent] = None
        request = self.storage.get_request(grant.request_id)
        service = self.storage.get_service(grant.service_id)
        if request is not None and service is not None:
            event = self.risk_engine.build_risk_event(RiskEventType.CONSENT_REVOKED,
                                                      request, service)
            self.events.push(event)
        else:
            logger.warning("Revoked grant has no origin request or service",
                           grant_id=grant.id, request_id=grant.request_id)

        return RevocationResult(grant=grant, risk_event=event)

    def list_active_grants(self, student_id: str) -> List[ConsentGrant]:
        return self.grants.list_active(validate_student_id(student_id))

    def process_expired(self) -> ExpirySweepResult:
        return self.grants.process_expired()

    def drain_risk_events(self) -> List[RiskEvent]:
        return self.events.drain()

    # -------------------------------------------------------------------------
    # Access checks
    # -------------------------------------------------------------------------

    def check_field_access(self, student_id: str, service_id: str, field: str,
                           context: Optional[RequestContext] = None) -> AccessCheckResult:
        student_id = validate_student_id(student_id)
        service_id = validate_required_id(service_id, "service_id")
        field = validate_required_id(field, "field")

        result = self.guard.check_field_access(student_id, service_id, field)

        if result.allowed:
            action = AuditAction.ACCESS_ALLOWED
        elif result.grant_id is not None:
            action = AuditAction.FIELD_ACCESS_DENIED
        else:
            action = AuditAction.ACCESS_DENIED
        self.audit.log_event(
            action,
            student_id=student_id,
            service_id=service_id,
            grant_id=result.grant_id,
            metadata={"field": field, "reason": result.reason},
            context=context,
        )
        return result

    def check_access(self, student_id: str, service_id: str, field: str,
                     context: Optional[RequestContext] = None) -> bool:
        return self.check_field_access(student_id, service_id, field, context).allowed

    def check_multi_field_access(self, student_id: str, service_id: str, fields: List[str],
                                 context: Optional[RequestContext] = None
                                 ) -> MultiFieldAccessResult:
        student_id = validate_student_id(student_id)
        service_id = validate_required_id(service_id, "service_id")
        if not isinstance(fields, (list, tuple)) or not fields:
            raise ValidationError("fields must be a non-empty list", field="fields")

        result = self.guard.check_multi_field_access(student_id, service_id, list(fields))

        denied_results = [r for r in result.results if not r.allowed]
        grant_id = next((r.grant_id for r in result.results if r.grant_id), None)
        if result.all_allowed:
            action = AuditAction.ACCESS_ALLOWED
        elif grant_id is not None:
            action = AuditAction.FIELD_ACCESS_DENIED
        else:
            action = AuditAction.ACCESS_DENIED
        self.audit.log_event(
            action,
            student_id=student_id,
            service_id=service_id,
            grant_id=grant_id,
            metadata={
                "fields": list(fields),
                "allowed_fields": result.allowed_fields,
                "denied_fields": result.denied_fields,
                "reason": denied_results[0].reason if denied_results else None,
            },
            context=context,
        )
        return result

    def get_accessible_fields(self, student_id: str, service_id: str) -> List[str]:
        return self.guard.get_accessible_fields(student_id, service_id)

    def has_active_grant(self, student_id: str, service_id: str) -> bool:
        return self.guard.has_active_grant(student_id, service_id)

    def get_grant_info(self, student_id: str, service_id: str) -> GrantInfo:
        return self.guard.get_grant_info(student_id, service_id)

    # -------------------------------------------------------------------------
    # Audit trail
    # -------------------------------------------------------------------------

    def list_audit_logs(self, student_id: str,
                        limit: int = PaginationDefaults.LIMIT) -> List[ConsentAuditLog]:
        """Persisted audit entries for a student, newest first"""
        student_id = validate_student_id(student_id)
        if isinstance(limit, bool) or not isinstance(limit, int) \
                or not 1 <= limit <= self.config.max_page_limit:
            raise ValidationError(
                f"limit must be between 1 and {self.config.max_page_limit}", field="limit"
            )
        self.audit.flush()
        return self.storage.list_audit_logs(student_id, limit)

    def record_security_event(self, action: Union[AuditAction, str], student_id: str,
                              metadata: Optional[Dict[str, Any]] = None,
                              context: Optional[RequestContext] = None) -> ConsentAuditLog:
        """Record an authentication or threat event reported by an upstream collaborator"""
        action = validate_enum(action, AuditAction, "action")
        if action not in EXTERNAL_AUDIT_ACTIONS:
            raise ValidationError(f"Action '{action.value}' cannot be recorded externally",
                                  field="action")
        return self.audit.log_event(action, student_id=validate_student_id(student_id),
                                    metadata=metadata, context=context)

    # -------------------------------------------------------------------------
    # Services
    # -------------------------------------------------------------------------

    def register_service(self, name: str, description: Optional[str] = None,
                         risk_category: Optional[Union[RiskCategory, str]] = None) -> Service:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("name is required", field="name")
        name = name.strip()
        if len(name) > MAX_SERVICE_NAME_LENGTH:
            raise ValidationError(
                f"name cannot exceed {MAX_SERVICE_NAME_LENGTH} characters", field="name"
            )

        category = validate_enum(risk_category, RiskCategory, "risk_category",
                                 required=False) or RiskCategory.MEDIUM

        if self.storage.get_service_by_name(name) is not None:
            raise ConflictError("Service with this name already exists",
                                details={"name": name})

        now = self.clock()
        service = Service(name=name, description=description, risk_category=category,
                          created_at=now, updated_at=now)
        return self.storage.add_service(service)

    def list_services(self, active_only: bool = False) -> List[Service]:
        return self.storage.list_services(active_only=active_only)

    def get_service(self, service_id: str) -> Service:
        service_id = validate_required_id(service_id, "service_id")
        service = self.storage.get_service(service_id)
        if service is None:
            raise NotFoundError("Service", service_id)
        return service

    def set_service_active(self, service_id: str, is_active: bool) -> Service:
        service_id = validate_required_id(service_id, "service_id")
        service = self.storage.set_service_active(service_id, bool(is_active), self.clock())
        if service is None:
            raise NotFoundError("Service", service_id)
        logger.info("Service activation changed", service_id=service_id, is_active=is_active)
        return service

    # -------------------------------------------------------------------------
    # Export
    # -------------------------------------------------------------------------

    def export_consent_history(self, student_id: str) -> Dict[str, Any]:
        """Export a student's requests, grants and audit trail for data subject requests"""
        student_id = validate_student_id(student_id)
        self.audit.flush()

        requests = self.storage.list_all_requests(student_id)
        grants = self.grants.list_all(student_id)
        audit_logs = self.storage.list_audit_logs(student_id, limit=10000)

        return {
            "student_id": student_id,
            "export_timestamp": self.clock().isoformat(),
            "requests": [r.model_dump(mode="json") for r in requests],
            "grants": [g.model_dump(mode="json") for g in grants],
            "audit_logs": [a.model_dump(mode="json") for a in audit_logs],
            "field_catalog": [f.model_dump(mode="json") for f in policy.DATA_FIELDS.values()],
        }

    def get_field_catalog(self, field_names: Optional[List[str]] = None) -> List[DataField]:
        if field_names is None:
            return list(policy.DATA_FIELDS.values())
        names = validate_field_names(field_names, policy.get_all_field_names(),
                                     field_name="fields")
        return policy.get_field_definitions(names)


# Global service instance
_consent_service: Optional[ConsentService] = None


def get_consent_service() -> ConsentService:
    """Get the global consent service instance"""
    global _consent_service
    if _consent_service is None:
        _consent_service = ConsentService()
    return _consent_service
