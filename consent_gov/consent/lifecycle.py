"""
Consent request lifecycle
Creation, risk scoring and the student's one-time approve/deny response
"""

import math
from typing import Any, Callable, Dict, List, Optional, Union
import structlog
from pydantic import ValidationError as PydanticValidationError

from . import policy
from .events import RiskEventQueue
from .grants import GrantStore
from .models import (
    AuditAction,
    ConsentRequest,
    ConsentRequestFilter,
    ConsentRequestResult,
    ConsentResponseResult,
    ConsentStatus,
    ExplanationInput,
    Page,
    PageRequest,
    PaginationInfo,
    RequestContext,
    ResponseAction,
    RiskEventType,
    RiskLevel,
    Service,
    check_request_transition,
)
from .risk import RiskEngine
from .storage import ConsentStorage
from ..audit.emitter import AuditEmitter
from ..config import GovernanceConfig, get_config
from ..constants import PaginationDefaults
from ..exceptions import ConflictError, NotFoundError, ValidationError
from ..utils.clock import Clock, utc_now
from ..utils.validators import (
    validate_duration_days,
    validate_enum,
    validate_field_names,
    validate_field_subset,
    validate_purpose,
    validate_required_id,
    validate_student_id,
)

logger = structlog.get_logger(__name__)

# Returns the student's current risk level from the external risk profile, if known
StudentRiskLookup = Callable[[str], Optional[Union[RiskLevel, str]]]


class ConsentRequestManager:
    """Owner of ConsentRequest: PENDING -> APPROVED | DENIED"""

    def __init__(self, storage: ConsentStorage, grants: GrantStore, risk_engine: RiskEngine,
                 audit: Optional[AuditEmitter] = None, events: Optional[RiskEventQueue] = None,
                 config: Optional[GovernanceConfig] = None, clock: Optional[Clock] = None,
                 student_risk_lookup: Optional[StudentRiskLookup] = None):
        self.storage = storage
        self.grants = grants
        self.risk_engine = risk_engine
        self.audit = audit
        self.events = events if events is not None else RiskEventQueue()
        self.config = config or get_config()
        self.clock = clock or utc_now
        self.student_risk_lookup = student_risk_lookup

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _audit(self, action: AuditAction, request: ConsentRequest,
               metadata: Dict[str, Any], context: Optional[RequestContext] = None,
               grant_id: Optional[str] = None) -> None:
        if self.audit is None:
            return
        self.audit.log_event(
            action,
            student_id=request.student_id,
            service_id=request.service_id,
            request_id=request.id,
            grant_id=grant_id,
            metadata=metadata,
            context=context,
        )

    def _student_risk(self, student_id: str) -> Optional[RiskLevel]:
        if self.student_risk_lookup is None:
            return None
        value = self.student_risk_lookup(student_id)
        try:
            return validate_enum(value, RiskLevel, "student_risk_level", required=False)
        except ValidationError:
            logger.warning("Unknown student risk level ignored",
                           student_id=student_id, value=str(value))
            return None

    def _require_service(self, service_id: str, require_active: bool = False) -> Service:
        service = self.storage.get_service(service_id)
        if service is None:
            raise NotFoundError("Service", service_id)
        if require_active and not service.is_active:
            raise NotFoundError("Service", service_id, message="Service not found or inactive")
        return service

    def _owned_request(self, request_id: str, student_id: Optional[str]) -> ConsentRequest:
        request = self.storage.get_request(request_id)
        if request is None or (student_id is not None and request.student_id != student_id):
            raise NotFoundError("Consent request", request_id)
        return request

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_request(self, student_id: str, service_id: str, requested_fields: List[str],
                       purpose: str, requested_duration: int,
                       context: Optional[RequestContext] = None) -> ConsentRequestResult:
        """
        Validate, score and persist a new PENDING consent request.

        Raises:
            ValidationError: If any input is malformed or out of range
            NotFoundError: If the service is unknown or inactive
            ConflictError: If the pair already has a pending request
        """
        student_id = validate_student_id(student_id)
        service_id = validate_required_id(service_id, "service_id")
        service = self._require_service(service_id, require_active=True)

        fields = validate_field_names(
            requested_fields,
            policy.get_all_field_names(),
            max_count=self.config.max_requested_fields,
        )
        duration = validate_duration_days(
            requested_duration,
            min_days=self.config.min_duration_days,
            max_days=self.config.max_duration_days,
        )
        purpose = validate_purpose(
            purpose,
            min_length=self.config.min_purpose_length,
            max_length=self.config.max_purpose_length,
        )

        pending = self.storage.find_pending_request(student_id, service_id)
        if pending is not None:
            raise ConflictError(
                "A pending consent request already exists for this service",
                current_state=ConsentStatus.PENDING.value,
                details={"request_id": pending.id},
            )

        student_risk = self._student_risk(student_id)
        permission_count = self.grants.count_active(student_id)
        assessment = self.risk_engine.assess(
            service, fields, purpose, duration,
            student_risk_level=student_risk,
            existing_permission_count=permission_count,
        )

        now = self.clock()
        request = ConsentRequest(
            student_id=student_id,
            service_id=service_id,
            requested_fields=fields,
            purpose=purpose,
            requested_duration=duration,
            risk_score=assessment.risk_score,
            created_at=now,
            updated_at=now,
        )
        self.storage.add_request(request)

        self._audit(AuditAction.REQUEST_CREATED, request, {
            "requested_fields": fields,
            "requested_duration": duration,
            "risk_score": assessment.risk_score,
            "risk_level": assessment.risk_level.value,
            "recommended_action": assessment.recommended_action.value,
        }, context)

        logger.info("Consent request created", request_id=request.id,
                    student_id=student_id, service_id=service_id,
                    risk_score=assessment.risk_score, risk_level=assessment.risk_level.value)

        return ConsentRequestResult(request=request, risk_assessment=assessment)

    # -------------------------------------------------------------------------
    # Response
    # -------------------------------------------------------------------------

    def respond(self, request_id: str, student_id: str, action: Union[ResponseAction, str],
                modified_fields: Optional[List[str]] = None,
                modified_duration: Optional[int] = None,
                denied_fields: Optional[List[str]] = None,
                context: Optional[RequestContext] = None) -> ConsentResponseResult:
        """
        Apply the student's decision to a pending request.

        Raises:
            NotFoundError: If the request is missing or owned by another student
            ConflictError: If the request is no longer pending
            ValidationError: If the action or the field/duration changes are invalid
        """
        request_id = validate_required_id(request_id, "request_id")
        student_id = validate_student_id(student_id)
        action = validate_enum(action, ResponseAction, "action")

        request = self._owned_request(request_id, student_id)
        target = ConsentStatus.APPROVED if action == ResponseAction.APPROVE else ConsentStatus.DENIED
        check_request_transition(request.status, target)

        service = self._require_service(request.service_id)

        if action == ResponseAction.APPROVE:
            return self._approve(request, service, modified_fields, modified_duration,
                                 denied_fields, context)
        return self._deny(request, service, denied_fields, context)

    def _approve(self, request: ConsentRequest, service: Service,
                 modified_fields: Optional[List[str]], modified_duration: Optional[int],
                 denied_fields: Optional[List[str]],
                 context: Optional[RequestContext]) -> ConsentResponseResult:
        modified = validate_field_subset(modified_fields, request.requested_fields, "modified_fields")
        denied = validate_field_subset(denied_fields, request.requested_fields, "denied_fields")

        approved = [
            f for f in request.requested_fields
            if (denied is None or f not in denied) and (modified is None or f in modified)
        ]
        if not approved:
            raise ValidationError(
                "At least one requested field must remain approved",
                field="modified_fields" if modified is not None else "denied_fields",
            )

        duration = validate_duration_days(
            modified_duration,
            field_name="modified_duration",
            required=False,
            min_days=self.config.min_duration_days,
            max_days=self.config.max_duration_days,
        ) or request.requested_duration

        excluded = [f for f in request.requested_fields if f not in approved]
        updated = request.transition(
            ConsentStatus.APPROVED,
            self.clock(),
            denied_fields=excluded or None,
            approved_duration=duration,
        )

        with self.grants.pair_lock(request.student_id, request.service_id):
            with self.storage.transaction("approve_request") as session:
                if not self.storage.update_request_response(
                        updated, ConsentStatus.PENDING, session=session):
                    current = self.storage.get_request(request.id, session=session)
                    raise ConflictError("Request is no longer pending",
                                        current_state=current.status.value)
                grant, superseded = self.grants.issue(updated, approved, duration,
                                                      session=session)

        self.grants.record_issued(grant, superseded, context)
        self._audit(AuditAction.REQUEST_APPROVED, updated, {
            "approved_fields": approved,
            "approved_duration": duration,
        }, context, grant_id=grant.id)

        if excluded or duration != request.requested_duration:
            self._audit(AuditAction.REQUEST_MODIFIED, updated, {
                "requested_fields": list(request.requested_fields),
                "approved_fields": approved,
                "denied_fields": excluded,
                "requested_duration": request.requested_duration,
                "approved_duration": duration,
            }, context, grant_id=grant.id)

        event = self.risk_engine.build_risk_event(RiskEventType.CONSENT_APPROVED, updated, service)
        self.events.push(event)

        logger.info("Consent request approved", request_id=updated.id,
                    student_id=updated.student_id, grant_id=grant.id,
                    approved_fields=len(approved), approved_duration=duration)

        return ConsentResponseResult(request=updated, grant=grant,
                                     superseded_grants=superseded, risk_event=event)

    def _deny(self, request: ConsentRequest, service: Service,
              denied_fields: Optional[List[str]],
              context: Optional[RequestContext]) -> ConsentResponseResult:
        denied = validate_field_subset(denied_fields, request.requested_fields, "denied_fields")
        final_denied = denied if denied else list(request.requested_fields)

        updated = request.transition(ConsentStatus.DENIED, self.clock(),
                                     denied_fields=final_denied)
        if not self.storage.update_request_response(updated, ConsentStatus.PENDING):
            current = self.storage.get_request(request.id)
            raise ConflictError("Request is no longer pending",
                                current_state=current.status.value)

        self._audit(AuditAction.REQUEST_DENIED, updated, {
            "denied_fields": final_denied,
        }, context)

        event = self.risk_engine.build_risk_event(RiskEventType.CONSENT_DENIED, updated, service)
        self.events.push(event)

        logger.info("Consent request denied", request_id=updated.id,
                    student_id=updated.student_id, service_id=updated.service_id)

        return ConsentResponseResult(request=updated, risk_event=event)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_request(self, request_id: str, student_id: Optional[str] = None) -> ConsentRequest:
        return self._owned_request(validate_required_id(request_id, "request_id"), student_id)

    def list_pending(self, student_id: str) -> List[ConsentRequest]:
        student_id = validate_student_id(student_id)
        return self.storage.list_requests_by_status(student_id, ConsentStatus.PENDING)

    def list_history(self, student_id: str,
                     request_filter: Optional[Union[ConsentRequestFilter, Dict[str, Any]]] = None,
                     pagination: Optional[Union[PageRequest, Dict[str, Any]]] = None
                     ) -> Page[ConsentRequest]:
        """Filtered, paginated request history for one student"""
        student_id = validate_student_id(student_id)
        request_filter = self._normalize_filter(request_filter)
        page = self._normalize_page(pagination)

        rows, total = self.storage.list_requests(student_id, request_filter, page)
        total_pages = math.ceil(total / page.limit) if total else 0

        return Page[ConsentRequest](
            data=rows,
            pagination=PaginationInfo(
                page=page.page,
                limit=page.limit,
                total=total,
                total_pages=total_pages,
                has_more=page.page * page.limit < total,
            ),
        )

    def _normalize_filter(self, request_filter: Any) -> ConsentRequestFilter:
        if request_filter is None:
            return ConsentRequestFilter()
        if isinstance(request_filter, dict):
            try:
                request_filter = ConsentRequestFilter(**request_filter)
            except PydanticValidationError as e:
                raise ValidationError("Invalid history filter", field="filter",
                                      details={"errors": str(e)}) from e
        if not isinstance(request_filter, ConsentRequestFilter):
            raise ValidationError("Invalid history filter", field="filter")

        if (request_filter.min_risk_score is not None
                and request_filter.max_risk_score is not None
                and request_filter.min_risk_score > request_filter.max_risk_score):
            raise ValidationError("min_risk_score cannot exceed max_risk_score",
                                  field="min_risk_score")
        return request_filter

    def _normalize_page(self, pagination: Any) -> PageRequest:
        if pagination is None:
            return PageRequest(limit=self.config.default_page_limit)
        if isinstance(pagination, dict):
            pagination = {"limit": self.config.default_page_limit, **pagination}
            try:
                pagination = PageRequest(**pagination)
            except PydanticValidationError as e:
                raise ValidationError("Invalid pagination", field="pagination",
                                      details={"errors": str(e)}) from e
        if not isinstance(pagination, PageRequest):
            raise ValidationError("Invalid pagination", field="pagination")

        if pagination.page < 1:
            raise ValidationError("page must be at least 1", field="page")
        if not 1 <= pagination.limit <= self.config.max_page_limit:
            raise ValidationError(
                f"limit must be between 1 and {self.config.max_page_limit}", field="limit"
            )
        if pagination.sort_by not in PaginationDefaults.SORTABLE_REQUEST_COLUMNS:
            raise ValidationError(
                f"Invalid sort_by: '{pagination.sort_by}'",
                field="sort_by",
                details={"valid_values": list(PaginationDefaults.SORTABLE_REQUEST_COLUMNS)},
            )
        sort_order = pagination.sort_order.lower() if isinstance(pagination.sort_order, str) else ""
        if sort_order not in ("asc", "desc"):
            raise ValidationError("sort_order must be 'asc' or 'desc'", field="sort_order")
        return pagination.model_copy(update={"sort_order": sort_order})

    def get_explanation_input(self, request_id: str,
                              student_id: Optional[str] = None) -> ExplanationInput:
        """
        Project a request into the shape consumed by the explanation
        generator. The assessment is recomputed against the student's
        current active grants.
        """
        request = self.get_request(request_id, student_id)
        service = self._require_service(request.service_id)

        student_risk = self._student_risk(request.student_id)
        permission_count = self.grants.count_active(request.student_id)
        assessment = self.risk_engine.assess(
            service, request.requested_fields, request.purpose, request.requested_duration,
            student_risk_level=student_risk,
            existing_permission_count=permission_count,
        )
        return self.risk_engine.build_explanation_input(
            request, service, assessment, permission_count, student_risk
        )
