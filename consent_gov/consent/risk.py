"""
Consent risk engine
Deterministic scoring of consent requests from field sensitivity, access
duration, service risk, the student's existing permissions and an optional
student risk signal.
"""

import math
from typing import List, Optional, Iterable
import structlog

from .models import (
    ConsentRequest,
    DataFieldCategory,
    ExplanationInput,
    RecommendedAction,
    RiskAssessment,
    RiskCategory,
    RiskEvent,
    RiskEventMetadata,
    RiskEventType,
    RiskFactor,
    RiskFactorCategory,
    RiskLevel,
    Service,
)
from . import policy
from ..config import GovernanceConfig, get_config

logger = structlog.get_logger(__name__)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


LEVEL_ACTIONS = {
    RiskLevel.LOW: RecommendedAction.APPROVE,
    RiskLevel.MEDIUM: RecommendedAction.REVIEW,
    RiskLevel.HIGH: RecommendedAction.REVIEW,
    RiskLevel.CRITICAL: RecommendedAction.DENY,
}


class RiskEngine:
    """Pure risk scoring; holds only its configured level thresholds"""

    def __init__(self, config: Optional[GovernanceConfig] = None):
        self.config = config or get_config()
        self.threshold_low = self.config.risk_threshold_low
        self.threshold_medium = self.config.risk_threshold_medium
        self.threshold_high = self.config.risk_threshold_high

    def risk_level(self, score: int) -> RiskLevel:
        if score < self.threshold_low:
            return RiskLevel.LOW
        if score < self.threshold_medium:
            return RiskLevel.MEDIUM
        if score < self.threshold_high:
            return RiskLevel.HIGH
        return RiskLevel.CRITICAL

    @staticmethod
    def recommended_action(level: RiskLevel) -> RecommendedAction:
        return LEVEL_ACTIONS[level]

    def assess(self, service: Service, requested_fields: List[str], purpose: str,
               requested_duration: int, student_risk_level: Optional[RiskLevel] = None,
               existing_permission_count: int = 0) -> RiskAssessment:
        """
        Score a consent request from 0 to 100.

        Every factor carries its own contribution and the compound exposure
        adjustment is reported separately, so risk_score always equals the
        clamped sum of factor contributions plus the adjustment.

        Args:
            service: Requesting service
            requested_fields: Catalog field names being requested
            purpose: Stated purpose (not scored)
            requested_duration: Access duration in days
            student_risk_level: Optional external risk signal for the student
            existing_permission_count: Student's currently active grants

        Returns:
            RiskAssessment with factors, level, recommendations and action
        """
        factors: List[RiskFactor] = []

        # Field sensitivity
        sensitivity = policy.calculate_field_sensitivity(requested_fields)
        factors.append(RiskFactor(
            name="Field Sensitivity",
            category=RiskFactorCategory.FIELD_SENSITIVITY,
            contribution=min(policy.FIELD_SENSITIVITY_CAP, sensitivity),
            description=(
                f"{len(requested_fields)} fields requested with total "
                f"sensitivity weight of {sensitivity}"
            ),
        ))

        # Duration
        tier = policy.get_duration_tier(requested_duration)
        factors.append(RiskFactor(
            name="Access Duration",
            category=RiskFactorCategory.DURATION,
            contribution=round_half_up(
                (tier.multiplier - policy.DURATION_BASELINE) * policy.DURATION_SCALE
            ),
            description=(
                f"{tier.label} - {requested_duration} days "
                f"(multiplier: {tier.multiplier}x)"
            ),
        ))

        # Service risk
        service_multiplier = policy.SERVICE_RISK_WEIGHTS[service.risk_category]
        factors.append(RiskFactor(
            name="Service Risk Category",
            category=RiskFactorCategory.SERVICE_RISK,
            contribution=round_half_up((service_multiplier - 1) * policy.SERVICE_RISK_SCALE),
            description=(
                f"Service is {service.risk_category.name} risk "
                f"(multiplier: {service_multiplier}x)"
            ),
        ))

        # Existing permissions
        permission_multiplier = policy.get_permission_count_multiplier(existing_permission_count)
        factors.append(RiskFactor(
            name="Active Permissions",
            category=RiskFactorCategory.PERMISSION_COUNT,
            contribution=round_half_up(
                (permission_multiplier - 1) * policy.PERMISSION_COUNT_SCALE
            ),
            description=(
                f"{existing_permission_count} existing active permissions "
                f"(multiplier: {permission_multiplier}x)"
            ),
        ))

        if student_risk_level is not None:
            factors.append(RiskFactor(
                name="Student Risk Profile",
                category=RiskFactorCategory.STUDENT_RISK,
                contribution=policy.STUDENT_RISK_CONTRIBUTIONS[student_risk_level],
                description=f"Student risk level is {student_risk_level.name}",
            ))

        base_score = sum(f.contribution for f in factors)
        combined = tier.multiplier * service_multiplier * permission_multiplier
        adjustment = 0
        if combined > 1:
            adjusted = round_half_up(base_score * (1 + (combined - 1) * policy.COMPOUND_DAMPING))
            adjustment = adjusted - base_score

        score = max(0, min(100, base_score + adjustment))
        level = self.risk_level(score)

        assessment = RiskAssessment(
            risk_score=score,
            risk_level=level,
            factors=factors,
            adjustment=adjustment,
            recommendations=self._recommendations(
                requested_fields, requested_duration, score, level, service.risk_category
            ),
            recommended_action=self.recommended_action(level),
        )

        logger.info("Risk assessment complete", service_id=service.id,
                    risk_score=score, risk_level=level.value,
                    factor_count=len(factors), adjustment=adjustment)
        return assessment

    def _recommendations(self, fields: List[str], duration: int, score: int,
                         level: RiskLevel, service_category: RiskCategory) -> List[str]:
        recommendations: List[str] = []

        if policy.has_high_sensitivity_field(fields):
            recommendations.append(
                "This request includes highly sensitive data fields. "
                "Review carefully before approving."
            )

        if duration > policy.RECOMMENDED_MAX_DURATION:
            recommendations.append(
                f"Consider reducing access duration from {duration} days to "
                f"{policy.RECOMMENDED_MAX_DURATION} days or less."
            )

        if level == RiskLevel.CRITICAL:
            recommendations.append(
                "CRITICAL RISK: Strongly consider denying this request or "
                "requesting additional justification."
            )
        elif level == RiskLevel.HIGH:
            recommendations.append(
                "HIGH RISK: Review the necessity of each requested field before approval."
            )

        if service_category in (RiskCategory.HIGH, RiskCategory.CRITICAL):
            recommendations.append(
                f"The requesting service is categorized as {service_category.name} risk."
            )

        if policy.fields_in_category(fields, DataFieldCategory.FINANCIAL):
            recommendations.append(
                "Financial information requested. Verify the service genuinely "
                "requires this data."
            )

        if policy.fields_in_category(fields, DataFieldCategory.IDENTITY):
            recommendations.append(
                "Identity documents requested. This may be required for "
                "verification purposes only."
            )

        if score <= policy.LOW_RISK_NOTE_MAX_SCORE:
            recommendations.append(
                "This is a low-risk request and can typically be safely approved."
            )

        return recommendations

    @staticmethod
    def can_auto_approve(risk_score: int, requested_duration: int,
                         requested_fields: Iterable[str]) -> bool:
        """Low score, short duration and no high-sensitivity field"""
        if risk_score > policy.MAX_AUTO_APPROVE_RISK_SCORE:
            return False
        if requested_duration > policy.MAX_AUTO_APPROVE_DURATION:
            return False
        return not policy.has_high_sensitivity_field(requested_fields)

    def build_risk_event(self, event_type: RiskEventType, request: ConsentRequest,
                         service: Service) -> RiskEvent:
        """Translate a consent decision into a risk event for the student's profile"""
        level = self.risk_level(request.risk_score)

        if event_type == RiskEventType.CONSENT_APPROVED:
            if level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
                impact = policy.HIGH_RISK_APPROVAL_IMPACT
            elif level == RiskLevel.MEDIUM:
                impact = policy.MEDIUM_RISK_APPROVAL_IMPACT
            else:
                impact = 0
        elif event_type == RiskEventType.CONSENT_DENIED:
            if level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
                impact = policy.HIGH_RISK_DENIAL_IMPACT
            else:
                impact = policy.LOW_RISK_DENIAL_IMPACT
        else:
            impact = policy.REVOCATION_IMPACT

        logger.info("Risk event created", type=event_type.value,
                    student_id=request.student_id, impact=impact,
                    risk_score=request.risk_score)

        return RiskEvent(
            type=event_type,
            student_id=request.student_id,
            impact=impact,
            metadata=RiskEventMetadata(
                service_id=service.id,
                service_name=service.name,
                request_id=request.id,
                risk_score=request.risk_score,
                fields=list(request.requested_fields),
            ),
        )

    @staticmethod
    def build_explanation_input(request: ConsentRequest, service: Service,
                                assessment: RiskAssessment,
                                existing_permission_count: int,
                                student_risk_level: Optional[RiskLevel] = None) -> ExplanationInput:
        return ExplanationInput(
            service_name=service.name,
            service_description=service.description,
            requested_fields=policy.get_field_definitions(request.requested_fields),
            purpose=request.purpose,
            risk_score=assessment.risk_score,
            risk_level=assessment.risk_level,
            student_risk_level=student_risk_level.value if student_risk_level else None,
            existing_permission_count=existing_permission_count,
            recommended_action=assessment.recommended_action,
        )
