"""Shared helpers for the consent governance tests."""

from __future__ import annotations

from datetime import datetime, timedelta, UTC
from typing import List, Optional

from consent_gov.config import GovernanceConfig
from consent_gov.consent.models import AuditAction, RiskCategory
from consent_gov.consent.service import ConsentService
from consent_gov.consent.storage import ConsentStorage

PURPOSE = "Personalised course recommendations for next semester"


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2025, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_config(**overrides) -> GovernanceConfig:
    values = {"database_url": "sqlite://", "json_logs": False}
    values.update(overrides)
    return GovernanceConfig(**values)


def make_service(clock: Optional[FakeClock] = None, database_url: str = "sqlite://",
                 **config_overrides) -> ConsentService:
    """Consent service backed by a fresh in-memory database."""
    config = make_config(database_url=database_url, **config_overrides)
    return ConsentService(storage=ConsentStorage(database_url), config=config, clock=clock)


def register(service: ConsentService, name: str = "Course Planner",
             category: RiskCategory = RiskCategory.LOW) -> str:
    return service.register_service(name, description="Plans courses", risk_category=category).id


def audit_actions(service: ConsentService, student_id: str) -> List[AuditAction]:
    """Persisted audit actions for a student; order is not significant."""
    logs = service.list_audit_logs(student_id, limit=100)
    return [log.action for log in logs]
