"""
Governance configuration management
Risk thresholds, request limits, audit and persistence settings
"""

from typing import List
from pydantic_settings import BaseSettings
from pydantic import Field

from .constants import DEFAULT_REDACTED_FIELDS, PaginationDefaults


class GovernanceConfig(BaseSettings):
    """Consent governance configuration settings"""

    # Persistence
    database_url: str = Field(default="sqlite:///consent_gov.db")

    # Consent request limits
    max_requested_fields: int = Field(default=50, description="Maximum fields per request")
    min_purpose_length: int = Field(default=10)
    max_purpose_length: int = Field(default=1000)
    min_duration_days: int = Field(default=1)
    max_duration_days: int = Field(default=365)

    # Risk level cut-points: score < low is LOW, < medium is MEDIUM,
    # < high is HIGH, anything else CRITICAL
    risk_threshold_low: int = Field(default=25)
    risk_threshold_medium: int = Field(default=50)
    risk_threshold_high: int = Field(default=75)

    # Audit trail
    audit_enabled: bool = Field(default=True)
    audit_flush_interval_seconds: float = Field(default=5.0, gt=0)
    audit_redacted_fields: List[str] = Field(
        default_factory=lambda: list(DEFAULT_REDACTED_FIELDS)
    )

    # Pagination
    default_page_limit: int = Field(default=PaginationDefaults.LIMIT)
    max_page_limit: int = Field(default=PaginationDefaults.MAX_LIMIT)

    # Logging
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=True)

    model_config = {"env_prefix": "CONSENT_GOV_", "case_sensitive": False}


# Global configuration instance
governance_config = GovernanceConfig()


def get_config() -> GovernanceConfig:
    """Get the global governance configuration instance"""
    return governance_config


def update_config(**kwargs) -> GovernanceConfig:
    """Update governance configuration with new values"""
    global governance_config
    for key, value in kwargs.items():
        if hasattr(governance_config, key):
            setattr(governance_config, key, value)
    return governance_config
