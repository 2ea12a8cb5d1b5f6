"""
Tests for configuration and logging setup
"""

import structlog

from consent_gov.config import GovernanceConfig, get_config, update_config
from consent_gov.logging_config import configure_logging


class TestGovernanceConfig:
    """Test settings loading"""

    def test_defaults(self):
        config = GovernanceConfig()

        assert config.risk_threshold_low == 25
        assert config.risk_threshold_medium == 50
        assert config.risk_threshold_high == 75
        assert config.max_duration_days == 365
        assert config.audit_enabled is True
        assert "password" in config.audit_redacted_fields

    def test_logging_settings(self):
        config = GovernanceConfig()

        assert config.log_level == "INFO"
        assert config.json_logs is True
        assert "debug_mode" not in GovernanceConfig.model_fields

    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("CONSENT_GOV_MAX_DURATION_DAYS", "90")
        monkeypatch.setenv("CONSENT_GOV_AUDIT_ENABLED", "false")

        config = GovernanceConfig()

        assert config.max_duration_days == 90
        assert config.audit_enabled is False

    def test_update_config(self):
        original = get_config().max_page_limit
        try:
            updated = update_config(max_page_limit=50, not_a_setting=True)
            assert updated.max_page_limit == 50
            assert not hasattr(updated, "not_a_setting")
        finally:
            update_config(max_page_limit=original)


class TestLogging:
    """Test structlog configuration"""

    def test_configure_logging(self):
        try:
            configure_logging(level="debug", json_logs=True)
            assert structlog.is_configured()
        finally:
            structlog.reset_defaults()
