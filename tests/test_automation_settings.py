"""
Tests for per-property automation settings.
"""
import pydantic
import pytest

from reservation_engine.models.domain import PropertyAutomationSettings
from reservation_engine.models.enums import ConfirmationPendingAction, LateCheckoutFeeType
from reservation_engine.services.automation_settings import (
    DEFAULT_AUTOMATION_SETTINGS,
    AutomationSettingsService,
)
from reservation_engine.services.errors import ValidationError


class TestDefaults:
    def test_unknown_property_gets_defaults(self, db_session):
        settings = AutomationSettingsService(db_session).get("prop-new")

        assert settings == DEFAULT_AUTOMATION_SETTINGS
        assert settings.check_in_time == "15:00"
        assert settings.check_out_time == "11:00"
        assert settings.no_show_grace_hours == 6
        assert settings.no_show_lookback_days == 3
        assert settings.late_checkout_grace_hours == 1
        assert settings.late_checkout_lookback_days == 2
        assert settings.late_checkout_fee == 0
        assert settings.late_checkout_fee_type == LateCheckoutFeeType.FLAT_RATE
        assert settings.confirmation_pending_timeout_hours == 6
        assert settings.confirmation_pending_action == ConfirmationPendingAction.CANCEL
        assert settings.audit_log_retention_days == 90

    def test_defaults_are_immutable(self):
        """
        INVARIANT: The shared defaults cannot be modified in place.
        """
        with pytest.raises(pydantic.ValidationError):
            DEFAULT_AUTOMATION_SETTINGS.no_show_grace_hours = 1

        assert DEFAULT_AUTOMATION_SETTINGS.no_show_grace_hours == 6

    def test_reading_defaults_writes_nothing(self, db_session):
        AutomationSettingsService(db_session).get("prop-new")

        assert db_session.query(PropertyAutomationSettings).count() == 0


class TestUpsert:
    def test_create_then_partial_update(self, db_session):
        service = AutomationSettingsService(db_session)

        service.upsert("prop-1", {"no_show_grace_hours": 4, "timezone": "Europe/Lisbon"})
        updated = service.upsert("prop-1", {"late_checkout_fee": 2500})

        assert updated.no_show_grace_hours == 4
        assert updated.timezone == "Europe/Lisbon"
        assert updated.late_checkout_fee == 2500
        assert service.get("prop-1") == updated
        assert db_session.query(PropertyAutomationSettings).count() == 1

    @pytest.mark.parametrize("changes", [
        {"no_show_grace_hours": -1},
        {"no_show_lookback_days": 0},
        {"late_checkout_fee": -5},
        {"confirmation_pending_timeout_hours": 0},
        {"audit_log_retention_days": 7},
        {"check_in_time": "3pm"},
        {"check_out_time": "25:00"},
        {"timezone": "Nowhere/Special"},
        {"late_checkout_fee_type": "PER_MINUTE"},
        {"unknown_setting": True},
    ])
    def test_invalid_values_rejected(self, db_session, changes):
        service = AutomationSettingsService(db_session)

        with pytest.raises(ValidationError) as exc_info:
            service.upsert("prop-1", changes)

        assert exc_info.value.details["errors"]
        assert db_session.query(PropertyAutomationSettings).count() == 0

    def test_failed_update_keeps_stored_values(self, db_session):
        service = AutomationSettingsService(db_session)
        service.upsert("prop-1", {"no_show_grace_hours": 4})

        with pytest.raises(ValidationError):
            service.upsert("prop-1", {"no_show_grace_hours": 2, "audit_log_retention_days": 1})

        assert service.get("prop-1").no_show_grace_hours == 4
