"""Per-property automation settings with immutable defaults."""
import logging
from typing import Any, Dict

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.orm import Session

from reservation_engine.models.domain import PropertyAutomationSettings
from reservation_engine.models.enums import ConfirmationPendingAction, LateCheckoutFeeType
from reservation_engine.services.errors import ValidationError
from reservation_engine.timeutils import parse_clock_time, resolve_timezone, utcnow

logger = logging.getLogger(__name__)


class AutomationSettingsData(BaseModel):
    """
    Validated automation rules for one property.

    Frozen: the defaults instance is shared, and changes go through
    AutomationSettingsService.upsert.
    """
    model_config = ConfigDict(from_attributes=True, frozen=True, extra="forbid")

    timezone: str = "UTC"
    check_in_time: str = "15:00"
    check_out_time: str = "11:00"

    no_show_grace_hours: int = Field(6, ge=0)
    no_show_lookback_days: int = Field(3, ge=1)
    enable_no_show_detection: bool = True

    late_checkout_grace_hours: int = Field(1, ge=0)
    late_checkout_lookback_days: int = Field(2, ge=1)
    late_checkout_fee: float = Field(0, ge=0)
    late_checkout_fee_type: LateCheckoutFeeType = LateCheckoutFeeType.FLAT_RATE
    enable_late_checkout_detection: bool = True

    confirmation_pending_timeout_hours: int = Field(6, ge=1)
    confirmation_pending_action: ConfirmationPendingAction = ConfirmationPendingAction.CANCEL
    enable_confirmation_expiry: bool = True

    audit_log_retention_days: int = Field(90, ge=30)

    @field_validator("check_in_time", "check_out_time")
    @classmethod
    def _valid_clock_time(cls, value: str) -> str:
        parse_clock_time(value)
        return value

    @field_validator("timezone")
    @classmethod
    def _valid_timezone(cls, value: str) -> str:
        resolve_timezone(value)
        return value


DEFAULT_AUTOMATION_SETTINGS = AutomationSettingsData()

SETTINGS_FIELDS = tuple(AutomationSettingsData.model_fields)


class AutomationSettingsService:
    """Reads and writes PropertyAutomationSettings rows."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, property_id: str) -> AutomationSettingsData:
        row = self.db.get(PropertyAutomationSettings, property_id)
        if row is None:
            return DEFAULT_AUTOMATION_SETTINGS
        return AutomationSettingsData.model_validate(row)

    def upsert(self, property_id: str, changes: Dict[str, Any]) -> AutomationSettingsData:
        """
        Create or partially update a property's settings.

        Fields missing from ``changes`` keep their stored value (or the default
        for a new row). The merged result is validated as a whole before
        anything is written.
        """
        current = self.get(property_id)
        try:
            merged = AutomationSettingsData.model_validate({**current.model_dump(), **changes})
        except pydantic.ValidationError as exc:
            raise ValidationError(
                "Invalid automation settings",
                {"errors": [
                    {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                    for err in exc.errors()
                ]}
            ) from exc

        row = self.db.get(PropertyAutomationSettings, property_id)
        if row is None:
            row = PropertyAutomationSettings(property_id=property_id)
            self.db.add(row)
        for name in SETTINGS_FIELDS:
            setattr(row, name, getattr(merged, name))
        row.updated_at = utcnow()
        self.db.commit()

        logger.info(
            "Updated automation settings for property %s: %s",
            property_id, sorted(changes)
        )
        return merged
