from datetime import UTC, datetime
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, computed_field


class EmergencyTriggerModel(BaseModel):
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    patient_name: str | None = Field(default=None, max_length=128, min_length=1)

    def location_text(self) -> str | None:
        if self.latitude is None or self.longitude is None:
            return None
        return f"coordinates {self.latitude}, {self.longitude}"


class SmsResultModel(BaseModel):
    contact: str
    error: str | None = None
    success: bool


class EmergencyAlertModel(BaseModel):
    # Immutable fields
    alert_id: UUID = Field(default_factory=uuid4, frozen=True)
    owner_id: str = Field(frozen=True, max_length=64, min_length=1)
    triggered_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC), frozen=True
    )
    # Editable fields
    latitude: float | None = None
    longitude: float | None = None
    resolved_at: datetime | None = None
    """Set when a caregiver acknowledged the alert."""
    sms_results: list[SmsResultModel] = []

    @computed_field
    @property
    def sms_success(self) -> bool:
        """
        True if at least one contact has been reached.
        """
        return any(result.success for result in self.sms_results)


class EmergencyAlertGetModel(EmergencyAlertModel):
    emergency_contacts_count: int
