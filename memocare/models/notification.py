from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from memocare.models.emergency import EmergencyAlertModel
from memocare.models.reminder import ReminderModel


class EventEnum(str, Enum):
    EMERGENCY_ALERT = "emergency_alert"
    """An emergency alert has been triggered by the owner."""
    REMINDER_DUE = "reminder_due"
    """A reminder of the owner is due."""


class NotificationModel(BaseModel):
    """
    Envelope of the events sent to the owner's connected clients.
    """

    # Immutable fields
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC), frozen=True)
    data: dict[str, Any] = Field(frozen=True)
    event: EventEnum = Field(frozen=True)
    owner_id: str = Field(frozen=True)

    @classmethod
    def reminder_due(cls, reminder: ReminderModel) -> "NotificationModel":
        return cls(
            data=reminder.due_event().model_dump(mode="json"),
            event=EventEnum.REMINDER_DUE,
            owner_id=reminder.owner_id,
        )

    @classmethod
    def emergency_alert(cls, alert: EmergencyAlertModel) -> "NotificationModel":
        return cls(
            data={
                "id": str(alert.alert_id),
                "message": "Emergency alert triggered",
                "sms_results": [
                    result.model_dump(mode="json") for result in alert.sms_results
                ],
                "timestamp": alert.triggered_at.isoformat(),
            },
            event=EventEnum.EMERGENCY_ALERT,
            owner_id=alert.owner_id,
        )
