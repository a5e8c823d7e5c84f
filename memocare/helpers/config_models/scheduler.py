from datetime import tzinfo
from functools import cached_property
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, field_validator
from pytz import UnknownTimeZoneError, timezone as pytz_timezone

if TYPE_CHECKING:
    from memocare.helpers.reminder_scheduler import ReminderScheduler


class SchedulerModel(BaseModel):
    enabled: bool = True
    """Run the reminder loop in the API process."""
    interval_sec: int = Field(default=60, ge=1)
    """Time between two evaluations of the due reminders."""
    timezone: str = "UTC"
    """Wall clock used to compute the next run of recurring reminders."""

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, timezone: str) -> str:
        try:
            pytz_timezone(timezone)
        except UnknownTimeZoneError as e:
            raise ValueError(f'Unknown timezone "{timezone}"') from e
        return timezone

    @cached_property
    def tz(self) -> tzinfo:
        return pytz_timezone(self.timezone)

    @cached_property
    def instance(self) -> "ReminderScheduler":
        from memocare.helpers.config import CONFIG
        from memocare.helpers.reminder_scheduler import ReminderScheduler

        return ReminderScheduler(
            channel=CONFIG.channel.instance,
            interval_sec=self.interval_sec,
            store=CONFIG.database.instance,
            tz=self.tz,
        )
