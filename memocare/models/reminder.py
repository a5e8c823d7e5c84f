from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import UUID, uuid4

from pydantic import (
    AfterValidator,
    AwareDatetime,
    BaseModel,
    BeforeValidator,
    Discriminator,
    Field,
    Tag,
)


class CategoryEnum(str, Enum):
    APPOINTMENT = "appointment"
    MEAL = "meal"
    MEDICATION = "medication"
    TASK = "task"


class RecurrenceKindEnum(str, Enum):
    DAILY = "daily"
    """Every day at a fixed time."""
    HOURLY = "hourly"
    """At the start of every hour."""
    ONCE = "once"
    """A single time, then the reminder is deactivated."""
    WEEKLY = "weekly"
    """Every week on a fixed weekday and time."""


_KNOWN_KINDS = {kind.value for kind in RecurrenceKindEnum}


class OnceRecurrenceModel(BaseModel, frozen=True):
    kind: Literal["once"] = "once"


class HourlyRecurrenceModel(BaseModel, frozen=True):
    kind: Literal["hourly"] = "hourly"


class DailyRecurrenceModel(BaseModel, frozen=True):
    hour: int = Field(ge=0, le=23)
    kind: Literal["daily"] = "daily"
    minute: int = Field(default=0, ge=0, le=59)


class WeeklyRecurrenceModel(BaseModel, frozen=True):
    hour: int = Field(ge=0, le=23)
    kind: Literal["weekly"] = "weekly"
    minute: int = Field(default=0, ge=0, le=59)
    weekday: int = Field(ge=0, le=6)
    """Day of the week, 0 is Monday and 6 is Sunday."""


class UnknownRecurrenceModel(BaseModel, frozen=True):
    """
    Recurrence kind not supported by this version.

    Kept as-is to not lose data, such reminders are re-scheduled the next day.
    """

    kind: str


def _recurrence_tag(value: Any) -> str:
    """
    Select the recurrence model from the "kind" field.

    Unknown kinds are routed to `UnknownRecurrenceModel` instead of failing the validation.
    """
    kind = value.get("kind") if isinstance(value, dict) else getattr(value, "kind", None)
    if kind in _KNOWN_KINDS:
        return kind
    return "unknown"


def _recurrence_from_legacy(value: Any) -> Any:
    """
    Convert a legacy recurrence string to its object form.

    Accepted strings are the schedule names ("once", "custom", "hourly", "daily", "weekly") and the cron expressions the first versions persisted ("0 * * * *", "M H * * *", "M H * * D"). Any other string is kept as an unknown kind.
    """
    if not isinstance(value, str):
        return value

    text = value.strip().lower()
    if text in ("once", "custom"):
        return {"kind": RecurrenceKindEnum.ONCE.value}
    if text in ("hourly", "0 * * * *"):
        return {"kind": RecurrenceKindEnum.HOURLY.value}
    # Schedule names used by the first UI, always at 9:00 AM
    if text == "daily":
        return {"kind": RecurrenceKindEnum.DAILY.value, "hour": 9}
    if text == "weekly":
        return {"kind": RecurrenceKindEnum.WEEKLY.value, "hour": 9, "weekday": 0}

    fields = text.split()
    if (
        len(fields) == 5
        and fields[0].isdigit()
        and fields[1].isdigit()
        and fields[2:4] == ["*", "*"]
    ):
        minute, hour = int(fields[0]), int(fields[1])
        if fields[4] == "*":
            return {
                "hour": hour,
                "kind": RecurrenceKindEnum.DAILY.value,
                "minute": minute,
            }
        if fields[4].isdigit():
            return {
                "hour": hour,
                "kind": RecurrenceKindEnum.WEEKLY.value,
                "minute": minute,
                "weekday": (int(fields[4]) - 1) % 7,  # Cron starts on Sunday, 0 or 7
            }

    return {"kind": text}


RecurrenceModel = Annotated[
    Annotated[
        Union[
            Annotated[DailyRecurrenceModel, Tag(RecurrenceKindEnum.DAILY.value)],
            Annotated[HourlyRecurrenceModel, Tag(RecurrenceKindEnum.HOURLY.value)],
            Annotated[OnceRecurrenceModel, Tag(RecurrenceKindEnum.ONCE.value)],
            Annotated[WeeklyRecurrenceModel, Tag(RecurrenceKindEnum.WEEKLY.value)],
            Annotated[UnknownRecurrenceModel, Tag("unknown")],
        ],
        Discriminator(_recurrence_tag),
    ],
    BeforeValidator(_recurrence_from_legacy),
]


def _to_utc(value: datetime) -> datetime:
    return value.astimezone(UTC)


UtcDatetime = Annotated[AwareDatetime, AfterValidator(_to_utc)]


class ReminderDueModel(BaseModel):
    """
    Event published to the owner when a reminder fires.
    """

    category: CategoryEnum
    id: UUID
    label: str


class ReminderModel(BaseModel):
    # Immutable fields
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC), frozen=True)
    owner_id: str = Field(frozen=True, max_length=64, min_length=1)
    reminder_id: UUID = Field(default_factory=uuid4, frozen=True)
    # Editable fields
    active: bool = True
    category: CategoryEnum
    label: str = Field(max_length=256, min_length=1)
    next_run_at: UtcDatetime
    recurrence: RecurrenceModel

    def due_event(self) -> ReminderDueModel:
        return ReminderDueModel(
            category=self.category,
            id=self.reminder_id,
            label=self.label,
        )


class ReminderCreateModel(BaseModel):
    category: CategoryEnum
    label: str = Field(max_length=256, min_length=1)
    next_run_at: datetime | None = None
    """First trigger, naive values are read in the scheduler timezone. Computed from the recurrence if empty."""
    recurrence: RecurrenceModel


class ReminderUpdateModel(BaseModel):
    active: bool | None = None
    category: CategoryEnum | None = None
    label: str | None = Field(default=None, max_length=256, min_length=1)
    next_run_at: datetime | None = None
    recurrence: RecurrenceModel | None = None
