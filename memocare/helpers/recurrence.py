from datetime import UTC, datetime, timedelta, tzinfo

from memocare.models.reminder import (
    DailyRecurrenceModel,
    HourlyRecurrenceModel,
    OnceRecurrenceModel,
    RecurrenceModel,
    WeeklyRecurrenceModel,
)


def next_run_at(
    recurrence: RecurrenceModel,
    now: datetime,
) -> datetime | None:
    """
    Compute the next trigger of a recurrence, strictly after `now`.

    Computation is done on the wall clock of `now`: a daily reminder at 9:00 stays at 9:00 after a DST change. Naive values stay naive, aware values are returned in the same timezone.

    Rules:
    - Hourly: start of the next hour
    - Daily: today at the time if still to come, else tomorrow
    - Weekly: next occurrence of the weekday at the time, today if still to come, in 7 days if the time already passed today
    - Once: `None`, the reminder is not rescheduled
    - Unknown kind: exactly one day after `now`

    Pure function, never raises for a recurrence it does not know.
    """
    wall = now.replace(tzinfo=None)

    match recurrence:
        case OnceRecurrenceModel():
            return None

        case HourlyRecurrenceModel():
            res = wall.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)

        case DailyRecurrenceModel(hour=hour, minute=minute):
            res = _at(wall, hour, minute)
            if res <= wall:
                res += timedelta(days=1)

        case WeeklyRecurrenceModel(hour=hour, minute=minute, weekday=weekday):
            res = _at(wall, hour, minute) + timedelta(
                days=(weekday - wall.weekday()) % 7
            )
            # Current instant is exclusive, evaluating during the trigger minute schedules next week
            if res <= wall:
                res += timedelta(days=7)

        case _:
            res = wall + timedelta(days=1)

    return localize(res, now.tzinfo)


def _at(wall: datetime, hour: int, minute: int) -> datetime:
    return wall.replace(
        hour=hour,
        microsecond=0,
        minute=minute,
        second=0,
    )


def localize(wall: datetime, tz: tzinfo | None) -> datetime:
    """
    Attach a timezone to a wall clock datetime.

    Zones from `pytz` cannot be attached with `replace`, it would use the LMT offset of the zone.

    Ambiguous or skipped wall times resolve to the later instant, for both `pytz` and `zoneinfo` zones.
    """
    if tz is None:
        return wall
    pytz_localize = getattr(tz, "localize", None)
    if pytz_localize:
        return pytz_localize(wall)
    # Same-zone comparison ignores fold, compare in UTC
    return max(
        wall.replace(fold=0, tzinfo=tz),
        wall.replace(fold=1, tzinfo=tz),
        key=lambda value: value.astimezone(UTC),
    )
