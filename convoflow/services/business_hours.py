"""Business-hours gating."""

from datetime import UTC, datetime
from zoneinfo import ZoneInfo

from convoflow.models.settings import WEEKDAYS, BusinessHours


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def is_business_open(schedule: BusinessHours | None, at: datetime | None = None) -> bool:
    """Check whether a tenant is open at a given instant.

    No schedule means always open. A day that is missing or disabled is closed,
    an enabled day without slots is open all day, otherwise the local time must
    fall inside one of the half-open ``[start, end)`` slots.

    Args:
        schedule: Tenant weekly schedule
        at: Instant to check (defaults to now)

    Returns:
        True if open
    """
    if schedule is None:
        return True

    local = (at or datetime.now(UTC)).astimezone(ZoneInfo(schedule.timezone))
    day = schedule.days.get(WEEKDAYS[local.weekday()])

    if day is None or not day.enabled:
        return False

    if not day.slots:
        return True

    current = local.hour * 60 + local.minute
    return any(_minutes(slot.start) <= current < _minutes(slot.end) for slot in day.slots)
