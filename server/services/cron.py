"""Cron expression parsing on top of APScheduler's CronTrigger.

Expressions use the standard crontab layout (minute hour day month weekday),
optionally preceded by a seconds field, or one of the @-nicknames
(@hourly, @daily, ...). They are always evaluated in UTC.

APScheduler numbers weekdays from Monday (0) while crontab numbers them from
Sunday (0 or 7), so the weekday field is rewritten into day names before it
reaches the trigger.
"""

from datetime import datetime, timezone
from typing import Optional, Set

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger

from core.exceptions import InvalidCronError

SCHEDULE_TIMEZONE = "UTC"

# Crontab order: index == crontab weekday number
_CRONTAB_DAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")

_NICKNAMES = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}


def _weekday_number(token: str) -> int:
    """Crontab weekday token -> 0..7 (7 is Sunday again)."""
    token = token.strip().lower()
    if token.isdigit():
        value = int(token)
        if not 0 <= value <= 7:
            raise ValueError(f"weekday out of range: {token}")
        return value
    if token in _CRONTAB_DAYS:
        return _CRONTAB_DAYS.index(token)
    raise ValueError(f"unknown weekday: {token}")


def translate_day_of_week(field: str) -> str:
    """Rewrite a crontab weekday field into APScheduler weekday names."""
    field = field.strip()
    if field in ("*", "?"):
        return "*"

    days: Set[int] = set()
    for term in field.split(","):
        span, _, step_text = term.partition("/")
        step = 1
        if step_text:
            if not step_text.isdigit() or int(step_text) < 1:
                raise ValueError(f"invalid step: {term}")
            step = int(step_text)

        if span in ("*", "?"):
            start, end = 0, 6
        elif "-" in span:
            first, last = span.split("-", 1)
            start, end = _weekday_number(first), _weekday_number(last)
            if start > end:
                raise ValueError(f"descending weekday range: {term}")
        elif span:
            start = _weekday_number(span)
            end = 6 if step_text else start
        else:
            raise ValueError(f"empty weekday term in: {field}")

        days.update(day % 7 for day in range(start, end + 1, step))

    if len(days) == 7:
        return "*"
    return ",".join(_CRONTAB_DAYS[day] for day in sorted(days))


def build_trigger(expression: str, timezone_name: str = SCHEDULE_TIMEZONE) -> BaseTrigger:
    """Construct the schedule evaluator for ``expression``.

    When both the day-of-month and the weekday field are restricted, a day
    matching either one fires (crontab rule), which is expressed as an
    OrTrigger over two CronTriggers.

    Raises InvalidCronError for anything that does not parse, so callers can
    validate before writing.
    """
    if not isinstance(expression, str):
        raise InvalidCronError(str(expression), "not a string")

    parts = _NICKNAMES.get(expression.strip().lower(), expression).split()
    if len(parts) == 5:
        second = "0"
        minute, hour, day, month, day_of_week = parts
    elif len(parts) == 6:
        second, minute, hour, day, month, day_of_week = parts
    else:
        raise InvalidCronError(expression, f"expected 5 or 6 fields, got {len(parts)}")

    try:
        weekdays = translate_day_of_week(day_of_week)
        shared = dict(second=second, minute=minute, hour=hour, month=month, timezone=timezone_name)
        if day not in ("*", "?") and weekdays != "*":
            return OrTrigger([
                CronTrigger(day=day, day_of_week="*", **shared),
                CronTrigger(day="*", day_of_week=weekdays, **shared),
            ])
        return CronTrigger(day=day, day_of_week=weekdays, **shared)
    except (ValueError, TypeError) as e:
        raise InvalidCronError(expression, str(e)) from e


def validate_cron(expression: str) -> None:
    build_trigger(expression)


def next_fire_time(expression: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """First instant (UTC) at or after ``now`` at which ``expression`` fires."""
    trigger = build_trigger(expression)
    now = now or datetime.now(timezone.utc)
    return trigger.get_next_fire_time(None, now)
