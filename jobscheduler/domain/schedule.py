import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from croniter import croniter

from jobscheduler.domain.errors import ValidationError
from jobscheduler.utils.timeutils import ensure_utc, utcnow

RATE_PATTERN = re.compile(r"^rate\(\s*(\d+)\s+([a-z]+)\s*\)$", re.IGNORECASE)
CRON_PATTERN = re.compile(r"^cron\((.*)\)$", re.IGNORECASE)

RATE_UNITS = {
    "minute": timedelta(minutes=1),
    "minutes": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "hours": timedelta(hours=1),
    "day": timedelta(days=1),
    "days": timedelta(days=1),
}

@dataclass(frozen=True)
class ScheduleExpression:
    source: str
    interval: Optional[timedelta] = None   # rate(...) form
    cron: Optional[str] = None             # croniter form

    @property
    def is_rate(self) -> bool:
        return self.interval is not None


def parse_execute_at(value: Optional[str], now: Optional[datetime] = None) -> datetime:
    """
    Parses an ISO 8601 timestamp for a one-time job and checks it lies in the future.

    Args:
        value: e.g. "2026-01-15T10:00:00Z". Offsets are honoured,
               naive timestamps are read as UTC.
        now: reference time, defaults to the current UTC time.

    Returns:
        datetime: the timestamp, normalized to UTC.

    Raises:
        ValidationError: missing, unparsable, or not strictly after `now`.
    """
    if not value:
        raise ValidationError("executeAt is required for once type jobs (ISO 8601 format)")
    try:
        parsed = datetime.fromisoformat(value.strip())
    except (TypeError, ValueError):
        raise ValidationError("Invalid executeAt format. Use ISO 8601 (e.g., 2026-01-15T10:00:00Z)")

    parsed = ensure_utc(parsed)
    if parsed <= ensure_utc(now or utcnow()):
        raise ValidationError("executeAt must be in the future")
    return parsed


def parse_schedule_expression(expression: Optional[str]) -> ScheduleExpression:
    """
    Accepts three forms, all evaluated in UTC:
      rate(15 minutes)             fixed interval
      cron(0 12 ? * MON-FRI *)     six-field event-rule cron, day-of-week 1=SUN..7=SAT
      */5 * * * *                  plain croniter expression
    """
    if not expression or not expression.strip():
        raise ValidationError("scheduleExpression is required for cron type jobs")
    source = expression.strip()

    rate = RATE_PATTERN.match(source)
    if rate:
        amount = int(rate.group(1))
        unit = rate.group(2).lower()
        if unit not in RATE_UNITS:
            raise ValidationError(f"Unsupported rate unit '{unit}' in '{source}'")
        if amount < 1:
            raise ValidationError(f"Rate must be at least 1 {unit}: '{source}'")
        return ScheduleExpression(source=source, interval=RATE_UNITS[unit] * amount)

    wrapped = CRON_PATTERN.match(source)
    if wrapped:
        return ScheduleExpression(source=source, cron=_convert_rule_cron(wrapped.group(1), source))

    fields = source.split()
    if len(fields) not in (5, 6) or not croniter.is_valid(source):
        raise ValidationError(f"Invalid schedule expression: '{source}'")
    return ScheduleExpression(source=source, cron=" ".join(fields))


def _convert_rule_cron(body: str, source: str) -> str:
    fields = body.split()
    if len(fields) != 6:
        raise ValidationError(f"cron() expressions need 6 fields, got {len(fields)}: '{source}'")

    minute, hour, day, month, day_of_week, year = fields
    if year not in ("*", "?"):
        raise ValidationError(f"Only '*' is supported for the year field: '{source}'")
    if (day == "?") == (day_of_week == "?"):
        raise ValidationError(f"Exactly one of day-of-month and day-of-week must be '?': '{source}'")

    day = "*" if day == "?" else day
    day_of_week = "*" if day_of_week == "?" else _shift_day_of_week(day_of_week, source)

    converted = " ".join([minute, hour, day, month, day_of_week])
    if not croniter.is_valid(converted):
        raise ValidationError(f"Invalid schedule expression: '{source}'")
    return converted


def _shift_day_of_week(field: str, source: str) -> str:
    # 1=SUN..7=SAT -> 0=SUN..6=SAT. Steps and nth-weekday suffixes stay as they are.
    def shift(match: re.Match) -> str:
        day = int(match.group())
        if not 1 <= day <= 7:
            raise ValidationError(f"Day-of-week must be between 1 and 7: '{source}'")
        return str(day - 1)

    items = []
    for item in field.split(","):
        base, slash, step = item.partition("/")
        day, hash_sep, nth = base.partition("#")
        items.append(re.sub(r"\d+", shift, day) + hash_sep + nth + slash + step)
    return ",".join(items)


def next_fire_time(
    schedule: ScheduleExpression,
    after: datetime,
    anchor: Optional[datetime] = None
) -> datetime:
    """
    First fire time strictly after `after`.
    Rate schedules tick on anchor + k * interval (k >= 1); the anchor is the rule's creation time.
    """
    after = ensure_utc(after)

    if schedule.is_rate:
        anchor = ensure_utc(anchor) if anchor else after
        if after < anchor:
            return anchor + schedule.interval
        elapsed = after - anchor
        steps = elapsed // schedule.interval + 1
        return anchor + schedule.interval * steps

    return ensure_utc(croniter(schedule.cron, after).get_next(datetime))
