"""Interval and discount arithmetic for the auction.

All step times are computed from the anchor ``started_at``:

    step k fires at started_at + k * interval

where step 0 is the starting discount. Nothing here reads the clock; callers
pass ``now`` explicitly so the rules can be tested without sleeping.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import AuctionValidationError


MAX_DISCOUNT_PERCENT = 100.0
# Upper bound on the number of future steps returned by build_schedule; a
# 0.1% increment would otherwise produce a thousand entries.
MAX_SCHEDULE_STEPS = 500
# One year.
MAX_INTERVAL_MINUTES = 366 * 24 * 60

_LOCAL_FORMATS = (
    "%Y-%m-%dT%H:%M",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d %H:%M:%S",
)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (SQLite drops tzinfo) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def interval_delta(interval_minutes: int) -> timedelta:
    return timedelta(minutes=interval_minutes)


def intervals_passed(started_at: datetime, now: datetime, interval_minutes: int) -> int:
    """floor((now - started_at) / interval); negative before the anchor."""
    return (ensure_utc(now) - ensure_utc(started_at)) // interval_delta(interval_minutes)


def step_time(started_at: datetime, interval_minutes: int, step: int) -> datetime:
    return ensure_utc(started_at) + step * interval_delta(interval_minutes)


def next_update_time(started_at: datetime, interval_minutes: int, last_fired_interval: int) -> datetime:
    return step_time(started_at, interval_minutes, last_fired_interval + 1)


def check_schedule_horizon(started_at: datetime, interval_minutes: int) -> datetime:
    """Time of the last previewable step, rejecting anchors too close to ``datetime.max``."""
    try:
        return step_time(started_at, interval_minutes, MAX_SCHEDULE_STEPS + 1)
    except OverflowError as exc:
        raise AuctionValidationError(
            "Schedule runs past the supported date range; use an earlier start or a shorter interval"
        ) from exc


def is_step_due(
    started_at: datetime, interval_minutes: int, last_fired_interval: int, now: datetime
) -> bool:
    return ensure_utc(now) >= next_update_time(started_at, interval_minutes, last_fired_interval)


def clamp_discount(value: float) -> float:
    return max(0.0, min(round(float(value), 4), MAX_DISCOUNT_PERCENT))


def next_discount(current: float, increment: float) -> float:
    """min(current + increment, 100)."""
    return clamp_discount(float(current) + float(increment))


def build_schedule(
    *,
    current_discount: float,
    increment: float,
    started_at: datetime,
    interval_minutes: int,
    last_fired_interval: int,
    max_steps: int = MAX_SCHEDULE_STEPS,
) -> List[Dict[str, Any]]:
    """Future steps (discount level + wall-clock time) up to the 100% cap."""
    schedule: List[Dict[str, Any]] = []
    discount = clamp_discount(current_discount)
    step = last_fired_interval
    while discount < MAX_DISCOUNT_PERCENT and len(schedule) < max_steps:
        step += 1
        discount = next_discount(discount, increment)
        schedule.append(
            {
                "step": step,
                "discountPercent": discount,
                "at": step_time(started_at, interval_minutes, step).isoformat(),
            }
        )
    return schedule


def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    if not name:
        raise AuctionValidationError("Timezone is required")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise AuctionValidationError(f"Unknown timezone: {name}") from exc


def parse_scheduled_time(value: Union[str, datetime, None], tz_name: str) -> datetime:
    """Parse a schedule entered in ``tz_name`` and return it in UTC.

    Accepts the date-time picker format (``YYYY-MM-DDTHH:MM``), the same with
    seconds or a space separator, and full ISO strings with an offset (the
    offset then wins over ``tz_name``).
    """
    tz = resolve_timezone(tz_name)

    if value is None or (isinstance(value, str) and not value.strip()):
        raise AuctionValidationError("Please provide a start time for the scheduled auction")

    if isinstance(value, datetime):
        parsed = value
    else:
        text = value.strip()
        parsed = None
        for fmt in _LOCAL_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
        if parsed is None:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError as exc:
                raise AuctionValidationError(
                    f"Invalid scheduled time format: {value!r} (expected YYYY-MM-DDTHH:MM)"
                ) from exc

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed.astimezone(timezone.utc)


def format_in_timezone(value: Optional[datetime], tz_name: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    try:
        tz = ZoneInfo(tz_name) if tz_name else timezone.utc
    except (ZoneInfoNotFoundError, ValueError):
        tz = timezone.utc
    return ensure_utc(value).astimezone(tz).strftime("%Y-%m-%d %H:%M:%S")


def milliseconds_until(target: Optional[datetime], now: datetime) -> int:
    if target is None:
        return 0
    delta = ensure_utc(target) - ensure_utc(now)
    return max(0, int(delta.total_seconds() * 1000))


def format_countdown(ms: int) -> str:
    if ms <= 0:
        return "Started or pending"
    minutes, rest = divmod(ms, 60000)
    return f"{minutes}m {rest // 1000}s"
