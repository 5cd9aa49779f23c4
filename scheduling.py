"""
Calendar arithmetic: free-slot search over business days and free/busy
conflict detection. Pure functions, no Google calls.
"""
from datetime import datetime, time, timedelta
from zoneinfo import ZoneInfo

from dateutil.parser import parse as date_parse

BUSINESS_START = time(9, 0)
BUSINESS_END = time(18, 0)
MAX_FREE_SLOTS = 10
SLOT_GRANULARITY_MINUTES = 15


def parse_event_bounds(event, tz):
    """Return (start, end) of a Google Calendar event as aware datetimes in `tz`.

    All-day events carry only a date and span whole days.
    """
    start_raw = event.get("start", {})
    end_raw = event.get("end", {})
    if "dateTime" in start_raw:
        start = _aware(date_parse(start_raw["dateTime"]), tz)
        end = _aware(date_parse(end_raw.get("dateTime", start_raw["dateTime"])), tz)
        return start, end
    if "date" in start_raw:
        start_day = date_parse(start_raw["date"]).date()
        end_day = date_parse(end_raw["date"]).date() if "date" in end_raw else start_day + timedelta(days=1)
        return (
            datetime.combine(start_day, time.min, tzinfo=tz),
            datetime.combine(end_day, time.min, tzinfo=tz),
        )
    return None


def _aware(value, tz):
    if value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value.astimezone(tz)


def _round_up(value, minutes):
    value = value.replace(second=0, microsecond=0) + (
        timedelta(minutes=1) if value.second or value.microsecond else timedelta(0)
    )
    remainder = value.minute % minutes
    if remainder:
        value += timedelta(minutes=minutes - remainder)
    return value


def find_free_slots(events, duration_minutes, days, tz, now=None):
    """Walk each business day in the window and collect gaps of at least
    `duration_minutes` between 09:00 and 18:00.

    `events` are raw Google Calendar items. Weekends are skipped and today's
    window never starts before `now`. Returns at most MAX_FREE_SLOTS slots in
    chronological order.
    """
    if isinstance(tz, str):
        tz = ZoneInfo(tz)
    now = _aware(now or datetime.now(tz), tz)
    needed = timedelta(minutes=duration_minutes)

    intervals = []
    for event in events:
        if event.get("status") == "cancelled":
            continue
        bounds = parse_event_bounds(event, tz)
        if bounds:
            intervals.append(bounds)

    slots = []
    first_day = now.date()
    for offset in range(days):
        day = first_day + timedelta(days=offset)
        if day.weekday() >= 5:
            continue

        day_start = datetime.combine(day, BUSINESS_START, tzinfo=tz)
        day_end = datetime.combine(day, BUSINESS_END, tzinfo=tz)
        cursor = max(day_start, _round_up(now, SLOT_GRANULARITY_MINUTES))
        if cursor >= day_end:
            continue

        day_events = sorted(
            (start, end) for start, end in intervals
            if start < day_end and end > day_start
        )
        for start, end in day_events:
            if start - cursor >= needed:
                slots.append(_slot(cursor, start))
            cursor = max(cursor, end)
            if cursor >= day_end:
                break
        if day_end - cursor >= needed:
            slots.append(_slot(cursor, day_end))

        if len(slots) >= MAX_FREE_SLOTS:
            break

    return slots[:MAX_FREE_SLOTS]


def _slot(start, end):
    return {
        "start": start.isoformat(),
        "end": end.isoformat(),
        "duration": int((end - start).total_seconds() // 60),
    }


def has_conflicts(freebusy, start, end):
    """True when any calendar in a free/busy response has a busy block
    overlapping [start, end)."""
    start = _aware(start, ZoneInfo("UTC"))
    end = _aware(end, ZoneInfo("UTC"))
    for calendar in (freebusy.get("calendars") or {}).values():
        for block in calendar.get("busy") or []:
            busy_start = _aware(date_parse(block["start"]), ZoneInfo("UTC"))
            busy_end = _aware(date_parse(block["end"]), ZoneInfo("UTC"))
            if busy_start < end and busy_end > start:
                return True
    return False
