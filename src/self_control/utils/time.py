import re
from datetime import datetime, time, timedelta

from self_control.errors import InvalidInputError

# Persisted timestamp layout, e.g. "2024-05-06 17:00:00 +0200"
DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S %z"
TIME_FORMAT = "%H:%M"

DAYS_OF_WEEK = [
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
]

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(h|m|s)")
_DURATION_UNITS = {"h": 3600, "m": 60, "s": 1}


def now() -> datetime:
    """Current local time, timezone aware."""
    return datetime.now().astimezone()


def format_timestamp(moment: datetime) -> str:
    return moment.strftime(DATETIME_FORMAT)


def parse_timestamp(text: str) -> datetime:
    try:
        return datetime.strptime(text.strip(), DATETIME_FORMAT)
    except ValueError as e:
        raise InvalidInputError(f"Invalid timestamp '{text}': {e}") from e


def parse_clock(time_str: str) -> time:
    """Parses an 'HH:MM' string into a time."""
    try:
        return datetime.strptime(time_str, TIME_FORMAT).time()
    except ValueError as e:
        raise InvalidInputError(f"Invalid time '{time_str}', expected HH:MM") from e


def format_time(time_str: str) -> str:
    """
    Normalises user input to 'HH:MM'. Accepts 'HH:MM' and 'HHMM'.
    Raises InvalidInputError for anything else.
    """
    time_str = time_str.strip()
    if len(time_str) == 4 and ":" not in time_str:
        time_str = f"{time_str[:2]}:{time_str[2:]}"
    if len(time_str) != 5 or time_str[2] != ":":
        raise InvalidInputError(f"Invalid time format: '{time_str}'")

    hours, minutes = time_str[:2], time_str[3:]
    if not hours.isdigit() or not 0 <= int(hours) <= 23:
        raise InvalidInputError(f"Invalid hours in '{time_str}'")
    if not minutes.isdigit() or not 0 <= int(minutes) <= 59:
        raise InvalidInputError(f"Invalid minutes in '{time_str}'")
    return time_str


def check_start_before_end(start: str, end: str) -> None:
    if parse_clock(end) <= parse_clock(start):
        raise InvalidInputError(f"End time {end} must be after start time {start}")


def is_time_in_range(current: datetime, start: str, end: str) -> bool:
    """True when start < current < end, compared at minute precision."""
    minute = current.time().replace(second=0, microsecond=0)
    return parse_clock(start) < minute < parse_clock(end)


def at_time_today(reference: datetime, time_str: str) -> datetime:
    """Absolute timestamp for 'HH:MM' on the reference day, in its timezone."""
    clock = parse_clock(time_str)
    return reference.replace(
        hour=clock.hour, minute=clock.minute, second=0, microsecond=0
    )


def weekday_name(moment: datetime) -> str:
    return DAYS_OF_WEEK[moment.weekday()]


def validate_days(days: list[str]) -> list[str]:
    """Normalises weekday names, rejecting anything outside the seven days."""
    cleaned = [d.strip().lower() for d in days if d.strip()]
    if not cleaned:
        raise InvalidInputError("At least one day is required")
    for day in cleaned:
        if day not in DAYS_OF_WEEK:
            raise InvalidInputError(f"Invalid day: '{day}'")
    return cleaned


def parse_duration(text: str) -> timedelta:
    """Parses durations like '10s', '30m', '1h', '2h30m' or '1.5h'."""
    text = text.strip().lower().replace(" ", "")
    if not text or _DURATION_PART.sub("", text):
        raise InvalidInputError(f"Invalid duration format: '{text}'")

    seconds = sum(
        float(amount) * _DURATION_UNITS[unit]
        for amount, unit in _DURATION_PART.findall(text)
    )
    if seconds <= 0:
        raise InvalidInputError("Duration must be positive")
    return timedelta(seconds=seconds)


def format_duration_seconds(seconds: int) -> str:
    """
    Formats a duration in seconds into a human-readable string (e.g., '2h 30m' or '45m').
    """
    minutes = seconds // 60
    if minutes == 0 and seconds > 0:  # Handle durations less than a minute
        return "<1m"
    elif minutes <= 60:
        return f"{minutes}m"
    else:
        hours = minutes // 60
        remaining_minutes = minutes % 60
        return f"{hours}h {remaining_minutes}m"
