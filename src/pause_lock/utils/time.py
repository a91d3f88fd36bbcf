from datetime import datetime, time

from pause_lock.schema import Weekday

WEEKDAY_ALIASES = {
    "weekdays": "mon-fri",
    "weekend": "sat-sun",
    "daily": "mon-sun",
    "everyday": "mon-sun",
}


def parse_time_string(time_str: str) -> time:
    """Parses time strings like '8pm', '8:30pm', '20:00', '20:30'."""
    formats = ["%I%p", "%I:%M%p", "%H:%M", "%H:%M:%S"]
    time_str = time_str.lower().replace(" ", "")
    for fmt in formats:
        try:
            return datetime.strptime(time_str, fmt).time()
        except ValueError:
            continue
    raise ValueError(f"Could not parse time: {time_str}")


def _weekday(token: str) -> Weekday:
    token = token.strip().lower()[:3]
    for day in Weekday:
        if day.name.lower().startswith(token) and len(token) >= 2:
            return day
    raise ValueError(f"Unknown weekday: {token}")


def parse_weekdays(text: str) -> set[Weekday]:
    """
    Parses weekday lists like 'mon-fri', 'mon,wed,fri', 'sat-mon', 'weekdays'.

    Ranges wrap around the end of the week.
    """
    text = WEEKDAY_ALIASES.get(text.strip().lower(), text)
    days: set[Weekday] = set()
    for part in text.split(","):
        if not part.strip():
            continue
        if "-" in part:
            first, last = (_weekday(p) for p in part.split("-", 1))
            span = (last - first) % 7
            days.update(Weekday((first + i) % 7) for i in range(span + 1))
        else:
            days.add(_weekday(part))
    if not days:
        raise ValueError(f"No weekdays in: {text}")
    return days


def format_duration_seconds(seconds: int) -> str:
    """
    Formats a duration in seconds into a human-readable string (e.g., '2h 30m' or '45m').
    """
    minutes = seconds // 60
    if minutes == 0 and seconds > 0:
        return "<1m"
    elif minutes <= 60:
        return f"{minutes}m"
    else:
        hours = minutes // 60
        remaining_minutes = minutes % 60
        return f"{hours}h {remaining_minutes}m"


def format_until(target: datetime | None, now: datetime | None = None) -> str:
    """Human-readable distance to `target` ('in 2h 5m', 'now', '-')."""
    if target is None:
        return "-"
    now = now or datetime.now()
    seconds = int((target - now).total_seconds())
    if seconds <= 0:
        return "now"
    return f"in {format_duration_seconds(seconds)}"
