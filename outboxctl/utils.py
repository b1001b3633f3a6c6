from datetime import datetime, timezone, timedelta
import re

# Fixed width, so ISO strings sort and compare like the instants they encode.
ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# e.g., "20s", "5m", "1h30m", "2d3h", "90m", "  2h  "
DELAY_RE = re.compile(r"(?i)^\s*(?:(\d+)\s*d)?\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*m)?\s*(?:(\d+)\s*s)?\s*$")


def parse_delay_to_seconds(s: str) -> int:
    """
    Parse delay strings like '20s', '5m', '1h30m', '2d3h', '90m'.
    Returns total seconds (int). Raises ValueError on bad input or zero.
    """
    if not s:
        raise ValueError("delay string is empty")
    m = DELAY_RE.match(s)
    if not m:
        raise ValueError(f"Invalid delay format: {s!r}")
    d, h, m_, s_ = m.groups()
    total = 0
    if d:  total += int(d) * 86400
    if h:  total += int(h) * 3600
    if m_: total += int(m_) * 60
    if s_: total += int(s_)
    if total <= 0:
        raise ValueError("delay must be > 0 seconds")
    return total


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z'."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(ISO_FORMAT)


def from_iso(value: str) -> datetime:
    """Inverse of to_iso; also accepts plain ISO strings with an offset or 'Z'."""
    try:
        return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)


def iso_from_now(now: datetime, seconds: float) -> str:
    """Return the ISO time `seconds` after `now` (negative values look back)."""
    return to_iso(now + timedelta(seconds=seconds))


def start_of_day(now: datetime) -> datetime:
    now = now.astimezone(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def compute_backoff(attempt: int, *, strategy: str = "fixed", base: int = 300, cap: int = 3600) -> int:
    """
    Seconds to wait before attempt `attempt + 1` becomes eligible.

    fixed:       always `base`
    exponential: base * 2**(attempt-1), capped at `cap`
    """
    if strategy == "fixed":
        return base
    if strategy == "exponential":
        exp = max(0, attempt - 1)
        return min(cap, base * (2 ** exp))
    raise ValueError(f"Unknown backoff strategy: {strategy!r}")
