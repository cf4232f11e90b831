from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]

_TRUE_STRINGS = {"true", "1", "yes", "y", "on"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utcnow_iso() -> str:
    return utcnow().isoformat().replace("+00:00", "Z")


def truthy_flag(value: object) -> bool:
    """Normalize boolean-as-string metadata ("True", "true", "1", True) into a bool."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in _TRUE_STRINGS


def parse_dt_any(ts_str: str | int | float | None) -> datetime | None:
    """Parse ISO/unix-ish timestamps into UTC datetime (best-effort)."""
    if ts_str is None or ts_str == "":
        return None
    try:
        if isinstance(ts_str, (int, float)):
            val = float(ts_str)
            # Heuristic: treat large values as milliseconds.
            if abs(val) > 1.0e11:
                val = val / 1000.0
            return datetime.fromtimestamp(val, tz=timezone.utc)
        s = str(ts_str).strip()
        if not s:
            return None
        if "T" in s or "-" in s:
            dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.astimezone(timezone.utc)
        val = float(s)
        if abs(val) > 1.0e11:
            val = val / 1000.0
        return datetime.fromtimestamp(val, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None


def calendar_date(value: object) -> date | None:
    """Normalize an expiry value to its UTC calendar date (None when unparsable)."""
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc).date()
    if isinstance(value, date):
        return value
    dt = parse_dt_any(value)  # type: ignore[arg-type]
    return dt.date() if dt else None


def business_now(tz_offset_hours: int, clock: Clock = utcnow) -> datetime:
    """Wall clock shifted by a fixed hour offset (approximates the community's timezone)."""
    return clock() + timedelta(hours=int(tz_offset_hours))


def business_today(tz_offset_hours: int, clock: Clock = utcnow) -> date:
    return business_now(tz_offset_hours, clock).date()


def fmt_offset(tz_offset_hours: int) -> str:
    return f"UTC{'+' if tz_offset_hours >= 0 else ''}{tz_offset_hours}"


def truncate(s: object, n: int) -> str:
    if s is None:
        return ""
    s = str(s)
    return s if len(s) <= n else (s[: max(0, n - 3)] + "...")
