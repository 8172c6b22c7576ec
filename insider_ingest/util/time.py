from __future__ import annotations

from datetime import date, datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime, *, precise: bool = False) -> str:
    """UTC ISO-8601 string with Z.

    precise=True always renders six fractional digits so that values of the
    same precision still compare correctly as strings.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    if precise:
        return dt.isoformat(timespec="microseconds").replace("+00:00", "Z")
    return dt.replace(microsecond=0).isoformat().replace("+00:00", "Z")


def utcnow_iso() -> str:
    """Current UTC time as ISO-8601 string with Z."""
    return to_iso(utcnow())


def parse_iso_datetime(s: str) -> datetime:
    return datetime.fromisoformat(s.replace("Z", "+00:00"))


def parse_date_safe(s: str | None) -> date | None:
    """Parse YYYY-MM-DD (or a longer ISO timestamp); None on anything else."""
    if not s:
        return None
    try:
        return date.fromisoformat(str(s).strip()[:10])
    except ValueError:
        return None
