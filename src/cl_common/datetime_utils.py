"""UTC datetime utilities."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def iso_or_none(value: datetime | None) -> str | None:
    """Serialise an optional timestamp for API payloads."""
    return value.isoformat() if value is not None else None
