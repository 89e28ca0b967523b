"""Injectable clock and ISO8601 helpers.

Services take a ``clock`` callable instead of calling datetime.now()
directly so tests can freeze or advance time. Timestamps are persisted
as UTC ISO8601 strings (see src.db.models.utc_now_iso), which sort
lexicographically in time order.
"""

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def to_iso(value: datetime) -> str:
    """Format a datetime as a UTC ISO8601 string.

    Naive datetimes are assumed to already be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO8601 string into an aware UTC datetime.

    Accepts the remote store's naive ``date_modified_gmt`` style values
    and a trailing ``Z``.

    Args:
        value: ISO8601 text or None.

    Returns:
        Aware datetime, or None when value is empty or unparseable.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
