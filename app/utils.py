"""Small shared helpers: UTC time handling and slugs."""

import re
import unicodedata
from datetime import datetime, timezone


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Return a timezone-aware UTC datetime.

    SQLite hands DateTime(timezone=True) columns back naive; those values
    were written as UTC, so attach the zone instead of converting.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value):
    """Parse an ISO-8601 string or a unix epoch (seconds or ms).

    Returns an aware UTC datetime, or None when the value is empty or
    unparseable.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e12 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    text = str(value).strip()
    if text.isdigit():
        return parse_timestamp(int(text))
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def slugify(value):
    """Convert a string to a URL-safe slug: lowercase, only a-z 0-9 and hyphens."""
    value = unicodedata.normalize("NFKD", value or "")
    value = value.encode("ascii", "ignore").decode("ascii").strip().lower()
    value = re.sub(r"[^a-z0-9]+", "-", value)
    return value.strip("-")
