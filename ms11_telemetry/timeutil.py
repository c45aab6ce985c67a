import logging
from datetime import datetime, timedelta, timezone

from . import config

logger = logging.getLogger(__name__)


def get_local_now(tz=None):
    """Get current time in local timezone."""
    return datetime.now(tz or config.LOCAL_TZ)


def parse_timestamp(value, tz=None):
    """
    Parse a timestamp sent by a device or a query string.
    Accepts: ISO format string, Unix timestamp (seconds or milliseconds)
    Returns: timezone-aware datetime or None
    """
    tz = tz or config.LOCAL_TZ

    if value is None or value == '' or isinstance(value, bool):
        return None

    try:
        if isinstance(value, str):
            value = value.strip()
            if value.lstrip('-').replace('.', '', 1).isdigit():
                return parse_timestamp(float(value), tz)
            # Try ISO format
            dt = datetime.fromisoformat(value.replace('Z', '+00:00'))
            if dt.tzinfo is None:
                dt = tz.localize(dt)
            return dt
        elif isinstance(value, (int, float)):
            # Unix timestamp - check if milliseconds
            if value > 1e12:
                value = value / 1000
            return datetime.fromtimestamp(value, tz=timezone.utc)
    except (ValueError, TypeError, OverflowError, OSError) as e:
        logger.debug(f"Could not parse timestamp: {value!r} - {e}")

    return None


def floor_hour(dt, tz=None):
    """Start of the local hour containing dt."""
    tz = tz or config.LOCAL_TZ
    local = dt.astimezone(tz)
    return tz.normalize(local.replace(minute=0, second=0, microsecond=0))


def previous_hour(now=None, tz=None):
    """Start of the hour immediately preceding now."""
    now = now or get_local_now(tz)
    return floor_hour(now - timedelta(hours=1), tz)
