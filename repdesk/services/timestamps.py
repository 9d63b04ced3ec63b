import re
from datetime import datetime, timezone

GRAPH_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

# Google returns up to nanosecond precision; datetime stops at microseconds
_FRACTION = re.compile(r"\.(\d{6})\d+")

def parse_api_time(value: str | None) -> datetime | None:
    """Parses Graph API ("+0000") and Google ("Z", nanos) timestamps into aware UTC datetimes."""
    if not value:
        return None
    try:
        return datetime.strptime(value, GRAPH_TIME_FORMAT)
    except ValueError:
        pass
    cleaned = _FRACTION.sub(r".\1", value.replace("Z", "+00:00"))
    try:
        parsed = datetime.fromisoformat(cleaned)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
