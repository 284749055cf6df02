from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utc_iso(ts: float) -> str:
    """Epoch seconds → ISO 8601 UTC string, as stored in payloads."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="microseconds")


def parse_iso_ts(value: Optional[object]) -> Optional[float]:
    """ISO 8601 string or datetime → epoch seconds. Naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()
