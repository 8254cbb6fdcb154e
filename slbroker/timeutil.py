"""Epoch-millisecond clock and ISO 8601 parsing shared by the broker modules."""

import time
from datetime import datetime, timezone


def now_ms():
    return int(time.time() * 1000)


def parse_iso(s):
    """Parse ISO 8601 to datetime (UTC). Handles Z, +00:00, fractional sec."""
    if not s or not isinstance(s, str) or s == "null":
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        # Fallback for older Python (fractional digits other than 3 or 6)
        s2 = s.split(".")[0].rstrip("Z")
        for sep in ("+", "-"):
            idx = s2.rfind(sep)
            if idx > 10:
                s2 = s2[:idx]
                break
        try:
            dt = datetime.strptime(s2, "%Y-%m-%dT%H:%M:%S")
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def iso_ms(s):
    """ISO 8601 string → epoch ms, or None."""
    dt = parse_iso(s)
    return int(dt.timestamp() * 1000) if dt else None
