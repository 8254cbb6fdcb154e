"""Reader for the hot-swap failover event log (JSONL, append-only).

Written by the external account failover tool, one event per line:

    {"timestamp": ms, "type": "swap", "fromSlot": "slot-1", "toSlot": "slot-2",
     "fromEmail": ..., "toEmail": ..., "reason": "quota_exhausted"}

Only the tail of the file is read. The log is never modified here.
"""

import json

from slbroker import config, log
from slbroker.timeutil import now_ms

logger = log.get("failover")

EVENT_TYPES = ("swap", "failover", "restore", "manual")
OPTIONAL_FIELDS = ("fromSlot", "toSlot", "fromEmail", "toEmail", "reason")
TAIL_BYTES = 64 * 1024
RECENT_MS = 300_000      # "Recently swapped" window
HISTORY_MS = 1_800_000   # Events kept in status()


def parse_event(line):
    """One log line → event dict, or None if it is not a valid event."""
    line = line.strip()
    if not line:
        return None
    try:
        raw = json.loads(line)
    except ValueError:
        return None
    if not isinstance(raw, dict):
        return None
    ts = raw.get("timestamp")
    if isinstance(ts, bool) or not isinstance(ts, (int, float)) or ts <= 0:
        return None
    if raw.get("type") not in EVENT_TYPES:
        return None
    ev = {"timestamp": ts, "type": raw["type"]}
    for k in OPTIONAL_FIELDS:
        if isinstance(raw.get(k), str) and raw[k]:
            ev[k] = raw[k]
    return ev


def _tail(path):
    with open(path, "rb") as f:
        f.seek(0, 2)
        size = f.tell()
        start = max(0, size - TAIL_BYTES)
        f.seek(start)
        chunk = f.read()
    lines = chunk.decode("utf-8", errors="replace").splitlines()
    if start > 0 and lines:
        lines = lines[1:]  # first line is cut
    return lines


def read_events(path=None):
    """Events in ascending timestamp order; [] for a missing or empty log."""
    path = path or config.failover_path()
    try:
        lines = _tail(path)
    except FileNotFoundError:
        return []
    except OSError:
        logger.debug("unreadable failover log %s", path, exc_info=True)
        return []
    events = [e for e in (parse_event(line) for line in lines) if e]
    events.sort(key=lambda e: e["timestamp"])
    return events


def is_recent(event, now=None):
    now = now_ms() if now is None else now
    return now - event["timestamp"] < RECENT_MS


def fmt_ago(ms):
    s = max(0, int(ms)) // 1000
    return f"{s}s" if s < 60 else f"{s // 60}m"


def notification(events, now=None):
    """One-line notice for the latest event, None unless it is recent."""
    if not events:
        return None
    now = now_ms() if now is None else now
    last = events[-1]
    if not is_recent(last, now):
        return None
    target = last.get("toEmail") or last.get("toSlot") or "?"
    return f"🔄 Swapped → {target} ({fmt_ago(now - last['timestamp'])} ago)"


def status(path=None):
    now = now_ms()
    events = read_events(path)
    recent = [e for e in events if now - e["timestamp"] < HISTORY_MS]
    last = recent[-1] if recent else None
    return {
        "hasRecentSwap": last is not None and is_recent(last, now),
        "lastSwap": last,
        "recentEvents": recent,
        "displayNotification": notification(recent, now),
    }
