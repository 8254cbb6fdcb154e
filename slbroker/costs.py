"""Session cost estimate from the transcript JSONL, without ccusage.

Only the current session's transcript is parsed. Pricing is $/MTok per
model family; cache writes and reads have their own rates.
"""

import json
from pathlib import Path

from slbroker import log
from slbroker.timeutil import iso_ms, now_ms

logger = log.get("costs")

PRICING = {
    "opus":   {"in": 5,    "out": 25,  "cw": 6.25,  "cr": 0.50},
    "sonnet": {"in": 3,    "out": 15,  "cw": 3.75,  "cr": 0.30},
    "haiku":  {"in": 1,    "out": 5,   "cw": 1.25,  "cr": 0.10},
}
SIZE_COST_PER_100KB = 0.02   # Rough average for estimate_from_size()


def model_family(mid):
    """Detect model family from model ID. Unknown models price as opus."""
    mid_l = (mid or "").lower()
    for k in PRICING:
        if k in mid_l:
            return k
    return "opus"


def _tokens(usage, key):
    try:
        return max(0, int(usage.get(key) or 0))
    except (TypeError, ValueError):
        return 0


def estimate_transcript(path, max_lines=0):
    """Parse assistant usage records. max_lines=0 reads the whole file."""
    result = {
        "costUSD": 0.0,
        "totalTokens": 0,
        "messageCount": 0,
        "sessionDurationMs": 0,
        "costPerHour": None,
        "tokensPerMinute": None,
        "isFresh": False,
    }
    if not path:
        return result

    first = last = None
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            for n, line in enumerate(f):
                if max_lines and n >= max_lines:
                    break
                if not line.strip():
                    continue
                try:
                    e = json.loads(line)
                except ValueError:
                    continue
                if not isinstance(e, dict):
                    continue

                ts = iso_ms(e.get("timestamp"))
                if ts:
                    first = first or ts
                    last = ts

                msg = e.get("message")
                if e.get("type") != "assistant" or not isinstance(msg, dict):
                    continue
                usage = msg.get("usage")
                if not isinstance(usage, dict):
                    continue

                p = PRICING[model_family(msg.get("model"))]
                tin = _tokens(usage, "input_tokens")
                tout = _tokens(usage, "output_tokens")
                tcw = _tokens(usage, "cache_creation_input_tokens")
                tcr = _tokens(usage, "cache_read_input_tokens")
                result["costUSD"] += (tin * p["in"] + tout * p["out"] + tcw * p["cw"] + tcr * p["cr"]) / 1_000_000
                result["totalTokens"] += tin + tout + tcw + tcr
                result["messageCount"] += 1
    except OSError:
        logger.debug("transcript unreadable: %s", path, exc_info=True)
        return result

    if first and last:
        dur = max(0, last - first)
        result["sessionDurationMs"] = dur
        if dur > 60_000:
            result["costPerHour"] = result["costUSD"] / (dur / 3_600_000)
            result["tokensPerMinute"] = result["totalTokens"] / (dur / 60_000)

    result["isFresh"] = True
    result["lastFetched"] = now_ms()
    logger.debug("transcript %s: %d messages, $%.4f", path, result["messageCount"], result["costUSD"])
    return result


def estimate_from_size(path):
    """Quick estimate from file size: $0.02 per 100 KB."""
    try:
        size = Path(path).stat().st_size
    except (OSError, TypeError):
        return 0.0
    return size / 102_400 * SIZE_COST_PER_100KB
