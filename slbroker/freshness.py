"""Freshness classifier: one authority for every staleness decision.

Each category has a fresh window, an optional critical threshold and a
retry cooldown after failed fetches. Cooldowns are files under
BASE_DIR/cooldowns because every statusline render is a new process;
the file holds the epoch-ms time the cooldown ends.

Indicators: '' (fine), '⚠' (stale), '🔺' (critical).
"""

import math
import os

from slbroker import config, intents, log
from slbroker.timeutil import now_ms

logger = log.get("freshness")

# stale_ms None: no critical tier, status caps at "stale"
CATEGORIES = {
    "billing_oauth":      {"fresh_ms": 120_000, "cooldown_ms": 300_000, "stale_ms": 600_000},
    "billing_ccusage":    {"fresh_ms": 120_000, "cooldown_ms": 120_000, "stale_ms": 600_000},
    "billing_local":      {"fresh_ms": 300_000, "cooldown_ms": 0,       "stale_ms": 600_000},
    "quota_hotswap":      {"fresh_ms": 30_000,  "cooldown_ms": 0,       "stale_ms": None},
    "quota_subscription": {"fresh_ms": 60_000,  "cooldown_ms": 0,       "stale_ms": None},
    "git_status":         {"fresh_ms": 30_000,  "cooldown_ms": 0,       "stale_ms": 300_000},
    "transcript":         {"fresh_ms": 300_000, "cooldown_ms": 0,       "stale_ms": 600_000},
    "model":              {"fresh_ms": 300_000, "cooldown_ms": 0,       "stale_ms": None},
    "context":            {"fresh_ms": 5_000,   "cooldown_ms": 0,       "stale_ms": None},
    "weekly_quota":       {"fresh_ms": 300_000, "cooldown_ms": 0,       "stale_ms": 86_400_000},
}

BILLING_CATEGORY = "billing_ccusage"

INTENT_PENDING_MS = 30_000    # Younger intent: refresh presumed in flight
INTENT_BROKEN_MS = 300_000    # Older intent: refresh mechanism presumed broken

FRESH, STALE, CRITICAL, UNKNOWN = "fresh", "stale", "critical", "unknown"
WARN, CRIT = "⚠", "🔺"


def _missing(ts):
    return ts is None or isinstance(ts, bool) or not isinstance(ts, (int, float)) or ts <= 0

# ═══════════════════════ CLASSIFICATION ═══════════════════════

def get_age(ts):
    """Age in ms; inf when never fetched. Future timestamps are age 0."""
    if _missing(ts):
        return math.inf
    return max(0, now_ms() - ts)


def is_fresh(ts, category):
    cat = CATEGORIES.get(category)
    if cat is None or _missing(ts):
        return False
    return get_age(ts) <= cat["fresh_ms"]


def get_status(ts, category):
    cat = CATEGORIES.get(category)
    if cat is None or _missing(ts):
        return UNKNOWN
    age = get_age(ts)
    if age <= cat["fresh_ms"]:
        return FRESH
    if cat["stale_ms"] is not None and age > cat["stale_ms"]:
        return CRITICAL
    return STALE


def get_indicator(ts, category):
    """Unconditional indicator: unknown counts as a warning."""
    status = get_status(ts, category)
    if status == FRESH:
        return ""
    if status == CRITICAL:
        return CRIT
    return WARN


def get_context_aware_indicator(ts, category):
    """Indicator that stays quiet while a refresh is plausibly in flight.

    fresh → ''; never fetched → ''; critical → 🔺; stale then depends on the
    refresh intent: <30s '' , <5min ⚠, older 🔺. Stale without an intent
    warns only if a failed fetch put the category in cooldown.
    """
    status = get_status(ts, category)
    if status in (FRESH, UNKNOWN):
        return ""
    if status == CRITICAL:
        return CRIT

    age = intents.intent_age(category)
    if age is not None:
        if age >= INTENT_BROKEN_MS:
            return CRIT
        if age >= INTENT_PENDING_MS:
            return WARN
        return ""

    if cooldown_remaining(category) > 0:
        return WARN
    return ""


def is_billing_fresh(ts):
    """Billing freshness is derived from age only, never from a stored flag."""
    return is_fresh(ts, BILLING_CATEGORY)


def get_report(timestamps):
    fields = {}
    for category, ts in timestamps.items():
        if category not in CATEGORIES:
            continue
        ts = ts or 0
        fields[category] = {
            "category": category,
            "timestamp": ts,
            "ageMs": get_age(ts),
            "status": get_status(ts, category),
            "indicator": get_indicator(ts, category),
        }
    return {"generatedAt": now_ms(), "fields": fields}

# ═══════════════════════ COOLDOWNS ═══════════════════════

def _cooldown_file(category):
    return config.cooldown_dir() / f"fm-{category}.cooldown"


def cooldown_remaining(category):
    """ms until the category may be fetched again; 0 if not cooling down."""
    cat = CATEGORIES.get(category)
    if cat is None or cat["cooldown_ms"] <= 0:
        return 0
    try:
        until = int(_cooldown_file(category).read_text().strip())
    except FileNotFoundError:
        return 0
    except (OSError, ValueError):
        logger.debug("unreadable cooldown for %s", category, exc_info=True)
        return 0
    return max(0, until - now_ms())


def should_refetch(category):
    return cooldown_remaining(category) <= 0


def record_fetch(category, success):
    """Failure starts the category's cooldown; success ends it."""
    path = _cooldown_file(category)
    if success:
        try:
            path.unlink(missing_ok=True)
        except OSError:
            logger.debug("could not clear cooldown %s", path, exc_info=True)
        return

    cat = CATEGORIES.get(category)
    if cat is None or cat["cooldown_ms"] <= 0:
        return
    until = now_ms() + cat["cooldown_ms"]
    try:
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        tmp = path.with_suffix(f".{os.getpid()}.tmp")
        tmp.write_text(str(until))
        tmp.replace(path)
        logger.debug("cooldown %s until %d", category, until)
    except OSError:
        logger.debug("could not write cooldown %s", path, exc_info=True)


def clear_cooldowns():
    """Drop every cooldown (manual refresh, tests)."""
    d = config.cooldown_dir()
    if not d.exists():
        return
    for f in d.glob("fm-*.cooldown"):
        try:
            f.unlink(missing_ok=True)
        except OSError:
            logger.debug("could not remove %s", f, exc_info=True)
