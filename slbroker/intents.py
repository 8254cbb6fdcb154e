"""Refresh intents: "somebody wants this category refreshed" markers.

One file per category under BASE_DIR/refresh-intents. Only the file's
mtime matters. The broker creates a marker when a category goes stale
and no marker exists yet, so its age is how long the refresh has been
wanted; a stored fetch clears it. Markers do not expire.
"""

import os
import time

from slbroker import config, log
from slbroker.timeutil import now_ms

logger = log.get("intents")

SUFFIX = ".intent"


def _path(category):
    return config.intents_dir() / f"{category}{SUFFIX}"


def signal_refresh_needed(category):
    """Record an intent created now, replacing any older one."""
    path = _path(category)
    try:
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        path.write_text(str(now_ms()))
        os.utime(path)
    except OSError:
        logger.debug("could not signal intent for %s", category, exc_info=True)


def request_refresh(category):
    """Signal an intent unless one is already pending. True if created."""
    if intent_age(category) is not None:
        return False
    signal_refresh_needed(category)
    return True


def intent_age(category):
    """ms since the intent was signalled, or None when there is none."""
    try:
        mtime = _path(category).stat().st_mtime
    except OSError:
        return None
    return max(0, int((time.time() - mtime) * 1000))


def pending_intents():
    d = config.intents_dir()
    try:
        return sorted(f.name[: -len(SUFFIX)] for f in d.iterdir() if f.name.endswith(SUFFIX))
    except OSError:
        return []


def clear_intent(category):
    try:
        _path(category).unlink(missing_ok=True)
    except OSError:
        logger.debug("could not remove intent %s", category, exc_info=True)


def clear_intents():
    """Remove every marker (cache reset, tests)."""
    for category in pending_intents():
        clear_intent(category)
