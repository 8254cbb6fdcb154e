"""Shared data cache: BASE_DIR/data-cache.json, read and written by every render.

    {"version": 2, "updatedAt": ms,
     "sources": {id: {"data": ..., "fetchedAt": ms, "fetchedBy": pid, "contextKey": ...}}}

Readers never see a partial document (temp file + os.replace). Writers
serialize on the "data-cache" lock and skip the write when it stays busy,
so no read-merge-write ever replaces a document another process is
merging into. A missing, unparseable or wrong-version document reads as
empty.
"""

import json
import os

from slbroker import config, lock, log
from slbroker.timeutil import now_ms

logger = log.get("cache")

VERSION = 2
LOCK_NAME = "data-cache"


def empty():
    return {"version": VERSION, "updatedAt": now_ms(), "sources": {}}


def entry(data, context_key=None):
    """Cache entry stamped with this process as the writer."""
    e = {"data": data, "fetchedAt": now_ms(), "fetchedBy": os.getpid()}
    if context_key is not None:
        e["contextKey"] = context_key
    return e

# ═══════════════════════ READ ═══════════════════════

def _valid_entry(e):
    if not isinstance(e, dict) or "data" not in e:
        return False
    ts = e.get("fetchedAt")
    return isinstance(ts, (int, float)) and not isinstance(ts, bool)


def parse(text):
    """Parse and validate a cache document. Anything off → empty cache."""
    try:
        doc = json.loads(text)
    except ValueError:
        return empty()
    if not isinstance(doc, dict) or doc.get("version") != VERSION:
        return empty()
    sources = doc.get("sources")
    if not isinstance(sources, dict):
        return empty()
    doc["sources"] = {k: e for k, e in sources.items() if _valid_entry(e)}
    if not isinstance(doc.get("updatedAt"), (int, float)):
        doc["updatedAt"] = 0
    return doc


def read(path=None):
    path = path or config.cache_path()
    try:
        text = path.read_text()
    except FileNotFoundError:
        return empty()
    except (OSError, UnicodeDecodeError):
        logger.debug("unreadable cache %s", path, exc_info=True)
        return empty()
    return parse(text)


def dig(obj, *keys):
    """Walk nested dicts; None as soon as a level is missing."""
    for k in keys:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(k)
    return obj


def source(doc, source_id):
    """Entry for a source id, or None."""
    return dig(doc, "sources", source_id)

# ═══════════════════════ WRITE ═══════════════════════

def _write(doc, path):
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    tmp = path.with_name(f"{path.name}.{os.getpid()}.tmp")
    try:
        tmp.write_text(json.dumps(doc, indent=2))
        os.replace(tmp, path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


def update(entries, path=None):
    """Merge entries into the document on disk. Returns True if written."""
    path = path or config.cache_path()
    if not entries:
        return True
    lk = lock.acquire(LOCK_NAME, config.CACHE_LOCK_WAIT_MS)
    if lk is None:
        logger.debug("cache lock busy, %d entries not written", len(entries))
        return False
    try:
        doc = read(path)
        doc["sources"].update(entries)
        doc["version"] = VERSION
        doc["updatedAt"] = now_ms()
        _write(doc, path)
        return True
    except OSError:
        logger.debug("cache write failed", exc_info=True)
        return False
    finally:
        lock.release(lk)


def clear_cache(path=None):
    path = path or config.cache_path()
    lk = lock.acquire(LOCK_NAME, config.CACHE_LOCK_WAIT_MS)
    if lk is None:
        logger.debug("cache lock busy, not cleared")
        return False
    try:
        _write(empty(), path)
        return True
    except OSError:
        logger.debug("cache clear failed", exc_info=True)
        return False
    finally:
        lock.release(lk)
