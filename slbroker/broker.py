"""Data broker: tiered, session-isolated gathering over the shared cache.

One gather cycle:

  1. Sources run in tier order, in waves of sources whose dependencies
     are resolved. A source whose dependency failed is skipped.
  2. Cached sources: a fresh cache entry is used as is. Otherwise the
     refresh intent is signalled; during a cooldown, or if another process
     holds the fetch lock (tier 3), the stale entry is used instead.
  3. Fetches in a wave run concurrently on daemon threads, each bounded
     by its timeout. Timeouts count as failures for cooldowns.
  4. Successful fetches of a wave go to the cache in one update, and the
     category's intent is cleared once stored.

With background=True a stale tier-3 source with cached data is refreshed
in a forked child instead, and this cycle renders the stale entry.

Nothing here raises to the caller; missing data stays missing.
"""

import hashlib
import math
import os
import signal
import threading
import time
from pathlib import Path

from slbroker import cache, config, freshness, intents, lock, log
from slbroker.sources import FetchError, default_sources
from slbroker.timeutil import now_ms

logger = log.get("broker")


def default_health(session_id):
    """Gathered result skeleton; every key the renderer reads exists."""
    return {
        "sessionId": session_id,
        "gatheredAt": now_ms(),
        "context": {},
        "model": {},
        "transcript": {},
        "git": {},
        "limits": {},
        "billing": {},
        "quota": {},
        "freshness": {},
        "sources": {},
    }


class Broker:
    def __init__(self, sources=None, deadline_ms=None, background=False):
        self.sources = {}
        self.sessions = {}
        self.deadline_ms = config.DEADLINE_MS if deadline_ms is None else deadline_ms
        self.background = background
        for s in default_sources() if sources is None else sources:
            self.register(s)

    def register(self, source):
        self.sources[source.id] = source

    def register_session(self, session_id, config_dir, transcript_path=None, project_path=None):
        """Bind a session id to its own config root (and transcript / project)."""
        self.sessions[session_id] = {
            "sessionId": session_id,
            "configDir": str(Path(config_dir).expanduser()),
            "transcriptPath": transcript_path,
            "projectPath": project_path,
        }

    # ═══════════════════════ KEYS ═══════════════════════

    def cache_key(self, src, ctx):
        """(source slot id, contextKey) for a source in a session context."""
        if src.scope == "session":
            return f"{src.id}@{ctx['sessionId']}", ctx.get("configDir")
        if src.scope == "project":
            proj = str(ctx.get("projectPath") or "")
            digest = hashlib.sha1(proj.encode()).hexdigest()[:12]
            return f"{src.id}@{digest}", proj
        return src.id, None

    def _entry(self, doc, key, context_key):
        e = cache.source(doc, key)
        if e is None:
            return None
        if context_key is not None and e.get("contextKey") != context_key:
            return None
        return e

    def _context(self, session_id, stdin_json=None):
        s = self.sessions.get(session_id)
        if s is None:
            return None
        ctx = dict(s)
        ctx["input"] = stdin_json or {}
        ctx["deadline"] = time.monotonic() + self.deadline_ms / 1000
        ctx["resolved"] = {}
        return ctx

    # ═══════════════════════ PLANNING ═══════════════════════

    def _plan(self, src, ctx, doc):
        """Decide how src gets data. Returns (outcome or None, job or None)."""
        if not src.cached:
            return None, (src, None, None, None, None, "")

        key, ckey = self.cache_key(src, ctx)
        e = self._entry(doc, key, ckey)
        if e and freshness.is_fresh(e["fetchedAt"], src.category):
            return _outcome(e, "fresh"), None

        # Judged before this cycle's own intent, so a pending one keeps its age
        ind = freshness.get_context_aware_indicator(e["fetchedAt"] if e else None, src.category)
        intents.request_refresh(src.category)
        if not freshness.should_refetch(src.category):
            logger.debug("%s cooling down, using cache", src.id)
            return _outcome(e, "cooldown", ind), None

        lk = None
        if src.tier >= 3:
            lk = lock.acquire(src.lock or key)
            if lk is None:
                logger.debug("%s locked elsewhere, using cache", src.id)
                return _outcome(e, "locked", ind), None
            # Someone may have finished the same fetch while we queued
            e2 = self._entry(cache.read(), key, ckey)
            if e2 and freshness.is_fresh(e2["fetchedAt"], src.category):
                lock.release(lk)
                return _outcome(e2, "fresh"), None
            if self.background and e is not None:
                if self._spawn_refresh(src, ctx, key, ckey, lk):
                    return _outcome(e, "refreshing", ind), None
        return None, (src, key, ckey, lk, e, ind)

    # ═══════════════════════ FETCHING ═══════════════════════

    def _record(self, src, ok, stored=True):
        """Cooldown bookkeeping; the intent is cleared once the cache has the data."""
        freshness.record_fetch(src.category, ok)
        if ok and stored:
            intents.clear_intent(src.category)

    def _fetch_all(self, jobs, ctx):
        """Run fetches concurrently. {source id: data or None}.

        Each fetch runs on a daemon thread; one still running at its
        deadline is abandoned and does not hold up interpreter exit.
        """
        out, started = {}, []
        for src, *_ in jobs:
            budget = min(src.timeout_ms / 1000, ctx["deadline"] - time.monotonic())
            if budget <= 0:
                logger.debug("%s skipped, cycle deadline passed", src.id)
                out[src.id] = None
                continue
            box = {}
            t = threading.Thread(target=_run_fetch, args=(src, ctx, box),
                                 name=f"slbroker-{src.id}", daemon=True)
            t.start()
            started.append((src, t, box, time.monotonic() + budget))
        for src, t, box, until in started:
            t.join(max(0, until - time.monotonic()))
            if t.is_alive():
                logger.debug("%s timed out after %dms", src.id, src.timeout_ms)
                out[src.id] = None
            else:
                out[src.id] = box.get("data")
        return out

    def _spawn_refresh(self, src, ctx, key, ckey, lk):
        """Refresh src in a forked child that owns lk. False if fork fails.

        The child gets its own session and a hard alarm, writes the cache,
        releases the lock and exits. The parent keeps rendering stale data.
        """
        try:
            pid = os.fork()
        except OSError:
            logger.debug("fork failed, fetching %s inline", src.id, exc_info=True)
            return False
        if pid:
            lock.detach(lk)
            logger.debug("%s refreshing in background (pid %d)", src.id, pid)
            return True

        # Child
        try:
            os.setsid()
            lock.stamp(lk)
            signal.signal(signal.SIGALRM, _alarm)
            signal.alarm(max(1, math.ceil(src.timeout_ms / 1000)))
            data = src.fetch(ctx)
            signal.alarm(0)
            stored = data is not None and cache.update({key: cache.entry(data, ckey)})
            self._record(src, data is not None, stored)
        except Exception:
            logger.debug("background refresh %s failed", src.id, exc_info=True)
            freshness.record_fetch(src.category, False)
        finally:
            lock.release(lk)
            os._exit(0)

    def _run_wave(self, wave, ctx):
        doc = cache.read()
        results, jobs = {}, []
        for src in wave:
            outcome, job = self._plan(src, ctx, doc)
            if job:
                jobs.append(job)
            else:
                results[src.id] = outcome
        if not jobs:
            return results

        fetched = self._fetch_all(jobs, ctx)
        updates = {}
        for src, key, ckey, lk, prev, ind in jobs:
            data = fetched.get(src.id)
            if data is None:
                results[src.id] = _outcome(prev, "failed", ind)
            elif src.cached:
                e = cache.entry(data, ckey)
                updates[key] = e
                results[src.id] = _outcome(e, "fetched")
            else:
                results[src.id] = {"data": data, "fetchedAt": now_ms(), "fromCache": False,
                                   "how": "fetched", "indicator": ""}
        stored = False
        try:
            stored = cache.update(updates)
        finally:
            for src, key, ckey, lk, prev, ind in jobs:
                lock.release(lk)
                self._record(src, fetched.get(src.id) is not None, stored)
        return results

    def _resolve(self, wanted, ctx):
        """Run the wanted sources (dependencies first). {id: outcome}."""
        pending = sorted(wanted, key=lambda s: s.tier)
        done, failed = {}, set()
        while pending:
            for s in list(pending):
                if any(d in failed or d not in self.sources for d in s.deps):
                    logger.debug("%s skipped, dependency unavailable", s.id)
                    failed.add(s.id)
                    pending.remove(s)
            ready = [s for s in pending if all(d in done for d in s.deps)]
            if not ready:
                for s in pending:
                    logger.debug("%s skipped, dependency never resolved", s.id)
                    failed.add(s.id)
                break
            tier = ready[0].tier
            wave = [s for s in ready if s.tier == tier]
            for sid, outcome in self._run_wave(wave, ctx).items():
                if outcome["data"] is None:
                    failed.add(sid)
                else:
                    done[sid] = outcome
                    ctx["resolved"][sid] = outcome["data"]
            pending = [s for s in pending if s not in wave]
        return done, failed

    def _with_deps(self, src):
        seen, stack = {}, [src]
        while stack:
            s = stack.pop()
            if s.id in seen:
                continue
            seen[s.id] = s
            stack.extend(self.sources[d] for d in s.deps if d in self.sources)
        return list(seen.values())

    # ═══════════════════════ API ═══════════════════════

    def get_data(self, key, session_id):
        """Data for one source id or category, resolved in that session's context only."""
        src = self.sources.get(key) or next(
            (s for s in self.sources.values() if s.category == key), None)
        result = {"sessionId": session_id, "source": src.id if src else key,
                  "data": None, "fetchedAt": None, "fromCache": False, "status": freshness.UNKNOWN}
        ctx = self._context(session_id)
        if src is None or ctx is None:
            logger.debug("get_data(%s, %s): unknown source or session", key, session_id)
            return result
        done, _ = self._resolve(self._with_deps(src), ctx)
        outcome = done.get(src.id)
        if outcome:
            result.update(data=outcome["data"], fetchedAt=outcome["fetchedAt"],
                          fromCache=outcome["fromCache"],
                          status=freshness.get_status(outcome["fetchedAt"], src.category))
        return result

    def gather(self, session_id, stdin_json=None):
        """Full cycle for the statusline: every registered source, merged."""
        health = default_health(session_id)
        ctx = self._context(session_id, stdin_json)
        if ctx is None:
            logger.debug("gather: session %s not registered", session_id)
            return health

        start = time.monotonic()
        done, failed = self._resolve(list(self.sources.values()), ctx)
        for sid, outcome in done.items():
            src = self.sources[sid]
            try:
                src.merge(health, outcome["data"])
            except Exception:
                logger.debug("merge %s failed", sid, exc_info=True)
                failed.add(sid)
                continue
            health["freshness"][sid] = {"category": src.category, "fetchedAt": outcome["fetchedAt"],
                                        "indicator": outcome["indicator"]}
            health["sources"][sid] = outcome["how"]
        for sid in failed:
            health["sources"].setdefault(sid, "failed")

        billed = health["freshness"].get("billing", {}).get("fetchedAt")
        if health["billing"]:
            health["billing"]["lastFetched"] = billed
            health["billing"]["isFresh"] = freshness.is_billing_fresh(billed)
        logger.debug("gather %s: %d ok, %d failed in %.0fms", session_id,
                     len(done), len(failed), (time.monotonic() - start) * 1000)
        return health


def _outcome(e, how, indicator=""):
    if e is None:
        return {"data": None, "fetchedAt": None, "fromCache": False, "how": how, "indicator": indicator}
    return {"data": e["data"], "fetchedAt": e["fetchedAt"], "fromCache": how != "fetched",
            "how": how, "indicator": indicator}


def _run_fetch(src, ctx, box):
    try:
        box["data"] = src.fetch(ctx)
    except Exception:
        logger.debug("%s failed", src.id, exc_info=True)


def _alarm(signum, frame):
    raise FetchError("background refresh timed out")
