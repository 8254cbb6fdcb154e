"""Tests for slbroker.cache and slbroker.lock."""

import fcntl
import json
import multiprocessing
import os
import shutil
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from slbroker import cache, config, lock


class StateDir:
    def setup_method(self):
        self._orig = config.BASE_DIR
        self.tmp = Path(tempfile.mkdtemp())
        config.set_base_dir(self.tmp)

    def teardown_method(self):
        shutil.rmtree(self.tmp, ignore_errors=True)
        config.set_base_dir(self._orig)


def _writer(base, n, rounds):
    config.set_base_dir(base)
    for r in range(rounds):
        while not cache.update({f"w{n}-{r}": cache.entry(r)}):
            pass


# ═══════════════════════ cache ═══════════════════════

class TestCacheRead(StateDir):
    def test_missing_is_empty(self):
        doc = cache.read()
        assert doc["version"] == 2
        assert doc["sources"] == {}

    @pytest.mark.parametrize("text", [
        "",
        "{not json",
        "[]",
        json.dumps({"version": 1, "sources": {"billing": {"data": 1, "fetchedAt": 5}}}),
        json.dumps({"version": 2, "sources": []}),
    ])
    def test_malformed_is_empty(self, text):
        config.cache_path().write_text(text)
        assert cache.read()["sources"] == {}

    def test_invalid_entries_dropped(self):
        config.cache_path().write_text(json.dumps({"version": 2, "updatedAt": 1, "sources": {
            "good": {"data": {"x": 1}, "fetchedAt": 10},
            "no_ts": {"data": {}},
            "no_data": {"fetchedAt": 10},
            "bad_ts": {"data": {}, "fetchedAt": "10"},
        }}))
        assert set(cache.read()["sources"]) == {"good"}

    def test_dig(self):
        doc = {"a": {"b": {"c": 3}}}
        assert cache.dig(doc, "a", "b", "c") == 3
        assert cache.dig(doc, "a", "x", "c") is None
        assert cache.dig(doc, "a", "b", "c", "d") is None


class TestCacheWrite(StateDir):
    def test_round_trip_preserves_values(self):
        e = cache.entry({"billing": {"costToday": 40.3}}, None)
        assert cache.update({"billing": e})
        got = cache.source(cache.read(), "billing")
        assert got["data"]["billing"]["costToday"] == 40.3
        assert got["fetchedAt"] == e["fetchedAt"]
        assert got["fetchedBy"] == os.getpid()

    def test_context_key_stored(self):
        cache.update({"limits@s1": cache.entry({}, "/cfg/a")})
        assert cache.source(cache.read(), "limits@s1")["contextKey"] == "/cfg/a"

    def test_update_merges(self):
        cache.update({"a": cache.entry(1)})
        cache.update({"b": cache.entry(2)})
        doc = cache.read()
        assert set(doc["sources"]) == {"a", "b"}
        assert doc["updatedAt"] >= doc["sources"]["a"]["fetchedAt"]

    def test_update_replaces_malformed_document(self):
        config.cache_path().write_text("garbage")
        cache.update({"a": cache.entry(1)})
        assert set(cache.read()["sources"]) == {"a"}

    def test_no_temp_files_left(self):
        cache.update({"a": cache.entry(1)})
        assert [p.name for p in self.tmp.iterdir() if p.is_file()] == ["data-cache.json"]

    def test_update_with_cache_lock_busy(self):
        cache.update({"a": cache.entry(1)})
        other = lock.acquire(cache.LOCK_NAME)
        try:
            with patch.object(config, "CACHE_LOCK_WAIT_MS", 0):
                assert not cache.update({"b": cache.entry(2)})
                assert not cache.clear_cache()
        finally:
            lock.release(other)
        assert set(cache.read()["sources"]) == {"a"}

    def test_concurrent_writers_lose_nothing(self):
        ctx = multiprocessing.get_context("fork")
        procs = [ctx.Process(target=_writer, args=(str(self.tmp), n, 10)) for n in range(6)]
        for p in procs:
            p.start()
        for p in procs:
            p.join(60)
        assert [p.exitcode for p in procs] == [0] * 6
        ids = set(cache.read()["sources"])
        assert ids == {f"w{n}-{r}" for n in range(6) for r in range(10)}

    def test_clear(self):
        cache.update({"a": cache.entry(1)})
        assert cache.clear_cache()
        assert cache.read()["sources"] == {}


# ═══════════════════════ lock ═══════════════════════

class TestLock(StateDir):
    def test_acquire_release(self):
        lk = lock.acquire("ccusage")
        assert lk is not None
        assert lock.holder("ccusage") == os.getpid()
        lock.release(lk)
        assert not lock.lock_path("ccusage").exists()

    def test_contention(self):
        lk = lock.acquire("ccusage")
        try:
            assert lock.acquire("ccusage", wait_ms=0) is None
            assert lock.acquire("ccusage", wait_ms=100) is None
        finally:
            lock.release(lk)
        again = lock.acquire("ccusage")
        assert again is not None
        lock.release(again)

    def test_held_by_foreign_flock(self):
        path = lock.lock_path("limits")
        path.parent.mkdir(parents=True)
        fd = os.open(str(path), os.O_CREAT | os.O_RDWR)
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        try:
            assert lock.acquire("limits") is None
        finally:
            os.close(fd)
        lk = lock.acquire("limits")
        assert lk is not None
        lock.release(lk)

    def test_with_lock_returns_value(self):
        assert lock.with_lock("x", lambda: 42) == 42
        assert not lock.lock_path("x").exists()

    def test_with_lock_busy_returns_default(self):
        calls = []
        lk = lock.acquire("x")
        try:
            assert lock.with_lock("x", lambda: calls.append(1), default="busy") == "busy"
        finally:
            lock.release(lk)
        assert calls == []

    def test_with_lock_releases_on_exception(self):
        def boom():
            raise RuntimeError("fetch failed")
        with pytest.raises(RuntimeError):
            lock.with_lock("x", boom)
        lk = lock.acquire("x")
        assert lk is not None
        lock.release(lk)

    def test_force_release(self):
        lk = lock.acquire("ccusage")
        assert lock.force_release("ccusage")
        successor = lock.acquire("ccusage")
        assert successor is not None
        # Old holder finishing must not remove the successor's lock
        lock.release(lk)
        assert lock.lock_path("ccusage").exists()
        assert lock.acquire("ccusage") is None
        lock.release(successor)

    def test_force_release_unlocked(self):
        assert not lock.force_release("nothing")

    def test_name_sanitized(self):
        p = lock.lock_path("limits@sess/../x")
        assert p.parent == config.locks_dir()
        assert "/" not in p.name

    def test_release_none(self):
        lock.release(None)
