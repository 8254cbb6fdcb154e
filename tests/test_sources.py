"""Tests for slbroker.sources fetchers (subprocess calls mocked)."""

import json
import shutil
import subprocess
import tempfile
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

import pytest

from slbroker import sources
from slbroker.sources import FetchError, Source


def completed(stdout="", returncode=0):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr="")


class TestSourceDef:
    def test_defaults(self):
        s = Source("x", 2, "transcript", None, None)
        assert s.cached
        assert s.scope == "global"
        assert not Source("y", 1, "context", None, None).cached

    def test_bad_tier_or_scope(self):
        with pytest.raises(ValueError):
            Source("x", 4, "context", None, None)
        with pytest.raises(ValueError):
            Source("x", 1, "context", None, None, scope="machine")

    def test_registry(self):
        by_id = {s.id: s for s in sources.default_sources()}
        assert set(by_id) == {"context", "model", "transcript", "git_status",
                              "limits", "billing", "weekly_quota"}
        assert by_id["limits"].scope == "session"
        assert by_id["git_status"].scope == "project"
        assert by_id["billing"].lock == "ccusage"
        assert by_id["weekly_quota"].deps == ("limits",)
        assert not by_id["weekly_quota"].cached


class TestStdinSources:
    def test_context(self):
        ctx = {"input": {"context_window": {
            "context_window_size": 1_000_000,
            "current_usage": {"input_tokens": 100_000, "cache_read_input_tokens": 65_000},
        }}}
        r = sources.fetch_context(ctx)
        # buffer scales: 33k * 5 = 165k, effective 835k
        assert r["used"] == 165_000
        assert r["remaining"] == 670_000
        assert r["percentUsed"] == 19

    def test_context_missing(self):
        assert sources.fetch_context({"input": {}}) is None

    def test_model_from_stdin(self):
        r = sources.fetch_model({"input": {"model": {"id": "claude-sonnet-4-5", "display_name": "Sonnet 4.5"}}})
        assert r == {"id": "claude-sonnet-4-5", "displayName": "Sonnet 4.5",
                     "family": "sonnet", "source": "stdin"}

    def test_model_default(self, tmp_path):
        r = sources.fetch_model({"input": {}, "configDir": str(tmp_path)})
        assert r["displayName"] == "Claude"
        assert r["source"] == "default"

    def test_settings_model_malformed(self, tmp_path):
        (tmp_path / "settings.json").write_text("{oops")
        assert sources.settings_model(tmp_path) is None
        (tmp_path / "settings.json").write_text(json.dumps({"model": 3}))
        assert sources.settings_model(tmp_path) is None


class TestTranscript:
    def test_no_path(self):
        with pytest.raises(FetchError):
            sources.fetch_transcript({})

    def test_size_estimate_when_nothing_parses(self, tmp_path):
        p = tmp_path / "t.jsonl"
        p.write_text("x" * 102_400)
        r = sources.fetch_transcript({"transcriptPath": str(p)})
        assert r["estimated"]
        assert r["costUSD"] == pytest.approx(0.02)


class TestGit:
    PORCELAIN = "\n".join([
        "# branch.oid abc123",
        "# branch.head feature/x",
        "# branch.upstream origin/feature/x",
        "# branch.ab +2 -1",
        "1 .M N... 100644 100644 100644 aaa bbb statusline.py",
        "? tests/new.py",
    ]) + "\n"

    def test_parse(self):
        with patch("slbroker.sources.subprocess.run", return_value=completed(self.PORCELAIN)) as run:
            r = sources.fetch_git({"projectPath": "/proj"})
        assert r == {"repo": True, "branch": "feature/x", "ahead": 2, "behind": 1, "dirty": 2}
        assert run.call_args[0][0][:3] == ["git", "-C", "/proj"]

    def test_not_a_repo(self):
        with patch("slbroker.sources.subprocess.run", return_value=completed("", 128)):
            assert sources.fetch_git({"projectPath": "/tmp"}) == {"repo": False}


class TestAuth:
    def test_keychain_service(self):
        assert sources.keychain_service(None) == "Claude Code-credentials"
        assert sources.keychain_service("~/.claude") == "Claude Code-credentials"
        alt = sources.keychain_service("/work/.claude-b")
        assert alt.startswith("Claude Code-credentials-")
        assert len(alt) == len("Claude Code-credentials-") + 8

    def test_token_parsing(self):
        assert sources._token_from('{"accessToken": "a"}') == "a"
        assert sources._token_from('{"claudeAiOauth": {"accessToken": "b"}}') == "b"
        assert sources._token_from("raw-token\n") == "raw-token"
        assert sources._token_from("[]") is None

    def test_env_override(self):
        with patch.dict("os.environ", {"CLAUDE_OAUTH_TOKEN": "env"}):
            assert sources.get_oauth_token("/anything") == "env"

    def test_credentials_file(self, tmp_path):
        (tmp_path / ".credentials.json").write_text(json.dumps({"claudeAiOauth": {"accessToken": "file"}}))
        with patch.dict("os.environ", {"CLAUDE_OAUTH_TOKEN": ""}), \
             patch("slbroker.sources.sys.platform", "linux"), \
             patch("slbroker.sources.shutil.which", return_value=None):
            assert sources.get_oauth_token(tmp_path) == "file"

    def test_limits_without_token(self):
        with patch("slbroker.sources.get_oauth_token", return_value=None):
            with pytest.raises(FetchError):
                sources.fetch_limits({"configDir": "/x"})

    def test_limits(self):
        payload = {"five_hour": {"utilization": 12}}
        with patch("slbroker.sources.get_oauth_token", return_value="t"), \
             patch("slbroker.sources.subprocess.run", return_value=completed(json.dumps(payload))) as run:
            assert sources.fetch_limits({"configDir": "/x"}) == payload
        assert "Authorization: Bearer t" in run.call_args[0][0]

    def test_limits_curl_failure(self):
        with patch("slbroker.sources.get_oauth_token", return_value="t"), \
             patch("slbroker.sources.subprocess.run", return_value=completed("", 22)):
            with pytest.raises(FetchError):
                sources.fetch_limits({})


class TestBilling:
    TODAY = datetime(2026, 3, 10, 12, 0)

    def test_daily_entries_shapes(self):
        assert sources.daily_entries([{"date": "a"}]) == [{"date": "a"}]
        assert sources.daily_entries({"daily": [1]}) == [1]
        assert sources.daily_entries({"projects": {"p1": [1], "p2": [2, 3]}}) == [1, 2, 3]
        assert sources.daily_entries("junk") == []

    def test_summarize(self):
        arr = [
            {"date": "2026-03-10", "totalCost": 40.3},
            {"date": "2026-03-09", "totalCost": 10},
            {"date": "2026-03-04", "cost": 5},
            {"date": "2026-03-03", "totalCost": 7},
            {"date": "2026-02-01", "totalCost": 100},
        ]
        r = sources.summarize_spend(arr, self.TODAY)
        assert r["costToday"] == pytest.approx(40.3)
        assert r["cost7d"] == pytest.approx(55.3)
        assert r["cost30d"] == pytest.approx(62.3)
        assert r["daily"] == pytest.approx([5, 0, 0, 0, 0, 10, 40.3])

    def test_not_installed(self):
        with patch("slbroker.sources.shutil.which", return_value=None):
            with pytest.raises(FetchError):
                sources.fetch_billing({})

    def test_fetch(self):
        with patch("slbroker.sources.ccusage_cmd", return_value=["ccusage"]), \
             patch("slbroker.sources.subprocess.run", return_value=completed(json.dumps({"daily": []}))):
            r = sources.fetch_billing({})
        assert r["source"] == "ccusage"
        assert r["billing"]["costToday"] == 0

    def test_merge_billing(self):
        target = {}
        sources.merge_billing(target, {"billing": {"costToday": 1}, "source": "ccusage"})
        assert target == {"billing": {"costToday": 1, "source": "ccusage"}}


class TestQuota:
    def test_derive(self):
        ctx = {"resolved": {
            "limits": {"seven_day": {"utilization": 50}, "five_hour": {"utilization": 40}},
            "transcript": {"costPerHour": 10},
        }}
        r = sources.derive_quota(ctx)
        assert r["weeklyPercentUsed"] == 50
        assert r["budgetMinutes"] is None
        assert r["urgency"]["score"] == 47
