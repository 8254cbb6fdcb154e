"""Data sources: what the broker can fetch, how, and where it lands.

Tiers: 1 = instant (stdin, settings), 2 = per-session files,
3 = expensive or derived (network, CLI calls). Each source names its
freshness category, a timeout, its dependencies and a cache scope:

  global   one cache slot shared by every session (ccusage spend)
  session  one slot per session, keyed by its config dir (OAuth limits)
  project  one slot per project directory (git status)

fetch(ctx) returns data, or raises / returns None on failure.
merge(target, data) folds the data into the gathered result.
"""

import hashlib
import json
import os
import shutil
import subprocess
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

from slbroker import costs, log, urgency
from slbroker.timeutil import now_ms, parse_iso

logger = log.get("sources")

CTX_BUFFER_200K = 33_000  # Buffer for 200k window; scales proportionally for larger windows
DEFAULT_CONFIG_DIR = Path("~/.claude").expanduser()
KEYCHAIN_SERVICE = "Claude Code-credentials"
USAGE_URL = "https://api.anthropic.com/api/oauth/usage"

SCOPES = ("global", "session", "project")


class FetchError(Exception):
    """A source could not produce data this cycle."""


class Source:
    def __init__(self, id, tier, category, fetch, merge, timeout_ms=5_000,
                 deps=(), scope="global", cached=None, lock=None):
        if tier not in (1, 2, 3):
            raise ValueError(f"bad tier for {id}: {tier}")
        if scope not in SCOPES:
            raise ValueError(f"bad scope for {id}: {scope}")
        self.id = id
        self.tier = tier
        self.category = category
        self.fetch = fetch
        self.merge = merge
        self.timeout_ms = timeout_ms
        self.deps = tuple(deps)
        self.scope = scope
        self.cached = tier >= 2 if cached is None else cached
        self.lock = lock

    def __repr__(self):
        return f"<Source {self.id} tier={self.tier} {self.scope}>"


def _put(key):
    def merge(target, data):
        target[key] = data
    return merge

# ═══════════════════════ TIER 1 ═══════════════════════

def fetch_context(ctx):
    """Context window usage from the stdin payload."""
    cw = (ctx.get("input") or {}).get("context_window")
    if not isinstance(cw, dict):
        return None
    csz = cw.get("context_window_size") or 200_000
    cu = cw.get("current_usage") or {}
    used = sum(max(0, int(cu.get(k) or 0)) for k in
               ("input_tokens", "cache_creation_input_tokens", "cache_read_input_tokens"))
    buf = CTX_BUFFER_200K * csz // 200_000
    eff = max(1, csz - buf)
    return {
        "windowSize": csz,
        "used": used,
        "remaining": max(0, eff - used),
        "percentUsed": min(100, used * 100 // eff),
        "totalInput": cw.get("total_input_tokens", 0),
        "totalOutput": cw.get("total_output_tokens", 0),
    }


def settings_model(config_dir):
    """Model pinned in <config dir>/settings.json, if any."""
    try:
        data = json.loads((Path(config_dir) / "settings.json").read_text())
    except (OSError, ValueError, TypeError):
        return None
    m = data.get("model") if isinstance(data, dict) else None
    return m if isinstance(m, str) and m else None


def fetch_model(ctx):
    """stdin model, then the session's settings.json, then a generic label."""
    m = (ctx.get("input") or {}).get("model") or {}
    if isinstance(m, dict) and m.get("id"):
        return {"id": m["id"], "displayName": m.get("display_name") or m["id"],
                "family": costs.model_family(m["id"]), "source": "stdin"}
    sm = settings_model(ctx.get("configDir") or DEFAULT_CONFIG_DIR)
    if sm:
        return {"id": sm, "displayName": sm, "family": costs.model_family(sm), "source": "settings"}
    return {"id": "", "displayName": "Claude", "family": None, "source": "default"}

# ═══════════════════════ TIER 2 ═══════════════════════

def fetch_transcript(ctx):
    """Session cost from the transcript; file-size estimate if nothing parses."""
    path = ctx.get("transcriptPath")
    if not path or not Path(path).exists():
        raise FetchError("no transcript")
    est = costs.estimate_transcript(path)
    if est["messageCount"] == 0:
        est["costUSD"] = costs.estimate_from_size(path)
        est["estimated"] = True
    est["path"] = str(path)
    return est

# ═══════════════════════ TIER 3 ═══════════════════════

def fetch_git(ctx):
    """Branch, ahead/behind and dirty count for the project directory."""
    cwd = ctx.get("projectPath") or os.getcwd()
    r = subprocess.run(
        ["git", "-C", str(cwd), "status", "--porcelain=v2", "--branch"],
        capture_output=True, text=True, timeout=4)
    if r.returncode != 0:
        return {"repo": False}
    info = {"repo": True, "branch": None, "ahead": 0, "behind": 0, "dirty": 0}
    for line in r.stdout.splitlines():
        if line.startswith("# branch.head "):
            info["branch"] = line.split(" ", 2)[2]
        elif line.startswith("# branch.ab "):
            a, b = line.split()[2:4]
            info["ahead"], info["behind"] = int(a), -int(b)
        elif line and not line.startswith("#"):
            info["dirty"] += 1
    return info


def keychain_service(config_dir):
    """Credential service name Claude Code uses for a config dir."""
    p = Path(config_dir or DEFAULT_CONFIG_DIR).expanduser()
    if p == DEFAULT_CONFIG_DIR:
        return KEYCHAIN_SERVICE
    return f"{KEYCHAIN_SERVICE}-{hashlib.sha256(str(p).encode()).hexdigest()[:8]}"


def _token_from(raw):
    try:
        creds = json.loads(raw)
    except ValueError:
        return raw.strip() or None  # Might be raw token
    if not isinstance(creds, dict):
        return None
    return creds.get("accessToken") or (creds.get("claudeAiOauth") or {}).get("accessToken")


def get_oauth_token(config_dir=None):
    """OAuth token: env override, platform keychain, then .credentials.json."""
    env_tok = os.environ.get("CLAUDE_OAUTH_TOKEN")
    if env_tok:
        return env_tok

    service = keychain_service(config_dir)
    cmd = None
    if sys.platform == "darwin":
        cmd = ["security", "find-generic-password", "-s", service, "-w"]
    elif sys.platform.startswith("linux") and shutil.which("secret-tool"):
        cmd = ["secret-tool", "lookup", "service", service]
    if cmd:
        try:
            r = subprocess.run(cmd, capture_output=True, text=True, timeout=5)
            if r.returncode == 0 and r.stdout.strip():
                return _token_from(r.stdout.strip())
        except (OSError, subprocess.SubprocessError):
            logger.debug("keychain lookup failed for %s", service, exc_info=True)

    creds = Path(config_dir or DEFAULT_CONFIG_DIR).expanduser() / ".credentials.json"
    try:
        return _token_from(creds.read_text())
    except OSError:
        return None


def fetch_limits(ctx):
    """OAuth usage limits (5h, weekly, per-model) for the session's account."""
    token = get_oauth_token(ctx.get("configDir"))
    if not token:
        raise FetchError("no oauth token")
    r = subprocess.run([
        "curl", "-sf", "--connect-timeout", "5", "--max-time", "10",
        "-H", f"Authorization: Bearer {token}",
        "-H", "anthropic-beta: oauth-2025-04-20",
        USAGE_URL,
    ], capture_output=True, text=True, timeout=15)
    if r.returncode != 0 or not r.stdout.strip():
        raise FetchError(f"usage api: curl exit {r.returncode}")
    data = json.loads(r.stdout)
    if not isinstance(data, dict):
        raise FetchError("usage api: unexpected payload")
    return data


def ccusage_cmd():
    if shutil.which("ccusage"):
        return ["ccusage"]
    if shutil.which("bunx"):
        return ["bunx", "ccusage"]
    if shutil.which("npx"):
        return ["npx", "-y", "ccusage"]
    return None


def daily_entries(raw):
    """Flatten ccusage output: plain list, {"daily": [...]}, or --instances projects."""
    if isinstance(raw, list):
        return raw
    if not isinstance(raw, dict):
        return []
    projects = raw.get("projects")
    if projects and isinstance(projects, dict):
        arr = []
        for entries in projects.values():
            arr.extend(entries)
        return arr
    return raw.get("daily") or raw.get("data") or []


def summarize_spend(arr, today=None):
    """1d/7d/30d totals plus per-day costs for the last 7 days."""
    today = today or datetime.now()

    def day(n):
        return (today - timedelta(days=n)).strftime("%Y-%m-%d")

    def cost(e):
        return (e.get("totalCost", e.get("cost", 0)) or 0) if isinstance(e, dict) else 0

    def agg(from_date):
        return sum(cost(e) for e in arr if isinstance(e, dict) and from_date <= e.get("date", "") <= day(0))

    return {
        "costToday": agg(day(0)),
        "cost7d": agg(day(6)),
        "cost30d": agg(day(29)),
        "daily": [sum(cost(e) for e in arr if isinstance(e, dict) and e.get("date") == day(i))
                  for i in range(6, -1, -1)],
    }


def fetch_billing(ctx):
    """Daily spend from the ccusage CLI."""
    cmd = ccusage_cmd()
    if not cmd:
        raise FetchError("ccusage not installed")
    since = (datetime.now() - timedelta(days=30)).strftime("%Y%m%d")
    until = datetime.now().strftime("%Y%m%d")
    args = cmd + ["daily", "--json", "--instances", "--since", since, "--until", until, "--mode", "calculate"]
    r = subprocess.run(args, capture_output=True, text=True, timeout=30)
    if r.returncode != 0 or not r.stdout.strip():
        raise FetchError(f"ccusage exit {r.returncode}")
    return {"billing": summarize_spend(daily_entries(json.loads(r.stdout))), "source": "ccusage"}


def merge_billing(target, data):
    b = dict(data.get("billing") or {})
    b["source"] = data.get("source")
    target["billing"] = b


def derive_quota(ctx):
    """Weekly/5h usage from the limits payload, scored for swap urgency."""
    lim = ctx["resolved"].get("limits") or {}
    weekly = (lim.get("seven_day") or {}).get("utilization") or 0
    five = (lim.get("five_hour") or {}).get("utilization") or 0

    minutes = None
    reset = parse_iso((lim.get("five_hour") or {}).get("resets_at"))
    if reset:
        minutes = max(0, (reset - datetime.now(timezone.utc)).total_seconds() / 60)

    burn = (ctx["resolved"].get("transcript") or {}).get("costPerHour") or 0
    return {
        "weeklyPercentUsed": weekly,
        "fiveHourPercentUsed": five,
        "budgetMinutes": minutes,
        "burnRatePerHour": burn,
        "urgency": urgency.score(weekly, five, burn, minutes),
        "derivedAt": now_ms(),
    }

# ═══════════════════════ REGISTRY ═══════════════════════

def default_sources():
    return [
        Source("context", 1, "context", fetch_context, _put("context"), timeout_ms=100),
        Source("model", 1, "model", fetch_model, _put("model"), timeout_ms=500),
        Source("transcript", 2, "transcript", fetch_transcript, _put("transcript"),
               timeout_ms=3_000, scope="session"),
        Source("git_status", 3, "git_status", fetch_git, _put("git"),
               timeout_ms=5_000, scope="project"),
        Source("limits", 3, "billing_oauth", fetch_limits, _put("limits"),
               timeout_ms=15_000, scope="session"),
        Source("billing", 3, "billing_ccusage", fetch_billing, merge_billing,
               timeout_ms=30_000, lock="ccusage"),
        Source("weekly_quota", 3, "weekly_quota", derive_quota, _put("quota"),
               timeout_ms=500, deps=("limits",), cached=False),
    ]
