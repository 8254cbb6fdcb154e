"""Settings: module-level defaults, optionally overridden by a TOML file.

Config: ~/.claude/statusline.toml (or $STATUSLINE_CONFIG)
State:  ~/.claude/session-health/ (or $STATUSLINE_HOME)
"""

import os
from pathlib import Path

# ═══════════════════════ DEFAULTS ═══════════════════════

BASE_DIR = Path(os.environ.get("STATUSLINE_HOME") or "~/.claude/session-health").expanduser()
CONFIG_PATH = Path(os.environ.get("STATUSLINE_CONFIG") or "~/.claude/statusline.toml").expanduser()

FAILOVER_PATHS = [
    Path("~/_claude-configs/hot-swap/failover-events.jsonl").expanduser(),
    Path("~/.claude/hot-swap/failover-events.jsonl").expanduser(),
]

DEADLINE_MS = 20_000       # Whole gather cycle
LOCK_WAIT_MS = 0           # Fetch locks: try once, fall back to cache
BACKGROUND_REFRESH = True  # Stale tier-3 data: render it, refresh in a forked child
CACHE_LOCK_WAIT_MS = 2_000 # data-cache.json read-merge-write; busy longer → skip the write

REQ_COST_WARN = 0.50       # Yellow threshold for session cost
REQ_COST_CRIT = 1.00       # Red threshold for session cost
COMPACT_COLS = 120         # Below this width, compact mode
ULTRA_COLS = 80            # Below this width, ultra-compact (no bars)
SYM_CTX = ("◆", "◇")       # Context bar (filled, empty)
SYM_LIM = ("◼", "◻")       # Limits bar (filled, empty)

DEBUG = os.environ.get("STATUSLINE_DEBUG", "") not in ("", "0")

# ═══════════════════════ PATHS ═══════════════════════

def set_base_dir(path):
    """Point all shared state at another directory (tests, alternate homes)."""
    global BASE_DIR
    BASE_DIR = Path(path)

def cache_path():
    return BASE_DIR / "data-cache.json"

def cooldown_dir():
    return BASE_DIR / "cooldowns"

def intents_dir():
    return BASE_DIR / "refresh-intents"

def locks_dir():
    return BASE_DIR / "locks"

def log_path():
    return BASE_DIR / "statusline.log"

def failover_path():
    """First failover log that exists, else the preferred location."""
    for p in FAILOVER_PATHS:
        if p.exists():
            return p
    return FAILOVER_PATHS[0]

# ═══════════════════════ TOML ═══════════════════════

def load_config(path=None):
    """Load optional TOML config, override defaults. Returns the parsed dict or None."""
    global BASE_DIR, FAILOVER_PATHS, DEADLINE_MS, LOCK_WAIT_MS, CACHE_LOCK_WAIT_MS, BACKGROUND_REFRESH
    global REQ_COST_WARN, REQ_COST_CRIT, COMPACT_COLS, ULTRA_COLS
    global SYM_CTX, SYM_LIM, DEBUG

    cfg_path = Path(path) if path else CONFIG_PATH
    if not cfg_path.exists():
        return None

    try:
        try:
            import tomllib
        except ImportError:
            import tomli as tomllib  # type: ignore
        with open(cfg_path, "rb") as f:
            cfg = tomllib.load(f)
    except (OSError, ValueError):
        return None

    p = cfg.get("paths", {})
    if p.get("base_dir") and not os.environ.get("STATUSLINE_HOME"):
        BASE_DIR = Path(p["base_dir"]).expanduser()
    if p.get("failover_log"):
        FAILOVER_PATHS = [Path(p["failover_log"]).expanduser()]

    b = cfg.get("broker", {})
    DEADLINE_MS = b.get("deadline_ms", DEADLINE_MS)
    LOCK_WAIT_MS = b.get("lock_wait_ms", LOCK_WAIT_MS)
    CACHE_LOCK_WAIT_MS = b.get("cache_lock_wait_ms", CACHE_LOCK_WAIT_MS)
    BACKGROUND_REFRESH = bool(b.get("background", BACKGROUND_REFRESH))

    t = cfg.get("thresholds", {})
    REQ_COST_WARN = t.get("cost_warn", REQ_COST_WARN)
    REQ_COST_CRIT = t.get("cost_crit", REQ_COST_CRIT)
    COMPACT_COLS = t.get("compact_cols", COMPACT_COLS)
    ULTRA_COLS = t.get("ultra_cols", ULTRA_COLS)

    s = cfg.get("symbols", {})
    if "ctx" in s and len(s["ctx"]) == 2:
        SYM_CTX = tuple(s["ctx"])
    if "lim" in s and len(s["lim"]) == 2:
        SYM_LIM = tuple(s["lim"])

    d = cfg.get("debug", {})
    DEBUG = DEBUG or bool(d.get("log", False))
    return cfg
