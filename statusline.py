#!/usr/bin/env python3
"""Claude Code Statusline — 2-line status with ANSI colors.

Line 1: Model (colored by limit pressure), context bar, remaining tokens,
         session cost (clickable OSC8 link), duration, git branch.
Line 2: 5h limit bar + reset countdown, weekly % + per-model sub-limits (O/S/H),
         1d/7d/30d costs, 7-day sparkline, swap urgency.

Data comes from the slbroker data broker: a cache shared by every
session in BASE_DIR, refreshed at most once per source across processes.
Stale values carry ⚠ / 🔺 markers; missing values render as —.

Three-tier responsive layout:
  ultra   (<80 cols) — no bars, minimal separators
  compact (80-119)   — 6-char bars
  full    (120+)     — 10-char bars

Color coding: green <60%, yellow 60-79%, red 80-89%, red+blink >=90%.

Dependencies: ccusage (bun install -g ccusage), git, curl
Config:       ~/.claude/statusline.toml (optional)
State:        ~/.claude/session-health/

Usage:
  statusline.py                      read session JSON on stdin, print 2 lines
  statusline.py --report             freshness report for cached data
  statusline.py --clear-cache        drop cache, cooldowns and refresh intents
  statusline.py --force-unlock NAME  remove a wedged fetch lock
"""

import sys, json, os
from datetime import datetime, timezone

from slbroker import cache, config, failover, freshness, intents, lock, log
from slbroker.broker import Broker
from slbroker.costs import model_family
from slbroker.timeutil import parse_iso

config.load_config()
log.setup()
logger = log.get("render")

# Extend PATH for bun/node installed via common managers
for p in ("~/.bun/bin", "~/.local/bin", "~/.nvm/current/bin", "/usr/local/bin"):
    expanded = os.path.expanduser(p)
    if expanded not in os.environ.get("PATH", ""):
        os.environ["PATH"] = expanded + os.pathsep + os.environ.get("PATH", "")

SPARK = "▁▂▃▄▅▆▇█"         # Sparkline block elements
USAGE_URL = "https://console.anthropic.com/settings/usage"

# ═══════════════════════ ANSI ═══════════════════════

R  = "\033[0m"    # Reset
GR = "\033[32m"   # Green
YL = "\033[33m"   # Yellow
RD = "\033[31m"   # Red
DM = "\033[2m"    # Dim
BL = "\033[5m"    # Blink

def cpct(pct, txt):
    """Colorize by percentage: green <60, yellow 60-79, red >=80, blink >=90."""
    if pct >= 90: return f"{BL}{RD}{txt}{R}"
    if pct >= 80: return f"{RD}{txt}{R}"
    if pct >= 60: return f"{YL}{txt}{R}"
    return f"{GR}{txt}{R}"

def ccost(cost, txt):
    """Colorize cost by thresholds."""
    if cost >= config.REQ_COST_CRIT: return f"{RD}{txt}{R}"
    if cost >= config.REQ_COST_WARN: return f"{YL}{txt}{R}"
    return txt

def osc8(url, txt):
    """OSC 8 clickable hyperlink (iTerm2, Kitty, WezTerm)."""
    return f"\033]8;;{url}\033\\{txt}\033]8;;\033\\"

# ═══════════════════════ HELPERS ═══════════════════════

def fmt_tok(t):
    """Format tokens: 128k, 1.9M, 21M. Smart rounding for 1-9.9M range."""
    t = max(0, int(t))
    if t >= 10_000_000:
        return f"{t // 1_000_000}M"
    if t >= 1_000_000:
        m = t / 1_000_000
        s = f"{m:.1f}".rstrip("0").rstrip(".")
        return f"{s}M"
    if t >= 1000:
        return f"{t // 1000}k"
    return str(t)

def bar(pct, fc, ec, w=10):
    """Progress bar: filled/empty chars, width."""
    pct = max(0, min(100, pct))
    f = int(pct * w // 100)
    if pct > 0 and f == 0:
        f = 1
    return fc * f + ec * (w - f)

def sparkline(values):
    """Sparkline from numeric values using Unicode block elements."""
    if not values or all(v == 0 for v in values):
        return ""
    mn = min(values)
    mx = max(values)
    rng = mx - mn if mx > mn else 1
    return "".join(SPARK[min(7, int((v - mn) / rng * 7))] for v in values)

def fmtdur(ms):
    """Format duration: 2h14m or 14m."""
    s = max(0, int(ms)) // 1000
    h, m = s // 3600, s % 3600 // 60
    return f"{h}h{m:02d}m" if h else f"{m}m"

def detect_cols():
    """Detect terminal width with safe fallbacks."""
    # Env var override (highest priority)
    for env in ("STATUSLINE_COLS", "COLUMNS"):
        v = os.environ.get(env, "")
        if v.isdigit() and int(v) > 0:
            return int(v)
    # Try /dev/tty for real terminal width (works in pipes)
    try:
        fd = os.open("/dev/tty", os.O_RDONLY)
        try:
            return os.get_terminal_size(fd).columns
        finally:
            os.close(fd)
    except OSError:
        pass
    return 80

def layout_tier(cols):
    if cols < config.ULTRA_COLS:
        return 0
    if cols < config.COMPACT_COLS:
        return 1
    return 2

def mark(health, source_id):
    """Staleness marker for a gathered source, '' when fresh or unknown."""
    f = health.get("freshness", {}).get(source_id)
    if not f:
        return ""
    if "indicator" in f:
        return f["indicator"]
    return freshness.get_context_aware_indicator(f["fetchedAt"], f["category"])

def util(lim, key):
    try:
        return int((lim.get(key) or {}).get("utilization") or 0)
    except (TypeError, ValueError):
        return 0

# ═══════════════════════ LINE BUILDERS ═══════════════════════

def build_line1(health, data=None, tier=2):
    """Line 1: Model (colored by limit), context bar, remaining tokens, session cost, duration.

    tier: 0=ultra (<80 cols), 1=compact (80-119), 2=full (120+).
    """
    data = data or {}
    model = health.get("model") or {}
    fam = model.get("family") or model_family(model.get("id"))
    ml = model.get("displayName") or "Claude"

    # Colorize model name by its sub-limit pressure
    ml_display = ml
    lim = health.get("limits") or {}
    if lim:
        sub = lim.get(f"seven_day_{fam}")
        ml_display = cpct(util(lim, f"seven_day_{fam}") if sub else util(lim, "seven_day"), ml)

    # Context window
    ctx = health.get("context") or {}
    if ctx:
        pct = ctx.get("percentUsed", 0)
        rem = f"{fmt_tok(ctx.get('remaining', 0))}▼"
    else:
        pct, rem = 0, "—▼"

    # Session cost: what Claude Code reports, else our transcript estimate
    tr = health.get("transcript") or {}
    sc = (data.get("cost") or {}).get("total_cost_usd")
    if sc is None:
        sc = tr.get("costUSD")
    dms = (data.get("cost") or {}).get("total_duration_ms") or tr.get("sessionDurationMs") or 0
    if sc is None:
        sc_link = f"{DM}—{R}"
    else:
        sc_link = osc8(USAGE_URL, ccost(sc, f"${sc:.2f}")) + mark(health, "transcript")
    dur = f" {DM}{fmtdur(dms)}{R}" if dms > 60_000 else ""

    git = health.get("git") or {}
    br = ""
    if git.get("branch"):
        dirty = f"*{git['dirty']}" if git.get("dirty") else ""
        br = f" {DM}⎇ {git['branch']}{dirty}{R}{mark(health, 'git_status')}"

    if tier == 0:
        return ml, f"{ml_display} {rem} ses:{sc_link}"
    w = 6 if tier == 1 else 10
    ctx_bar = cpct(pct, bar(pct, config.SYM_CTX[0], config.SYM_CTX[1], w))
    line = f"{ml_display} {ctx_bar} {rem} | ses: {sc_link}{dur}"
    if tier == 2:
        line += br
    return ml, line

def build_limits(health, tier=2):
    lim = health.get("limits") or {}
    if not lim:
        return "5h:— wk:—" if tier == 0 else "5h: — | wk: —"

    h5p = util(lim, "five_hour")
    ht = ""
    reset = parse_iso((lim.get("five_hour") or {}).get("resets_at"))
    if reset:
        diff = max(0, (reset - datetime.now(timezone.utc)).total_seconds())
        ht = f" {int(diff)//3600}:{int(diff)%3600//60:02d}"

    w7p = util(lim, "seven_day")
    w7_pct = cpct(w7p, f"{w7p}%") + mark(health, "limits")

    subs = ""
    for fam_key, label in (("opus", "O"), ("sonnet", "S"), ("haiku", "H")):
        if lim.get(f"seven_day_{fam_key}"):
            sp = util(lim, f"seven_day_{fam_key}")
            subs += f" {cpct(sp, f'{label}:{sp}')}"
        else:
            subs += f" {DM}{label}:—{R}"

    if tier == 0:
        return f"5h:{cpct(h5p, f'{h5p}%')}{ht} wk:{w7_pct}{subs}"
    w = 6 if tier == 1 else 10
    h5_bar = cpct(h5p, bar(h5p, config.SYM_LIM[0], config.SYM_LIM[1], w))
    return f"5h: {h5_bar}{ht} | wk: {w7_pct}{subs}"

def build_spend(health, tier=2):
    b = health.get("billing") or {}
    if "costToday" not in b:
        return " | 1d: — 7d: — 30d: —" if tier >= 1 else " 1d:— 7d:— 30d:—"

    dc, wc, mc = b.get("costToday") or 0, b.get("cost7d") or 0, b.get("cost30d") or 0
    m = mark(health, "billing")
    if tier == 0:
        return f" 1d:${dc:.0f} 7d:${wc:.0f} 30d:${mc:.0f}{m}"
    spark = ""
    daily = b.get("daily") or []
    if any(c > 0 for c in daily):
        spark = f" {DM}{sparkline(daily)}{R}"
    return f" | 1d: ${dc:.0f} 7d: ${wc:.0f} 30d: ${mc:.0f}{m}{spark}"

def build_urgency(health):
    u = (health.get("quota") or {}).get("urgency") or {}
    if u.get("recommendation", "none") == "none":
        return ""
    return " " + cpct(u.get("score", 0), f"⇄{u.get('score', 0)}")

def build_line2(health, tier=2):
    """Line 2: 5h limit + reset, weekly % + model sub-limits, 1d/7d/30d costs + sparkline.

    tier: 0=ultra, 1=compact, 2=full.
    """
    return build_limits(health, tier) + build_spend(health, tier) + build_urgency(health)

# ═══════════════════════ SESSION ═══════════════════════

def session_args(data):
    """Broker session registration from the statusLine stdin payload."""
    ws = data.get("workspace") or {}
    return {
        "session_id": data.get("session_id") or "default",
        "config_dir": os.environ.get("CLAUDE_CONFIG_DIR") or "~/.claude",
        "transcript_path": data.get("transcript_path"),
        "project_path": ws.get("current_dir") or data.get("cwd") or os.getcwd(),
    }

def gather(data, broker=None):
    broker = broker or Broker(background=config.BACKGROUND_REFRESH)
    args = session_args(data)
    broker.register_session(**args)
    return broker.gather(args["session_id"], data)

# ═══════════════════════ CLI ═══════════════════════

def report():
    """Freshness of every cached category, newest entry per category."""
    doc = cache.read()
    sources = Broker().sources
    ts = {}
    for key, e in doc["sources"].items():
        src = sources.get(key.split("@")[0])
        if src:
            ts[src.category] = max(ts.get(src.category) or 0, e["fetchedAt"])
    rep = freshness.get_report(ts)
    rep["pendingIntents"] = intents.pending_intents()
    return rep

def clear_all():
    ok = cache.clear_cache()
    freshness.clear_cooldowns()
    intents.clear_intents()
    return ok

def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv

    if argv and argv[0] == "--report":
        print(json.dumps(report(), indent=2))
        return
    if argv and argv[0] == "--clear-cache":
        print("cache cleared" if clear_all() else "cache clear failed")
        return
    if argv and argv[0] == "--force-unlock":
        if len(argv) < 2:
            print("usage: statusline.py --force-unlock NAME")
            return
        print(f"released {argv[1]}" if lock.force_release(argv[1]) else f"{argv[1]} not locked")
        return

    try:
        data = json.load(sys.stdin)
    except ValueError:
        return
    if not isinstance(data, dict):
        return

    tier = layout_tier(detect_cols())

    try:
        health = gather(data)
    except Exception:
        logger.exception("gather failed")
        health = {}

    # Line 1: model, context, session
    try:
        _, l1 = build_line1(health, data, tier)
    except Exception:
        logger.exception("line 1 failed")
        l1 = (data.get("model") or {}).get("display_name") or "Claude"

    # Line 2: limits + spending, or a recent account swap
    try:
        l2 = build_line2(health, tier)
    except Exception:
        logger.exception("line 2 failed")
        l2 = "5h: — | wk: — | 1d: — 7d: — 30d: —"
    notice = failover.notification(failover.read_events())
    if notice:
        l2 = f"{notice} | {l2}"

    print(l1)
    print(l2)

if __name__ == "__main__":
    main()
