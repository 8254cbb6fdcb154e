"""Urgency score (0-100) for account swap decisions.

weekly % × 0.6 + daily % × 0.3 + burn rate × 0.1 (20 $/h = 100), plus up
to 10 points when less than 30 minutes of budget remain.
"""

import math

WEEKLY_WEIGHT = 0.6
DAILY_WEIGHT = 0.3
BURN_WEIGHT = 0.1
BURN_CEILING = 20          # $/hour that counts as 100% burn
LOW_BUDGET_MIN = 30        # Bonus kicks in below this many minutes
LOW_BUDGET_BONUS = 10


def _clamp(v, lo=0, hi=100):
    try:
        return min(hi, max(lo, float(v or 0)))
    except (TypeError, ValueError):
        return lo


def level(score):
    if score >= 95: return "urgent"
    if score >= 80: return "high"
    if score >= 50: return "medium"
    return "low"


def recommendation(score):
    if score >= 95: return "swap_urgent"
    if score >= 80: return "swap_recommended"
    return "none"


def score(weekly_pct, daily_pct, burn_per_hour, budget_minutes=None):
    weekly = _clamp(weekly_pct)
    daily = _clamp(daily_pct)
    burn = _clamp(_clamp(burn_per_hour, hi=float("inf")) / BURN_CEILING * 100)

    bonus = 0
    if budget_minutes is not None and budget_minutes < LOW_BUDGET_MIN:
        bonus = math.ceil((1 - max(0, budget_minutes) / LOW_BUDGET_MIN) * LOW_BUDGET_BONUS)

    wc, dc, bc = weekly * WEEKLY_WEIGHT, daily * DAILY_WEIGHT, burn * BURN_WEIGHT
    s = min(100, round(wc + dc + bc + bonus))
    return {
        "score": s,
        "level": level(s),
        "recommendation": recommendation(s),
        "factors": {
            "weeklyContribution": round(wc, 1),
            "dailyContribution": round(dc, 1),
            "burnRateContribution": round(bc, 1),
        },
    }
