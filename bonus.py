"""Performance-tier XP for scored activities."""

from __future__ import annotations

BASE_XP = 10

# (lower bound inclusive, bonus), highest tier first
BONUS_TIERS: list[tuple[float, int]] = [
    (100, 5),
    (90, 4),
    (80, 3),
    (70, 2),
    (60, 1),
]


def clamp_score(score: float) -> float:
    """Clamp a raw score into the 0-100 range."""
    return max(0.0, min(100.0, float(score)))


def performance_bonus(score: float) -> int:
    for lower_bound, bonus in BONUS_TIERS:
        if score >= lower_bound:
            return bonus
    return 0


def compute(score: float) -> int:
    """Total XP (base + tier bonus) for a score already clamped to [0, 100]."""
    return BASE_XP + performance_bonus(score)
