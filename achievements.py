"""Achievement catalog and evaluator.

Unlock rules are named pure functions over a StatsSnapshot, registered with
``@predicate`` under the achievement id they decide. The catalog itself
(names, rarity, rewards, order) is static JSON loaded once at startup;
every catalog entry must have a registered predicate.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from database import get_db, transaction
from errors import ConfigurationError
from stats import StatsSnapshot, build_snapshot
from xp_ledger import XPLedger

logger = logging.getLogger(__name__)

RARITIES = ("common", "rare", "epic", "legendary")

Predicate = Callable[[StatsSnapshot], bool]

PREDICATES: dict[str, Predicate] = {}


def predicate(achievement_id: str) -> Callable[[Predicate], Predicate]:
    """Register the unlock rule for an achievement id."""
    def decorator(fn: Predicate) -> Predicate:
        PREDICATES[achievement_id] = fn
        return fn
    return decorator


# ── Unlock rules ─────────────────────────────────────────────────────

@predicate("first_steps")
def _first_steps(s: StatsSnapshot) -> bool:
    return s.total_quizzes_completed >= 1


@predicate("knowledge_seeker")
def _knowledge_seeker(s: StatsSnapshot) -> bool:
    return s.total_quizzes_completed >= 10


@predicate("flashcard_novice")
def _flashcard_novice(s: StatsSnapshot) -> bool:
    return s.total_flashcards_completed >= 25


@predicate("media_explorer")
def _media_explorer(s: StatsSnapshot) -> bool:
    return s.total_media_completed >= 5


@predicate("level_up")
def _level_up(s: StatsSnapshot) -> bool:
    return s.level >= 5


@predicate("streak_starter")
def _streak_starter(s: StatsSnapshot) -> bool:
    return s.current_streak >= 3


@predicate("dedicated_learner")
def _dedicated_learner(s: StatsSnapshot) -> bool:
    return s.total_quizzes_completed >= 50


@predicate("high_achiever")
def _high_achiever(s: StatsSnapshot) -> bool:
    return s.average_score >= 80


@predicate("flashcard_adept")
def _flashcard_adept(s: StatsSnapshot) -> bool:
    return s.total_flashcards_completed >= 100


@predicate("streak_master")
def _streak_master(s: StatsSnapshot) -> bool:
    return s.current_streak >= 7


@predicate("quiz_champion")
def _quiz_champion(s: StatsSnapshot) -> bool:
    return s.perfect_scores >= 10


@predicate("knowledge_master")
def _knowledge_master(s: StatsSnapshot) -> bool:
    return s.level >= 15


@predicate("perfectionist")
def _perfectionist(s: StatsSnapshot) -> bool:
    return s.average_score >= 95


@predicate("unstoppable_streak")
def _unstoppable_streak(s: StatsSnapshot) -> bool:
    return s.current_streak >= 30


@predicate("quiz_grandmaster")
def _quiz_grandmaster(s: StatsSnapshot) -> bool:
    return s.total_quizzes_completed >= 200


@predicate("knowledge_deity")
def _knowledge_deity(s: StatsSnapshot) -> bool:
    return s.level >= 50


# ── Catalog ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AchievementDefinition:
    id: str
    name: str
    rarity: str
    xp_reward: int
    predicate: Predicate = field(compare=False, repr=False)
    description: str = ""
    icon: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "rarity": self.rarity,
            "xpReward": self.xp_reward,
        }


def _parse_entry(index: int, entry) -> AchievementDefinition:
    if not isinstance(entry, dict):
        raise ConfigurationError(f"achievement #{index}: entry must be an object")
    for key in ("id", "name", "rarity", "xpReward"):
        if key not in entry:
            raise ConfigurationError(f"achievement #{index}: missing '{key}'")

    achievement_id = entry["id"]
    if not isinstance(achievement_id, str) or not achievement_id:
        raise ConfigurationError(f"achievement #{index}: id must be a non-empty string")
    if entry["rarity"] not in RARITIES:
        raise ConfigurationError(f"achievement {achievement_id}: unknown rarity {entry['rarity']!r}")
    reward = entry["xpReward"]
    if isinstance(reward, bool) or not isinstance(reward, int) or reward < 0:
        raise ConfigurationError(f"achievement {achievement_id}: xpReward must be a non-negative integer")
    rule = PREDICATES.get(achievement_id)
    if rule is None:
        raise ConfigurationError(f"achievement {achievement_id}: no predicate registered")

    return AchievementDefinition(
        id=achievement_id,
        name=str(entry["name"]),
        description=str(entry.get("description", "")),
        icon=str(entry.get("icon", "")),
        rarity=entry["rarity"],
        xp_reward=reward,
        predicate=rule,
    )


def parse_catalog(entries) -> list[AchievementDefinition]:
    """Validate raw catalog entries, preserving their order."""
    if not isinstance(entries, list):
        raise ConfigurationError("achievement catalog must be a list")
    catalog = [_parse_entry(i, e) for i, e in enumerate(entries)]
    _check_unique(catalog)
    return catalog


def load_catalog(path: str | Path) -> list[AchievementDefinition]:
    try:
        with open(path, encoding="utf-8") as f:
            entries = json.load(f)
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"cannot read achievement catalog {path}: {exc}") from exc
    catalog = parse_catalog(entries)
    logger.info("loaded %d achievements from %s", len(catalog), path)
    return catalog


def _check_unique(catalog: Iterable[AchievementDefinition]) -> None:
    seen: set[str] = set()
    for definition in catalog:
        if definition.id in seen:
            raise ConfigurationError(f"duplicate achievement id {definition.id}")
        seen.add(definition.id)


# ── Evaluator ────────────────────────────────────────────────────────

class AchievementEvaluator:
    """Unlocks catalog achievements whose predicate holds for a user."""

    def __init__(self, catalog: list[AchievementDefinition], ledger: XPLedger | None = None):
        _check_unique(catalog)
        self.catalog = list(catalog)
        self.ledger = ledger or XPLedger()
        self._by_id = {d.id: d for d in self.catalog}

    def unlocked_ids(self, user_id: str) -> set[str]:
        rows = get_db().execute(
            "SELECT achievement_id FROM achievement_unlocks WHERE user_id = ?", (user_id,)
        ).fetchall()
        return {r["achievement_id"] for r in rows}

    def evaluate(self, user_id: str) -> list[AchievementDefinition]:
        """Unlock everything that newly qualifies and pay its reward once.

        Each pass tests the catalog, in order, against one snapshot. Rewards
        can make further achievements qualify, so passes repeat until one
        unlocks nothing; an immediate second call therefore returns [].
        """
        unlocked_now: list[AchievementDefinition] = []
        with transaction() as db:
            self.ledger.ensure(user_id)
            while True:
                snapshot = build_snapshot(user_id)
                already = self.unlocked_ids(user_id)
                unlocked_at = datetime.now().isoformat()

                newly: list[AchievementDefinition] = []
                for definition in self.catalog:
                    if definition.id in already or not definition.predicate(snapshot):
                        continue
                    cur = db.execute(
                        "INSERT OR IGNORE INTO achievement_unlocks "
                        "(user_id, achievement_id, xp_reward, unlocked_at) VALUES (?, ?, ?, ?)",
                        (user_id, definition.id, definition.xp_reward, unlocked_at),
                    )
                    if cur.rowcount == 1:
                        newly.append(definition)

                if not newly:
                    break
                for definition in newly:
                    if definition.xp_reward:
                        self.ledger.apply(user_id, definition.xp_reward)
                    logger.info("user %s unlocked %s (+%d XP)",
                                user_id, definition.id, definition.xp_reward)
                unlocked_now.extend(newly)
        return unlocked_now

    def unlocked(self, user_id: str) -> list[dict]:
        """Unlocked achievements with their unlock time, oldest first."""
        rows = get_db().execute(
            "SELECT achievement_id, xp_reward, unlocked_at FROM achievement_unlocks "
            "WHERE user_id = ? ORDER BY unlocked_at, rowid",
            (user_id,),
        ).fetchall()
        result = []
        for r in rows:
            definition = self._by_id.get(r["achievement_id"])
            entry = definition.to_dict() if definition else {"id": r["achievement_id"]}
            entry["xpReward"] = r["xp_reward"]
            entry["unlockedAt"] = r["unlocked_at"]
            result.append(entry)
        return result
