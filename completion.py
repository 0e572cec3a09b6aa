"""
Activity completion gate: the single entry point that turns a completion
event into XP, streak, progress and achievement changes.

Every submission runs inside one storage transaction, so either all of its
effects are persisted or none are. Duplicate and cap decisions are keyed on
persisted facts (the latest progress record and the xp_awards table), which
makes a retried submission safe.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import bonus
from achievements import AchievementDefinition, AchievementEvaluator
from database import transaction
from errors import ValidationError
from progress_store import (
    OUTCOME_AWARDED,
    OUTCOME_CAPPED,
    OUTCOME_DUPLICATE,
    OUTCOME_RECORDED,
    ProgressRecord,
    ProgressRecordStore,
    client_data,
    new_submission_id,
)
from streaks import StreakTracker
from xp_ledger import XPLedger

logger = logging.getLogger(__name__)

DEFAULT_DUPLICATE_WINDOW_SECONDS = 120

CAP_NONE = "none"
CAP_DAILY = "daily"
CAP_CONTENT = "content"


@dataclass(frozen=True)
class ActivityPolicy:
    """How one activity variant is paid, capped and recorded."""
    variant: str
    uses_bonus: bool = False
    flat_xp: int = 0
    cap: str = CAP_NONE
    attempt_tracked: bool = False
    learning: bool = False


ACTIVITY_POLICIES: dict[str, ActivityPolicy] = {
    "timed_quiz": ActivityPolicy("timed_quiz", uses_bonus=True, cap=CAP_DAILY, attempt_tracked=True),
    "random_quiz": ActivityPolicy("random_quiz", flat_xp=5, cap=CAP_DAILY, attempt_tracked=True),
    "section": ActivityPolicy("section", flat_xp=25, cap=CAP_CONTENT, learning=True),
    "question": ActivityPolicy("question", learning=True),
    "flashcard": ActivityPolicy("flashcard", learning=True),
    "media": ActivityPolicy("media", learning=True),
}


def _first(payload: Mapping[str, Any], *keys: str, default=None):
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return default


def parse_timestamp(value) -> datetime:
    """Parse an ISO-8601 string or datetime into an aware UTC datetime.

    Naive values are taken to be UTC; a missing value means now. Caps,
    the duplicate window and streak days all key on this value, so only
    trusted callers (the HTTP route stamping server time, jobs, imports)
    may set it.
    """
    if value is None or value == "":
        return datetime.now(timezone.utc)
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"timestamp is not ISO-8601: {value!r}")
    else:
        raise ValidationError("timestamp must be an ISO-8601 string")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


@dataclass(frozen=True)
class CompletionEvent:
    user_id: str
    content_id: str
    content_type: str
    activity_variant: str = ""
    score: Optional[float] = None
    time_spent: int = 0
    timestamp: Optional[datetime] = None
    completed: bool = True
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def policy_key(self) -> str:
        return self.activity_variant or self.content_type

    @property
    def dedupe_key(self) -> str:
        if self.activity_variant:
            return self.activity_variant
        return f"{self.content_type}:{self.content_id}"

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], user_id: str | None = None) -> CompletionEvent:
        """Build an event from a JSON body. camelCase and snake_case keys are both accepted."""
        if not isinstance(payload, Mapping):
            raise ValidationError("completion payload must be an object")
        data = _first(payload, "data", default={})
        if not isinstance(data, dict):
            raise ValidationError("data must be an object")
        event = cls(
            user_id=user_id or _first(payload, "userId", "user_id", default=""),
            content_id=_first(payload, "contentId", "content_id", default=""),
            content_type=_first(payload, "contentType", "content_type", default=""),
            activity_variant=_first(payload, "activityVariant", "activity_variant", default=""),
            score=_first(payload, "score"),
            time_spent=_first(payload, "timeSpent", "time_spent", default=0),
            timestamp=_first(payload, "timestamp"),
            completed=_first(payload, "completed", default=True),
            data=data,
        )
        return event.validated()

    def validated(self) -> CompletionEvent:
        """Return a normalised copy, or raise ValidationError."""
        for name in ("user_id", "content_id", "content_type"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{name} is required")
        if not isinstance(self.activity_variant, str):
            raise ValidationError("activity_variant must be a string")

        policy = ACTIVITY_POLICIES.get(self.activity_variant or self.content_type)
        if policy is None:
            raise ValidationError(f"unknown activity variant: {self.activity_variant or self.content_type}")

        score = self.score
        if score is not None:
            if isinstance(score, bool) or not isinstance(score, (int, float)) or not math.isfinite(score):
                raise ValidationError("score must be a number")
            score = bonus.clamp_score(score)
        elif policy.uses_bonus:
            raise ValidationError(f"score is required for {policy.variant}")

        time_spent = self.time_spent
        if isinstance(time_spent, bool) or not isinstance(time_spent, (int, float)) or time_spent < 0:
            raise ValidationError("time_spent must be a non-negative number")

        if not isinstance(self.completed, bool):
            raise ValidationError("completed must be a boolean")

        return replace(
            self,
            user_id=self.user_id.strip(),
            content_id=self.content_id.strip(),
            content_type=self.content_type.strip(),
            score=score,
            time_spent=int(time_spent),
            timestamp=parse_timestamp(self.timestamp),
            data=client_data(self.data),
        )


@dataclass
class CompletionResult:
    awarded: bool
    xp_gained: int
    leveled_up: bool = False
    new_level: Optional[int] = None
    new_achievements: list[AchievementDefinition] = field(default_factory=list)
    outcome: str = OUTCOME_RECORDED
    record_id: str = ""

    def to_dict(self) -> dict:
        return {
            "awarded": self.awarded,
            "xpGained": self.xp_gained,
            "leveledUp": self.leveled_up,
            "newLevel": self.new_level,
            "newAchievements": [a.to_dict() for a in self.new_achievements],
            "outcome": self.outcome,
            "recordId": self.record_id,
        }


class ActivityCompletionGate:
    """Applies the award rules to one completion event at a time."""

    def __init__(self, catalog: list[AchievementDefinition],
                 duplicate_window_seconds: int = DEFAULT_DUPLICATE_WINDOW_SECONDS,
                 store: ProgressRecordStore | None = None,
                 ledger: XPLedger | None = None,
                 streaks: StreakTracker | None = None):
        self.duplicate_window_seconds = duplicate_window_seconds
        self.store = store or ProgressRecordStore()
        self.ledger = ledger or XPLedger()
        self.streaks = streaks or StreakTracker()
        self.evaluator = AchievementEvaluator(catalog, self.ledger)

    def submit_completion(self, event: CompletionEvent | Mapping[str, Any]) -> CompletionResult:
        if isinstance(event, CompletionEvent):
            event = event.validated()
        else:
            event = CompletionEvent.from_payload(event)
        policy = ACTIVITY_POLICIES[event.policy_key]

        with transaction():
            self.ledger.ensure(event.user_id)

            previous = self.store.latest(event.user_id, event.dedupe_key)
            if previous is not None and self._is_duplicate(previous, event):
                record = self._record(policy, event, OUTCOME_DUPLICATE, 0, 0)
                logger.info("duplicate %s submission from user %s ignored (key=%s)",
                            policy.variant, event.user_id, event.dedupe_key)
                return CompletionResult(awarded=False, xp_gained=0,
                                        outcome=OUTCOME_DUPLICATE, record_id=record.id)

            level_before = self.ledger.current_level(event.user_id)
            xp, performance_bonus = self._activity_xp(policy, event)

            awarded = False
            outcome = OUTCOME_RECORDED
            if xp > 0:
                submission_id = new_submission_id()
                claimed = self.store.claim_award(
                    user_id=event.user_id,
                    award_key=self._award_key(policy, event, submission_id),
                    activity_variant=policy.variant,
                    award_day=event.timestamp.date().isoformat(),
                    submission_id=submission_id,
                    xp=xp,
                    performance_bonus=performance_bonus,
                )
                if claimed:
                    self.ledger.apply(event.user_id, xp)
                    awarded = True
                    outcome = OUTCOME_AWARDED
                    logger.info("awarded %d XP to user %s for %s (bonus %d)",
                                xp, event.user_id, policy.variant, performance_bonus)
                else:
                    outcome = OUTCOME_CAPPED
                    xp, performance_bonus = 0, 0
                    logger.info("%s cap reached for user %s, no XP", policy.variant, event.user_id)

            self.streaks.touch(event.user_id, event.timestamp.date(), learning=policy.learning)
            record = self._record(policy, event, outcome, xp, performance_bonus)

            unlocked = self.evaluator.evaluate(event.user_id)
            achievement_xp = sum(a.xp_reward for a in unlocked)
            level_after = self.ledger.current_level(event.user_id)

        return CompletionResult(
            awarded=awarded,
            xp_gained=xp + achievement_xp,
            leveled_up=level_after > level_before,
            new_level=level_after,
            new_achievements=unlocked,
            outcome=outcome,
            record_id=record.id,
        )

    def _is_duplicate(self, previous: ProgressRecord, event: CompletionEvent) -> bool:
        elapsed = abs((event.timestamp - previous.last_accessed).total_seconds())
        return elapsed < self.duplicate_window_seconds

    @staticmethod
    def _activity_xp(policy: ActivityPolicy, event: CompletionEvent) -> tuple[int, int]:
        if not event.completed:
            return 0, 0
        if policy.uses_bonus:
            return bonus.compute(event.score), bonus.performance_bonus(event.score)
        return policy.flat_xp, 0

    @staticmethod
    def _award_key(policy: ActivityPolicy, event: CompletionEvent, submission_id: str) -> str:
        if policy.cap == CAP_DAILY:
            return f"{policy.variant}:{event.timestamp.date().isoformat()}"
        if policy.cap == CAP_CONTENT:
            return f"{policy.variant}:{event.content_id}"
        return submission_id

    def _record(self, policy: ActivityPolicy, event: CompletionEvent, outcome: str,
                xp: int, performance_bonus: int) -> ProgressRecord:
        data = {**event.data, "xpAwarded": xp, "performanceBonus": performance_bonus}
        if policy.attempt_tracked:
            data["quizType"] = policy.variant
        kwargs = dict(
            user_id=event.user_id,
            content_id=event.content_id,
            content_type=event.content_type,
            activity_variant=event.activity_variant,
            dedupe_key=event.dedupe_key,
            completed=event.completed,
            score=event.score,
            time_spent=event.time_spent,
            accessed_at=event.timestamp,
            outcome=outcome,
            xp_awarded=xp,
            data=data,
        )
        if policy.attempt_tracked:
            return self.store.append_attempt(**kwargs)
        return self.store.upsert_singleton(**kwargs)
