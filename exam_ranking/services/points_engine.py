"""
Points Engine - earning, deducting, and publishing point balances.

System Design Concept:
    Gamification ledger. Points are computed from an already-graded attempt,
    written to the durable balance first, then pushed into the global
    leaderboard scope. The two writes are deliberately not wrapped in a
    distributed transaction: the cache is a derived view that rebuild-on-miss
    restores, so a failed cache push is logged and dropped.

Point formula (applied in this order):
    1. BASE_COMPLETION
    2. + percentage * PERCENTAGE_MULTIPLIER           (up to 50 at 100%)
    3. + total_questions * QUESTION_POINTS
    4. + TIME_BONUS_MAX * (1 - time_taken / max_time)  (only with a budget, >= 0)
    5. * difficulty multiplier (mean of the stage multipliers for multi-stage)
    6. round half up

Example:
    Medium, 20 questions, 100%, no budget:
    (10 + 50 + 4) * 1.5 = 96 points
"""

import logging
import math
from typing import Optional

from exam_ranking.models import Difficulty, GradedOutcome, Scope
from exam_ranking.storage.ranking_cache import CacheError, RankingCache
from exam_ranking.storage.result_store import ResultStore

logger = logging.getLogger(__name__)


POINTS_CONFIG = {
    "BASE_COMPLETION": 10,
    "PERCENTAGE_MULTIPLIER": 0.5,
    "TIME_BONUS_MAX": 5,
    "QUESTION_POINTS": 0.2,
    "DEDUCTION_EASY": 2,
    "DEDUCTION_MEDIUM": 5,
    "DEDUCTION_HARD": 7,
    "MAX_DEDUCTION": 7,
}

DIFFICULTY_MULTIPLIERS = {
    Difficulty.EASY: 1.0,
    Difficulty.MEDIUM: 1.5,
    Difficulty.HARD: 2.0,
}

DEDUCTIONS = {
    Difficulty.EASY: POINTS_CONFIG["DEDUCTION_EASY"],
    Difficulty.MEDIUM: POINTS_CONFIG["DEDUCTION_MEDIUM"],
    Difficulty.HARD: POINTS_CONFIG["DEDUCTION_HARD"],
}


def difficulty_multiplier(levels: tuple[Difficulty, ...]) -> float:
    """Unweighted mean of stage multipliers (question counts are ignored)."""
    return sum(DIFFICULTY_MULTIPLIERS[level] for level in levels) / len(levels)


def compute_points(outcome: GradedOutcome) -> int:
    """
    Points earned for a completed attempt. Abandoned attempts earn nothing.
    """
    if outcome.was_abandoned:
        return 0

    points = float(POINTS_CONFIG["BASE_COMPLETION"])
    points += outcome.percentage * POINTS_CONFIG["PERCENTAGE_MULTIPLIER"]
    points += outcome.total_questions * POINTS_CONFIG["QUESTION_POINTS"]

    if outcome.max_time and outcome.time_taken:
        time_ratio = outcome.time_taken / outcome.max_time
        points += max(0.0, POINTS_CONFIG["TIME_BONUS_MAX"] * (1 - time_ratio))

    points *= difficulty_multiplier(outcome.difficulty.levels)
    return math.floor(points + 0.5)


def compute_deduction(abandoned_at: Optional[Difficulty]) -> int:
    """
    Flat penalty for abandoning a test.

    Leaving before any difficulty was reached costs the Easy-tier deduction.
    """
    if abandoned_at is None:
        return POINTS_CONFIG["DEDUCTION_EASY"]
    return min(DEDUCTIONS[abandoned_at], POINTS_CONFIG["MAX_DEDUCTION"])


class PointsEngine:
    """
    Applies point deltas to user balances and mirrors them into the global
    leaderboard.

    Write pattern:
        1. Durable balance update (source of truth, clamped at zero)
        2. ZADD global score = new balance (best effort)
    """

    def __init__(self, store: ResultStore, cache: RankingCache):
        self.store = store
        self.cache = cache

    async def apply_delta(self, user_id: str, delta: int, reason: str) -> int:
        """
        Add (or subtract) points and publish the new balance.

        Args:
            user_id: User whose balance changes
            delta: Points to add, negative for deductions
            reason: Audit label, e.g. "test_completion", "test_abandoned"

        Returns:
            The new balance

        Raises:
            ValueError: If the user doesn't exist
            DurableStoreError: If the balance could not be written
        """
        balance = await self.store.adjust_balance(user_id, delta)
        logger.info(f"[POINTS] {user_id} {delta:+d} ({reason}) -> balance {balance}")
        await self.publish_balance(user_id, balance)
        return balance

    async def publish_balance(self, user_id: str, balance: int) -> bool:
        """
        Push a balance into the global scope. Never raises on cache failure.

        Only an existing scope is updated; upserting into an expired one
        would leave a partial set that reads mistake for a complete one.

        Returns:
            True if the cache accepted the write
        """
        scope = Scope.global_scope()
        try:
            # A missing scope is rebuilt from the store on its next read
            if not await self.cache.scope_exists(scope):
                return False
            await self.cache.upsert(scope, user_id, balance)
            return True
        except CacheError as e:
            logger.warning(f"[POINTS] Global leaderboard update skipped for {user_id}: {e}")
            return False
