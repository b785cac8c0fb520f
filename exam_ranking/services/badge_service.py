"""
Badge Service - achievements derived from points and rank.

Badges consume ranking data; they never feed back into it.

    - leaderboard_legend: global rank 1 on 20 consecutive days
    - perfectionist:      any completed test at 100% with no wrong answers
    - speed_demon:        50 tests finished 20% faster than their time budget
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from exam_ranking.models import BadgeType, UserStanding
from exam_ranking.storage.result_store import ResultStore

logger = logging.getLogger(__name__)


BADGE_TYPES = {
    BadgeType.LEADERBOARD_LEGEND: {
        "name": "Leaderboard Legend",
        "description": "Stay in top position for 20 consecutive days",
        "requirement": 20,
    },
    BadgeType.PERFECTIONIST: {
        "name": "Perfectionist",
        "description": "Complete any course test with 100% accuracy",
    },
    BadgeType.SPEED_DEMON: {
        "name": "Speed Demon",
        "description": "Complete 50 tests with average time 20% faster than allowed",
        "requirement": 50,
    },
}

SPEED_DEMON_TIME_RATIO = 0.8


def next_days_on_top(
    days_on_top: int,
    last_top_position: Optional[datetime],
    now: datetime,
) -> int:
    """
    Day counter for a user currently at rank 1.

    Same day keeps the count, the next calendar day extends it, any gap
    restarts it at 1.
    """
    today = now.date()
    last_day = last_top_position.date() if last_top_position else None
    if last_day == today:
        return max(days_on_top, 1)
    if last_day == today - timedelta(days=1):
        return days_on_top + 1
    return 1


class BadgeService:
    def __init__(self, store: ResultStore):
        self.store = store

    async def check_and_award(
        self, user_id: str, global_rank: Optional[int], now: Optional[datetime] = None
    ) -> list[BadgeType]:
        """
        Evaluate every badge the user doesn't hold yet.

        Returns:
            Badge types awarded by this call
        """
        standing = await self.store.get_standing(user_id)
        if standing is None:
            return []
        now = now or datetime.now(timezone.utc)
        held = {badge.type for badge in standing.badges}
        awarded: list[BadgeType] = []

        if BadgeType.LEADERBOARD_LEGEND not in held:
            if await self._check_leaderboard_legend(standing, global_rank, now):
                awarded.append(BadgeType.LEADERBOARD_LEGEND)

        if BadgeType.PERFECTIONIST not in held:
            if await self.store.has_perfect_outcome(user_id):
                if await self.store.award_badge(user_id, BadgeType.PERFECTIONIST):
                    awarded.append(BadgeType.PERFECTIONIST)

        if BadgeType.SPEED_DEMON not in held:
            fast = await self.store.count_fast_outcomes(user_id, SPEED_DEMON_TIME_RATIO)
            if fast >= BADGE_TYPES[BadgeType.SPEED_DEMON]["requirement"]:
                if await self.store.award_badge(user_id, BadgeType.SPEED_DEMON):
                    awarded.append(BadgeType.SPEED_DEMON)

        if awarded:
            logger.info(f"[BADGES] {user_id} earned {[b.value for b in awarded]}")
        return awarded

    async def _check_leaderboard_legend(
        self, standing: UserStanding, global_rank: Optional[int], now: datetime
    ) -> bool:
        if global_rank != 1:
            if standing.leaderboard_days_on_top:
                await self.store.save_badge_progress(
                    standing.user_id, 0, standing.last_top_position
                )
            return False

        days = next_days_on_top(standing.leaderboard_days_on_top, standing.last_top_position, now)
        await self.store.save_badge_progress(standing.user_id, days, now)

        if days >= BADGE_TYPES[BadgeType.LEADERBOARD_LEGEND]["requirement"]:
            return await self.store.award_badge(standing.user_id, BadgeType.LEADERBOARD_LEGEND)
        return False

    @staticmethod
    def get_all_badge_info() -> list[dict]:
        return [{"type": badge.value, **info} for badge, info in BADGE_TYPES.items()]
