"""
Rank Query Service - Business logic layer.

System Design Concept:
    Implements [[separation-of-concerns]] pattern:
    - API handlers handle HTTP (request/response)
    - This service handles ranking logic
    - Storage handles data access (ResultStore, RankingCache)

    Orchestrates a dual-store design:
    - [[polyglot-persistence]]: sorted sets for rank reads, SQL for truth
    - [[read-through-cache]]: a missing scope is rebuilt from SQL on demand
    - [[graceful-degradation]]: a failing cache never fails a request; reads
      are answered from SQL, writes are logged and dropped

Consistency Model:
    Within one submission the durable write always lands before any cache
    write. Across users the leaderboard is eventually consistent; concurrent
    upserts are last-write-wins, which is accepted for a gamification board.
"""

import asyncio
import logging
from typing import Iterable, Optional

from exam_ranking.config import settings
from exam_ranking.models import (
    BadgeType,
    GradedOutcome,
    LeaderboardRow,
    PerformanceStats,
    PointsTotal,
    Scope,
    ScoreFlavor,
    SubmissionResult,
    UserDisplay,
)
from exam_ranking.services import score_encoder
from exam_ranking.services.badge_service import BadgeService
from exam_ranking.services.points_engine import (
    DIFFICULTY_MULTIPLIERS,
    POINTS_CONFIG,
    PointsEngine,
    compute_deduction,
    compute_points,
)
from exam_ranking.storage.ranking_cache import CacheError, RankingCache
from exam_ranking.storage.result_store import DurableStoreError, ResultStore

logger = logging.getLogger(__name__)

GLOBAL = Scope.global_scope()


class RankQueryService:
    """
    Facade used by request handlers for every leaderboard operation.

    Read path:
        scope_exists? -> yes: read sorted set
                      -> no:  rebuild from SQL, then read sorted set
        CacheError anywhere -> compute the answer from SQL

    Write path (record_submission):
        previous rank -> percentile -> points -> durable write
        -> global balance -> per-course scores -> new rank -> snapshot
    """

    def __init__(
        self,
        store: ResultStore,
        cache: RankingCache,
        points_engine: Optional[PointsEngine] = None,
        badge_service: Optional[BadgeService] = None,
    ):
        self.store = store
        self.cache = cache
        self.points_engine = points_engine or PointsEngine(store, cache)
        self.badge_service = badge_service or BadgeService(store)

    # ------------------------------------------------------------------
    # Scoring helpers
    # ------------------------------------------------------------------

    async def _entries_from_store(self, scope: Scope) -> list[tuple[str, int]]:
        """Full ranking of a scope computed from the durable store, best first."""
        if scope.is_global:
            return await self.store.points_ranking()
        best = await self.store.best_per_user(scope.course_id, scope.level)
        return [(b.user_id, score_encoder.encode(b.percentage, b.time_taken)) for b in best]

    async def _rank_from_store(self, scope: Scope, user_id: str) -> Optional[int]:
        if scope.is_global:
            return await self.store.global_rank(user_id)
        for position, (member, _) in enumerate(await self._entries_from_store(scope), start=1):
            if member == user_id:
                return position
        return None

    # ------------------------------------------------------------------
    # Cache maintenance
    # ------------------------------------------------------------------

    async def rebuild_scope(self, scope: Scope) -> int:
        """
        Rebuild one scope's sorted set from the durable store.

        Workflow:
            1. Aggregate best score per user (or balance, for global)
            2. Bulk load with the standard TTL

        Idempotent: concurrent rebuilds write the same independent upserts.

        Raises:
            CacheError: If the bulk load fails
        """
        entries = await self._entries_from_store(scope)
        loaded = await self.cache.bulk_load(scope, entries)
        logger.info(f"[RANK] Rebuilt scope {scope} with {loaded} entries")
        return loaded

    async def _ensure_scope(self, scope: Scope):
        if not await self.cache.scope_exists(scope):
            logger.info(f"[RANK] Cache miss for scope {scope}, rebuilding")
            await self.rebuild_scope(scope)

    async def warm_up(self, scopes: Optional[Iterable[Scope]] = None) -> int:
        """
        Best-effort startup rebuild. Never raises.

        Rebuild-on-miss covers the same ground lazily, so a warm-up that
        fails or never runs only costs the first request some latency.
        """
        warmed = 0
        for scope in scopes or [GLOBAL]:
            try:
                await self._ensure_scope(scope)
                warmed += 1
            except Exception as e:
                logger.warning(f"[RANK] Warm-up of {scope} failed: {e}")
        logger.info(f"[RANK] Warm-up finished ({warmed} scopes ready)")
        return warmed

    async def _upsert_quietly(self, scope: Scope, user_id: str, score: int) -> bool:
        try:
            if not await self.cache.scope_exists(scope):
                return False
            await self.cache.upsert(scope, user_id, score)
            return True
        except CacheError as e:
            logger.warning(f"[RANK] Cache update for {scope} skipped ({user_id}): {e}")
            return False

    async def _raise_quietly(self, scope: Scope, user_id: str, score: int) -> bool:
        """Keep a performance scope at each user's best score (ZADD GT)."""
        try:
            current = await self.cache.score_of(scope, user_id)
        except CacheError as e:
            logger.warning(f"[RANK] Cache read for {scope} skipped ({user_id}): {e}")
            return False
        if current is not None and current >= score:
            return False
        return await self._upsert_quietly(scope, user_id, score)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_leaderboard(
        self, scope: Scope, limit: Optional[int] = None, offset: int = 0
    ) -> list[LeaderboardRow]:
        """
        Ranked page of a scope with user display fields joined in.

        Workflow:
            1. Fetch the page from the sorted set (rebuilding on miss)
            2. Batch fetch user details (1 query for the whole page)
            3. Merge and decode scores

        Returns:
            Rows ordered best first; empty list if nobody qualifies
        """
        limit = settings.default_leaderboard_limit if limit is None else limit
        offset = max(offset, 0)
        try:
            await self._ensure_scope(scope)
            page = await self.cache.top_n(scope, limit, offset)
        except CacheError as e:
            logger.warning(f"[RANK] Cache read for {scope} failed, using database: {e}")
            page = (await self._entries_from_store(scope))[offset:offset + limit]

        return await self._decorate(scope, page, start_rank=offset + 1)

    async def get_user_rank(self, user_id: str, scope: Scope) -> Optional[int]:
        """
        1-based rank of a user in a scope, or None if they have no qualifying
        outcome there.

        A user missing from an existing scope is re-checked against the
        database; if they do qualify (a cache write was lost) their entry is
        restored.
        """
        try:
            await self._ensure_scope(scope)
            rank = await self.cache.rank_of(scope, user_id)
        except CacheError as e:
            logger.warning(f"[RANK] Cache rank lookup for {scope} failed, using database: {e}")
            return await self._rank_from_store(scope, user_id)

        if rank is not None:
            return rank
        return await self._heal_member(scope, user_id)

    async def _heal_member(self, scope: Scope, user_id: str) -> Optional[int]:
        if scope.is_global:
            rank = await self.store.global_rank(user_id)
            if rank is not None:
                standing = await self.store.get_standing(user_id)
                logger.info(f"[RANK] Restoring missing cache entry for {user_id} in {scope}")
                await self._upsert_quietly(scope, user_id, standing.points)
            return rank

        entries = await self._entries_from_store(scope)
        for position, (member, score) in enumerate(entries, start=1):
            if member == user_id:
                logger.info(f"[RANK] Restoring missing cache entry for {user_id} in {scope}")
                await self._upsert_quietly(scope, user_id, score)
                return position
        return None

    async def get_surrounding(
        self, user_id: str, scope: Scope, offset: Optional[int] = None
    ) -> list[LeaderboardRow]:
        """
        Players ranked just above and below a user.

        Example:
            User at rank 100 with offset 2 -> ranks 98..102, the user's row
            flagged with is_current_user.
        """
        offset = settings.surrounding_offset if offset is None else offset
        rank = await self.get_user_rank(user_id, scope)
        if rank is None:
            return []
        start = max(rank - 1 - offset, 0)
        rows = await self.get_leaderboard(scope, limit=2 * offset + 1, offset=start)
        for row in rows:
            row.is_current_user = row.user_id == user_id
        return rows

    async def _decorate(
        self, scope: Scope, page: list[tuple[str, int]], start_rank: int
    ) -> list[LeaderboardRow]:
        if not page:
            return []
        users = await self.store.fetch_user_display(user_id for user_id, _ in page)

        rows = []
        for rank, (user_id, score) in enumerate(page, start=start_rank):
            user = users.get(user_id) or UserDisplay(
                user_id=user_id, username="unknown", display_name="Unknown User"
            )
            row = LeaderboardRow(
                rank=rank,
                user_id=user_id,
                username=user.username,
                display_name=user.display_name,
                score=score,
                tests_completed=user.tests_completed,
                badges=user.badges,
            )
            if scope.flavor is ScoreFlavor.POINTS:
                row.points = score
            else:
                row.percentage, row.time_taken = score_encoder.decode(score)
            rows.append(row)
        return rows

    async def get_points_standings(
        self, course_id: str, scope: Optional[Scope] = None, limit: Optional[int] = None
    ) -> list[PointsTotal]:
        """Points earned per user inside one course (computed in SQL)."""
        scope = scope or Scope.course(course_id)
        limit = settings.default_leaderboard_limit if limit is None else limit
        return await self.store.points_totals(course_id, scope.level, limit)

    async def get_performance_stats(self, user_id: str) -> PerformanceStats:
        return await self.store.performance_stats(user_id)

    @staticmethod
    def points_system_info() -> dict:
        """Published scoring constants (shown on the leaderboard info page)."""
        return {
            "points_system": {
                "base_completion": POINTS_CONFIG["BASE_COMPLETION"],
                "percentage_multiplier": POINTS_CONFIG["PERCENTAGE_MULTIPLIER"],
                "question_points": POINTS_CONFIG["QUESTION_POINTS"],
                "time_bonus_max": POINTS_CONFIG["TIME_BONUS_MAX"],
                "difficulty_multipliers": {
                    level.value: value for level, value in DIFFICULTY_MULTIPLIERS.items()
                },
            },
            "deductions": {
                "abandon_easy": POINTS_CONFIG["DEDUCTION_EASY"],
                "abandon_medium": POINTS_CONFIG["DEDUCTION_MEDIUM"],
                "abandon_hard": POINTS_CONFIG["DEDUCTION_HARD"],
                "max_deduction": POINTS_CONFIG["MAX_DEDUCTION"],
            },
            "badges": BadgeService.get_all_badge_info(),
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def record_submission(self, outcome: GradedOutcome) -> SubmissionResult:
        """
        Record one completed or abandoned attempt.

        Workflow:
            1. Read the user's current global rank
            2. Compute percentile against prior attempts (frozen on the row)
            3. Compute points earned, or the abandonment deduction
            4. Durable write: outcome + balance + counters, one transaction
            5. Push the new balance to the global scope
            6. Raise the performance score in every attempted
               "<course>:<difficulty>" scope and "<course>:all" to the
               user's best
            7. Read the new global rank and snapshot it
            8. Award badges

        Steps 5-8 never fail the request on cache trouble, and a database
        failure in steps 7-8 leaves new_rank or new_badges empty. A failure
        in step 4 fails the request and nothing reaches the cache.

        Raises:
            ValueError: If the user doesn't exist
            DurableStoreError: If the durable write fails
        """
        previous_rank = await self.get_user_rank(outcome.user_id, GLOBAL)

        if outcome.was_abandoned:
            percentile = 0
            points_earned = 0
            points_deducted = compute_deduction(outcome.abandoned_at_difficulty)
        else:
            percentile = await self.store.percentile_for(
                outcome.course_id, outcome.difficulty.key, outcome.percentage
            )
            points_earned = compute_points(outcome)
            points_deducted = 0

        record, standing = await self.store.save_submission(
            outcome, percentile, points_earned, points_deducted
        )
        await self.points_engine.publish_balance(outcome.user_id, standing.points)

        if not record.was_abandoned:
            score = score_encoder.encode(record.percentage, record.time_taken)
            scopes = [Scope.course(record.course_id, level) for level in record.difficulty.levels]
            scopes.append(Scope.course(record.course_id))
            await asyncio.gather(
                *(self._raise_quietly(scope, record.user_id, score) for scope in scopes)
            )

        new_rank = None
        new_badges: list[BadgeType] = []
        try:
            new_rank = await self.get_user_rank(outcome.user_id, GLOBAL)
            await self.store.snapshot_rank(outcome.user_id, new_rank)
            new_badges = await self.badge_service.check_and_award(outcome.user_id, new_rank)
        except DurableStoreError as e:
            # The submission is committed by now
            logger.warning(f"[RANK] Post-commit update for submission {record.id} failed: {e}")
        rank_change = (
            previous_rank - new_rank
            if previous_rank is not None and new_rank is not None
            else None
        )

        logger.info(
            f"[RANK] Submission {record.id} by {outcome.user_id}: "
            f"+{points_earned}/-{points_deducted} points, rank {previous_rank} -> {new_rank}"
        )
        return SubmissionResult(
            outcome_id=record.id,
            points_earned=points_earned,
            points_deducted=points_deducted,
            balance=standing.points,
            percentage=record.percentage,
            percentile=record.percentile,
            previous_rank=previous_rank,
            new_rank=new_rank,
            rank_change=rank_change,
            new_badges=new_badges,
        )
