"""
Durable Result Store - access layer over the relational ledger.

System Design Concept:
    [[source-of-truth]]: every attempt is appended here exactly once, and
    every balance change lands here before any cache is touched. The ranking
    cache is a derived view and is rebuilt from these queries on a miss.

Access patterns:
    - Append one outcome together with its balance/counter update
    - Best attempt per user (max percentage, min time on tie) per scope
    - Percentile of a new attempt against prior attempts
    - Point totals, accuracy and profile aggregates per user
    - Batch lookup of display fields for leaderboard rows

Ordering contract:
    Ranked lists come back ordered by score descending, then user id
    descending. That is the order Redis ZREVRANGE uses for equal scores, so
    a rank computed here matches a rank read from a freshly rebuilt cache.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Iterator, Optional

from sqlalchemy import case, exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from exam_ranking.models import (
    Badge,
    BadgeType,
    BestOutcome,
    CourseStats,
    Difficulty,
    GradedOutcome,
    OutcomeRecord,
    OverallStats,
    PerformanceStats,
    PointsTotal,
    UserDisplay,
    UserStanding,
    difficulty_from_key,
)
from exam_ranking.storage.database import AsyncSessionLocal
from exam_ranking.storage.schema import OutcomeDifficultyModel, TestOutcomeModel, UserModel

logger = logging.getLogger(__name__)


class DurableStoreError(Exception):
    """Raised when the durable store fails; the caller's request must fail too."""
    pass


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(f"[STORE] {action} failed: {e}")
        raise DurableStoreError(f"{action} failed") from e


def _clamped_points(delta: int):
    """SQL expression for points + delta, floored at zero."""
    new_value = UserModel.points + delta
    return case((new_value < 0, 0), else_=new_value)


def _qualifies_for_points_board():
    """A user shows up on the global board once they have played or hold points."""
    return or_(
        exists(select(TestOutcomeModel.id).where(TestOutcomeModel.user_id == UserModel.id)),
        UserModel.points > 0,
    )


def _to_standing(user: UserModel) -> UserStanding:
    return UserStanding(
        user_id=user.id,
        username=user.username,
        display_name=user.display_name,
        points=user.points,
        tests_completed=user.tests_completed,
        questions_answered=user.questions_answered,
        average_percentile=user.average_percentile,
        last_known_rank=user.last_known_rank,
        rank_last_updated=user.rank_last_updated,
        badges=[Badge(**badge) for badge in (user.badges or [])],
        leaderboard_days_on_top=user.leaderboard_days_on_top,
        last_top_position=user.last_top_position,
    )


def _to_record(row: TestOutcomeModel) -> OutcomeRecord:
    return OutcomeRecord(
        id=row.id,
        user_id=row.user_id,
        course_id=row.course_id,
        difficulty=difficulty_from_key(row.difficulty_key),
        total_questions=row.total_questions,
        correct_answers=row.correct_answers,
        wrong_answers=row.wrong_answers,
        unanswered=row.unanswered,
        total_score=row.total_score,
        max_possible_score=row.max_possible_score,
        percentage=row.percentage,
        percentile=row.percentile,
        time_taken=row.time_taken,
        max_time=row.max_time,
        points_earned=row.points_earned,
        points_deducted=row.points_deducted,
        was_abandoned=row.was_abandoned,
        abandoned_at_difficulty=row.abandoned_at_difficulty,
        completed_at=row.completed_at,
    )


class ResultStore:
    """
    Query and write operations the ranking engine needs from the database.

    Each method runs in its own session; writes that must be atomic
    (outcome + balance) share one transaction.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession] = AsyncSessionLocal):
        self._sessionmaker = sessionmaker

    # ------------------------------------------------------------------
    # Users / standings
    # ------------------------------------------------------------------

    async def create_user(self, user_id: str, username: str, display_name: str) -> UserStanding:
        """
        Create a standing row with a zero balance (account creation).

        Raises:
            ValueError: If the id or username is already taken
        """
        user = UserModel(
            id=user_id,
            username=username,
            display_name=display_name,
            points=0,
            tests_completed=0,
            questions_answered=0,
            average_percentile=0.0,
            badges=[],
            leaderboard_days_on_top=0,
            created_at=datetime.now(timezone.utc),
        )
        with _translate_errors(f"create user {user_id}"):
            async with self._sessionmaker() as session:
                try:
                    async with session.begin():
                        session.add(user)
                except IntegrityError as e:
                    raise ValueError(
                        f"User {user_id} or username {username} already exists"
                    ) from e
        logger.info(f"[STORE] Created user {user_id} ({username})")
        return _to_standing(user)

    async def get_standing(self, user_id: str) -> Optional[UserStanding]:
        with _translate_errors(f"load standing {user_id}"):
            async with self._sessionmaker() as session:
                user = await session.get(UserModel, user_id)
                return _to_standing(user) if user else None

    async def fetch_user_display(self, user_ids: Iterable[str]) -> dict[str, UserDisplay]:
        """
        Batch fetch display fields for leaderboard rows.

        One query for the whole page instead of one per row.
        """
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}
        with _translate_errors("fetch user display"):
            async with self._sessionmaker() as session:
                result = await session.execute(select(UserModel).where(UserModel.id.in_(ids)))
                return {
                    user.id: UserDisplay(
                        user_id=user.id,
                        username=user.username,
                        display_name=user.display_name,
                        points=user.points,
                        tests_completed=user.tests_completed,
                        average_percentile=user.average_percentile,
                        badges=[badge["type"] for badge in (user.badges or [])],
                    )
                    for user in result.scalars()
                }

    async def adjust_balance(self, user_id: str, delta: int) -> int:
        """
        Apply a point delta, clamped so the balance never drops below zero.

        A single UPDATE statement, so concurrent adjustments never lose an
        increment.

        Raises:
            ValueError: If the user doesn't exist
            DurableStoreError: If the write fails
        """
        with _translate_errors(f"adjust balance of {user_id}"):
            async with self._sessionmaker() as session:
                async with session.begin():
                    result = await session.execute(
                        update(UserModel)
                        .where(UserModel.id == user_id)
                        .values(points=_clamped_points(delta))
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        raise ValueError(f"User {user_id} not found")
                    balance = await session.scalar(
                        select(UserModel.points).where(UserModel.id == user_id)
                    )
        logger.debug(f"[STORE] Balance of {user_id} adjusted by {delta:+d} -> {balance}")
        return balance

    async def snapshot_rank(self, user_id: str, rank: Optional[int]):
        """Remember the rank shown after a submission (only used for deltas)."""
        with _translate_errors(f"snapshot rank of {user_id}"):
            async with self._sessionmaker() as session:
                async with session.begin():
                    await session.execute(
                        update(UserModel)
                        .where(UserModel.id == user_id)
                        .values(last_known_rank=rank, rank_last_updated=datetime.now(timezone.utc))
                        .execution_options(synchronize_session=False)
                    )

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def percentile_for(self, course_id: str, difficulty_key: str, percentage: int) -> int:
        """
        Percentile of a new attempt against prior attempts.

        Counts prior attempts on the same course with the same difficulty
        selection whose percentage is strictly lower. Abandoned attempts
        count with their stored percentage of 0. Computed once, before
        the new attempt is stored, and frozen onto its row.
        """
        lower = func.coalesce(
            func.sum(case((TestOutcomeModel.percentage < percentage, 1), else_=0)), 0
        )
        stmt = select(func.count(TestOutcomeModel.id), lower).where(
            TestOutcomeModel.course_id == course_id,
            TestOutcomeModel.difficulty_key == difficulty_key,
        )
        with _translate_errors("compute percentile"):
            async with self._sessionmaker() as session:
                total, below = (await session.execute(stmt)).one()
        if not total:
            return 0
        return int(below / total * 100 + 0.5)

    async def save_submission(
        self,
        outcome: GradedOutcome,
        percentile: int,
        points_earned: int,
        points_deducted: int,
    ) -> tuple[OutcomeRecord, UserStanding]:
        """
        Append an outcome and apply its effect on the user's standing.

        Workflow (one transaction):
            1. Clamp-apply the point delta, bump counters for completed tests
            2. Insert the immutable outcome row and its difficulty stages
            3. Commit, then read back the standing

        Raises:
            ValueError: If the user doesn't exist (nothing is written)
            DurableStoreError: If the write fails (nothing is written)
        """
        delta = points_earned - points_deducted
        values = {"points": _clamped_points(delta)}
        if not outcome.was_abandoned:
            completed = UserModel.tests_completed
            values.update(
                tests_completed=completed + 1,
                questions_answered=UserModel.questions_answered + outcome.total_questions,
                average_percentile=(UserModel.average_percentile * completed + percentile)
                / (completed + 1),
            )

        with _translate_errors(f"save submission of {outcome.user_id}"):
            async with self._sessionmaker() as session:
                async with session.begin():
                    result = await session.execute(
                        update(UserModel)
                        .where(UserModel.id == outcome.user_id)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        raise ValueError(f"User {outcome.user_id} not found")

                    row = TestOutcomeModel(
                        user_id=outcome.user_id,
                        course_id=outcome.course_id,
                        difficulty_key=outcome.difficulty.key,
                        total_questions=outcome.total_questions,
                        correct_answers=outcome.correct_answers,
                        wrong_answers=outcome.wrong_answers,
                        unanswered=outcome.unanswered,
                        total_score=outcome.total_score,
                        max_possible_score=outcome.max_possible_score,
                        percentage=outcome.percentage,
                        percentile=percentile,
                        time_taken=outcome.time_taken,
                        max_time=outcome.max_time,
                        points_earned=points_earned,
                        points_deducted=points_deducted,
                        was_abandoned=outcome.was_abandoned,
                        abandoned_at_difficulty=(
                            outcome.abandoned_at_difficulty.value
                            if outcome.abandoned_at_difficulty
                            else None
                        ),
                        completed_at=outcome.completed_at,
                        stages=[
                            OutcomeDifficultyModel(difficulty=level.value, position=position)
                            for position, level in enumerate(outcome.difficulty.levels)
                        ],
                    )
                    session.add(row)
                    await session.flush()
                    record = _to_record(row)

                user = await session.get(UserModel, outcome.user_id, populate_existing=True)
                standing = _to_standing(user)

        logger.info(
            f"[STORE] Outcome {record.id} saved for {outcome.user_id} "
            f"course={outcome.course_id} difficulty={outcome.difficulty.key} "
            f"pct={record.percentage} points={delta:+d} balance={standing.points}"
        )
        return record, standing

    async def get_outcome(self, outcome_id: int) -> Optional[OutcomeRecord]:
        with _translate_errors(f"load outcome {outcome_id}"):
            async with self._sessionmaker() as session:
                row = await session.get(TestOutcomeModel, outcome_id)
                return _to_record(row) if row else None

    async def recent_outcomes(self, user_id: str, limit: int = 10) -> list[OutcomeRecord]:
        stmt = (
            select(TestOutcomeModel)
            .where(TestOutcomeModel.user_id == user_id)
            .order_by(TestOutcomeModel.completed_at.desc(), TestOutcomeModel.id.desc())
            .limit(limit)
        )
        with _translate_errors(f"load history of {user_id}"):
            async with self._sessionmaker() as session:
                result = await session.execute(stmt)
                return [_to_record(row) for row in result.scalars()]

    # ------------------------------------------------------------------
    # Ranking aggregations
    # ------------------------------------------------------------------

    def _scoped_outcomes(self, course_id: str, level: Optional[Difficulty]):
        """Completed outcomes of a course, optionally limited to one difficulty."""
        conditions = [
            TestOutcomeModel.course_id == course_id,
            TestOutcomeModel.was_abandoned.is_(False),
        ]
        if level is not None:
            conditions.append(
                TestOutcomeModel.id.in_(
                    select(OutcomeDifficultyModel.outcome_id).where(
                        OutcomeDifficultyModel.difficulty == level.value
                    )
                )
            )
        return conditions

    async def best_per_user(
        self, course_id: str, level: Optional[Difficulty] = None
    ) -> list[BestOutcome]:
        """
        Each user's best completed attempt in a course scope.

        "Best" is one actual attempt: highest percentage, and among those the
        fastest. Result is ordered best first.
        """
        ranked = (
            select(
                TestOutcomeModel.user_id,
                TestOutcomeModel.percentage,
                TestOutcomeModel.time_taken,
                func.row_number()
                .over(
                    partition_by=TestOutcomeModel.user_id,
                    order_by=(
                        TestOutcomeModel.percentage.desc(),
                        TestOutcomeModel.time_taken.asc(),
                    ),
                )
                .label("position"),
                func.count(TestOutcomeModel.id)
                .over(partition_by=TestOutcomeModel.user_id)
                .label("total_tests"),
            )
            .where(*self._scoped_outcomes(course_id, level))
            .subquery()
        )
        stmt = (
            select(ranked.c.user_id, ranked.c.percentage, ranked.c.time_taken, ranked.c.total_tests)
            .where(ranked.c.position == 1)
            .order_by(
                ranked.c.percentage.desc(),
                ranked.c.time_taken.asc(),
                ranked.c.user_id.desc(),
            )
        )
        with _translate_errors(f"aggregate best outcomes for {course_id}"):
            async with self._sessionmaker() as session:
                result = await session.execute(stmt)
                return [
                    BestOutcome(
                        user_id=r.user_id,
                        percentage=r.percentage,
                        time_taken=r.time_taken,
                        total_tests=r.total_tests,
                    )
                    for r in result
                ]

    async def points_ranking(self) -> list[tuple[str, int]]:
        """(user_id, points) for everyone on the global board, best first."""
        stmt = (
            select(UserModel.id, UserModel.points)
            .where(_qualifies_for_points_board())
            .order_by(UserModel.points.desc(), UserModel.id.desc())
        )
        with _translate_errors("aggregate points ranking"):
            async with self._sessionmaker() as session:
                result = await session.execute(stmt)
                return [(r.id, r.points) for r in result]

    async def global_rank(self, user_id: str) -> Optional[int]:
        """Rank on the points board computed straight from the database."""
        with _translate_errors(f"compute global rank of {user_id}"):
            async with self._sessionmaker() as session:
                points = await session.scalar(
                    select(UserModel.points).where(
                        UserModel.id == user_id, _qualifies_for_points_board()
                    )
                )
                if points is None:
                    return None
                ahead = await session.scalar(
                    select(func.count(UserModel.id)).where(
                        _qualifies_for_points_board(),
                        or_(
                            UserModel.points > points,
                            (UserModel.points == points) & (UserModel.id > user_id),
                        ),
                    )
                )
                return ahead + 1

    async def points_totals(
        self, course_id: str, level: Optional[Difficulty] = None, limit: int = 100
    ) -> list[PointsTotal]:
        """Per-user sum of points earned in a course, with accuracy."""
        conditions = [TestOutcomeModel.course_id == course_id]
        if level is not None:
            conditions.append(
                TestOutcomeModel.id.in_(
                    select(OutcomeDifficultyModel.outcome_id).where(
                        OutcomeDifficultyModel.difficulty == level.value
                    )
                )
            )
        total_points = func.sum(TestOutcomeModel.points_earned).label("total_points")
        stmt = (
            select(
                TestOutcomeModel.user_id,
                total_points,
                func.sum(case((TestOutcomeModel.was_abandoned.is_(False), 1), else_=0)).label(
                    "tests_completed"
                ),
                func.sum(TestOutcomeModel.correct_answers).label("correct"),
                func.sum(TestOutcomeModel.total_questions).label("questions"),
            )
            .where(*conditions)
            .group_by(TestOutcomeModel.user_id)
            .order_by(total_points.desc(), TestOutcomeModel.user_id.desc())
            .limit(limit)
        )
        with _translate_errors(f"aggregate points totals for {course_id}"):
            async with self._sessionmaker() as session:
                result = await session.execute(stmt)
                return [
                    PointsTotal(
                        user_id=r.user_id,
                        total_points=int(r.total_points or 0),
                        tests_completed=int(r.tests_completed or 0),
                        accuracy=round(r.correct / r.questions * 100, 2) if r.questions else 0.0,
                    )
                    for r in result
                ]

    async def performance_stats(self, user_id: str) -> PerformanceStats:
        """Profile aggregates over a user's completed attempts."""
        completed = [
            TestOutcomeModel.user_id == user_id,
            TestOutcomeModel.was_abandoned.is_(False),
        ]
        overall_stmt = select(
            func.count(TestOutcomeModel.id),
            func.avg(TestOutcomeModel.percentage),
            func.max(TestOutcomeModel.percentage),
            func.min(TestOutcomeModel.percentage),
            func.sum(TestOutcomeModel.time_taken),
            func.sum(TestOutcomeModel.correct_answers),
            func.sum(TestOutcomeModel.total_questions),
        ).where(*completed)
        tests_taken = func.count(TestOutcomeModel.id).label("tests_taken")
        course_stmt = (
            select(
                TestOutcomeModel.course_id,
                tests_taken,
                func.avg(TestOutcomeModel.percentage).label("average_score"),
                func.max(TestOutcomeModel.percentage).label("best_score"),
                func.sum(TestOutcomeModel.time_taken).label("total_time_spent"),
            )
            .where(*completed)
            .group_by(TestOutcomeModel.course_id)
            .order_by(tests_taken.desc(), TestOutcomeModel.course_id)
        )
        with _translate_errors(f"aggregate stats of {user_id}"):
            async with self._sessionmaker() as session:
                count, avg, best, worst, time_spent, correct, questions = (
                    await session.execute(overall_stmt)
                ).one()
                if not count:
                    return PerformanceStats()
                courses = (await session.execute(course_stmt)).all()

        return PerformanceStats(
            overall=OverallStats(
                total_tests=count,
                average_score=round(float(avg), 2),
                best_score=best,
                worst_score=worst,
                total_time_spent=time_spent or 0,
                total_correct_answers=correct or 0,
                total_questions=questions or 0,
            ),
            course_stats=[
                CourseStats(
                    course_id=c.course_id,
                    tests_taken=c.tests_taken,
                    average_score=round(float(c.average_score), 2),
                    best_score=c.best_score,
                    total_time_spent=c.total_time_spent or 0,
                )
                for c in courses
            ],
        )

    # ------------------------------------------------------------------
    # Badge support
    # ------------------------------------------------------------------

    async def has_perfect_outcome(self, user_id: str) -> bool:
        stmt = select(
            exists().where(
                TestOutcomeModel.user_id == user_id,
                TestOutcomeModel.was_abandoned.is_(False),
                TestOutcomeModel.percentage == 100,
                TestOutcomeModel.wrong_answers == 0,
            )
        )
        with _translate_errors(f"check perfect outcome of {user_id}"):
            async with self._sessionmaker() as session:
                return bool(await session.scalar(stmt))

    async def count_fast_outcomes(self, user_id: str, ratio: float) -> int:
        """Completed attempts finished within `ratio` of their time budget."""
        stmt = select(func.count(TestOutcomeModel.id)).where(
            TestOutcomeModel.user_id == user_id,
            TestOutcomeModel.was_abandoned.is_(False),
            TestOutcomeModel.max_time.is_not(None),
            TestOutcomeModel.time_taken <= TestOutcomeModel.max_time * ratio,
        )
        with _translate_errors(f"count fast outcomes of {user_id}"):
            async with self._sessionmaker() as session:
                return await session.scalar(stmt) or 0

    async def save_badge_progress(
        self, user_id: str, days_on_top: int, last_top_position: Optional[datetime]
    ):
        with _translate_errors(f"save badge progress of {user_id}"):
            async with self._sessionmaker() as session:
                async with session.begin():
                    await session.execute(
                        update(UserModel)
                        .where(UserModel.id == user_id)
                        .values(
                            leaderboard_days_on_top=days_on_top,
                            last_top_position=last_top_position,
                        )
                        .execution_options(synchronize_session=False)
                    )

    async def award_badge(self, user_id: str, badge_type: BadgeType) -> bool:
        """Add a badge unless the user already holds it. Returns True if added."""
        with _translate_errors(f"award {badge_type.value} to {user_id}"):
            async with self._sessionmaker() as session:
                async with session.begin():
                    user = await session.get(UserModel, user_id, with_for_update=True)
                    if user is None:
                        raise ValueError(f"User {user_id} not found")
                    badges = list(user.badges or [])
                    if any(badge["type"] == badge_type.value for badge in badges):
                        return False
                    badges.append(
                        {
                            "type": badge_type.value,
                            "earned_at": datetime.now(timezone.utc).isoformat(),
                        }
                    )
                    user.badges = badges
        logger.info(f"[STORE] Badge {badge_type.value} awarded to {user_id}")
        return True
