"""
Tests for the durable result store.

The store is the source of truth: aggregations here are what a rebuilt
leaderboard shows, so their ordering has to match the cache exactly.
"""

import pytest
from conftest import make_abandon, make_outcome
from sqlalchemy.dialects import postgresql
from sqlalchemy.schema import CreateTable

from exam_ranking.models import BadgeType, Difficulty, Scope
from exam_ranking.storage.result_store import DurableStoreError
from exam_ranking.storage.schema import UserModel

GLOBAL = Scope.global_scope()


@pytest.mark.asyncio
async def test_create_user_starts_at_zero(store):
    standing = await store.create_user("u1", "ada", "Ada Lovelace")

    assert standing.points == 0
    assert standing.tests_completed == 0
    assert standing.badges == []
    assert (await store.get_standing("u1")).username == "ada"


@pytest.mark.asyncio
async def test_duplicate_user_rejected(store):
    await store.create_user("u1", "ada", "Ada")

    with pytest.raises(ValueError):
        await store.create_user("u2", "ada", "Another Ada")


@pytest.mark.asyncio
async def test_save_submission_updates_standing_atomically(store, users):
    await users("u1")

    record, standing = await store.save_submission(
        make_outcome("u1", percentage=90, total_questions=20), percentile=0, points_earned=40,
        points_deducted=0,
    )

    assert record.id > 0
    assert record.percentage == 90
    assert record.difficulty.key == "Medium"
    assert standing.points == 40
    assert standing.tests_completed == 1
    assert standing.questions_answered == 20


@pytest.mark.asyncio
async def test_save_submission_for_unknown_user_writes_nothing(store):
    with pytest.raises(ValueError):
        await store.save_submission(make_outcome("ghost"), 0, 10, 0)

    assert await store.recent_outcomes("ghost") == []


@pytest.mark.asyncio
async def test_abandonment_deduction_is_clamped(store, users):
    await users("u1")
    await store.adjust_balance("u1", 3)

    record, standing = await store.save_submission(make_abandon("u1"), 0, 0, 7)

    assert record.was_abandoned
    assert record.points_deducted == 7
    assert standing.points == 0
    assert standing.tests_completed == 0


@pytest.mark.asyncio
async def test_average_percentile_is_running_mean(store, users):
    await users("u1")
    for percentile in (20, 40, 90):
        await store.save_submission(make_outcome("u1"), percentile, 10, 0)

    standing = await store.get_standing("u1")
    assert standing.average_percentile == pytest.approx(50.0)


@pytest.mark.asyncio
async def test_percentile_counts_strictly_lower_attempts(store, users):
    await users("a", "b", "c", "d")
    assert await store.percentile_for("python101", "Medium", 80) == 0

    for user_id, percentage in (("a", 50), ("b", 70), ("c", 80)):
        await store.save_submission(make_outcome(user_id, percentage=percentage), 0, 10, 0)
    # Other difficulty selections don't count
    await store.save_submission(make_outcome("d", percentage=10, difficulty="Hard"), 0, 10, 0)
    assert await store.percentile_for("python101", "Medium", 80) == 67

    # An abandonment counts as a 0% attempt
    await store.save_submission(make_abandon("d", Difficulty.MEDIUM), 0, 0, 5)
    assert await store.percentile_for("python101", "Medium", 80) == 75
    assert await store.percentile_for("python101", "Medium", 100) == 100
    assert await store.percentile_for("python101", "Medium", 50) == 25
    assert await store.percentile_for("python101", "Medium", 0) == 0


@pytest.mark.asyncio
async def test_best_per_user_takes_single_best_attempt(store, users):
    await users("u1", "u2")
    await store.save_submission(make_outcome("u1", percentage=70, time_taken=50), 0, 1, 0)
    await store.save_submission(make_outcome("u1", percentage=90, time_taken=400), 0, 1, 0)
    await store.save_submission(make_outcome("u1", percentage=90, time_taken=300), 0, 1, 0)
    await store.save_submission(make_outcome("u2", percentage=95, time_taken=999), 0, 1, 0)

    best = await store.best_per_user("python101")

    assert [(b.user_id, b.percentage, b.time_taken, b.total_tests) for b in best] == [
        ("u2", 95, 999, 1),
        ("u1", 90, 300, 3),
    ]


@pytest.mark.asyncio
async def test_best_per_user_filters_by_stage(store, users):
    await users("u1", "u2")
    await store.save_submission(
        make_outcome("u1", percentage=60, difficulty=["Easy", "Hard"]), 0, 1, 0
    )
    await store.save_submission(make_outcome("u2", percentage=99, difficulty="Medium"), 0, 1, 0)

    assert [b.user_id for b in await store.best_per_user("python101", Difficulty.HARD)] == ["u1"]
    assert [b.user_id for b in await store.best_per_user("python101", Difficulty.EASY)] == ["u1"]
    assert [b.user_id for b in await store.best_per_user("python101", Difficulty.MEDIUM)] == ["u2"]
    assert len(await store.best_per_user("python101")) == 2


@pytest.mark.asyncio
async def test_points_ranking_and_global_rank_agree(store, users):
    await users("a", "b", "c", "idle")
    await store.adjust_balance("a", 10)
    await store.adjust_balance("b", 30)
    await store.adjust_balance("c", 10)

    ranking = await store.points_ranking()

    # Users with no attempts and no points are not on the board
    assert ranking == [("b", 30), ("c", 10), ("a", 10)]
    for position, (user_id, _) in enumerate(ranking, start=1):
        assert await store.global_rank(user_id) == position
    assert await store.global_rank("idle") is None


@pytest.mark.asyncio
async def test_equal_points_tie_break_uses_byte_order(store, users, cache):
    await users("Zed", "abe")
    await store.adjust_balance("Zed", 10)
    await store.adjust_balance("abe", 10)

    ranking = await store.points_ranking()
    await cache.bulk_load(GLOBAL, ranking)

    # "a" sorts after "Z" byte-wise, so it wins the descending tie-break
    assert ranking == [("abe", 10), ("Zed", 10)]
    assert [m for m, _ in await cache.top_n(GLOBAL, 2)] == ["abe", "Zed"]
    assert await store.global_rank("abe") == 1
    assert await store.global_rank("Zed") == 2


def test_user_ids_compare_byte_wise_on_postgresql():
    ddl = str(CreateTable(UserModel.__table__).compile(dialect=postgresql.dialect()))
    assert 'COLLATE "C"' in ddl


@pytest.mark.asyncio
async def test_zero_balance_player_still_ranked(store, users):
    await users("a")
    await store.save_submission(make_abandon("a"), 0, 0, 7)

    assert await store.points_ranking() == [("a", 0)]
    assert await store.global_rank("a") == 1


@pytest.mark.asyncio
async def test_points_totals_per_course(store, users):
    await users("a", "b")
    await store.save_submission(make_outcome("a", percentage=100, total_questions=10), 0, 50, 0)
    await store.save_submission(make_outcome("a", percentage=50, total_questions=10), 0, 20, 0)
    await store.save_submission(make_outcome("b", percentage=80, total_questions=10), 0, 60, 0)
    await store.save_submission(make_outcome("b", course_id="other"), 0, 99, 0)

    totals = await store.points_totals("python101")

    assert [(t.user_id, t.total_points, t.tests_completed) for t in totals] == [
        ("a", 70, 2),
        ("b", 60, 1),
    ]
    assert totals[0].accuracy == 75.0


@pytest.mark.asyncio
async def test_performance_stats(store, users):
    await users("a")
    assert (await store.performance_stats("a")).overall.total_tests == 0

    await store.save_submission(make_outcome("a", percentage=60, time_taken=100), 0, 1, 0)
    await store.save_submission(make_outcome("a", percentage=90, time_taken=50), 0, 1, 0)
    await store.save_submission(make_outcome("a", course_id="sql", percentage=30), 0, 1, 0)
    await store.save_submission(make_abandon("a"), 0, 0, 2)

    stats = await store.performance_stats("a")

    assert stats.overall.total_tests == 3
    assert stats.overall.best_score == 90
    assert stats.overall.worst_score == 30
    assert stats.overall.average_score == 60.0
    assert [c.course_id for c in stats.course_stats] == ["python101", "sql"]
    assert stats.course_stats[0].average_score == 75.0
    assert stats.course_stats[0].total_time_spent == 150


@pytest.mark.asyncio
async def test_recent_outcomes_newest_first(store, users):
    await users("a")
    first, _ = await store.save_submission(make_outcome("a", percentage=10), 0, 1, 0)
    second, _ = await store.save_submission(make_outcome("a", percentage=20), 0, 1, 0)

    history = await store.recent_outcomes("a", limit=5)

    assert [r.id for r in history] == [second.id, first.id]
    assert (await store.get_outcome(first.id)).percentage == 10


@pytest.mark.asyncio
async def test_award_badge_once(store, users):
    await users("a")

    assert await store.award_badge("a", BadgeType.PERFECTIONIST) is True
    assert await store.award_badge("a", BadgeType.PERFECTIONIST) is False
    standing = await store.get_standing("a")
    assert [b.type for b in standing.badges] == [BadgeType.PERFECTIONIST]


@pytest.mark.asyncio
async def test_database_failure_surfaces_as_durable_error(store, engine, users):
    await users("a")
    async with engine.begin() as conn:
        await conn.exec_driver_sql("DROP TABLE outcome_difficulties")

    with pytest.raises(DurableStoreError):
        await store.save_submission(make_outcome("a"), 0, 10, 0)

    # Nothing from the failed transaction is visible
    standing = await store.get_standing("a")
    assert standing.points == 0
    assert standing.tests_completed == 0
