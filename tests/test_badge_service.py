"""
Tests for badge awarding.

Badges read from the ranking data; none of these checks should ever change
a balance or a rank.
"""

from datetime import datetime, timedelta, timezone

import pytest
from conftest import make_outcome

from exam_ranking.models import BadgeType
from exam_ranking.services.badge_service import BadgeService, next_days_on_top

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


def test_days_on_top_counter():
    assert next_days_on_top(0, None, NOW) == 1
    assert next_days_on_top(5, NOW - timedelta(hours=2), NOW) == 5
    assert next_days_on_top(5, NOW - timedelta(days=1), NOW) == 6
    assert next_days_on_top(5, NOW - timedelta(days=3), NOW) == 1


@pytest.mark.asyncio
async def test_perfectionist_needs_full_marks_and_no_wrong_answers(store, users):
    await users("a")
    badges = BadgeService(store)

    await store.save_submission(make_outcome("a", percentage=95), 0, 10, 0)
    assert await badges.check_and_award("a", global_rank=2, now=NOW) == []

    await store.save_submission(make_outcome("a", percentage=100), 0, 10, 0)
    assert await badges.check_and_award("a", global_rank=2, now=NOW) == [BadgeType.PERFECTIONIST]

    # Only awarded once
    assert await badges.check_and_award("a", global_rank=2, now=NOW) == []


@pytest.mark.asyncio
async def test_speed_demon_after_fifty_fast_tests(store, users):
    await users("a")
    badges = BadgeService(store)

    for _ in range(49):
        await store.save_submission(make_outcome("a", time_taken=400, max_time=600), 0, 1, 0)
    # Slow attempts don't count
    await store.save_submission(make_outcome("a", time_taken=590, max_time=600), 0, 1, 0)
    assert BadgeType.SPEED_DEMON not in await badges.check_and_award("a", 2, now=NOW)

    await store.save_submission(make_outcome("a", time_taken=470, max_time=600), 0, 1, 0)
    assert BadgeType.SPEED_DEMON in await badges.check_and_award("a", 2, now=NOW)


@pytest.mark.asyncio
async def test_leaderboard_legend_after_twenty_consecutive_days(store, users):
    await users("a")
    badges = BadgeService(store)

    for day in range(19):
        awarded = await badges.check_and_award("a", 1, now=NOW + timedelta(days=day))
        assert BadgeType.LEADERBOARD_LEGEND not in awarded
    assert (await store.get_standing("a")).leaderboard_days_on_top == 19

    awarded = await badges.check_and_award("a", 1, now=NOW + timedelta(days=19))
    assert BadgeType.LEADERBOARD_LEGEND in awarded


@pytest.mark.asyncio
async def test_losing_top_spot_resets_streak(store, users):
    await users("a")
    badges = BadgeService(store)

    for day in range(5):
        await badges.check_and_award("a", 1, now=NOW + timedelta(days=day))
    await badges.check_and_award("a", 3, now=NOW + timedelta(days=5))

    assert (await store.get_standing("a")).leaderboard_days_on_top == 0
    await badges.check_and_award("a", 1, now=NOW + timedelta(days=6))
    assert (await store.get_standing("a")).leaderboard_days_on_top == 1


def test_badge_info_lists_every_badge():
    info = BadgeService.get_all_badge_info()
    assert {badge["type"] for badge in info} == {b.value for b in BadgeType}
