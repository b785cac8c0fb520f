"""
Tests for the ranking cache implementations.

The in-process cache must behave like Redis sorted sets (ZREVRANGE order,
1-based ranks, per-scope expiry); the Redis cache must surface every driver
failure as CacheError.
"""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from exam_ranking.models import Scope
from exam_ranking.storage.ranking_cache import CacheError, InMemoryRankingCache
from exam_ranking.storage.redis_store import RedisRankingCache, build_ranking_cache

GLOBAL = Scope.global_scope()
HARD = Scope.course("python101", "Hard")


def test_leaderboard_keys():
    cache = InMemoryRankingCache()
    assert cache._get_leaderboard_key(GLOBAL) == "global:leaderboard:points"
    assert cache._get_leaderboard_key(HARD) == "leaderboard:python101:Hard"
    assert cache._get_leaderboard_key(Scope.course("python101")) == "leaderboard:python101:all"


def test_memory_backend_selected_from_settings():
    assert isinstance(build_ranking_cache(), InMemoryRankingCache)


@pytest.mark.asyncio
async def test_top_n_orders_by_score_descending():
    cache = InMemoryRankingCache()
    await cache.bulk_load(GLOBAL, [("a", 10), ("b", 30), ("c", 20)])

    assert await cache.top_n(GLOBAL, 10) == [("b", 30), ("c", 20), ("a", 10)]
    assert await cache.top_n(GLOBAL, 1, offset=1) == [("c", 20)]
    assert await cache.top_n(GLOBAL, 0) == []


@pytest.mark.asyncio
async def test_equal_scores_ordered_by_member_descending():
    """Same tie-break as Redis ZREVRANGE."""
    cache = InMemoryRankingCache()
    await cache.bulk_load(GLOBAL, [("alice", 50), ("bob", 50), ("carol", 50)])

    assert [member for member, _ in await cache.top_n(GLOBAL, 3)] == ["carol", "bob", "alice"]
    assert await cache.rank_of(GLOBAL, "carol") == 1


@pytest.mark.asyncio
async def test_rank_and_score_of_missing_member():
    cache = InMemoryRankingCache()
    await cache.upsert(GLOBAL, "a", 5)

    assert await cache.rank_of(GLOBAL, "zed") is None
    assert await cache.score_of(GLOBAL, "zed") is None
    assert await cache.rank_of(HARD, "a") is None


@pytest.mark.asyncio
async def test_upsert_is_idempotent_and_higher_score_never_lowers_rank():
    cache = InMemoryRankingCache()
    await cache.bulk_load(HARD, [("a", 300), ("b", 200), ("c", 100)])

    await cache.upsert(HARD, "b", 200)
    await cache.upsert(HARD, "b", 200)
    assert await cache.rank_of(HARD, "b") == 2
    assert await cache.size(HARD) == 3

    await cache.upsert(HARD, "b", 250)
    assert await cache.rank_of(HARD, "b") == 2
    await cache.upsert(HARD, "b", 400)
    assert await cache.rank_of(HARD, "b") == 1


@pytest.mark.asyncio
async def test_scopes_are_independent():
    cache = InMemoryRankingCache()
    await cache.upsert(HARD, "a", 1)

    assert await cache.scope_exists(HARD)
    assert not await cache.scope_exists(Scope.course("python101", "Easy"))
    assert not await cache.scope_exists(GLOBAL)


@pytest.mark.asyncio
async def test_expired_scope_reads_as_missing():
    cache = InMemoryRankingCache()
    await cache.bulk_load(HARD, [("a", 1), ("b", 2)])

    cache.expire_now(HARD)

    assert not await cache.scope_exists(HARD)
    assert await cache.top_n(HARD, 10) == []
    assert await cache.size(HARD) == 0


@pytest.mark.asyncio
async def test_empty_bulk_load_does_not_create_scope():
    cache = InMemoryRankingCache()
    assert await cache.bulk_load(HARD, []) == 0
    assert not await cache.scope_exists(HARD)


@pytest.mark.asyncio
async def test_clear_drops_scope():
    cache = InMemoryRankingCache()
    await cache.upsert(GLOBAL, "a", 1)

    assert await cache.clear(GLOBAL) is True
    assert await cache.clear(GLOBAL) is False
    assert not await cache.scope_exists(GLOBAL)


class UnreachableRedis:
    """Stands in for a redis.asyncio client whose server is down."""

    async def zrevrange(self, *args, **kwargs):
        raise RedisConnectionError("Error 111 connecting to localhost:6379")

    async def zrevrank(self, *args, **kwargs):
        raise RedisConnectionError("Error 111 connecting to localhost:6379")

    async def zscore(self, *args, **kwargs):
        raise RedisConnectionError("Error 111 connecting to localhost:6379")

    async def exists(self, *args, **kwargs):
        raise RedisConnectionError("Error 111 connecting to localhost:6379")

    async def ping(self):
        raise RedisConnectionError("Error 111 connecting to localhost:6379")


@pytest.mark.asyncio
async def test_redis_errors_become_cache_errors():
    cache = RedisRankingCache(client=UnreachableRedis())

    with pytest.raises(CacheError):
        await cache.top_n(GLOBAL, 10)
    with pytest.raises(CacheError):
        await cache.rank_of(HARD, "a")
    with pytest.raises(CacheError):
        await cache.score_of(HARD, "a")
    with pytest.raises(CacheError):
        await cache.scope_exists(HARD)
    assert await cache.ping() is False


@pytest.mark.asyncio
async def test_redis_cache_requires_connection():
    cache = RedisRankingCache()

    with pytest.raises(CacheError):
        await cache.rank_of(GLOBAL, "a")
    assert await cache.ping() is False
