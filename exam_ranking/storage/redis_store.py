"""
Redis storage layer for leaderboard sorted sets.

System Design Concept:
    Implements [[redis-sorted-sets]] with O(log n) operations using the
    [[skip-list]] Redis keeps behind every ZSET.

Simulates:
    Redis Cluster (production deployment)

Simplifications:
    - Single Redis instance (no sharding)
    - Default redis-py connection pool

At Scale:
    - Shard course scopes by course_id hash slot
    - Enable AOF so a restart does not force every scope through a rebuild
"""

import logging
from typing import Iterable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from exam_ranking.config import settings
from exam_ranking.models import Scope
from exam_ranking.storage.ranking_cache import CacheError, InMemoryRankingCache, RankingCache

logger = logging.getLogger(__name__)


class RedisRankingCache(RankingCache):
    """
    Async Redis implementation of the ranking cache.

    Every driver exception is re-raised as CacheError so the ranking service
    never has to know which cache technology it talks to.
    """

    def __init__(self, ttl_seconds: Optional[int] = None, client: Optional[redis.Redis] = None):
        super().__init__(ttl_seconds)
        self._client: Optional[redis.Redis] = client

    async def connect(self):
        """Establish connection to Redis."""
        if self._client is not None:
            return
        self._client = redis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            db=settings.redis_db,
            password=settings.redis_password if settings.redis_password else None,
            decode_responses=True,  # Return strings instead of bytes
            socket_timeout=settings.redis_socket_timeout,
            socket_connect_timeout=settings.redis_socket_timeout,
        )
        logger.info(f"[CACHE] Redis client ready for {settings.redis_host}:{settings.redis_port}")

    async def disconnect(self):
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("[CACHE] Disconnected")

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise CacheError("Redis client is not connected")
        return self._client

    async def upsert(self, scope: Scope, user_id: str, score: float):
        """
        Redis Commands:
            ZADD leaderboard:<course>:<difficulty> <score> <user_id>
            EXPIRE leaderboard:<course>:<difficulty> <ttl>

        Time Complexity:
            O(log n)
        """
        key = self._get_leaderboard_key(scope)
        try:
            async with self.client.pipeline(transaction=False) as pipe:
                pipe.zadd(key, {user_id: score})
                pipe.expire(key, self.ttl_seconds)
                await pipe.execute()
        except RedisError as e:
            raise CacheError(f"ZADD {key} failed: {e}") from e

    async def bulk_load(self, scope: Scope, entries: Iterable[tuple[str, float]]) -> int:
        """
        Load a rebuilt scope in one round trip.

        The pipeline is not a MULTI/EXEC transaction: each ZADD is an
        independent upsert, so two rebuilds racing each other converge.
        """
        key = self._get_leaderboard_key(scope)
        mapping = {user_id: score for user_id, score in entries}
        if not mapping:
            return 0
        try:
            async with self.client.pipeline(transaction=False) as pipe:
                pipe.zadd(key, mapping)
                pipe.expire(key, self.ttl_seconds)
                await pipe.execute()
        except RedisError as e:
            raise CacheError(f"Bulk load of {key} failed: {e}") from e
        return len(mapping)

    async def top_n(self, scope: Scope, limit: int, offset: int = 0) -> list[tuple[str, int]]:
        """
        Redis Command:
            ZREVRANGE <key> <offset> <offset + limit - 1> WITHSCORES

        Time Complexity:
            O(log n + m) where m is the page size
        """
        if limit <= 0:
            return []
        key = self._get_leaderboard_key(scope)
        try:
            results = await self.client.zrevrange(key, offset, offset + limit - 1, withscores=True)
        except RedisError as e:
            raise CacheError(f"ZREVRANGE {key} failed: {e}") from e
        return [(user_id, int(score)) for user_id, score in results]

    async def rank_of(self, scope: Scope, user_id: str) -> Optional[int]:
        """ZREVRANK is 0-indexed; we return 1-indexed rank for display."""
        key = self._get_leaderboard_key(scope)
        try:
            rank = await self.client.zrevrank(key, user_id)
        except RedisError as e:
            raise CacheError(f"ZREVRANK {key} failed: {e}") from e
        return rank + 1 if rank is not None else None

    async def score_of(self, scope: Scope, user_id: str) -> Optional[int]:
        key = self._get_leaderboard_key(scope)
        try:
            score = await self.client.zscore(key, user_id)
        except RedisError as e:
            raise CacheError(f"ZSCORE {key} failed: {e}") from e
        return int(score) if score is not None else None

    async def scope_exists(self, scope: Scope) -> bool:
        key = self._get_leaderboard_key(scope)
        try:
            return await self.client.exists(key) > 0
        except RedisError as e:
            raise CacheError(f"EXISTS {key} failed: {e}") from e

    async def size(self, scope: Scope) -> int:
        key = self._get_leaderboard_key(scope)
        try:
            return await self.client.zcard(key)
        except RedisError as e:
            raise CacheError(f"ZCARD {key} failed: {e}") from e

    async def clear(self, scope: Scope) -> bool:
        key = self._get_leaderboard_key(scope)
        try:
            return await self.client.delete(key) > 0
        except RedisError as e:
            raise CacheError(f"DEL {key} failed: {e}") from e

    async def ping(self) -> bool:
        """
        Check if Redis connection is healthy.

        Use Case:
            Health check endpoint for load balancer
        """
        try:
            return await self.client.ping()
        except (RedisError, CacheError):
            return False


def build_ranking_cache() -> RankingCache:
    """Pick the cache backend named by CACHE_BACKEND."""
    if settings.cache_backend == "memory":
        logger.info("[CACHE] Using in-process ranking cache")
        return InMemoryRankingCache()
    return RedisRankingCache()
