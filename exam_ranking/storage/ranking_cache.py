"""
Ranking cache interface and an in-process implementation.

System Design Concept:
    Implements [[redis-sorted-sets]] semantics behind one small interface:
    - upsert:       ZADD key score member + EXPIRE key ttl
    - top_n:        ZREVRANGE key start stop WITHSCORES
    - rank_of:      ZREVRANK key member (+1 for display)
    - scope_exists: EXISTS key

    Call sites only see this interface, so the cache technology can be
    swapped (Redis in production, the in-process store in tests and demos)
    without touching the ranking logic.

Failure Contract:
    Any implementation raises CacheError for connectivity/timeout problems.
    Callers decide whether to fall back (reads) or log and continue (writes).
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from exam_ranking.config import settings
from exam_ranking.models import Scope

logger = logging.getLogger(__name__)


class CacheError(Exception):
    """Raised when the ranking cache is unreachable or fails an operation."""
    pass


class RankingCache(ABC):
    """
    Sorted set per scope, mapping user id -> score, with a TTL per scope.

    Ordering:
        Score descending. Equal scores are ordered by member descending,
        which is what Redis ZREVRANGE does; the durable store uses the same
        tie-break so rebuilt rankings agree with computed ones.
    """

    def __init__(self, ttl_seconds: Optional[int] = None):
        self.ttl_seconds = ttl_seconds or settings.leaderboard_ttl_seconds

    def _get_leaderboard_key(self, scope: Scope) -> str:
        """
        Storage key for a scope's sorted set.

        Key naming:
            - "global:leaderboard:points" for the global points board
            - "leaderboard:<course_id>:<difficulty>" for course boards
        """
        if scope.is_global:
            return "global:leaderboard:points"
        return f"leaderboard:{scope.key}"

    async def connect(self):
        """Open connections, if the backend has any."""

    async def disconnect(self):
        """Release connections, if the backend has any."""

    @abstractmethod
    async def upsert(self, scope: Scope, user_id: str, score: float):
        """Set the member's score and reset the scope's expiry window."""
        pass

    @abstractmethod
    async def bulk_load(self, scope: Scope, entries: Iterable[tuple[str, float]]) -> int:
        """Load many (user_id, score) pairs and set the scope's TTL. Returns count."""
        pass

    @abstractmethod
    async def top_n(self, scope: Scope, limit: int, offset: int = 0) -> list[tuple[str, int]]:
        """Ranked page of (user_id, score), best first."""
        pass

    @abstractmethod
    async def rank_of(self, scope: Scope, user_id: str) -> Optional[int]:
        """1-based rank, or None if the user is not in the scope."""
        pass

    @abstractmethod
    async def score_of(self, scope: Scope, user_id: str) -> Optional[int]:
        pass

    @abstractmethod
    async def scope_exists(self, scope: Scope) -> bool:
        pass

    @abstractmethod
    async def size(self, scope: Scope) -> int:
        pass

    @abstractmethod
    async def clear(self, scope: Scope) -> bool:
        """Drop a scope entirely. Returns True if it existed."""
        pass

    @abstractmethod
    async def ping(self) -> bool:
        pass


class InMemoryRankingCache(RankingCache):
    """
    In-process sorted sets simulating Redis.

    Simplifications:
        - Single process, no persistence
        - Lazy expiration: an expired scope is dropped the next time it is read
        - Ranking is O(n log n) per read instead of a skip list's O(log n)

    Usage:
        Tests, demos, and single-node deployments without Redis
        (CACHE_BACKEND=memory).
    """

    def __init__(self, ttl_seconds: Optional[int] = None):
        super().__init__(ttl_seconds)
        self._sets: dict[str, dict[str, float]] = {}
        self._expiry: dict[str, float] = {}

    def _live_set(self, scope: Scope) -> Optional[dict[str, float]]:
        key = self._get_leaderboard_key(scope)
        expires_at = self._expiry.get(key)
        if expires_at is not None and time.monotonic() >= expires_at:
            logger.debug(f"[CACHE] {key} expired")
            self._sets.pop(key, None)
            self._expiry.pop(key, None)
            return None
        return self._sets.get(key)

    def _touch(self, key: str):
        self._expiry[key] = time.monotonic() + self.ttl_seconds

    def _ordered(self, members: dict[str, float]) -> list[tuple[str, float]]:
        return sorted(members.items(), key=lambda item: (item[1], item[0]), reverse=True)

    async def upsert(self, scope: Scope, user_id: str, score: float):
        members = self._live_set(scope)
        key = self._get_leaderboard_key(scope)
        if members is None:
            members = self._sets[key] = {}
        members[user_id] = float(score)
        self._touch(key)

    async def bulk_load(self, scope: Scope, entries: Iterable[tuple[str, float]]) -> int:
        members = self._live_set(scope)
        key = self._get_leaderboard_key(scope)
        if members is None:
            members = {}
        count = 0
        for user_id, score in entries:
            members[user_id] = float(score)
            count += 1
        if count:
            self._sets[key] = members
            self._touch(key)
        return count

    async def top_n(self, scope: Scope, limit: int, offset: int = 0) -> list[tuple[str, int]]:
        members = self._live_set(scope)
        if not members or limit <= 0:
            return []
        page = self._ordered(members)[offset:offset + limit]
        return [(user_id, int(score)) for user_id, score in page]

    async def rank_of(self, scope: Scope, user_id: str) -> Optional[int]:
        members = self._live_set(scope)
        if not members or user_id not in members:
            return None
        for position, (member, _) in enumerate(self._ordered(members), start=1):
            if member == user_id:
                return position
        return None

    async def score_of(self, scope: Scope, user_id: str) -> Optional[int]:
        members = self._live_set(scope)
        if not members or user_id not in members:
            return None
        return int(members[user_id])

    async def scope_exists(self, scope: Scope) -> bool:
        return bool(self._live_set(scope))

    async def size(self, scope: Scope) -> int:
        return len(self._live_set(scope) or {})

    async def clear(self, scope: Scope) -> bool:
        key = self._get_leaderboard_key(scope)
        self._expiry.pop(key, None)
        return self._sets.pop(key, None) is not None

    async def ping(self) -> bool:
        return True

    def expire_now(self, scope: Scope):
        """Force a scope's TTL to lapse (tests and demos)."""
        key = self._get_leaderboard_key(scope)
        if key in self._sets:
            self._expiry[key] = time.monotonic()
