"""
Shared fixtures.

Every test gets its own SQLite file database (aiosqlite) and a fresh
in-process ranking cache, so tests never need PostgreSQL or Redis.
"""

import os

# Must be set before exam_ranking.config is imported anywhere
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["CACHE_BACKEND"] = "memory"
os.environ["WARM_UP_ON_STARTUP"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"

from typing import Optional, Union

import pytest

from exam_ranking.models import Difficulty, GradedOutcome, resolve_difficulty
from exam_ranking.services.rank_service import RankQueryService
from exam_ranking.storage.database import build_engine, build_sessionmaker, init_db
from exam_ranking.storage.ranking_cache import CacheError, InMemoryRankingCache, RankingCache
from exam_ranking.storage.result_store import ResultStore


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite engine with the schema created."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ranking.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine):
    return ResultStore(build_sessionmaker(engine))


@pytest.fixture
def cache():
    return InMemoryRankingCache()


@pytest.fixture
def service(store, cache):
    return RankQueryService(store, cache)


@pytest.fixture
def users(store):
    """Create users by id: `await users("alice", "bob")`."""

    async def create(*user_ids: str):
        for user_id in user_ids:
            await store.create_user(user_id, user_id, user_id.title())

    return create


def make_outcome(
    user_id: str,
    percentage: int = 80,
    time_taken: int = 120,
    course_id: str = "python101",
    difficulty: Union[str, Difficulty, list] = "Medium",
    total_questions: int = 20,
    max_time: Optional[int] = None,
    wrong_answers: Optional[int] = None,
) -> GradedOutcome:
    """Completed outcome scoring `percentage` out of 100 marks."""
    correct = round(total_questions * percentage / 100)
    wrong = total_questions - correct if wrong_answers is None else wrong_answers
    return GradedOutcome(
        user_id=user_id,
        course_id=course_id,
        difficulty=resolve_difficulty(difficulty),
        total_questions=total_questions,
        correct_answers=correct,
        wrong_answers=wrong,
        unanswered=total_questions - correct - wrong,
        total_score=percentage,
        max_possible_score=100,
        time_taken=time_taken,
        max_time=max_time,
    )


def make_abandon(
    user_id: str,
    abandoned_at: Optional[Difficulty] = Difficulty.HARD,
    course_id: str = "python101",
) -> GradedOutcome:
    return GradedOutcome(
        user_id=user_id,
        course_id=course_id,
        difficulty=resolve_difficulty(abandoned_at or Difficulty.EASY),
        total_questions=0,
        was_abandoned=True,
        abandoned_at_difficulty=abandoned_at,
    )


class FailingRankingCache(RankingCache):
    """Cache whose every call fails like an unreachable Redis."""

    def __init__(self):
        super().__init__()
        self.calls = 0

    def _fail(self):
        self.calls += 1
        raise CacheError("connection refused")

    async def upsert(self, scope, user_id, score):
        self._fail()

    async def bulk_load(self, scope, entries):
        self._fail()

    async def top_n(self, scope, limit, offset=0):
        self._fail()

    async def rank_of(self, scope, user_id):
        self._fail()

    async def score_of(self, scope, user_id):
        self._fail()

    async def scope_exists(self, scope):
        self._fail()

    async def size(self, scope):
        self._fail()

    async def clear(self, scope):
        self._fail()

    async def ping(self):
        return False
