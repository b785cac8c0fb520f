"""
API Server - FastAPI endpoints

System Design Concept:
    Thin HTTP layer over the Rank Query Service. Handlers translate requests
    into GradedOutcome values and map service errors to status codes; no
    ranking logic lives here.

Endpoints:
    - POST /api/v1/users - Create a user standing
    - POST /api/v1/tests/submit - Record a graded attempt
    - POST /api/v1/tests/abandon - Record an abandoned attempt
    - GET  /api/v1/leaderboard/global - Points leaderboard
    - GET  /api/v1/leaderboard/courses/{course_id} - Performance leaderboard
    - GET  /api/v1/leaderboard/courses/{course_id}/points - Points per course
    - GET  /api/v1/leaderboard/info - Scoring rules and badges
    - POST /api/v1/leaderboard/rebuild - Force a scope rebuild
    - GET  /api/v1/users/{user_id}/rank - Rank in a scope
    - GET  /api/v1/users/{user_id}/surrounding - Players around a user
    - GET  /api/v1/users/{user_id}/stats - Standing and profile aggregates
    - GET  /api/v1/users/{user_id}/history - Recent attempts
    - POST /api/v1/users/{user_id}/points - Administrative balance change

Error mapping:
    - ValueError from the service (unknown user) -> 404
    - Invalid scope key -> 400
    - DurableStoreError -> 503, nothing was recorded
    - Request validation -> 422 (FastAPI)
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Query, status
from pydantic import BaseModel, Field, ValidationError, model_validator

from exam_ranking.config import settings
from exam_ranking.models import (
    MAX_TIME_TAKEN,
    Difficulty,
    GradedOutcome,
    LeaderboardRow,
    OutcomeRecord,
    PerformanceStats,
    PointsTotal,
    Scope,
    SubmissionResult,
    UserStanding,
    resolve_difficulty,
)
from exam_ranking.services.rank_service import RankQueryService
from exam_ranking.storage.database import init_db
from exam_ranking.storage.ranking_cache import CacheError
from exam_ranking.storage.redis_store import build_ranking_cache
from exam_ranking.storage.result_store import DurableStoreError, ResultStore

logger = logging.getLogger(__name__)


# Global instances
ranking_cache = build_ranking_cache()
rank_service = RankQueryService(ResultStore(), ranking_cache)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup: Connect the ranking cache, create tables, schedule warm-up
    Shutdown: Stop warm-up if still running, close the cache connection
    """
    logger.info("[API] Starting exam ranking service")
    await ranking_cache.connect()
    await init_db()

    warm_up_task = None
    if settings.warm_up_on_startup:
        # Runs in the background; requests are served while it works
        warm_up_task = asyncio.create_task(rank_service.warm_up())
    logger.info("[API] Ready to handle requests")

    yield

    logger.info("[API] Shutting down")
    if warm_up_task and not warm_up_task.done():
        warm_up_task.cancel()
    await ranking_cache.disconnect()


app = FastAPI(
    title="Exam Ranking Engine",
    description="Points, leaderboards and ranks for an online testing platform",
    version="1.0.0",
    lifespan=lifespan,
)


def get_rank_service() -> RankQueryService:
    """Dependency returning the shared service (overridden in tests)."""
    return rank_service


# ============================================================================
# REQUEST MODELS
# ============================================================================


class CreateUserRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    username: str = Field(min_length=1, max_length=50)
    display_name: str = Field(min_length=1, max_length=100)


class SubmissionRequest(BaseModel):
    """
    A graded attempt as sent by the test runner.

    `difficulty` is either one level ("Medium") or the ordered list of stages
    of a multi-difficulty test (["Easy", "Medium", "Hard"]).
    """

    user_id: str = Field(min_length=1)
    course_id: str = Field(min_length=1)
    difficulty: Union[Difficulty, list[Difficulty]]
    total_questions: int = Field(ge=1)
    correct_answers: int = Field(ge=0)
    wrong_answers: int = Field(default=0, ge=0)
    unanswered: int = Field(default=0, ge=0)
    total_score: float = Field(ge=0)
    max_possible_score: float = Field(gt=0)
    time_taken: int = Field(ge=1, le=MAX_TIME_TAKEN)
    max_time: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def check_outcome(self) -> "SubmissionRequest":
        try:
            self.to_outcome()
        except ValidationError as e:
            raise ValueError("; ".join(error["msg"] for error in e.errors())) from e
        return self

    def to_outcome(self) -> GradedOutcome:
        return GradedOutcome(
            difficulty=resolve_difficulty(self.difficulty),
            **self.model_dump(exclude={"difficulty"}),
        )


class AbandonRequest(BaseModel):
    """
    An attempt the user walked away from.

    `difficulty` is the stage they were on when they left and decides the
    deduction; `completed_difficulties` lists stages already finished in a
    multi-difficulty test.
    """

    user_id: str = Field(min_length=1)
    course_id: str = Field(min_length=1)
    difficulty: Optional[Difficulty] = None
    completed_difficulties: list[Difficulty] = Field(default_factory=list)
    time_taken: int = Field(default=0, ge=0, le=MAX_TIME_TAKEN)

    def to_outcome(self) -> GradedOutcome:
        stages = list(dict.fromkeys(self.completed_difficulties))
        if not stages:
            stages = [self.difficulty or Difficulty.EASY]
        return GradedOutcome(
            user_id=self.user_id,
            course_id=self.course_id,
            difficulty=resolve_difficulty(stages if len(stages) > 1 else stages[0]),
            total_questions=0,
            time_taken=self.time_taken,
            was_abandoned=True,
            abandoned_at_difficulty=self.difficulty,
        )


class PointsAdjustment(BaseModel):
    delta: int
    reason: str = Field(default="admin_adjustment", min_length=1, max_length=100)


class UserStats(BaseModel):
    standing: UserStanding
    global_rank: Optional[int]
    performance: PerformanceStats


def _parse_scope(key: str) -> Scope:
    try:
        return Scope.parse(key)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def _course_scope(course_id: str, difficulty: str) -> Scope:
    try:
        return Scope.course(course_id, difficulty)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


async def _record(service: RankQueryService, outcome: GradedOutcome) -> SubmissionResult:
    try:
        return await service.record_submission(outcome)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except DurableStoreError as e:
        logger.error(f"[API] Submission for {outcome.user_id} not recorded: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Submission not recorded, please retry",
        )


# ============================================================================
# HEALTH CHECK
# ============================================================================


@app.get("/health")
async def health_check(service: RankQueryService = Depends(get_rank_service)):
    """Health check endpoint for load balancer"""
    cache_ok = await service.cache.ping()
    return {
        "status": "healthy" if cache_ok else "degraded",
        "cache": "up" if cache_ok else "down",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ============================================================================
# USERS
# ============================================================================


@app.post("/api/v1/users", response_model=UserStanding, status_code=status.HTTP_201_CREATED)
async def create_user(
    request: CreateUserRequest, service: RankQueryService = Depends(get_rank_service)
):
    """Create a standing row with a zero balance."""
    try:
        return await service.store.create_user(
            request.user_id, request.username, request.display_name
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except DurableStoreError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="User not created"
        )


@app.get("/api/v1/users/{user_id}/rank")
async def get_user_rank(
    user_id: str,
    scope: str = Query(default="global"),
    service: RankQueryService = Depends(get_rank_service),
):
    """Rank of a user in a scope key ("global" or "<course>:<difficulty>")."""
    parsed = _parse_scope(scope)
    rank = await service.get_user_rank(user_id, parsed)
    return {"user_id": user_id, "scope": parsed.key, "rank": rank}


@app.get("/api/v1/users/{user_id}/surrounding", response_model=list[LeaderboardRow])
async def get_surrounding(
    user_id: str,
    scope: str = Query(default="global"),
    offset: Optional[int] = Query(default=None, ge=0, le=50),
    service: RankQueryService = Depends(get_rank_service),
):
    """
    Players ranked around a user.

    Example:
        GET /api/v1/users/u42/surrounding?scope=python101:Hard&offset=2
    """
    return await service.get_surrounding(user_id, _parse_scope(scope), offset)


@app.get("/api/v1/users/{user_id}/stats", response_model=UserStats)
async def get_user_stats(user_id: str, service: RankQueryService = Depends(get_rank_service)):
    standing = await service.store.get_standing(user_id)
    if standing is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return UserStats(
        standing=standing,
        global_rank=await service.get_user_rank(user_id, Scope.global_scope()),
        performance=await service.get_performance_stats(user_id),
    )


@app.get("/api/v1/users/{user_id}/history", response_model=list[OutcomeRecord])
async def get_user_history(
    user_id: str,
    limit: int = Query(default=10, ge=1, le=100),
    service: RankQueryService = Depends(get_rank_service),
):
    return await service.store.recent_outcomes(user_id, limit)


@app.post("/api/v1/users/{user_id}/points")
async def adjust_points(
    user_id: str,
    adjustment: PointsAdjustment,
    service: RankQueryService = Depends(get_rank_service),
):
    """
    Administrative balance change (refunds, corrections).

    The balance is clamped at zero like any other deduction.
    """
    try:
        balance = await service.points_engine.apply_delta(
            user_id, adjustment.delta, adjustment.reason
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except DurableStoreError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Balance not updated"
        )
    return {"user_id": user_id, "balance": balance, "reason": adjustment.reason}


# ============================================================================
# TESTS
# ============================================================================


@app.post("/api/v1/tests/submit", response_model=SubmissionResult)
async def submit_test(
    request: SubmissionRequest, service: RankQueryService = Depends(get_rank_service)
):
    """
    Record a graded attempt.

    Flow:
    1. Validate counts and scores (422 on violation)
    2. Percentile and points computed against prior attempts
    3. Outcome and balance written in one transaction
    4. Leaderboards updated, new rank returned
    """
    return await _record(service, request.to_outcome())


@app.post("/api/v1/tests/abandon", response_model=SubmissionResult)
async def abandon_test(
    request: AbandonRequest, service: RankQueryService = Depends(get_rank_service)
):
    """Record an abandonment and apply the stage deduction."""
    return await _record(service, request.to_outcome())


# ============================================================================
# LEADERBOARDS
# ============================================================================


@app.get("/api/v1/leaderboard/global", response_model=list[LeaderboardRow])
async def get_global_leaderboard(
    limit: int = Query(default=settings.default_leaderboard_limit, ge=1, le=settings.max_leaderboard_limit),
    offset: int = Query(default=0, ge=0),
    service: RankQueryService = Depends(get_rank_service),
):
    return await service.get_leaderboard(Scope.global_scope(), limit, offset)


@app.get("/api/v1/leaderboard/courses/{course_id}", response_model=list[LeaderboardRow])
async def get_course_leaderboard(
    course_id: str,
    difficulty: str = Query(default="all"),
    limit: int = Query(default=settings.default_leaderboard_limit, ge=1, le=settings.max_leaderboard_limit),
    offset: int = Query(default=0, ge=0),
    service: RankQueryService = Depends(get_rank_service),
):
    """
    Performance leaderboard for a course.

    Ranked by best percentage, ties broken by faster time.
    """
    return await service.get_leaderboard(_course_scope(course_id, difficulty), limit, offset)


@app.get("/api/v1/leaderboard/courses/{course_id}/points", response_model=list[PointsTotal])
async def get_course_points(
    course_id: str,
    difficulty: str = Query(default="all"),
    limit: int = Query(default=settings.default_leaderboard_limit, ge=1, le=settings.max_leaderboard_limit),
    service: RankQueryService = Depends(get_rank_service),
):
    scope = _course_scope(course_id, difficulty)
    return await service.get_points_standings(course_id, scope, limit)


@app.get("/api/v1/leaderboard/info")
async def get_leaderboard_info():
    return RankQueryService.points_system_info()


@app.post("/api/v1/leaderboard/rebuild")
async def rebuild_leaderboard(
    scope: str = Query(default="global"),
    service: RankQueryService = Depends(get_rank_service),
):
    """Reload a scope's sorted set from the database."""
    parsed = _parse_scope(scope)
    try:
        loaded = await service.rebuild_scope(parsed)
    except CacheError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return {"scope": parsed.key, "entries": loaded}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "exam_ranking.api:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
    )
