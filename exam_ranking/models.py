"""
Data models for the exam ranking engine.

System Design Concept:
    Type-safe data validation at the boundaries. Request handlers build a
    GradedOutcome from an already-graded attempt; everything downstream of
    that point trusts the invariants enforced here.

Key Models:
    - DifficultySelection: Single vs Multi difficulty, resolved once
    - Scope: Named partition of the ranking cache (global or course)
    - GradedOutcome: Attempt as handed over by the submission handler
    - OutcomeRecord / UserStanding: Rows of the durable store
    - LeaderboardRow / SubmissionResult: What callers get back
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


MAX_TIME_TAKEN = 999_999


class Difficulty(str, Enum):
    """Difficulty stages of a test, in progression order."""
    EASY = "Easy"
    MEDIUM = "Medium"
    HARD = "Hard"


class ScoreFlavor(str, Enum):
    """
    Which kind of score a scope's sorted set holds.

    - POINTS: raw cumulative point balance (global leaderboard)
    - PERFORMANCE: encoded percentage + time composite (course leaderboards)
    """
    POINTS = "points"
    PERFORMANCE = "performance"


class BadgeType(str, Enum):
    LEADERBOARD_LEGEND = "leaderboard_legend"
    PERFECTIONIST = "perfectionist"
    SPEED_DEMON = "speed_demon"


# ============================================================================
# DIFFICULTY SELECTION
# ============================================================================


class SingleDifficulty(BaseModel):
    """Attempt taken at one difficulty."""
    kind: Literal["single"] = "single"
    level: Difficulty

    @property
    def levels(self) -> tuple[Difficulty, ...]:
        return (self.level,)

    @property
    def key(self) -> str:
        return self.level.value


class MultiDifficulty(BaseModel):
    """Multi-stage attempt progressing through several difficulties."""
    kind: Literal["multi"] = "multi"
    stages: list[Difficulty] = Field(min_length=1)

    @field_validator("stages")
    @classmethod
    def unique_stages(cls, v: list[Difficulty]) -> list[Difficulty]:
        if len(set(v)) != len(v):
            raise ValueError("Difficulty stages must not repeat")
        return v

    @property
    def levels(self) -> tuple[Difficulty, ...]:
        return tuple(self.stages)

    @property
    def key(self) -> str:
        return ",".join(level.value for level in self.stages)


DifficultySelection = Annotated[
    Union[SingleDifficulty, MultiDifficulty], Field(discriminator="kind")
]


def resolve_difficulty(value: Union[str, Difficulty, list]) -> Union[SingleDifficulty, MultiDifficulty]:
    """
    Turn the loose "string or list" difficulty of a request into a tagged value.

    Example:
        >>> resolve_difficulty("Hard").key
        'Hard'
        >>> resolve_difficulty(["Easy", "Medium"]).key
        'Easy,Medium'
    """
    if isinstance(value, (list, tuple)):
        return MultiDifficulty(stages=[Difficulty(v) for v in value])
    return SingleDifficulty(level=Difficulty(value))


def difficulty_from_key(key: str) -> Union[SingleDifficulty, MultiDifficulty]:
    """Inverse of `.key`; used when loading rows from the durable store."""
    parts = key.split(",")
    if len(parts) == 1:
        return SingleDifficulty(level=Difficulty(parts[0]))
    return MultiDifficulty(stages=[Difficulty(p) for p in parts])


# ============================================================================
# SCOPES
# ============================================================================


GLOBAL_SCOPE_KEY = "global"
ALL_DIFFICULTIES = "all"


class Scope(BaseModel):
    """
    A named partition of the ranking cache.

    Key format (shared with any persisted cache state):
        - "global" for the points leaderboard
        - "<course_id>:<difficulty>" for course leaderboards,
          difficulty "all" meaning best across the whole course
    """

    model_config = {"frozen": True}

    course_id: Optional[str] = None
    difficulty: Optional[str] = None

    @model_validator(mode="after")
    def check_shape(self) -> "Scope":
        if self.course_id is None:
            if self.difficulty is not None:
                raise ValueError("Global scope takes no difficulty")
            return self
        if not self.course_id or ":" in self.course_id:
            raise ValueError(f"Invalid course id for scope: {self.course_id!r}")
        allowed = {d.value for d in Difficulty} | {ALL_DIFFICULTIES}
        if self.difficulty not in allowed:
            raise ValueError(f"Invalid scope difficulty: {self.difficulty!r}")
        return self

    @classmethod
    def global_scope(cls) -> "Scope":
        return cls()

    @classmethod
    def course(cls, course_id: str, difficulty: Union[str, Difficulty] = ALL_DIFFICULTIES) -> "Scope":
        if isinstance(difficulty, Difficulty):
            difficulty = difficulty.value
        return cls(course_id=course_id, difficulty=difficulty)

    @classmethod
    def parse(cls, key: str) -> "Scope":
        """Parse a scope key such as "global" or "abc123:Medium"."""
        if key == GLOBAL_SCOPE_KEY:
            return cls.global_scope()
        course_id, sep, difficulty = key.rpartition(":")
        if not sep:
            raise ValueError(f"Invalid scope key: {key!r}")
        return cls.course(course_id, difficulty)

    @property
    def is_global(self) -> bool:
        return self.course_id is None

    @property
    def flavor(self) -> ScoreFlavor:
        return ScoreFlavor.POINTS if self.is_global else ScoreFlavor.PERFORMANCE

    @property
    def level(self) -> Optional[Difficulty]:
        """Difficulty filter for the scope, None for "all" and global."""
        if self.is_global or self.difficulty == ALL_DIFFICULTIES:
            return None
        return Difficulty(self.difficulty)

    @property
    def key(self) -> str:
        if self.is_global:
            return GLOBAL_SCOPE_KEY
        return f"{self.course_id}:{self.difficulty}"

    def __str__(self) -> str:
        return self.key


# ============================================================================
# OUTCOMES
# ============================================================================


class GradedOutcome(BaseModel):
    """
    A finished attempt as produced by the submission handler.

    Answer checking happens before this point; the ranking engine only sees
    counts, raw marks and timing.
    """

    user_id: str = Field(min_length=1)
    course_id: str = Field(min_length=1)
    difficulty: DifficultySelection
    total_questions: int = Field(ge=0)
    correct_answers: int = Field(default=0, ge=0)
    wrong_answers: int = Field(default=0, ge=0)
    unanswered: int = Field(default=0, ge=0)
    total_score: float = Field(default=0, ge=0)
    max_possible_score: float = Field(default=0, ge=0)
    time_taken: int = Field(default=0, ge=0, le=MAX_TIME_TAKEN)
    max_time: Optional[int] = Field(default=None, gt=0)
    was_abandoned: bool = False
    abandoned_at_difficulty: Optional[Difficulty] = None
    completed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def check_counts(self) -> "GradedOutcome":
        answered = self.correct_answers + self.wrong_answers + self.unanswered
        if answered != self.total_questions:
            raise ValueError(
                "correct_answers + wrong_answers + unanswered must equal total_questions"
            )
        if self.was_abandoned:
            return self
        if self.total_questions < 1:
            raise ValueError("A completed test needs at least one question")
        if self.max_possible_score <= 0:
            raise ValueError("max_possible_score must be positive for a completed test")
        if self.total_score > self.max_possible_score:
            raise ValueError("total_score cannot exceed max_possible_score")
        if self.time_taken < 1:
            raise ValueError("time_taken must be at least 1 second")
        return self

    @property
    def percentage(self) -> int:
        """Rounded half up, as the grading UI shows it."""
        if self.was_abandoned or self.max_possible_score <= 0:
            return 0
        return int(self.total_score / self.max_possible_score * 100 + 0.5)


class OutcomeRecord(BaseModel):
    """Immutable row of the durable result ledger."""
    id: int
    user_id: str
    course_id: str
    difficulty: DifficultySelection
    total_questions: int
    correct_answers: int
    wrong_answers: int
    unanswered: int
    total_score: float
    max_possible_score: float
    percentage: int
    percentile: int
    time_taken: int
    max_time: Optional[int] = None
    points_earned: int = 0
    points_deducted: int = 0
    was_abandoned: bool = False
    abandoned_at_difficulty: Optional[Difficulty] = None
    completed_at: datetime


class Badge(BaseModel):
    type: BadgeType
    earned_at: datetime


class UserStanding(BaseModel):
    """Mutable per-user aggregate: balance, counters, last rank snapshot."""
    user_id: str
    username: str
    display_name: str
    points: int = Field(default=0, ge=0)
    tests_completed: int = 0
    questions_answered: int = 0
    average_percentile: float = 0.0
    last_known_rank: Optional[int] = None
    rank_last_updated: Optional[datetime] = None
    badges: list[Badge] = Field(default_factory=list)
    leaderboard_days_on_top: int = 0
    last_top_position: Optional[datetime] = None


class UserDisplay(BaseModel):
    """Fields used only to decorate leaderboard rows."""
    user_id: str
    username: str
    display_name: str
    points: int = 0
    tests_completed: int = 0
    average_percentile: float = 0.0
    badges: list[BadgeType] = Field(default_factory=list)


class BestOutcome(BaseModel):
    """A user's best completed attempt inside a scope."""
    user_id: str
    percentage: int
    time_taken: int
    total_tests: int


class PointsTotal(BaseModel):
    """Per-user point and accuracy aggregate for a course."""
    user_id: str
    total_points: int
    tests_completed: int
    accuracy: float


# ============================================================================
# RESPONSES
# ============================================================================


class LeaderboardRow(BaseModel):
    rank: int
    user_id: str
    username: str
    display_name: str
    score: int
    points: Optional[int] = None
    percentage: Optional[int] = None
    time_taken: Optional[int] = None
    tests_completed: int = 0
    badges: list[BadgeType] = Field(default_factory=list)
    is_current_user: bool = False


class SubmissionResult(BaseModel):
    outcome_id: int
    points_earned: int
    points_deducted: int
    balance: int
    percentage: int
    percentile: int
    previous_rank: Optional[int] = None
    new_rank: Optional[int] = None
    rank_change: Optional[int] = None
    new_badges: list[BadgeType] = Field(default_factory=list)


class OverallStats(BaseModel):
    total_tests: int = 0
    average_score: float = 0.0
    best_score: int = 0
    worst_score: int = 0
    total_time_spent: int = 0
    total_correct_answers: int = 0
    total_questions: int = 0


class CourseStats(BaseModel):
    course_id: str
    tests_taken: int
    average_score: float
    best_score: int
    total_time_spent: int


class PerformanceStats(BaseModel):
    overall: OverallStats = Field(default_factory=OverallStats)
    course_stats: list[CourseStats] = Field(default_factory=list)
