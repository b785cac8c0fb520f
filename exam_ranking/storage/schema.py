"""
Database Schema - SQLAlchemy ORM models

Key design decisions:
    - test_outcomes is append-only; nothing in the code base updates a row
      after insert, so percentile and rank history stay meaningful
    - outcome_difficulties lets a multi-stage attempt appear in every
      "<course>:<difficulty>" scope it touched
    - users.points carries a CHECK constraint; balance updates clamp at zero
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import relationship

from exam_ranking.storage.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Equal scores tie-break on user id in byte order, matching Redis sorted sets
MemberId = String(64).with_variant(String(64, collation="C"), "postgresql")


class UserModel(Base):
    """
    User standing table

    Holds the cumulative point balance, monotonic counters, the last rank
    snapshot (for "you moved up N places" feedback) and badge progress.
    """
    __tablename__ = "users"

    id = Column(MemberId, primary_key=True)
    username = Column(String(50), unique=True, nullable=False)
    display_name = Column(String(100), nullable=False)
    points = Column(Integer, default=0, nullable=False)
    tests_completed = Column(Integer, default=0, nullable=False)
    questions_answered = Column(Integer, default=0, nullable=False)
    average_percentile = Column(Float, default=0.0, nullable=False)
    last_known_rank = Column(Integer, nullable=True)
    rank_last_updated = Column(DateTime(timezone=True), nullable=True)
    badges = Column(JSON, default=list, nullable=False)  # [{"type": ..., "earned_at": ...}]
    leaderboard_days_on_top = Column(Integer, default=0, nullable=False)
    last_top_position = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    outcomes = relationship("TestOutcomeModel", back_populates="user")

    __table_args__ = (
        CheckConstraint("points >= 0", name="ck_users_points_non_negative"),
        Index("ix_users_points", "points"),
    )


class TestOutcomeModel(Base):
    """
    Test outcome ledger - one row per completed or abandoned attempt

    difficulty_key is the canonical selection ("Hard", "Easy,Medium,Hard");
    percentile compares attempts with the same key.
    """
    __tablename__ = "test_outcomes"
    __test__ = False  # not a pytest test class

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(MemberId, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    course_id = Column(String(64), nullable=False)
    difficulty_key = Column(String(32), nullable=False)
    total_questions = Column(Integer, nullable=False)
    correct_answers = Column(Integer, default=0, nullable=False)
    wrong_answers = Column(Integer, default=0, nullable=False)
    unanswered = Column(Integer, default=0, nullable=False)
    total_score = Column(Float, default=0, nullable=False)
    max_possible_score = Column(Float, default=0, nullable=False)
    percentage = Column(Integer, nullable=False)
    percentile = Column(Integer, default=0, nullable=False)
    time_taken = Column(Integer, nullable=False)
    max_time = Column(Integer, nullable=True)
    points_earned = Column(Integer, default=0, nullable=False)
    points_deducted = Column(Integer, default=0, nullable=False)
    was_abandoned = Column(Boolean, default=False, nullable=False)
    abandoned_at_difficulty = Column(String(16), nullable=True)
    completed_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    user = relationship("UserModel", back_populates="outcomes")
    stages = relationship(
        "OutcomeDifficultyModel",
        back_populates="outcome",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("percentage >= 0 AND percentage <= 100", name="ck_outcome_percentage"),
        CheckConstraint(
            "points_earned = 0 OR points_deducted = 0", name="ck_outcome_points_exclusive"
        ),
        Index("ix_outcome_user_completed", "user_id", "completed_at"),
        Index("ix_outcome_course_difficulty", "course_id", "difficulty_key"),
        Index("ix_outcome_leaderboard", "course_id", "percentage", "time_taken"),
    )


class OutcomeDifficultyModel(Base):
    """One row per difficulty stage an outcome covered."""
    __tablename__ = "outcome_difficulties"

    outcome_id = Column(
        Integer, ForeignKey("test_outcomes.id", ondelete="CASCADE"), primary_key=True
    )
    difficulty = Column(String(16), primary_key=True)
    position = Column(Integer, nullable=False)

    outcome = relationship("TestOutcomeModel", back_populates="stages")

    __table_args__ = (Index("ix_outcome_difficulty_lookup", "difficulty", "outcome_id"),)
