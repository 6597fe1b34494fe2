"""
SQLAlchemy models for activity facts.

These tables are written by the game and content services. The rewards engine
only reads them through the activity read model.
"""

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.sql import func

from ...shared.kernel.entity import Base


class GameSessionStatus:
    """Game session status values."""
    WAITING = "waiting"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class Block(Base):
    """A block of questions (the unit and scope of challenges and user tiers)."""
    __tablename__ = "blocks"

    id = Column(Uuid, primary_key=True, default=uuid4)
    creator_id = Column(Uuid, nullable=False, index=True)
    title = Column(String(200), nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())


class Question(Base):
    __tablename__ = "questions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    block_id = Column(Uuid, ForeignKey("blocks.id"), nullable=False, index=True)
    topic = Column(String(100), nullable=True, index=True)


class Answer(Base):
    __tablename__ = "answers"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    question_id = Column(Uuid, ForeignKey("questions.id"), nullable=False, index=True)
    is_correct = Column(Boolean, nullable=False, default=False)
    answered_at = Column(DateTime, nullable=False, index=True)


class GameSession(Base):
    __tablename__ = "game_sessions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    mode = Column(String(50), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=GameSessionStatus.WAITING, index=True)
    created_by = Column(Uuid, nullable=True)
    started_at = Column(DateTime, nullable=False)
    ended_at = Column(DateTime, nullable=True)


class GameSessionBlock(Base):
    """Blocks played in a game session."""
    __tablename__ = "game_session_blocks"

    session_id = Column(Uuid, ForeignKey("game_sessions.id"), primary_key=True)
    block_id = Column(Uuid, ForeignKey("blocks.id"), primary_key=True)


class GameSessionPlayer(Base):
    __tablename__ = "game_session_players"

    session_id = Column(Uuid, ForeignKey("game_sessions.id"), primary_key=True)
    user_id = Column(Uuid, primary_key=True)
    score = Column(Integer, nullable=False, default=0)
    correct_answers = Column(Integer, nullable=False, default=0)
    total_questions = Column(Integer, nullable=False, default=0)


class TeacherStudent(Base):
    """Enrolment of a student with a teacher."""
    __tablename__ = "teacher_students"

    id = Column(Uuid, primary_key=True, default=uuid4)
    teacher_id = Column(Uuid, nullable=False, index=True)
    student_id = Column(Uuid, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("teacher_id", "student_id", name="uq_teacher_student"),
    )
