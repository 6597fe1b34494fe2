"""
SQLAlchemy models for Challenge and Participant.

These models handle only persistence concerns. Amounts are integer points of
the single platform currency. All timestamps are naive UTC.
"""

from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from ...shared.kernel.entity import Base
from ...shared.utils.clock import utcnow


class ChallengeStatus:
    """Challenge status enumeration values."""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    TERMINAL = (COMPLETED, CANCELLED)


class ParticipantStatus:
    """Participant status enumeration values."""
    INVITED = "invited"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"

    TERMINAL = (COMPLETED, FAILED, ABANDONED)


class Challenge(Base):
    """
    SQLAlchemy model for Challenge entity.

    ``config`` is immutable once the challenge leaves draft. ``reserved_amount``
    is fixed on activation; ``disbursed_amount`` grows with every award paid
    out of that reserve.
    """
    __tablename__ = "challenges"

    id = Column(Uuid, primary_key=True, default=uuid4)
    creator_id = Column(Uuid, nullable=False, index=True)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    challenge_type = Column(String(30), nullable=False)
    config = Column(JSON, nullable=False, default=dict)

    # Rewards
    prize_amount = Column(Integer, nullable=False, default=0)
    bonus_amount = Column(Integer, nullable=False, default=0)
    max_participants = Column(Integer, nullable=True)
    reserved_amount = Column(Integer, nullable=False, default=0)
    disbursed_amount = Column(Integer, nullable=False, default=0)

    # Window [start_date, end_date)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)

    status = Column(String(20), nullable=False, default=ChallengeStatus.DRAFT, index=True)
    cancel_reason = Column(String(200), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    activated_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)

    # Optimistic locking
    version = Column(Integer, nullable=False, default=1)

    participants = relationship("Participant", back_populates="challenge", lazy="select")

    __table_args__ = (
        CheckConstraint("prize_amount >= 0", name="chk_prize_non_negative"),
        CheckConstraint("bonus_amount >= 0", name="chk_bonus_non_negative"),
        CheckConstraint("max_participants IS NULL OR max_participants > 0", name="chk_max_participants_positive"),
        CheckConstraint("disbursed_amount <= reserved_amount", name="chk_disbursed_within_reserve"),
        CheckConstraint("end_date > start_date", name="chk_window_ordered"),
    )

    @property
    def award_amount(self) -> int:
        """Amount paid to each completing participant."""
        return (self.prize_amount or 0) + (self.bonus_amount or 0)

    @property
    def remaining_reserve(self) -> int:
        return (self.reserved_amount or 0) - (self.disbursed_amount or 0)

    def is_open_at(self, moment) -> bool:
        return self.start_date <= moment < self.end_date

    def __repr__(self) -> str:
        return f"<Challenge(id={self.id}, type={self.challenge_type}, status={self.status})>"


class Participant(Base):
    """
    SQLAlchemy model for a user's participation in a challenge.

    ``active`` is the only state from which completed, failed or abandoned
    can be reached; ``prize_awarded`` stays 0 until settlement.
    """
    __tablename__ = "challenge_participants"

    id = Column(Uuid, primary_key=True, default=uuid4)
    challenge_id = Column(Uuid, ForeignKey("challenges.id"), nullable=False, index=True)
    user_id = Column(Uuid, nullable=False, index=True)

    status = Column(String(20), nullable=False, default=ParticipantStatus.ACTIVE, index=True)
    progress = Column(JSON, nullable=False, default=dict)
    prize_awarded = Column(Integer, nullable=False, default=0)

    invited_at = Column(DateTime, nullable=True)
    joined_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    last_validated_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    challenge = relationship("Challenge", back_populates="participants")

    __table_args__ = (
        UniqueConstraint("challenge_id", "user_id", name="uq_participant_challenge_user"),
        CheckConstraint("prize_awarded >= 0", name="chk_prize_awarded_non_negative"),
        CheckConstraint(
            "prize_awarded = 0 OR status = 'completed'",
            name="chk_prize_only_when_completed",
        ),
    )

    def __repr__(self) -> str:
        return f"<Participant(id={self.id}, user_id={self.user_id}, status={self.status})>"
