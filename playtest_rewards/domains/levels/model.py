"""
SQLAlchemy models for tier ladders, tier records and weekly payouts.
"""

from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from ...shared.kernel.entity import Base
from ...shared.utils.clock import utcnow


class PayoutStatus:
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


def scope_key(scope_id) -> str:
    """Non-null form of an optional scope, so uniqueness holds for unscoped records."""
    return str(scope_id) if scope_id is not None else ""


class TierDefinition(Base):
    """One rung of a tier ladder."""
    __tablename__ = "tier_definitions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(20), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    order = Column("tier_order", Integer, nullable=False)
    min_threshold = Column(Float, nullable=False)
    max_threshold = Column(Float, nullable=True)
    weekly_payout = Column(Integer, nullable=False, default=0)
    description = Column(String(255), nullable=True)
    benefits = Column(JSON, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("kind", "name", name="uq_tier_kind_name"),
        UniqueConstraint("kind", "tier_order", name="uq_tier_kind_order"),
        CheckConstraint("weekly_payout >= 0", name="chk_weekly_payout_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<TierDefinition(kind={self.kind}, name={self.name}, order={self.order})>"


class TierRecord(Base):
    """Current tier of a user for one kind (and block, for user tiers)."""
    __tablename__ = "tier_records"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    kind = Column(String(20), nullable=False)
    scope_id = Column(Uuid, nullable=True)
    scope_key = Column(String(36), nullable=False, default="")

    tier_id = Column(Integer, ForeignKey("tier_definitions.id"), nullable=False)
    metrics = Column(JSON, nullable=False, default=dict)
    achieved_at = Column(DateTime, nullable=False, default=utcnow)
    last_calculated = Column(DateTime, nullable=False, default=utcnow)

    tier = relationship("TierDefinition", lazy="joined")

    __table_args__ = (
        UniqueConstraint("user_id", "kind", "scope_key", name="uq_tier_record_scope"),
    )

    def __repr__(self) -> str:
        return f"<TierRecord(user_id={self.user_id}, kind={self.kind}, tier_id={self.tier_id})>"


class PromotionHistory(Base):
    """Append-only audit row for every tier transition."""
    __tablename__ = "promotion_history"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    kind = Column(String(20), nullable=False)
    scope_id = Column(Uuid, nullable=True)
    previous_tier_id = Column(Integer, ForeignKey("tier_definitions.id"), nullable=True)
    new_tier_id = Column(Integer, ForeignKey("tier_definitions.id"), nullable=False)
    metrics_snapshot = Column(JSON, nullable=False, default=dict)
    trigger = Column(String(50), nullable=False, default="automatic_calculation")
    promoted_at = Column(DateTime, nullable=False, default=utcnow, index=True)


class WeeklyPayout(Base):
    """
    Weekly tier payout for a creator or teacher.

    The (user_id, kind, week_start) unique constraint is the claim: inserting
    the pending row decides which worker pays the week.
    """
    __tablename__ = "weekly_payouts"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    kind = Column(String(20), nullable=False)
    week_start = Column(Date, nullable=False, index=True)
    tier_id = Column(Integer, ForeignKey("tier_definitions.id"), nullable=False)

    base_amount = Column(Integer, nullable=False, default=0)
    bonus_amount = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False, default=0)
    metrics_snapshot = Column(JSON, nullable=False, default=dict)

    status = Column(String(20), nullable=False, default=PayoutStatus.PENDING, index=True)
    failure_reason = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "kind", "week_start", name="uq_weekly_payout_claim"),
        CheckConstraint("total_amount = base_amount + bonus_amount", name="chk_payout_total"),
    )

    def __repr__(self) -> str:
        return f"<WeeklyPayout(user_id={self.user_id}, kind={self.kind}, week={self.week_start}, status={self.status})>"
