"""
SQLAlchemy models for balances and ledger transfers.

Sign convention for a user's ledger sum, counting only completed transfers:
  - user is ``to_user_id``   => +amount
  - user is ``from_user_id`` => -amount
A ``None`` side is the escrow/system account. The cached balance always equals
the signed sum.
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
    Uuid,
)

from ...shared.kernel.entity import Base
from ...shared.utils.clock import utcnow


class TransferKind:
    RESERVE = "reserve"
    AWARD = "award"
    REFUND = "refund"
    BONUS = "bonus"
    PENALTY = "penalty"

    ALL = (RESERVE, AWARD, REFUND, BONUS, PENALTY)


class TransferStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REVERSED = "reversed"


class UserBalance(Base):
    """Cached balance, mutated only by the ledger service under a row lock."""
    __tablename__ = "user_balances"

    user_id = Column(Uuid, primary_key=True)
    balance = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="chk_balance_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<UserBalance(user_id={self.user_id}, balance={self.balance})>"


class LedgerTransfer(Base):
    """Append-only transfer record."""
    __tablename__ = "ledger_transfers"

    id = Column(Uuid, primary_key=True, default=uuid4)

    challenge_id = Column(Uuid, ForeignKey("challenges.id"), nullable=True, index=True)
    payout_id = Column(Uuid, ForeignKey("weekly_payouts.id"), nullable=True, index=True)

    from_user_id = Column(Uuid, nullable=True, index=True)
    to_user_id = Column(Uuid, nullable=True, index=True)
    amount = Column(Integer, nullable=False)

    kind = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=TransferStatus.COMPLETED, index=True)
    description = Column(String(255), nullable=True)
    reference_data = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    reversed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="chk_transfer_amount_positive"),
        CheckConstraint(
            "from_user_id IS NOT NULL OR to_user_id IS NOT NULL",
            name="chk_transfer_has_user_side",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerTransfer(id={self.id}, kind={self.kind}, amount={self.amount}, "
            f"from={self.from_user_id}, to={self.to_user_id}, status={self.status})>"
        )
