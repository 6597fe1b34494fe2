"""
Ledger Service - balance mutations and reconciliation.

Every mutation runs inside the caller's transaction: the balance row is locked
with SELECT ... FOR UPDATE, the transfer row is appended and the cached balance
is adjusted in the same unit of work. Committing or rolling back is the
caller's decision.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog
from sqlalchemy import case, func, select, union
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...shared.exceptions.base import (
    BusinessRuleViolationError,
    EntityNotFoundError,
    InsufficientBalanceError,
    InvalidStateTransitionError,
)
from ...shared.utils.clock import utcnow
from .model import LedgerTransfer, TransferKind, TransferStatus, UserBalance

logger = structlog.get_logger()

_INSERT_IGNORE = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass(frozen=True)
class ReconciliationReport:
    """Cached balance versus the signed sum of completed transfers."""
    user_id: UUID
    cached_balance: int
    ledger_balance: int

    @property
    def difference(self) -> int:
        return self.cached_balance - self.ledger_balance

    @property
    def is_consistent(self) -> bool:
        return self.difference == 0


class LedgerService:
    """All balance mutations go through here."""

    def __init__(self, session: Session):
        self.session = session

    def _lock_balance(self, user_id: UUID) -> UserBalance:
        """Load the balance row FOR UPDATE, creating it at zero on first use."""
        stmt = select(UserBalance).where(UserBalance.user_id == user_id).with_for_update()
        balance = self.session.execute(stmt).scalar_one_or_none()
        if balance is not None:
            return balance

        insert = _INSERT_IGNORE.get(self.session.get_bind().dialect.name)
        if insert is not None:
            # A concurrent first credit may insert the same row; keep whichever won
            self.session.execute(
                insert(UserBalance)
                .values(user_id=user_id, balance=0, updated_at=utcnow())
                .on_conflict_do_nothing(index_elements=["user_id"])
            )
            return self.session.execute(stmt).scalar_one()

        try:
            with self.session.begin_nested():
                balance = UserBalance(user_id=user_id, balance=0)
                self.session.add(balance)
        except IntegrityError:
            balance = self.session.execute(stmt).scalar_one()
        return balance

    @staticmethod
    def _check_amount(amount: int) -> None:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise BusinessRuleViolationError(
                f"Transfer amount must be a positive integer, got {amount!r}",
                context={"amount": repr(amount)},
            )

    def _append(
        self,
        kind: str,
        amount: int,
        from_user_id: Optional[UUID],
        to_user_id: Optional[UUID],
        challenge_id: Optional[UUID],
        payout_id: Optional[UUID],
        description: Optional[str],
        reference_data: Optional[Dict[str, Any]],
    ) -> LedgerTransfer:
        if kind not in TransferKind.ALL:
            raise BusinessRuleViolationError(f"Unknown transfer kind '{kind}'", context={"kind": kind})

        transfer = LedgerTransfer(
            kind=kind,
            amount=amount,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            challenge_id=challenge_id,
            payout_id=payout_id,
            status=TransferStatus.COMPLETED,
            description=description,
            reference_data=reference_data or {},
            created_at=utcnow(),
        )
        self.session.add(transfer)
        self.session.flush()
        return transfer

    def credit(
        self,
        user_id: UUID,
        amount: int,
        kind: str,
        challenge_id: Optional[UUID] = None,
        payout_id: Optional[UUID] = None,
        description: Optional[str] = None,
        reference_data: Optional[Dict[str, Any]] = None,
    ) -> LedgerTransfer:
        """Move ``amount`` from escrow/system to the user."""
        self._check_amount(amount)
        balance = self._lock_balance(user_id)
        balance.balance += amount

        transfer = self._append(
            kind, amount, None, user_id, challenge_id, payout_id, description, reference_data
        )
        logger.debug(
            "Balance credited",
            user_id=str(user_id),
            amount=amount,
            kind=kind,
            new_balance=balance.balance,
        )
        return transfer

    def debit(
        self,
        user_id: UUID,
        amount: int,
        kind: str,
        challenge_id: Optional[UUID] = None,
        payout_id: Optional[UUID] = None,
        description: Optional[str] = None,
        reference_data: Optional[Dict[str, Any]] = None,
    ) -> LedgerTransfer:
        """Move ``amount`` from the user to escrow/system.

        Raises InsufficientBalanceError before anything is written when the
        balance cannot cover the debit.
        """
        self._check_amount(amount)
        balance = self._lock_balance(user_id)
        if balance.balance < amount:
            raise InsufficientBalanceError(user_id, amount, balance.balance)

        balance.balance -= amount
        transfer = self._append(
            kind, amount, user_id, None, challenge_id, payout_id, description, reference_data
        )
        logger.debug(
            "Balance debited",
            user_id=str(user_id),
            amount=amount,
            kind=kind,
            new_balance=balance.balance,
        )
        return transfer

    def grant(self, user_id: UUID, amount: int, description: Optional[str] = None) -> LedgerTransfer:
        """System bonus credit (welcome grants, manual top-ups)."""
        return self.credit(user_id, amount, TransferKind.BONUS, description=description or "System grant")

    def reverse_transfer(self, transfer_id: UUID, reason: Optional[str] = None) -> LedgerTransfer:
        """Undo a completed transfer's balance effect and mark it reversed.

        A reversal that would take the receiving user below zero raises
        InsufficientBalanceError.
        """
        transfer = self.session.execute(
            select(LedgerTransfer).where(LedgerTransfer.id == transfer_id).with_for_update()
        ).scalar_one_or_none()
        if transfer is None:
            raise EntityNotFoundError("LedgerTransfer", transfer_id)
        if transfer.status != TransferStatus.COMPLETED:
            raise InvalidStateTransitionError(
                "LedgerTransfer", transfer_id, transfer.status, TransferStatus.REVERSED
            )

        # Lock in a stable order so two reversals cannot deadlock
        users = sorted(
            {u for u in (transfer.from_user_id, transfer.to_user_id) if u is not None}, key=str
        )
        balances = {user_id: self._lock_balance(user_id) for user_id in users}

        if transfer.to_user_id is not None:
            receiver = balances[transfer.to_user_id]
            if receiver.balance < transfer.amount:
                raise InsufficientBalanceError(transfer.to_user_id, transfer.amount, receiver.balance)
            receiver.balance -= transfer.amount
        if transfer.from_user_id is not None:
            balances[transfer.from_user_id].balance += transfer.amount

        transfer.status = TransferStatus.REVERSED
        transfer.reversed_at = utcnow()
        if reason:
            transfer.reference_data = {**(transfer.reference_data or {}), "reversal_reason": reason}
        self.session.flush()

        logger.info(
            "Transfer reversed",
            transfer_id=str(transfer_id),
            kind=transfer.kind,
            amount=transfer.amount,
        )
        return transfer

    def balance_of(self, user_id: UUID) -> int:
        balance = self.session.execute(
            select(UserBalance.balance).where(UserBalance.user_id == user_id)
        ).scalar_one_or_none()
        return balance or 0

    def ledger_sum(self, user_id: UUID) -> int:
        """Signed sum of the user's completed transfers."""
        signed = case(
            (LedgerTransfer.to_user_id == user_id, LedgerTransfer.amount),
            else_=0,
        ) - case(
            (LedgerTransfer.from_user_id == user_id, LedgerTransfer.amount),
            else_=0,
        )
        total = self.session.execute(
            select(func.coalesce(func.sum(signed), 0)).where(
                LedgerTransfer.status == TransferStatus.COMPLETED,
                (LedgerTransfer.to_user_id == user_id) | (LedgerTransfer.from_user_id == user_id),
            )
        ).scalar_one()
        return int(total)

    def transfers_for(self, user_id: UUID, limit: int = 50) -> List[LedgerTransfer]:
        """Most recent transfers touching the user."""
        stmt = (
            select(LedgerTransfer)
            .where((LedgerTransfer.to_user_id == user_id) | (LedgerTransfer.from_user_id == user_id))
            .order_by(LedgerTransfer.created_at.desc())
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars())

    def reconcile(self, user_id: UUID) -> ReconciliationReport:
        report = ReconciliationReport(
            user_id=user_id,
            cached_balance=self.balance_of(user_id),
            ledger_balance=self.ledger_sum(user_id),
        )
        if not report.is_consistent:
            logger.error(
                "Ledger mismatch",
                user_id=str(user_id),
                cached_balance=report.cached_balance,
                ledger_balance=report.ledger_balance,
            )
        return report

    def reconcile_all(self) -> List[ReconciliationReport]:
        """Reconcile every user with a balance row or a transfer."""
        users = union(
            select(UserBalance.user_id),
            select(LedgerTransfer.to_user_id).where(LedgerTransfer.to_user_id.is_not(None)),
            select(LedgerTransfer.from_user_id).where(LedgerTransfer.from_user_id.is_not(None)),
        ).subquery()
        user_ids = sorted(set(self.session.execute(select(users.c[0])).scalars()), key=str)

        reports = [self.reconcile(user_id) for user_id in user_ids]
        logger.info(
            "Ledger reconciliation finished",
            users_checked=len(reports),
            mismatches=sum(1 for r in reports if not r.is_consistent),
        )
        return reports
