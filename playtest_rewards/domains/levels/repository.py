"""Tier definition, tier record and payout persistence."""

from datetime import date, datetime
from typing import Dict, List, Optional
from uuid import UUID

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ...shared.utils.clock import utcnow
from .ladder import DEFAULT_LADDERS, TierLadder
from .model import (
    PayoutStatus,
    PromotionHistory,
    TierDefinition,
    TierRecord,
    WeeklyPayout,
    scope_key,
)

logger = structlog.get_logger()


class TierRepository:
    def __init__(self, session: Session):
        self.session = session

    def definitions(self, kind: str) -> List[TierDefinition]:
        stmt = select(TierDefinition).where(TierDefinition.kind == kind).order_by(TierDefinition.order)
        return list(self.session.execute(stmt).scalars())

    def ladder(self, kind: str) -> TierLadder:
        """Load and validate the ladder; raises TierConfigurationError when broken."""
        return TierLadder.from_definitions(kind, self.definitions(kind))

    def seed_defaults(self) -> int:
        """Insert the default ladders for kinds that have no tiers yet."""
        inserted = 0
        for kind, bands in DEFAULT_LADDERS.items():
            if self.definitions(kind):
                continue
            for band in bands:
                self.session.add(
                    TierDefinition(
                        kind=kind,
                        name=band.name,
                        order=band.order,
                        min_threshold=band.min_threshold,
                        max_threshold=band.max_threshold,
                        weekly_payout=band.weekly_payout,
                        benefits=dict(band.benefits),
                    )
                )
                inserted += 1
        self.session.flush()
        if inserted:
            logger.info("Default tier ladders seeded", tiers=inserted)
        return inserted

    def get_record(
        self,
        user_id: UUID,
        kind: str,
        scope_id: Optional[UUID] = None,
        for_update: bool = False,
    ) -> Optional[TierRecord]:
        stmt = select(TierRecord).where(
            TierRecord.user_id == user_id,
            TierRecord.kind == kind,
            TierRecord.scope_key == scope_key(scope_id),
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalar_one_or_none()

    def add_record(self, record: TierRecord) -> TierRecord:
        record.scope_key = scope_key(record.scope_id)
        self.session.add(record)
        self.session.flush()
        return record

    def add_history(self, entry: PromotionHistory) -> PromotionHistory:
        self.session.add(entry)
        self.session.flush()
        return entry

    def records_for_user(self, user_id: UUID) -> List[TierRecord]:
        stmt = (
            select(TierRecord)
            .where(TierRecord.user_id == user_id)
            .order_by(TierRecord.kind, TierRecord.scope_key)
        )
        return list(self.session.execute(stmt).scalars())

    def history(self, user_id: UUID, limit: int = 20) -> List[PromotionHistory]:
        stmt = (
            select(PromotionHistory)
            .where(PromotionHistory.user_id == user_id)
            .order_by(PromotionHistory.promoted_at.desc())
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars())

    def distribution(self, kind: str) -> Dict[str, int]:
        """Number of records per tier name, including empty tiers."""
        counts = dict(
            self.session.execute(
                select(TierRecord.tier_id, func.count(TierRecord.id))
                .where(TierRecord.kind == kind)
                .group_by(TierRecord.tier_id)
            ).all()
        )
        return {definition.name: counts.get(definition.id, 0) for definition in self.definitions(kind)}

    def payable_records(self, kind: str) -> List[TierRecord]:
        """Records whose current tier carries a weekly payout."""
        stmt = (
            select(TierRecord)
            .join(TierDefinition, TierDefinition.id == TierRecord.tier_id)
            .where(TierRecord.kind == kind, TierDefinition.weekly_payout > 0)
            .order_by(TierRecord.user_id)
        )
        return list(self.session.execute(stmt).scalars())


class PayoutRepository:
    def __init__(self, session: Session):
        self.session = session

    def get(self, payout_id: UUID) -> Optional[WeeklyPayout]:
        return self.session.get(WeeklyPayout, payout_id)

    def find(self, user_id: UUID, kind: str, week_start: date) -> Optional[WeeklyPayout]:
        return self.session.execute(
            select(WeeklyPayout).where(
                WeeklyPayout.user_id == user_id,
                WeeklyPayout.kind == kind,
                WeeklyPayout.week_start == week_start,
            )
        ).scalar_one_or_none()

    def for_week(self, week_start: date, status: Optional[str] = None) -> List[WeeklyPayout]:
        stmt = select(WeeklyPayout).where(WeeklyPayout.week_start == week_start)
        if status:
            stmt = stmt.where(WeeklyPayout.status == status)
        return list(self.session.execute(stmt.order_by(WeeklyPayout.user_id)).scalars())

    def stale_pending(self, week_start: date, created_before: datetime) -> List[WeeklyPayout]:
        """Pending payouts claimed before ``created_before`` and never settled."""
        stmt = select(WeeklyPayout).where(
            WeeklyPayout.week_start == week_start,
            WeeklyPayout.status == PayoutStatus.PENDING,
            WeeklyPayout.created_at <= created_before,
        )
        return list(self.session.execute(stmt.order_by(WeeklyPayout.user_id)).scalars())

    def claim_transition(self, payout_id: UUID, from_status: str, to_status: str, **values) -> bool:
        result = self.session.execute(
            update(WeeklyPayout)
            .where(WeeklyPayout.id == payout_id, WeeklyPayout.status == from_status)
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            self.session.expire_all()
            return True
        return False

    def mark_paid(self, payout_id: UUID) -> bool:
        return self.claim_transition(
            payout_id, PayoutStatus.PENDING, PayoutStatus.PAID, processed_at=utcnow(), failure_reason=None
        )
