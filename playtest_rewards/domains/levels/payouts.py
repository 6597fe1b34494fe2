"""
Weekly Payouts

Creators and teachers holding a paid tier receive the tier's weekly amount
plus a performance bonus. Each (user, kind, week) is claimed by inserting a
pending payout row; the unique constraint makes the insert the claim, so a
week is paid at most once no matter how many workers process it.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...infrastructure.config.settings import LevelsConfig
from ...infrastructure.database.session import DatabaseSessionManager
from ...infrastructure.logging.structured_logger import BusinessEventLogger, get_business_logger
from ...shared.events.domain_events import WeeklyPayoutPaidEvent
from ...shared.events.event_bus import EventBus
from ...shared.exceptions.base import DatabaseSessionError, PlaytestRewardsError
from ...shared.utils.clock import utcnow
from ..activity.read_model import ActivityReadModel
from ..activity.sql_read_model import SqlActivityReadModel
from ..ledger.model import TransferKind
from ..ledger.service import LedgerService
from .ladder import TierKind
from .model import PayoutStatus, WeeklyPayout
from .repository import PayoutRepository, TierRepository

logger = structlog.get_logger()

ReadModelFactory = Callable[[Session], ActivityReadModel]

METRIC_NAMES = {
    TierKind.CREATOR: "active_users",
    TierKind.TEACHER: "active_students",
}

# (lower bound, bonus) for creator active-user milestones, highest first
CREATOR_MILESTONES = ((500, 40), (100, 20), (50, 10))
# (lower bound, bonus) for teacher average student consolidation, highest first
TEACHER_EXCELLENCE = ((80.0, 15), (70.0, 8))


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def creator_bonus(base: int, current: int, previous: int) -> int:
    """10 % of base per full 10 % of active-user growth (capped at base), plus milestones."""
    bonus = 0
    if previous > 0 and current > previous:
        growth = (current - previous) / previous * 100
        if growth >= 10:
            bonus = min(round_half_up(base * 0.1 * int(growth // 10)), base)

    for threshold, amount in CREATOR_MILESTONES:
        if current >= threshold:
            bonus += amount
            break
    return bonus


def teacher_bonus(base: int, current: int, previous: int, average_consolidation: float) -> int:
    """15 % of base on at least 10 % student growth, plus an excellence bonus."""
    bonus = 0
    if previous > 0 and current / previous >= 1.1:
        bonus = round_half_up(base * 0.15)

    for threshold, amount in TEACHER_EXCELLENCE:
        if average_consolidation >= threshold:
            bonus += amount
            break
    return bonus


@dataclass(frozen=True)
class PayoutCalculation:
    user_id: UUID
    kind: str
    tier_id: int
    tier_name: str
    base_amount: int
    bonus_amount: int
    metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_amount(self) -> int:
        return self.base_amount + self.bonus_amount


@dataclass
class PayoutRunSummary:
    paid: int = 0
    skipped: int = 0
    failed: int = 0
    total_amount: int = 0


class WeeklyPayoutService:
    """Calculates, claims and pays weekly creator and teacher payouts."""

    def __init__(
        self,
        sessions: DatabaseSessionManager,
        event_bus: Optional[EventBus] = None,
        config: Optional[LevelsConfig] = None,
        read_model_factory: ReadModelFactory = SqlActivityReadModel,
        business_logger: Optional[BusinessEventLogger] = None,
    ):
        self.sessions = sessions
        self.event_bus = event_bus
        self.config = config or LevelsConfig()
        self.read_model_factory = read_model_factory
        self.business_logger = business_logger or get_business_logger()

    def calculate_week(self, week_start: date) -> List[PayoutCalculation]:
        """
        Payouts owed for the week starting at ``week_start`` (a Monday).

        Metrics are measured over the trailing window ending with the week.
        Growth compares against the metric stored on the previous week's
        payout; without one there is no growth bonus.
        """
        week_end = datetime.combine(week_start + timedelta(days=7), time.min)
        previous_week = week_start - timedelta(days=7)
        window = self.config.active_window_days
        calculations = []

        with self.sessions.session_scope() as session:
            read_model = self.read_model_factory(session)
            tiers = TierRepository(session)
            payouts = PayoutRepository(session)

            for kind in TierKind.PAYOUT_KINDS:
                metric_name = METRIC_NAMES[kind]
                for record in tiers.payable_records(kind):
                    tier = record.tier
                    if kind == TierKind.CREATOR:
                        current = read_model.active_user_count(record.user_id, window, week_end)
                    else:
                        current = read_model.active_student_count(record.user_id, window, week_end)

                    if current < tier.min_threshold:
                        logger.debug(
                            "Payout not eligible",
                            user_id=str(record.user_id),
                            kind=kind,
                            metric=current,
                            tier=tier.name,
                        )
                        continue

                    previous_payout = payouts.find(record.user_id, kind, previous_week)
                    previous = (previous_payout.metrics_snapshot or {}).get(metric_name, 0) if previous_payout else 0
                    metrics = {metric_name: current, "previous_" + metric_name: previous}

                    if kind == TierKind.CREATOR:
                        bonus = creator_bonus(tier.weekly_payout, current, previous)
                    else:
                        average = read_model.student_average_consolidation(record.user_id, window, week_end)
                        metrics["average_consolidation"] = average
                        bonus = teacher_bonus(tier.weekly_payout, current, previous, average)

                    calculations.append(
                        PayoutCalculation(
                            user_id=record.user_id,
                            kind=kind,
                            tier_id=tier.id,
                            tier_name=tier.name,
                            base_amount=tier.weekly_payout,
                            bonus_amount=bonus,
                            metrics=metrics,
                        )
                    )

        return calculations

    def process_week(self, week_start: date) -> PayoutRunSummary:
        """Claim and pay every payout owed for the week."""
        if not self.config.payouts_enabled:
            logger.info("Weekly payouts disabled", week_start=week_start.isoformat())
            return PayoutRunSummary()

        summary = PayoutRunSummary()
        for calculation in self.calculate_week(week_start):
            payout_id = self._claim(calculation, week_start)
            if payout_id is None:
                summary.skipped += 1
                continue
            self._settle_claimed(payout_id, summary)

        logger.info(
            "Weekly payouts processed",
            week_start=week_start.isoformat(),
            paid=summary.paid,
            skipped=summary.skipped,
            failed=summary.failed,
            total_amount=summary.total_amount,
        )
        return summary

    def retry_failed(self, week_start: date) -> PayoutRunSummary:
        """
        Reclaim failed payouts of the week (failed -> pending) and pay them,
        together with pending payouts abandoned past the grace period.
        """
        with self.sessions.session_scope() as session:
            payouts = PayoutRepository(session)
            failed = [p.id for p in payouts.for_week(week_start, PayoutStatus.FAILED)]
            abandoned = [p.id for p in payouts.stale_pending(week_start, self._stale_before())]

        summary = PayoutRunSummary()
        for payout_id in abandoned:
            self._settle_claimed(payout_id, summary)
        for payout_id in failed:
            with self.sessions.session_scope() as session:
                reclaimed = PayoutRepository(session).claim_transition(
                    payout_id, PayoutStatus.FAILED, PayoutStatus.PENDING, failure_reason=None
                )
            if not reclaimed:
                summary.skipped += 1
                continue
            self._settle_claimed(payout_id, summary)

        logger.info(
            "Failed weekly payouts retried",
            week_start=week_start.isoformat(),
            paid=summary.paid,
            failed=summary.failed,
        )
        return summary

    def _stale_before(self) -> datetime:
        return utcnow() - timedelta(minutes=self.config.pending_grace_minutes)

    def _claim(self, calculation: PayoutCalculation, week_start: date) -> Optional[UUID]:
        """
        Insert the pending payout; None when another run already owns the week.

        A pending row older than the grace period belongs to a run that died
        before paying; its id is returned so this run settles it. ``mark_paid``
        still decides which run actually pays.
        """
        try:
            with self.sessions.session_scope() as session:
                payouts = PayoutRepository(session)
                existing = payouts.find(calculation.user_id, calculation.kind, week_start)
                if existing is not None:
                    if existing.status == PayoutStatus.PENDING and existing.created_at <= self._stale_before():
                        logger.warning(
                            "Resuming abandoned pending payout",
                            payout_id=str(existing.id),
                            user_id=str(existing.user_id),
                            kind=existing.kind,
                        )
                        return existing.id
                    return None
                payout = WeeklyPayout(
                    user_id=calculation.user_id,
                    kind=calculation.kind,
                    week_start=week_start,
                    tier_id=calculation.tier_id,
                    base_amount=calculation.base_amount,
                    bonus_amount=calculation.bonus_amount,
                    total_amount=calculation.total_amount,
                    metrics_snapshot={**calculation.metrics, "tier_name": calculation.tier_name},
                    status=PayoutStatus.PENDING,
                )
                session.add(payout)
                session.flush()
                return payout.id
        except DatabaseSessionError as e:
            if isinstance(e.__cause__, IntegrityError):
                # Lost the insert race
                return None
            raise

    def _settle_claimed(self, payout_id: UUID, summary: PayoutRunSummary) -> None:
        try:
            payout = self._pay(payout_id)
        except PlaytestRewardsError as e:
            logger.error("Weekly payout failed", payout_id=str(payout_id), **e.to_dict())
            self._mark_failed(payout_id, e.message)
            summary.failed += 1
            return

        if payout is None:
            summary.skipped += 1
            return
        summary.paid += 1
        summary.total_amount += payout.total_amount

    def _pay(self, payout_id: UUID) -> Optional[WeeklyPayout]:
        with self.sessions.session_scope() as session:
            payouts = PayoutRepository(session)
            if not payouts.mark_paid(payout_id):
                return None

            payout = payouts.get(payout_id)
            ledger = LedgerService(session)
            week = payout.week_start.isoformat()
            ledger.credit(
                payout.user_id,
                payout.base_amount,
                TransferKind.AWARD,
                payout_id=payout.id,
                description=f"Weekly {payout.kind} payout for week of {week}",
                reference_data={"week_start": week, "tier_id": payout.tier_id},
            )
            if payout.bonus_amount > 0:
                ledger.credit(
                    payout.user_id,
                    payout.bonus_amount,
                    TransferKind.BONUS,
                    payout_id=payout.id,
                    description=f"Weekly {payout.kind} bonus for week of {week}",
                    reference_data={"week_start": week},
                )

        self.business_logger.log_business_event(
            event_type="weekly_payout_paid",
            user_id=payout.user_id,
            resource_type="weekly_payout",
            resource_id=payout.id,
            action="credit",
            details={"kind": payout.kind, "week_start": week, "total_amount": payout.total_amount},
        )
        if self.event_bus is not None:
            self.event_bus.publish(
                WeeklyPayoutPaidEvent(
                    aggregate_id=payout.id,
                    user_id=payout.user_id,
                    kind=payout.kind,
                    week_start=week,
                    total_amount=payout.total_amount,
                )
            )
        return payout

    def _mark_failed(self, payout_id: UUID, reason: str) -> None:
        with self.sessions.session_scope() as session:
            PayoutRepository(session).claim_transition(
                payout_id,
                PayoutStatus.PENDING,
                PayoutStatus.FAILED,
                failure_reason=reason[:255],
                processed_at=utcnow(),
            )
