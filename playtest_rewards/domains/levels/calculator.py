"""
Level Calculator

Recomputes a user's tier from the current metric and persists the result
only when the tier changed (or a recompute is forced). Every transition that
replaces an existing tier appends a promotion-history row and emits a
TierPromoted event once the transaction has committed.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

import structlog
from sqlalchemy.orm import Session

from ...infrastructure.config.settings import LevelsConfig
from ...infrastructure.database.session import DatabaseSessionManager
from ...shared.events.domain_events import TierPromotedEvent
from ...shared.events.event_bus import EventBus
from ...shared.utils.clock import utcnow
from ..activity.read_model import ActivityReadModel
from ..activity.sql_read_model import SqlActivityReadModel
from .ladder import TierBand, TierKind
from .model import PromotionHistory, TierRecord
from .repository import TierRepository

logger = structlog.get_logger()

ReadModelFactory = Callable[[Session], ActivityReadModel]


@dataclass(frozen=True)
class TierChange:
    """Result of one recalculation."""
    user_id: UUID
    kind: str
    tier: TierBand
    metric: float
    changed: bool
    previous_tier_id: Optional[int] = None
    scope_id: Optional[UUID] = None

    @property
    def is_promotion(self) -> bool:
        return self.changed and self.previous_tier_id is not None


class LevelCalculator:
    """Tier recalculation for users (per block), creators and teachers."""

    def __init__(
        self,
        sessions: DatabaseSessionManager,
        event_bus: Optional[EventBus] = None,
        config: Optional[LevelsConfig] = None,
        read_model_factory: ReadModelFactory = SqlActivityReadModel,
    ):
        self.sessions = sessions
        self.event_bus = event_bus
        self.config = config or LevelsConfig()
        self.read_model_factory = read_model_factory

    def _recalculate(
        self,
        session: Session,
        kind: str,
        user_id: UUID,
        metric: float,
        metrics: Dict[str, Any],
        force: bool,
        now: datetime,
        scope_id: Optional[UUID] = None,
        trigger: str = "automatic_calculation",
    ) -> tuple:
        repository = TierRepository(session)
        tier = repository.ladder(kind).tier_for(metric)
        record = repository.get_record(user_id, kind, scope_id, for_update=True)
        previous_tier_id = record.tier_id if record is not None else None
        changed = previous_tier_id != tier.id

        if not changed and not force:
            return TierChange(user_id, kind, tier, metric, False, previous_tier_id, scope_id), None

        snapshot = {**metrics, "tier_name": tier.name, "calculated_at": now.isoformat()}

        if record is None:
            repository.add_record(
                TierRecord(
                    user_id=user_id,
                    kind=kind,
                    scope_id=scope_id,
                    tier_id=tier.id,
                    metrics=snapshot,
                    achieved_at=now,
                    last_calculated=now,
                )
            )
        else:
            if changed:
                record.tier_id = tier.id
                record.achieved_at = now
            record.metrics = snapshot
            record.last_calculated = now

        event = None
        if changed and previous_tier_id is not None:
            repository.add_history(
                PromotionHistory(
                    user_id=user_id,
                    kind=kind,
                    scope_id=scope_id,
                    previous_tier_id=previous_tier_id,
                    new_tier_id=tier.id,
                    metrics_snapshot=snapshot,
                    trigger=trigger,
                    promoted_at=now,
                )
            )
            event = TierPromotedEvent(
                aggregate_id=user_id,
                user_id=user_id,
                kind=kind,
                previous_tier_id=previous_tier_id,
                new_tier_id=tier.id,
                metrics_snapshot=snapshot,
                scope_id=scope_id,
            )

        session.flush()
        logger.info(
            "Tier recalculated",
            user_id=str(user_id),
            kind=kind,
            scope_id=str(scope_id) if scope_id else None,
            tier=tier.name,
            metric=metric,
            changed=changed,
        )
        return TierChange(user_id, kind, tier, metric, changed, previous_tier_id, scope_id), event

    def _run(self, compute, force: bool, now: Optional[datetime]) -> TierChange:
        now = now or utcnow()
        with self.sessions.session_scope() as session:
            read_model = self.read_model_factory(session)
            change, event = compute(session, read_model, now)

        if event is not None and self.event_bus is not None:
            self.event_bus.publish(event)
        return change

    def recalculate_user_tier(
        self,
        user_id: UUID,
        scope_id: UUID,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> TierChange:
        """User tier for one block, from consolidation in that block."""

        def compute(session, read_model, at):
            consolidation = read_model.consolidation(user_id, scope_id)
            return self._recalculate(
                session, TierKind.USER, user_id, consolidation,
                {"consolidation": consolidation}, force, at, scope_id=scope_id,
            )

        return self._run(compute, force, now)

    def recalculate_creator_tier(
        self,
        user_id: UUID,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> TierChange:
        """Creator tier from distinct active players over the trailing window."""

        def compute(session, read_model, at):
            active_users = read_model.active_user_count(user_id, self.config.active_window_days, at)
            return self._recalculate(
                session, TierKind.CREATOR, user_id, active_users,
                {"active_users": active_users}, force, at,
            )

        return self._run(compute, force, now)

    def recalculate_teacher_tier(
        self,
        user_id: UUID,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> TierChange:
        """Teacher tier from distinct active students over the trailing window."""

        def compute(session, read_model, at):
            active_students = read_model.active_student_count(user_id, self.config.active_window_days, at)
            return self._recalculate(
                session, TierKind.TEACHER, user_id, active_students,
                {"active_students": active_students}, force, at,
            )

        return self._run(compute, force, now)

    def recalculate_all(self, user_id: UUID, force: bool = False, now: Optional[datetime] = None) -> List[TierChange]:
        """
        Every tier the user can hold.

        User tiers cover each block the user has answered in. Creator and
        teacher tiers are computed when the metric is positive or the user
        already holds such a tier.
        """
        now = now or utcnow()
        window = self.config.active_window_days

        with self.sessions.session_scope() as session:
            read_model = self.read_model_factory(session)
            repository = TierRepository(session)
            scopes = read_model.answered_scopes(user_id)
            has_creator = (
                repository.get_record(user_id, TierKind.CREATOR) is not None
                or read_model.active_user_count(user_id, window, now) > 0
            )
            has_teacher = (
                repository.get_record(user_id, TierKind.TEACHER) is not None
                or read_model.active_student_count(user_id, window, now) > 0
            )

        changes = [self.recalculate_user_tier(user_id, scope_id, force, now) for scope_id in scopes]
        if has_creator:
            changes.append(self.recalculate_creator_tier(user_id, force, now))
        if has_teacher:
            changes.append(self.recalculate_teacher_tier(user_id, force, now))
        return changes

    # Queries

    def current_tiers(self, user_id: UUID) -> List[TierRecord]:
        with self.sessions.session_scope() as session:
            return TierRepository(session).records_for_user(user_id)

    def promotion_history(self, user_id: UUID, limit: int = 20) -> List[PromotionHistory]:
        """Latest first."""
        with self.sessions.session_scope() as session:
            return TierRepository(session).history(user_id, limit)

    def tier_distribution(self, kind: str) -> Dict[str, int]:
        with self.sessions.session_scope() as session:
            return TierRepository(session).distribution(kind)
