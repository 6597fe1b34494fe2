"""Domain event definitions for the rewards engine."""

from typing import Any, Dict, Optional
from uuid import UUID

from ..kernel.events import DomainEvent


# Challenge Domain Events

class ChallengeActivatedEvent(DomainEvent):
    """Event fired when a challenge leaves draft and its reserve is debited."""

    def __init__(
        self,
        aggregate_id: UUID,
        creator_id: UUID,
        reserved_amount: int,
        **kwargs: Any,
    ):
        super().__init__(aggregate_id, **kwargs)
        self.creator_id = creator_id
        self.reserved_amount = reserved_amount


class ChallengeCompletedEvent(DomainEvent):
    """Event fired exactly once when a participant's award is settled.

    Consumed by the notification dispatcher and badge-eligibility checker.
    """

    def __init__(
        self,
        aggregate_id: UUID,
        participant_id: UUID,
        user_id: UUID,
        challenge_id: UUID,
        total_awarded: int,
        **kwargs: Any,
    ):
        super().__init__(aggregate_id, **kwargs)
        self.participant_id = participant_id
        self.user_id = user_id
        self.challenge_id = challenge_id
        self.total_awarded = total_awarded


class ChallengeCancelledEvent(DomainEvent):
    """Event fired when a creator cancels a challenge."""

    def __init__(
        self,
        aggregate_id: UUID,
        creator_id: UUID,
        refunded_amount: int,
        reason: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(aggregate_id, **kwargs)
        self.creator_id = creator_id
        self.refunded_amount = refunded_amount
        self.reason = reason


class ChallengeClosedEvent(DomainEvent):
    """Event fired when a challenge window elapses and it is closed."""

    def __init__(
        self,
        aggregate_id: UUID,
        creator_id: UUID,
        refunded_amount: int,
        failed_participants: int,
        **kwargs: Any,
    ):
        super().__init__(aggregate_id, **kwargs)
        self.creator_id = creator_id
        self.refunded_amount = refunded_amount
        self.failed_participants = failed_participants


# Level Domain Events

class TierPromotedEvent(DomainEvent):
    """Event fired when a recalculation moves a tier record to a new tier.

    Fired for demotions as well; consumers compare tier orders.
    """

    def __init__(
        self,
        aggregate_id: UUID,
        user_id: UUID,
        kind: str,
        previous_tier_id: Optional[int],
        new_tier_id: int,
        metrics_snapshot: Dict[str, Any],
        scope_id: Optional[UUID] = None,
        **kwargs: Any,
    ):
        super().__init__(aggregate_id, **kwargs)
        self.user_id = user_id
        self.kind = kind
        self.previous_tier_id = previous_tier_id
        self.new_tier_id = new_tier_id
        self.metrics_snapshot = metrics_snapshot
        self.scope_id = scope_id


class WeeklyPayoutPaidEvent(DomainEvent):
    """Event fired when a weekly tier payout is credited."""

    def __init__(
        self,
        aggregate_id: UUID,
        user_id: UUID,
        kind: str,
        week_start: str,
        total_amount: int,
        **kwargs: Any,
    ):
        super().__init__(aggregate_id, **kwargs)
        self.user_id = user_id
        self.kind = kind
        self.week_start = week_start
        self.total_amount = total_amount
