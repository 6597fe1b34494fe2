"""
Settlement Engine - Core Business Logic

Pays a completed participant exactly once.

Flow for each settlement:
1. Claim the participant: UPDATE ... SET status='completed' WHERE status='active'
2. Losing the claim is a no-op outcome, not an error
3. Charge the award against the challenge reserve
4. Append the award transfer and credit the balance
5. Record prize_awarded on the participant
6. Commit, then emit ChallengeCompleted

Any failure between 1 and 6 rolls the whole transaction back, leaving the
participant active so the next orchestrator pass retries it.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog

from ...infrastructure.database.session import DatabaseSessionManager
from ...infrastructure.logging.structured_logger import BusinessEventLogger, get_business_logger
from ...shared.events.domain_events import ChallengeCompletedEvent
from ...shared.events.event_bus import EventBus
from ...shared.exceptions.base import EntityNotFoundError, InsufficientReserveError
from ...shared.utils.clock import utcnow
from ..challenge.model import Participant, ParticipantStatus
from ..challenge.repository import ChallengeRepository, ParticipantRepository
from ..ledger.model import TransferKind
from ..ledger.service import LedgerService

logger = structlog.get_logger()


class SettlementOutcome:
    """Settlement outcome values."""
    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"
    NOT_ACTIVE = "not_active"


@dataclass(frozen=True)
class SettlementResult:
    participant_id: UUID
    outcome: str
    total_awarded: int = 0
    transfer_id: Optional[UUID] = None

    @property
    def settled(self) -> bool:
        return self.outcome == SettlementOutcome.SETTLED


class SettlementEngine:
    """
    Idempotent award settlement.

    The conditional claim is the only mutual exclusion: N concurrent calls
    for one participant produce exactly one award.
    """

    def __init__(
        self,
        sessions: DatabaseSessionManager,
        event_bus: Optional[EventBus] = None,
        business_logger: Optional[BusinessEventLogger] = None,
    ):
        self.sessions = sessions
        self.event_bus = event_bus
        self.business_logger = business_logger or get_business_logger()

    def settle(self, participant_id: UUID, now: Optional[datetime] = None) -> SettlementResult:
        now = now or utcnow()

        with self.sessions.session_scope() as session:
            participants = ParticipantRepository(session)

            # Claim first, before any read, so the write transaction starts here
            if not participants.claim_completion(participant_id, now):
                return self._lost_claim(session, participant_id)

            participant = participants.get(participant_id)
            challenges = ChallengeRepository(session)
            challenge = challenges.get(participant.challenge_id)
            total = challenge.award_amount

            transfer_id = None
            if total > 0:
                if not challenges.add_disbursement(challenge.id, total):
                    raise InsufficientReserveError(
                        f"Challenge {challenge.id} reserve cannot cover award of {total}",
                        context={
                            "challenge_id": str(challenge.id),
                            "award": total,
                            "remaining_reserve": challenge.remaining_reserve,
                        },
                    )
                transfer = LedgerService(session).credit(
                    participant.user_id,
                    total,
                    TransferKind.AWARD,
                    challenge_id=challenge.id,
                    description=f"Award for challenge '{challenge.title}'",
                    reference_data={
                        "participant_id": str(participant.id),
                        "prize_amount": challenge.prize_amount,
                        "bonus_amount": challenge.bonus_amount,
                    },
                )
                transfer_id = transfer.id
                participant.prize_awarded = total

            event = ChallengeCompletedEvent(
                aggregate_id=participant.id,
                participant_id=participant.id,
                user_id=participant.user_id,
                challenge_id=challenge.id,
                total_awarded=total,
            )
            user_id = participant.user_id
            challenge_id = challenge.id

        # Committed; handlers can no longer undo the award
        self.business_logger.log_business_event(
            event_type="challenge_award_settled",
            user_id=user_id,
            resource_type="challenge",
            resource_id=challenge_id,
            action="settle",
            details={"participant_id": str(participant_id), "total_awarded": total},
        )
        if self.event_bus is not None:
            self.event_bus.publish(event)

        return SettlementResult(
            participant_id=participant_id,
            outcome=SettlementOutcome.SETTLED,
            total_awarded=total,
            transfer_id=transfer_id,
        )

    def _lost_claim(self, session, participant_id: UUID) -> SettlementResult:
        participant = session.get(Participant, participant_id)
        if participant is None:
            raise EntityNotFoundError("Participant", participant_id)

        outcome = (
            SettlementOutcome.ALREADY_SETTLED
            if participant.status == ParticipantStatus.COMPLETED
            else SettlementOutcome.NOT_ACTIVE
        )
        logger.info(
            "Settlement claim not acquired",
            participant_id=str(participant_id),
            status=participant.status,
            outcome=outcome,
        )
        return SettlementResult(participant_id=participant_id, outcome=outcome)
