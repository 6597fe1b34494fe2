"""
Challenge lifecycle operations that move currency.

Each operation runs in its own transaction and follows claim-then-mutate:
the conditional status update comes first and everything else is written
only by the caller that won it. Events are published after commit.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog

from ...infrastructure.config.settings import EngineConfig
from ...infrastructure.database.session import DatabaseSessionManager
from ...infrastructure.logging.structured_logger import BusinessEventLogger, get_business_logger
from ...shared.events.domain_events import (
    ChallengeActivatedEvent,
    ChallengeCancelledEvent,
    ChallengeClosedEvent,
)
from ...shared.events.event_bus import EventBus
from ...shared.exceptions.base import (
    BusinessRuleViolationError,
    ChallengeClosedError,
    ChallengeFullError,
    DuplicateParticipationError,
    InvalidStateTransitionError,
    PlaytestRewardsError,
)
from ...shared.kernel.events import DomainEvent
from ...shared.utils.clock import to_naive_utc, utcnow
from ..ledger.model import TransferKind
from ..ledger.service import LedgerService
from .configs import dump_challenge_config, parse_challenge_config
from .model import Challenge, ChallengeStatus, Participant, ParticipantStatus
from .repository import ChallengeRepository, ParticipantRepository

logger = structlog.get_logger()


@dataclass(frozen=True)
class CloseResult:
    challenge_id: UUID
    refunded_amount: int
    failed_participants: int


class ChallengeService:
    """Create, activate, join, cancel and close challenges."""

    def __init__(
        self,
        sessions: DatabaseSessionManager,
        event_bus: Optional[EventBus] = None,
        config: Optional[EngineConfig] = None,
        business_logger: Optional[BusinessEventLogger] = None,
    ):
        self.sessions = sessions
        self.event_bus = event_bus
        self.config = config or EngineConfig()
        self.business_logger = business_logger or get_business_logger()

    def _publish(self, event: DomainEvent) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event)

    def capacity_of(self, challenge: Challenge) -> int:
        return challenge.max_participants or self.config.default_reserve_capacity

    def reserve_for(self, challenge: Challenge) -> int:
        """(prize + bonus) x capacity, fixed at activation."""
        return challenge.award_amount * self.capacity_of(challenge)

    # Creation and activation

    def create_challenge(
        self,
        creator_id: UUID,
        title: str,
        challenge_type: str,
        config: Dict[str, Any],
        start_date: datetime,
        end_date: datetime,
        prize_amount: int = 0,
        bonus_amount: int = 0,
        max_participants: Optional[int] = None,
        description: Optional[str] = None,
    ) -> Challenge:
        """Create a draft challenge; the configuration is validated up front."""
        parsed = parse_challenge_config(challenge_type, config)

        if prize_amount < 0 or bonus_amount < 0:
            raise BusinessRuleViolationError(
                "Prize and bonus amounts must be non-negative",
                context={"prize_amount": prize_amount, "bonus_amount": bonus_amount},
            )
        if max_participants is not None and max_participants < 1:
            raise BusinessRuleViolationError(
                "max_participants must be positive", context={"max_participants": max_participants}
            )
        start_date, end_date = to_naive_utc(start_date), to_naive_utc(end_date)
        if end_date <= start_date:
            raise BusinessRuleViolationError("Challenge window must end after it starts")

        with self.sessions.session_scope() as session:
            challenge = ChallengeRepository(session).add(
                Challenge(
                    creator_id=creator_id,
                    title=title,
                    description=description,
                    challenge_type=challenge_type,
                    config=dump_challenge_config(parsed),
                    prize_amount=prize_amount,
                    bonus_amount=bonus_amount,
                    max_participants=max_participants,
                    start_date=start_date,
                    end_date=end_date,
                    status=ChallengeStatus.DRAFT,
                )
            )
            session.refresh(challenge)

        logger.info(
            "Challenge created",
            challenge_id=str(challenge.id),
            challenge_type=challenge_type,
            creator_id=str(creator_id),
        )
        return challenge

    def activate_challenge(self, challenge_id: UUID, now: Optional[datetime] = None) -> Challenge:
        """
        Leave draft by debiting the full reserve from the creator.

        Either the reserve is fully debited and the challenge is active, or
        the call raises and the challenge stays draft.
        """
        now = now or utcnow()

        with self.sessions.session_scope() as session:
            challenges = ChallengeRepository(session)
            if not challenges.claim_status(
                challenge_id, [ChallengeStatus.DRAFT], ChallengeStatus.ACTIVE, activated_at=now
            ):
                current = challenges.get(challenge_id)
                raise InvalidStateTransitionError(
                    "Challenge", challenge_id, current.status, ChallengeStatus.ACTIVE
                )

            challenge = challenges.get(challenge_id)
            # Configuration must still match its schema before money moves
            parse_challenge_config(challenge.challenge_type, challenge.config)

            if challenge.end_date <= now:
                raise ChallengeClosedError(
                    f"Challenge {challenge_id} window already ended",
                    context={"challenge_id": str(challenge_id)},
                )

            reserve = self.reserve_for(challenge)
            if reserve > 0:
                LedgerService(session).debit(
                    challenge.creator_id,
                    reserve,
                    TransferKind.RESERVE,
                    challenge_id=challenge.id,
                    description=f"Reserve for challenge '{challenge.title}'",
                    reference_data={"capacity": self.capacity_of(challenge)},
                )
            challenge.reserved_amount = reserve
            session.flush()
            session.refresh(challenge)

        self.business_logger.log_business_event(
            event_type="challenge_activated",
            user_id=challenge.creator_id,
            resource_type="challenge",
            resource_id=challenge.id,
            action="reserve",
            details={"reserved_amount": reserve},
        )
        self._publish(
            ChallengeActivatedEvent(
                aggregate_id=challenge.id,
                creator_id=challenge.creator_id,
                reserved_amount=reserve,
            )
        )
        return challenge

    def pause_challenge(self, challenge_id: UUID) -> None:
        self._transition(challenge_id, ChallengeStatus.ACTIVE, ChallengeStatus.PAUSED)

    def resume_challenge(self, challenge_id: UUID) -> None:
        self._transition(challenge_id, ChallengeStatus.PAUSED, ChallengeStatus.ACTIVE)

    def _transition(self, challenge_id: UUID, from_status: str, to_status: str) -> None:
        with self.sessions.session_scope() as session:
            challenges = ChallengeRepository(session)
            if not challenges.claim_status(challenge_id, [from_status], to_status):
                current = challenges.get(challenge_id)
                raise InvalidStateTransitionError("Challenge", challenge_id, current.status, to_status)

        logger.info("Challenge status changed", challenge_id=str(challenge_id), status=to_status)

    # Participation

    def _check_seat_available(self, session, challenge: Challenge) -> None:
        seated = ParticipantRepository(session).count_seated(challenge.id)
        capacity = self.capacity_of(challenge)
        if seated >= capacity:
            raise ChallengeFullError(
                f"Challenge {challenge.id} is full",
                context={"challenge_id": str(challenge.id), "capacity": capacity},
            )

    def _check_accepting(self, challenge: Challenge, now: datetime) -> None:
        if challenge.status != ChallengeStatus.ACTIVE or not challenge.is_open_at(now):
            raise ChallengeClosedError(
                f"Challenge {challenge.id} is not accepting participants",
                context={"challenge_id": str(challenge.id), "status": challenge.status},
            )

    def join(self, challenge_id: UUID, user_id: UUID, now: Optional[datetime] = None) -> Participant:
        """Join an active challenge directly; ``joined_at`` anchors every metric."""
        now = now or utcnow()

        with self.sessions.session_scope() as session:
            # Serialize joins on the challenge row so capacity cannot be overrun
            challenge = ChallengeRepository(session).get_for_update(challenge_id)
            self._check_accepting(challenge, now)

            participants = ParticipantRepository(session)
            if participants.find(challenge_id, user_id) is not None:
                raise DuplicateParticipationError(
                    f"User {user_id} already participates in challenge {challenge_id}",
                    context={"challenge_id": str(challenge_id), "user_id": str(user_id)},
                )
            self._check_seat_available(session, challenge)

            participant = participants.add(
                Participant(
                    challenge_id=challenge_id,
                    user_id=user_id,
                    status=ParticipantStatus.ACTIVE,
                    joined_at=now,
                    progress={},
                )
            )
            session.refresh(participant)

        logger.info("Participant joined", challenge_id=str(challenge_id), user_id=str(user_id))
        return participant

    def invite(self, challenge_id: UUID, user_id: UUID, now: Optional[datetime] = None) -> Participant:
        now = now or utcnow()

        with self.sessions.session_scope() as session:
            challenge = ChallengeRepository(session).get_for_update(challenge_id)
            if challenge.status in ChallengeStatus.TERMINAL or challenge.end_date <= now:
                raise ChallengeClosedError(
                    f"Challenge {challenge_id} is closed",
                    context={"challenge_id": str(challenge_id), "status": challenge.status},
                )

            participants = ParticipantRepository(session)
            if participants.find(challenge_id, user_id) is not None:
                raise DuplicateParticipationError(
                    f"User {user_id} already invited to challenge {challenge_id}",
                    context={"challenge_id": str(challenge_id), "user_id": str(user_id)},
                )
            self._check_seat_available(session, challenge)

            participant = participants.add(
                Participant(
                    challenge_id=challenge_id,
                    user_id=user_id,
                    status=ParticipantStatus.INVITED,
                    invited_at=now,
                    progress={},
                )
            )
            session.refresh(participant)

        return participant

    def accept_invitation(self, participant_id: UUID, now: Optional[datetime] = None) -> Participant:
        now = now or utcnow()

        with self.sessions.session_scope() as session:
            participants = ParticipantRepository(session)
            if not participants.claim_transition(
                participant_id, ParticipantStatus.INVITED, ParticipantStatus.ACTIVE, joined_at=now
            ):
                current = participants.get(participant_id)
                raise InvalidStateTransitionError(
                    "Participant", participant_id, current.status, ParticipantStatus.ACTIVE
                )

            participant = participants.get(participant_id)
            self._check_accepting(ChallengeRepository(session).get(participant.challenge_id), now)
            session.refresh(participant)

        return participant

    def leave(self, participant_id: UUID) -> None:
        """Withdraw (or decline an invitation): -> abandoned."""
        with self.sessions.session_scope() as session:
            participants = ParticipantRepository(session)
            for from_status in (ParticipantStatus.ACTIVE, ParticipantStatus.INVITED):
                if participants.claim_transition(participant_id, from_status, ParticipantStatus.ABANDONED):
                    break
            else:
                current = participants.get(participant_id)
                raise InvalidStateTransitionError(
                    "Participant", participant_id, current.status, ParticipantStatus.ABANDONED
                )

        logger.info("Participant left", participant_id=str(participant_id))

    # Closing

    def _refund_remainder(self, session, challenge: Challenge, reason: str) -> int:
        refund = challenge.remaining_reserve
        if refund > 0:
            LedgerService(session).credit(
                challenge.creator_id,
                refund,
                TransferKind.REFUND,
                challenge_id=challenge.id,
                description=f"Unspent reserve of challenge '{challenge.title}'",
                reference_data={"reason": reason},
            )
        return refund

    def cancel_challenge(self, challenge_id: UUID, reason: Optional[str] = None) -> int:
        """
        Cancel a challenge by its creator.

        Active and invited participants are abandoned and the unspent reserve
        (reserved minus disbursed) is refunded. Returns the refunded amount.
        """
        with self.sessions.session_scope() as session:
            participants = ParticipantRepository(session)
            # Participants before the challenge row, the same order settlement locks them
            participants.transition_all(challenge_id, ParticipantStatus.ACTIVE, ParticipantStatus.ABANDONED)
            participants.transition_all(challenge_id, ParticipantStatus.INVITED, ParticipantStatus.ABANDONED)

            challenges = ChallengeRepository(session)
            if not challenges.claim_status(
                challenge_id,
                [ChallengeStatus.DRAFT, ChallengeStatus.ACTIVE, ChallengeStatus.PAUSED],
                ChallengeStatus.CANCELLED,
                closed_at=utcnow(),
                cancel_reason=reason,
            ):
                current = challenges.get(challenge_id)
                raise InvalidStateTransitionError(
                    "Challenge", challenge_id, current.status, ChallengeStatus.CANCELLED
                )

            challenge = challenges.get(challenge_id)
            refund = self._refund_remainder(session, challenge, "cancelled")
            creator_id = challenge.creator_id

        self.business_logger.log_business_event(
            event_type="challenge_cancelled",
            user_id=creator_id,
            resource_type="challenge",
            resource_id=challenge_id,
            action="refund",
            details={"refunded_amount": refund, "reason": reason},
        )
        self._publish(
            ChallengeCancelledEvent(
                aggregate_id=challenge_id,
                creator_id=creator_id,
                refunded_amount=refund,
                reason=reason,
            )
        )
        return refund

    def close_challenge(self, challenge_id: UUID, now: Optional[datetime] = None) -> Optional[CloseResult]:
        """Close one elapsed challenge; None when it was already closed."""
        now = now or utcnow()

        with self.sessions.session_scope() as session:
            participants = ParticipantRepository(session)
            failed = participants.transition_all(
                challenge_id, ParticipantStatus.ACTIVE, ParticipantStatus.FAILED
            )
            participants.transition_all(challenge_id, ParticipantStatus.INVITED, ParticipantStatus.ABANDONED)

            challenges = ChallengeRepository(session)
            if not challenges.claim_status(
                challenge_id,
                [ChallengeStatus.ACTIVE, ChallengeStatus.PAUSED],
                ChallengeStatus.COMPLETED,
                closed_at=now,
            ):
                # Closed concurrently; undo the participant updates
                session.rollback()
                return None

            challenge = challenges.get(challenge_id)
            refund = self._refund_remainder(session, challenge, "expired")
            creator_id = challenge.creator_id

        self.business_logger.log_business_event(
            event_type="challenge_closed",
            user_id=creator_id,
            resource_type="challenge",
            resource_id=challenge_id,
            action="refund",
            details={"refunded_amount": refund, "failed_participants": failed},
        )
        self._publish(
            ChallengeClosedEvent(
                aggregate_id=challenge_id,
                creator_id=creator_id,
                refunded_amount=refund,
                failed_participants=failed,
            )
        )
        return CloseResult(challenge_id=challenge_id, refunded_amount=refund, failed_participants=failed)

    def close_expired_challenges(self, now: Optional[datetime] = None) -> List[CloseResult]:
        """Close every active or paused challenge whose window has ended.

        One challenge failing does not stop the others.
        """
        now = now or utcnow()

        with self.sessions.session_scope() as session:
            expired = ChallengeRepository(session).list_expired(now)

        results = []
        for challenge_id in expired:
            try:
                result = self.close_challenge(challenge_id, now)
            except PlaytestRewardsError as e:
                logger.error("Failed to close challenge", challenge_id=str(challenge_id), **e.to_dict())
                continue
            if result is not None:
                results.append(result)

        logger.info("Expired challenges closed", candidates=len(expired), closed=len(results))
        return results
