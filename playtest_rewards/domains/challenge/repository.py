"""
Challenge and participant repositories.

Status changes go through conditional updates (``UPDATE ... WHERE status IN
(...)``): the affected row count tells the caller whether it won the claim.
No separate lock object is needed.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from ...shared.exceptions.base import EntityNotFoundError
from ...shared.utils.clock import utcnow
from .model import Challenge, ChallengeStatus, Participant, ParticipantStatus


def _claimed(session: Session, rowcount: int) -> bool:
    """True when exactly one row moved; loaded instances are expired so they reload."""
    if rowcount == 1:
        session.expire_all()
        return True
    return False


class ChallengeRepository:
    def __init__(self, session: Session):
        self.session = session

    def add(self, challenge: Challenge) -> Challenge:
        self.session.add(challenge)
        self.session.flush()
        return challenge

    def get(self, challenge_id: UUID) -> Challenge:
        challenge = self.session.get(Challenge, challenge_id)
        if challenge is None:
            raise EntityNotFoundError("Challenge", challenge_id)
        return challenge

    def get_for_update(self, challenge_id: UUID) -> Challenge:
        challenge = self.session.execute(
            select(Challenge).where(Challenge.id == challenge_id).with_for_update()
        ).scalar_one_or_none()
        if challenge is None:
            raise EntityNotFoundError("Challenge", challenge_id)
        return challenge

    def claim_status(
        self,
        challenge_id: UUID,
        from_statuses: Sequence[str],
        to_status: str,
        **values: Any,
    ) -> bool:
        """Move the challenge to ``to_status`` only if it is still in ``from_statuses``."""
        result = self.session.execute(
            update(Challenge)
            .where(Challenge.id == challenge_id, Challenge.status.in_(list(from_statuses)))
            .values(status=to_status, version=Challenge.version + 1, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return _claimed(self.session, result.rowcount)

    def add_disbursement(self, challenge_id: UUID, amount: int) -> bool:
        """Record an award against the reserve, refusing to overdraw it."""
        result = self.session.execute(
            update(Challenge)
            .where(
                Challenge.id == challenge_id,
                Challenge.disbursed_amount + amount <= Challenge.reserved_amount,
            )
            .values(
                disbursed_amount=Challenge.disbursed_amount + amount,
                version=Challenge.version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return _claimed(self.session, result.rowcount)

    def list_expired(self, now: datetime) -> List[UUID]:
        """Active or paused challenges whose window has elapsed."""
        stmt = (
            select(Challenge.id)
            .where(
                Challenge.status.in_([ChallengeStatus.ACTIVE, ChallengeStatus.PAUSED]),
                Challenge.end_date <= now,
            )
            .order_by(Challenge.end_date)
        )
        return list(self.session.execute(stmt).scalars())


class ParticipantRepository:
    # Statuses that hold a seat against max_participants
    SEATED = (ParticipantStatus.INVITED, ParticipantStatus.ACTIVE, ParticipantStatus.COMPLETED)

    def __init__(self, session: Session):
        self.session = session

    def add(self, participant: Participant) -> Participant:
        self.session.add(participant)
        self.session.flush()
        return participant

    def get(self, participant_id: UUID) -> Participant:
        participant = self.session.get(Participant, participant_id)
        if participant is None:
            raise EntityNotFoundError("Participant", participant_id)
        return participant

    def find(self, challenge_id: UUID, user_id: UUID) -> Optional[Participant]:
        return self.session.execute(
            select(Participant).where(
                Participant.challenge_id == challenge_id,
                Participant.user_id == user_id,
            )
        ).scalar_one_or_none()

    def count_seated(self, challenge_id: UUID) -> int:
        return self.session.execute(
            select(func.count(Participant.id)).where(
                Participant.challenge_id == challenge_id,
                Participant.status.in_(self.SEATED),
            )
        ).scalar_one()

    def claim_transition(
        self,
        participant_id: UUID,
        from_status: str,
        to_status: str,
        **values: Any,
    ) -> bool:
        """Conditional single-row transition; False when another writer got there first."""
        result = self.session.execute(
            update(Participant)
            .where(Participant.id == participant_id, Participant.status == from_status)
            .values(status=to_status, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return _claimed(self.session, result.rowcount)

    def claim_completion(self, participant_id: UUID, completed_at: datetime) -> bool:
        """The settlement claim: active -> completed, at most once."""
        return self.claim_transition(
            participant_id,
            ParticipantStatus.ACTIVE,
            ParticipantStatus.COMPLETED,
            completed_at=completed_at,
        )

    def transition_all(self, challenge_id: UUID, from_status: str, to_status: str) -> int:
        result = self.session.execute(
            update(Participant)
            .where(Participant.challenge_id == challenge_id, Participant.status == from_status)
            .values(status=to_status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            self.session.expire_all()
        return result.rowcount

    def save_progress(self, participant_id: UUID, snapshot: Dict[str, Any], validated_at: datetime) -> bool:
        """Store the latest progress snapshot while the participant is still active."""
        result = self.session.execute(
            update(Participant)
            .where(Participant.id == participant_id, Participant.status == ParticipantStatus.ACTIVE)
            .values(progress=snapshot, last_validated_at=validated_at, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return _claimed(self.session, result.rowcount)

    def list_open_participants(
        self,
        now: datetime,
        limit: Optional[int] = None,
        after: Optional[Tuple[datetime, UUID]] = None,
    ) -> List[Tuple[UUID, datetime]]:
        """
        (id, joined_at) of active participants of active challenges whose
        window contains ``now``, ordered by (joined_at, id).

        ``after`` is the keyset cursor: the (joined_at, id) of the last row of
        the previous page.
        """
        stmt = (
            select(Participant.id, Participant.joined_at)
            .join(Challenge, Challenge.id == Participant.challenge_id)
            .where(
                Participant.status == ParticipantStatus.ACTIVE,
                Challenge.status == ChallengeStatus.ACTIVE,
                Challenge.start_date <= now,
                Challenge.end_date > now,
            )
            .order_by(Participant.joined_at, Participant.id)
        )
        if after is not None:
            joined_at, participant_id = after
            stmt = stmt.where(
                or_(
                    Participant.joined_at > joined_at,
                    and_(Participant.joined_at == joined_at, Participant.id > participant_id),
                )
            )
        if limit:
            stmt = stmt.limit(limit)
        return [(row.id, row.joined_at) for row in self.session.execute(stmt)]
