"""
Periodic orchestration passes.

The scheduler calls ``run_once`` on each runner. Every unit of work runs in
its own transaction, so one failing participant or user never stops the rest
of the batch; the failure is logged and retried on the next pass.
"""

import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional
from uuid import UUID

import structlog
from sqlalchemy.orm import Session

from ..domains.activity.read_model import ActivityReadModel
from ..domains.activity.sql_read_model import SqlActivityReadModel
from ..domains.challenge.model import ParticipantStatus
from ..domains.challenge.repository import ChallengeRepository, ParticipantRepository
from ..domains.challenge.validators import ChallengeValidator
from ..domains.levels.calculator import LevelCalculator
from ..domains.settlement.engine import SettlementEngine
from ..infrastructure.config.settings import EngineConfig, LevelsConfig
from ..infrastructure.database.session import DatabaseSessionManager
from ..shared.exceptions.base import OperationTimeoutError, PlaytestRewardsError
from ..shared.utils.clock import utcnow

logger = structlog.get_logger()

ReadModelFactory = Callable[[Session], ActivityReadModel]


@dataclass(frozen=True)
class RunSummary:
    processed: int
    completed: int
    errors: int


@dataclass(frozen=True)
class LevelRunSummary:
    users_processed: int
    level_changes: int
    errors: int


def _error_details(error: Exception) -> dict:
    if isinstance(error, PlaytestRewardsError):
        return error.to_dict()
    return {"error_type": error.__class__.__name__, "message": str(error)}


class ValidationRunner:
    """Validates open participants and settles the ones that completed."""

    def __init__(
        self,
        sessions: DatabaseSessionManager,
        settlement_engine: SettlementEngine,
        config: Optional[EngineConfig] = None,
        read_model_factory: ReadModelFactory = SqlActivityReadModel,
    ):
        self.sessions = sessions
        self.settlement_engine = settlement_engine
        self.config = config or EngineConfig()
        self.read_model_factory = read_model_factory
        self.logger = logger.bind(runner="validation")

    def run_once(self, now: Optional[datetime] = None) -> RunSummary:
        now = now or utcnow()
        processed = completed = errors = 0
        cursor = None

        # Keyset pages over (joined_at, id) until a short page
        while True:
            with self.sessions.session_scope() as session:
                page = ParticipantRepository(session).list_open_participants(
                    now, limit=self.config.batch_size, after=cursor
                )
            if not page:
                break

            for outcome in self._dispatch([participant_id for participant_id, _ in page], now):
                if outcome is None:
                    errors += 1
                elif outcome:
                    completed += 1
            processed += len(page)

            if len(page) < self.config.batch_size:
                break
            participant_id, joined_at = page[-1]
            cursor = (joined_at, participant_id)

        summary = RunSummary(processed=processed, completed=completed, errors=errors)
        self.logger.info(
            "Validation pass finished",
            processed=summary.processed,
            completed=summary.completed,
            errors=summary.errors,
        )
        return summary

    def _dispatch(self, participant_ids: List[UUID], now: datetime) -> List[Optional[bool]]:
        if self.config.max_workers <= 1 or len(participant_ids) <= 1:
            return [self._process(participant_id, now) for participant_id in participant_ids]

        with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
            futures = [executor.submit(self._process, participant_id, now) for participant_id in participant_ids]
            return [future.result() for future in as_completed(futures)]

    def _process(self, participant_id: UUID, now: datetime) -> Optional[bool]:
        """True when settled, False when still in progress, None on error."""
        try:
            return self.validate_participant(participant_id, now)
        except Exception as e:
            self.logger.error(
                "Participant validation failed",
                participant_id=str(participant_id),
                **_error_details(e),
            )
            return None

    def validate_participant(self, participant_id: UUID, now: Optional[datetime] = None) -> bool:
        """
        Validate one participant, persist its progress and settle on completion.

        Progress is always written, completed or not. Exceeding the time bound
        before commit raises OperationTimeoutError and nothing is written.
        """
        now = now or utcnow()
        started = time.monotonic()

        with self.sessions.session_scope() as session:
            participants = ParticipantRepository(session)
            participant = participants.get(participant_id)
            if participant.status != ParticipantStatus.ACTIVE:
                return False

            challenge = ChallengeRepository(session).get(participant.challenge_id)
            validator = ChallengeValidator(
                self.read_model_factory(session),
                default_allowed_breaks=self.config.default_allowed_breaks,
            )
            result = validator.validate(participant, challenge.config, challenge.challenge_type)
            participants.save_progress(participant_id, result.progress.to_snapshot(), now)

            elapsed = time.monotonic() - started
            if elapsed > self.config.participant_timeout_seconds:
                raise OperationTimeoutError(
                    f"Validation of participant {participant_id} exceeded its time bound",
                    context={
                        "participant_id": str(participant_id),
                        "elapsed_seconds": round(elapsed, 3),
                        "limit_seconds": self.config.participant_timeout_seconds,
                    },
                )

        if not result.is_completed:
            return False

        return self.settlement_engine.settle(participant_id, now).settled


class LevelRunner:
    """Recalculates every tier of recently active users."""

    def __init__(
        self,
        sessions: DatabaseSessionManager,
        calculator: LevelCalculator,
        config: Optional[LevelsConfig] = None,
        read_model_factory: ReadModelFactory = SqlActivityReadModel,
    ):
        self.sessions = sessions
        self.calculator = calculator
        self.config = config or LevelsConfig()
        self.read_model_factory = read_model_factory
        self.logger = logger.bind(runner="levels")

    def run_once(self, now: Optional[datetime] = None) -> LevelRunSummary:
        now = now or utcnow()

        with self.sessions.session_scope() as session:
            user_ids = self.read_model_factory(session).recently_active_users(
                now, self.config.answer_lookback_hours, self.config.creator_lookback_days
            )

        level_changes = errors = 0
        for user_id in user_ids:
            try:
                changes = self.calculator.recalculate_all(user_id, now=now)
            except Exception as e:
                errors += 1
                self.logger.error("Level recalculation failed", user_id=str(user_id), **_error_details(e))
                continue
            level_changes += sum(1 for change in changes if change.changed)

        summary = LevelRunSummary(users_processed=len(user_ids), level_changes=level_changes, errors=errors)
        self.logger.info(
            "Level pass finished",
            users_processed=summary.users_processed,
            level_changes=summary.level_changes,
            errors=summary.errors,
        )
        return summary
