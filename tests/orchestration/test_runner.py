"""Tests for the validation and level orchestration passes."""

from datetime import timedelta
from unittest.mock import Mock
from uuid import uuid4

import pytest

from playtest_rewards.domains.activity.read_model import ActivityReadModel, AnswerStats
from playtest_rewards.domains.challenge.model import Participant, ParticipantStatus
from playtest_rewards.domains.levels.calculator import LevelCalculator, TierChange
from playtest_rewards.domains.levels.ladder import TierBand, TierKind
from playtest_rewards.domains.settlement.engine import SettlementEngine
from playtest_rewards.infrastructure.config.settings import EngineConfig
from playtest_rewards.orchestration.runner import LevelRunner, ValidationRunner
from playtest_rewards.shared.exceptions.base import MetricSourceUnavailableError, OperationTimeoutError


@pytest.fixture
def engine(sessions, event_bus, business_logger):
    return SettlementEngine(sessions, event_bus, business_logger)


@pytest.fixture
def runner(sessions, engine):
    return ValidationRunner(sessions, engine, EngineConfig())


@pytest.fixture
def block_challenge(active_challenge, activity):
    """A consolidation challenge (80 % target) on one four-question block."""
    block, questions = activity.block(uuid4(), questions=4)
    challenge = active_challenge(config={"target_percentage": 80, "scope_id": str(block)})
    return challenge, questions


def _participant(sessions, participant_id):
    with sessions.session_scope() as session:
        return session.get(Participant, participant_id)


class TestValidateParticipant:
    def test_progress_saved_while_incomplete(self, runner, block_challenge, challenge_service, activity, sessions, now):
        """WHEN a participant is halfway to the target
        THEN progress is stored and the participant stays active
        """
        challenge, questions = block_challenge
        participant = challenge_service.join(challenge.id, uuid4(), now=now - timedelta(days=1))
        activity.answer(participant.user_id, questions[:2], at=now - timedelta(hours=1))
        activity.answer(participant.user_id, questions[2:], at=now - timedelta(hours=1), correct=False)

        assert runner.validate_participant(participant.id, now=now) is False

        stored = _participant(sessions, participant.id)
        assert stored.status == ParticipantStatus.ACTIVE
        assert stored.progress["current_percentage"] == 50.0
        assert stored.progress["progress_percentage"] == 62.5
        assert stored.last_validated_at == now

    def test_completion_settles(self, runner, block_challenge, challenge_service, activity, sessions, balance_of, now):
        challenge, questions = block_challenge
        participant = challenge_service.join(challenge.id, uuid4(), now=now - timedelta(days=1))
        activity.answer(participant.user_id, questions, at=now - timedelta(hours=1))

        assert runner.validate_participant(participant.id, now=now) is True

        stored = _participant(sessions, participant.id)
        assert stored.status == ParticipantStatus.COMPLETED
        assert stored.progress["current_percentage"] == 100.0
        assert balance_of(participant.user_id) == 60

    def test_answers_before_joining_ignored(self, runner, block_challenge, challenge_service, activity, now):
        challenge, questions = block_challenge
        participant = challenge_service.join(challenge.id, uuid4(), now=now - timedelta(days=1))
        activity.answer(participant.user_id, questions, at=now - timedelta(days=2))

        assert runner.validate_participant(participant.id, now=now) is False

    def test_inactive_participant_skipped(self, runner, block_challenge, challenge_service, now):
        challenge, _ = block_challenge
        participant = challenge_service.join(challenge.id, uuid4(), now=now)
        challenge_service.leave(participant.id)

        assert runner.validate_participant(participant.id, now=now) is False

    def test_timeout_rolls_back_progress(self, sessions, engine, block_challenge, challenge_service, activity, now):
        """WHEN validation exceeds its time bound
        THEN OperationTimeoutError is raised and no progress is written
        """
        runner = ValidationRunner(sessions, engine, EngineConfig(participant_timeout_seconds=1e-9))
        challenge, questions = block_challenge
        participant = challenge_service.join(challenge.id, uuid4(), now=now - timedelta(days=1))
        activity.answer(participant.user_id, questions, at=now - timedelta(hours=1))

        with pytest.raises(OperationTimeoutError):
            runner.validate_participant(participant.id, now=now)

        stored = _participant(sessions, participant.id)
        assert stored.progress == {}
        assert stored.last_validated_at is None
        assert stored.status == ParticipantStatus.ACTIVE


class TestRunOnce:
    def test_counts_completed_and_in_progress(self, runner, active_challenge, challenge_service, activity, now):
        block, questions = activity.block(uuid4(), questions=2)
        challenge = active_challenge(config={"target_percentage": 80, "scope_id": str(block)})
        done = challenge_service.join(challenge.id, uuid4(), now=now - timedelta(days=1))
        challenge_service.join(challenge.id, uuid4(), now=now - timedelta(days=1))
        activity.answer(done.user_id, questions, at=now - timedelta(hours=1))

        summary = runner.run_once(now=now)

        assert (summary.processed, summary.completed, summary.errors) == (2, 1, 0)

    def test_failure_isolated_to_participant(self, sessions, engine, active_challenge, challenge_service, now):
        """WHEN the metric source fails for one participant
        THEN that participant counts as an error and the others are still validated
        """
        challenge = active_challenge()
        broken = challenge_service.join(challenge.id, uuid4(), now=now - timedelta(days=1))
        healthy = challenge_service.join(challenge.id, uuid4(), now=now - timedelta(days=1))

        def answered_count(user_id, scope_id, since, topics=None):
            if user_id == broken.user_id:
                raise MetricSourceUnavailableError("activity store unreachable")
            return AnswerStats(total=10, correct=9)

        read_model = Mock(spec=ActivityReadModel)
        read_model.answered_count.side_effect = answered_count
        runner = ValidationRunner(sessions, engine, EngineConfig(), read_model_factory=lambda session: read_model)

        summary = runner.run_once(now=now)

        assert (summary.processed, summary.completed, summary.errors) == (2, 1, 1)
        assert _participant(sessions, broken.id).status == ParticipantStatus.ACTIVE
        assert _participant(sessions, healthy.id).status == ParticipantStatus.COMPLETED

    def test_parallel_workers(self, sessions, engine, active_challenge, challenge_service, balance_of, now):
        """WHEN several workers validate a batch of completed participants
        THEN every participant is settled exactly once
        """
        challenge = active_challenge(max_participants=3)
        participants = [
            challenge_service.join(challenge.id, uuid4(), now=now - timedelta(days=1)) for _ in range(3)
        ]
        read_model = Mock(spec=ActivityReadModel)
        read_model.answered_count.return_value = AnswerStats(total=5, correct=5)
        runner = ValidationRunner(
            sessions, engine, EngineConfig(max_workers=3), read_model_factory=lambda session: read_model
        )

        summary = runner.run_once(now=now)

        assert summary.completed == 3
        assert [balance_of(p.user_id) for p in participants] == [60, 60, 60]

    def test_closed_window_not_processed(self, runner, active_challenge, challenge_service, now):
        challenge = active_challenge()
        challenge_service.join(challenge.id, uuid4(), now=now)

        assert runner.run_once(now=now + timedelta(days=8)).processed == 0

    def test_participants_past_batch_size_are_validated(self, sessions, engine, block_challenge, challenge_service, activity, now):
        """WHEN open participants outnumber the batch size
        THEN later pages are still validated in the same pass
        """
        challenge, questions = block_challenge
        idle = challenge_service.join(challenge.id, uuid4(), now=now - timedelta(days=2))
        later = challenge_service.join(challenge.id, uuid4(), now=now - timedelta(days=1))
        activity.answer(later.user_id, questions, at=now - timedelta(hours=1))
        runner = ValidationRunner(sessions, engine, EngineConfig(batch_size=1))

        summary = runner.run_once(now=now)

        assert (summary.processed, summary.completed, summary.errors) == (2, 1, 0)
        assert _participant(sessions, idle.id).status == ParticipantStatus.ACTIVE
        assert _participant(sessions, later.id).status == ParticipantStatus.COMPLETED

    def test_pages_with_shared_join_time(self, sessions, engine, active_challenge, challenge_service, activity, now):
        block, questions = activity.block(uuid4(), questions=2)
        challenge = active_challenge(config={"target_percentage": 80, "scope_id": str(block)}, max_participants=3)
        joined = now - timedelta(days=1)
        participants = [challenge_service.join(challenge.id, uuid4(), now=joined) for _ in range(3)]
        for participant in participants:
            activity.answer(participant.user_id, questions, at=now - timedelta(hours=1))
        runner = ValidationRunner(sessions, engine, EngineConfig(batch_size=2))

        summary = runner.run_once(now=now)

        assert (summary.processed, summary.completed, summary.errors) == (3, 3, 0)
        for participant in participants:
            assert _participant(sessions, participant.id).status == ParticipantStatus.COMPLETED


class TestLevelRunner:
    def test_recently_active_user_recalculated(self, sessions, activity, event_bus, now):
        user = uuid4()
        _, questions = activity.block(uuid4(), questions=2)
        activity.answer(user, questions, at=now - timedelta(hours=2))
        runner = LevelRunner(sessions, LevelCalculator(sessions, event_bus))

        summary = runner.run_once(now=now)

        assert (summary.users_processed, summary.level_changes, summary.errors) == (1, 1, 0)

    def test_failure_isolated_to_user(self, sessions, now):
        """WHEN recalculation fails for the first user
        THEN the second user is still recalculated
        """
        first, second = uuid4(), uuid4()
        read_model = Mock(spec=ActivityReadModel)
        read_model.recently_active_users.return_value = [first, second]
        change = TierChange(second, TierKind.USER, TierBand(name="Aprendiz", order=1, min_threshold=0), 0.0, True)
        calculator = Mock(spec=LevelCalculator)
        calculator.recalculate_all.side_effect = [MetricSourceUnavailableError("down"), [change]]
        runner = LevelRunner(sessions, calculator, read_model_factory=lambda session: read_model)

        summary = runner.run_once(now=now)

        assert (summary.users_processed, summary.level_changes, summary.errors) == (2, 1, 1)
        read_model.recently_active_users.assert_called_once_with(now, 24, 7)
