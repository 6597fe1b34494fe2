"""
Shared test fixtures for the playtest rewards test suite.

Integration tests run against a SQLite file database created per test so
several threads can share it for concurrency tests.
"""

from datetime import datetime, timedelta
from unittest.mock import Mock
from uuid import uuid4

import pytest

from playtest_rewards.domains.activity.models import (
    Answer,
    Block,
    GameSession,
    GameSessionBlock,
    GameSessionPlayer,
    GameSessionStatus,
    Question,
    TeacherStudent,
)
from playtest_rewards.domains.challenge.service import ChallengeService
from playtest_rewards.domains.ledger.service import LedgerService
from playtest_rewards.domains.levels.repository import TierRepository
from playtest_rewards.infrastructure.config.settings import DatabaseConfig, EngineConfig
from playtest_rewards.infrastructure.database.session import DatabaseSessionManager
from playtest_rewards.infrastructure.messaging.in_memory_bus import InMemoryEventBus


# Wednesday
NOW = datetime(2024, 3, 13, 12, 0, 0)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def sessions(tmp_path):
    """Fresh SQLite database with every table and the default tier ladders."""
    manager = DatabaseSessionManager.from_config(
        DatabaseConfig(url=f"sqlite:///{tmp_path / 'rewards.db'}", pool_timeout=30)
    )
    manager.create_tables()
    with manager.session_scope() as session:
        TierRepository(session).seed_defaults()

    yield manager

    manager.dispose()


@pytest.fixture
def event_bus():
    return InMemoryEventBus()


@pytest.fixture
def business_logger():
    return Mock()


@pytest.fixture
def engine_config():
    return EngineConfig(default_reserve_capacity=10, default_allowed_breaks=1)


@pytest.fixture
def ledger(sessions):
    """Run ``fn(LedgerService)`` in its own committed transaction."""

    def run(fn):
        with sessions.session_scope() as session:
            return fn(LedgerService(session))

    return run


@pytest.fixture
def fund(ledger):
    def grant(user_id, amount):
        ledger(lambda service: service.grant(user_id, amount, "test funding"))

    return grant


@pytest.fixture
def balance_of(ledger):
    return lambda user_id: ledger(lambda service: service.balance_of(user_id))


class ActivityFactory:
    """Writes activity facts (blocks, answers, game sessions) for integration tests."""

    def __init__(self, sessions):
        self.sessions = sessions

    def block(self, creator_id, questions=4, topics=None):
        """Create a block and return (block_id, [question_ids])."""
        block_id = uuid4()
        question_ids = [uuid4() for _ in range(questions)]
        topics = topics or ["general"] * questions
        with self.sessions.session_scope() as session:
            session.add(Block(id=block_id, creator_id=creator_id, title="Block"))
            session.flush()
            for question_id, topic in zip(question_ids, topics):
                session.add(Question(id=question_id, block_id=block_id, topic=topic))
        return block_id, question_ids

    def answer(self, user_id, question_ids, at, correct=True):
        with self.sessions.session_scope() as session:
            for question_id in question_ids:
                session.add(
                    Answer(user_id=user_id, question_id=question_id, is_correct=correct, answered_at=at)
                )

    def game(
        self,
        started_at,
        scores,
        block_ids=(),
        mode="duel",
        minutes=20,
        status=GameSessionStatus.COMPLETED,
        correct_answers=8,
        total_questions=10,
    ):
        """Create a game session; ``scores`` maps user id to score."""
        session_id = uuid4()
        with self.sessions.session_scope() as session:
            session.add(
                GameSession(
                    id=session_id,
                    mode=mode,
                    status=status,
                    started_at=started_at,
                    ended_at=started_at + timedelta(minutes=minutes),
                )
            )
            session.flush()
            for block_id in block_ids:
                session.add(GameSessionBlock(session_id=session_id, block_id=block_id))
            for user_id, score in scores.items():
                session.add(
                    GameSessionPlayer(
                        session_id=session_id,
                        user_id=user_id,
                        score=score,
                        correct_answers=correct_answers,
                        total_questions=total_questions,
                    )
                )
        return session_id

    def enroll(self, teacher_id, student_id):
        with self.sessions.session_scope() as session:
            session.add(TeacherStudent(teacher_id=teacher_id, student_id=student_id))


@pytest.fixture
def activity(sessions):
    return ActivityFactory(sessions)


@pytest.fixture
def challenge_service(sessions, event_bus, engine_config):
    # Own logger mock so setup-time service logs do not leak into
    # the `business_logger` mock that engine/payout tests inspect.
    return ChallengeService(sessions, event_bus, engine_config, Mock())


@pytest.fixture
def active_challenge(challenge_service, fund, now):
    """
    Activate a funded challenge and return it.

    Defaults: consolidation challenge on every block, prize 50 + bonus 10,
    capacity 2, so the creator's reserve is 120.
    """

    def create(
        creator_id=None,
        challenge_type="consolidation",
        config=None,
        prize_amount=50,
        bonus_amount=10,
        max_participants=2,
        start_date=None,
        end_date=None,
    ):
        creator_id = creator_id or uuid4()
        start_date = start_date or now - timedelta(days=7)
        end_date = end_date or now + timedelta(days=7)
        capacity = max_participants or challenge_service.config.default_reserve_capacity
        if prize_amount + bonus_amount > 0:
            fund(creator_id, (prize_amount + bonus_amount) * capacity)

        challenge = challenge_service.create_challenge(
            creator_id=creator_id,
            title="Test challenge",
            challenge_type=challenge_type,
            config=config or {"target_percentage": 80},
            start_date=start_date,
            end_date=end_date,
            prize_amount=prize_amount,
            bonus_amount=bonus_amount,
            max_participants=max_participants,
        )
        return challenge_service.activate_challenge(challenge.id, now=start_date + timedelta(minutes=1))

    return create
