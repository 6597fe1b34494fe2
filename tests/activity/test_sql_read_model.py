"""Integration tests for the SQL activity read model."""

from datetime import timedelta
from unittest.mock import Mock
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from playtest_rewards.domains.activity.models import GameSessionStatus
from playtest_rewards.domains.activity.sql_read_model import SqlActivityReadModel
from playtest_rewards.shared.exceptions.base import MetricSourceUnavailableError


@pytest.fixture
def read(sessions):
    """Run ``fn(read_model)`` in a short-lived session."""

    def run(fn):
        with sessions.session_scope() as session:
            return fn(SqlActivityReadModel(session))

    return run


class TestAnswers:
    def test_answered_count_scoped_to_block(self, activity, read, now):
        """WHEN a user answered in two blocks
        THEN counts are limited to the requested block and window
        """
        user = uuid4()
        block, questions = activity.block(uuid4(), questions=4, topics=["a", "a", "b", "b"])
        other_block, other_questions = activity.block(uuid4(), questions=2)
        activity.answer(user, questions[:3], at=now - timedelta(hours=1), correct=True)
        activity.answer(user, questions[3:], at=now - timedelta(hours=1), correct=False)
        activity.answer(user, other_questions, at=now - timedelta(hours=1))
        activity.answer(user, questions, at=now - timedelta(days=3))

        stats = read(lambda rm: rm.answered_count(user, block, now - timedelta(days=1)))

        assert stats.total == 4
        assert stats.correct == 3
        assert stats.topics_covered == 2
        assert stats.accuracy_percentage == 75.0

    def test_answered_count_topic_filter(self, activity, read, now):
        user = uuid4()
        block, questions = activity.block(uuid4(), questions=2, topics=["algebra", "geometry"])
        activity.answer(user, questions, at=now)

        stats = read(lambda rm: rm.answered_count(user, None, now - timedelta(days=1), topics=["algebra"]))

        assert stats.total == 1

    def test_consolidation_counts_distinct_correct_questions(self, activity, read, now):
        """WHEN the same question is answered correctly twice
        THEN it counts once towards consolidation
        """
        user = uuid4()
        block, questions = activity.block(uuid4(), questions=4)
        activity.answer(user, [questions[0], questions[0], questions[1]], at=now)
        activity.answer(user, [questions[2]], at=now, correct=False)

        assert read(lambda rm: rm.consolidation(user, block)) == 50.0

    def test_consolidation_of_empty_block(self, activity, read):
        block, _ = activity.block(uuid4(), questions=0)

        assert read(lambda rm: rm.consolidation(uuid4(), block)) == 0.0

    def test_answered_scopes(self, activity, read, now):
        user = uuid4()
        block_a, questions_a = activity.block(uuid4(), questions=1)
        block_b, questions_b = activity.block(uuid4(), questions=1)
        activity.block(uuid4(), questions=1)
        activity.answer(user, questions_a + questions_b, at=now)

        assert set(read(lambda rm: rm.answered_scopes(user))) == {block_a, block_b}


class TestSessions:
    def test_unit_attempts_best_score(self, activity, read, now):
        user = uuid4()
        block, _ = activity.block(uuid4())
        activity.game(now - timedelta(days=2), {user: 60}, [block])
        activity.game(now - timedelta(days=1), {user: 85}, [block])
        activity.game(now - timedelta(hours=1), {user: 99}, [block], status=GameSessionStatus.ABANDONED)

        attempts = read(lambda rm: rm.unit_attempts(user, block, now - timedelta(days=7)))

        assert attempts.attempts == 2
        assert attempts.best_score == 85

    def test_unit_without_attempts(self, activity, read, now):
        block, _ = activity.block(uuid4())

        attempts = read(lambda rm: rm.unit_attempts(uuid4(), block, now))

        assert (attempts.attempts, attempts.best_score) == (0, 0)

    def test_daily_activity_groups_by_day(self, activity, read, now):
        """WHEN a user plays two sessions on one day and one on the next
        THEN daily rows sum sessions, minutes and the answers given during them
        """
        user = uuid4()
        block, questions = activity.block(uuid4(), questions=3)
        day_one = now.replace(hour=9) - timedelta(days=2)
        activity.game(day_one, {user: 10}, [block], minutes=10)
        activity.game(day_one + timedelta(hours=2), {user: 10}, [block], minutes=15)
        activity.game(day_one + timedelta(days=1), {user: 10}, [block], minutes=20)
        activity.answer(user, questions, at=day_one + timedelta(minutes=5))
        activity.answer(user, questions[:1], at=day_one + timedelta(hours=5))

        days = read(lambda rm: rm.daily_activity(user, now - timedelta(days=7)))

        assert [d.day for d in days] == [day_one.date(), (day_one + timedelta(days=1)).date()]
        assert days[0].sessions == 2
        assert days[0].minutes == 25.0
        assert days[0].questions == 3
        assert days[1].questions == 0

    def test_session_outcomes_need_opponents(self, activity, read, now):
        """WHEN a user played one solo and two multi-player sessions
        THEN only the multi-player sessions are outcomes, ties counting as wins
        """
        user, rival = uuid4(), uuid4()
        activity.game(now - timedelta(hours=3), {user: 50})
        activity.game(now - timedelta(hours=2), {user: 70, rival: 70})
        activity.game(now - timedelta(hours=1), {user: 40, rival: 90})
        activity.game(now - timedelta(hours=1), {user: 90, rival: 10}, mode="practice")

        outcomes = read(lambda rm: rm.session_outcomes(user, ["duel"], now - timedelta(days=1)))

        assert [o.is_win for o in outcomes] == [True, False]


class TestCreatorAndTeacherMetrics:
    def test_active_user_count(self, activity, read, now):
        """WHEN three players used a creator's blocks, one outside the window
        THEN two active users are counted
        """
        creator = uuid4()
        block, _ = activity.block(creator)
        player_a, player_b, stale = uuid4(), uuid4(), uuid4()
        activity.game(now - timedelta(days=1), {player_a: 1, player_b: 1}, [block])
        activity.game(now - timedelta(days=3), {player_a: 1}, [block])
        activity.game(now - timedelta(days=40), {stale: 1}, [block])

        assert read(lambda rm: rm.active_user_count(creator, 30, now)) == 2

    def test_active_students_restricted_to_enrolment(self, activity, read, now):
        teacher = uuid4()
        block, _ = activity.block(teacher)
        student, stranger = uuid4(), uuid4()
        activity.enroll(teacher, student)
        activity.game(now - timedelta(days=1), {student: 1, stranger: 1, teacher: 1}, [block])

        assert read(lambda rm: rm.active_student_count(teacher, 30, now)) == 1

    def test_student_average_consolidation(self, activity, read, now):
        teacher = uuid4()
        block, questions = activity.block(teacher, questions=4)
        strong, weak = uuid4(), uuid4()
        activity.game(now - timedelta(days=1), {strong: 1, weak: 1}, [block])
        activity.answer(strong, questions, at=now - timedelta(days=1))
        activity.answer(weak, questions[:2], at=now - timedelta(days=1))

        assert read(lambda rm: rm.student_average_consolidation(teacher, 30, now)) == 75.0

    def test_recently_active_users(self, activity, read, now):
        """WHEN a student answers, and a creator's block was played this week
        THEN the student, the creator and the student's teacher are returned
        """
        creator, teacher, student, idle = uuid4(), uuid4(), uuid4(), uuid4()
        block, questions = activity.block(creator, questions=1)
        activity.enroll(teacher, student)
        activity.answer(student, questions, at=now - timedelta(hours=2))
        activity.answer(idle, questions, at=now - timedelta(days=10))
        activity.game(now - timedelta(days=2), {student: 1}, [block])

        users = read(lambda rm: rm.recently_active_users(now, 24, 7))

        assert set(users) == {creator, teacher, student}


class TestFailures:
    def test_store_errors_become_metric_unavailable(self):
        session = Mock()
        session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("disk I/O error"))

        with pytest.raises(MetricSourceUnavailableError) as exc_info:
            SqlActivityReadModel(session).consolidation(uuid4(), uuid4())

        assert exc_info.value.context["query"] == "consolidation"
