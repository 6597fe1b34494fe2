"""SQLAlchemy implementation of the activity read model."""

import functools
from bisect import bisect_left, bisect_right
from datetime import datetime, timedelta
from typing import List, Optional, Sequence
from uuid import UUID

import structlog
from sqlalchemy import case, distinct, func, select, union
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...shared.exceptions.base import MetricSourceUnavailableError
from .models import (
    Answer,
    Block,
    GameSession,
    GameSessionBlock,
    GameSessionPlayer,
    GameSessionStatus,
    Question,
    TeacherStudent,
)
from .read_model import (
    ActivityReadModel,
    AnswerStats,
    DailyActivity,
    SessionOutcome,
    UnitAttempts,
)

logger = structlog.get_logger()


def _metric_query(func_):
    """Re-raise store failures as a transient metric error."""

    @functools.wraps(func_)
    def wrapper(self, *args, **kwargs):
        try:
            return func_(self, *args, **kwargs)
        except SQLAlchemyError as e:
            logger.warning("Activity query failed", query=func_.__name__, error=str(e))
            raise MetricSourceUnavailableError(
                f"Activity source unavailable during {func_.__name__}: {e}",
                context={"query": func_.__name__},
            ) from e

    return wrapper


class SqlActivityReadModel(ActivityReadModel):
    """Activity queries over the relational store of record."""

    def __init__(self, session: Session):
        self.session = session

    @_metric_query
    def answered_count(
        self,
        user_id: UUID,
        scope_id: Optional[UUID],
        since: datetime,
        topics: Optional[Sequence[str]] = None,
    ) -> AnswerStats:
        correct_case = func.sum(case((Answer.is_correct.is_(True), 1), else_=0))
        stmt = (
            select(
                func.count(Answer.id),
                func.coalesce(correct_case, 0),
                func.count(distinct(Question.topic)),
            )
            .select_from(Answer)
            .join(Question, Answer.question_id == Question.id)
            .where(Answer.user_id == user_id, Answer.answered_at >= since)
        )
        if scope_id is not None:
            stmt = stmt.where(Question.block_id == scope_id)
        if topics:
            stmt = stmt.where(Question.topic.in_(list(topics)))

        total, correct, topics_covered = self.session.execute(stmt).one()
        return AnswerStats(total=int(total), correct=int(correct), topics_covered=int(topics_covered))

    @_metric_query
    def unit_attempts(self, user_id: UUID, unit_id: UUID, since: datetime) -> UnitAttempts:
        stmt = (
            select(
                func.count(GameSession.id),
                func.coalesce(func.max(GameSessionPlayer.score), 0),
            )
            .select_from(GameSession)
            .join(GameSessionPlayer, GameSessionPlayer.session_id == GameSession.id)
            .join(GameSessionBlock, GameSessionBlock.session_id == GameSession.id)
            .where(
                GameSessionPlayer.user_id == user_id,
                GameSessionBlock.block_id == unit_id,
                GameSession.status == GameSessionStatus.COMPLETED,
                GameSession.started_at >= since,
            )
        )
        attempts, best_score = self.session.execute(stmt).one()
        return UnitAttempts(attempts=int(attempts), best_score=int(best_score))

    @_metric_query
    def consolidation(
        self,
        user_id: UUID,
        scope_id: UUID,
        since: Optional[datetime] = None,
    ) -> float:
        total_questions = self.session.execute(
            select(func.count(Question.id)).where(Question.block_id == scope_id)
        ).scalar_one()
        if not total_questions:
            return 0.0

        correct_stmt = (
            select(func.count(distinct(Answer.question_id)))
            .join(Question, Answer.question_id == Question.id)
            .where(
                Answer.user_id == user_id,
                Question.block_id == scope_id,
                Answer.is_correct.is_(True),
            )
        )
        if since is not None:
            correct_stmt = correct_stmt.where(Answer.answered_at >= since)

        correct = self.session.execute(correct_stmt).scalar_one()
        return round(correct / total_questions * 100, 2)

    @_metric_query
    def answered_scopes(self, user_id: UUID) -> List[UUID]:
        stmt = (
            select(distinct(Question.block_id))
            .join(Answer, Answer.question_id == Question.id)
            .where(Answer.user_id == user_id)
        )
        return sorted(self.session.execute(stmt).scalars(), key=str)

    @_metric_query
    def daily_activity(self, user_id: UUID, since: datetime) -> List[DailyActivity]:
        sessions = self.session.execute(
            select(GameSession.started_at, GameSession.ended_at)
            .join(GameSessionPlayer, GameSessionPlayer.session_id == GameSession.id)
            .where(
                GameSessionPlayer.user_id == user_id,
                GameSession.status == GameSessionStatus.COMPLETED,
                GameSession.started_at >= since,
            )
            .order_by(GameSession.started_at)
        ).all()
        if not sessions:
            return []

        answer_times = list(
            self.session.execute(
                select(Answer.answered_at)
                .where(Answer.user_id == user_id, Answer.answered_at >= since)
                .order_by(Answer.answered_at)
            ).scalars()
        )

        days = {}
        for started_at, ended_at in sessions:
            bucket = days.setdefault(started_at.date(), {"sessions": 0, "minutes": 0.0, "questions": 0})
            bucket["sessions"] += 1
            if ended_at is not None:
                bucket["minutes"] += (ended_at - started_at).total_seconds() / 60
                # Answers given while the session was running
                bucket["questions"] += (
                    bisect_right(answer_times, ended_at) - bisect_left(answer_times, started_at)
                )

        return [
            DailyActivity(
                day=day,
                sessions=bucket["sessions"],
                minutes=round(bucket["minutes"], 2),
                questions=bucket["questions"],
            )
            for day, bucket in days.items()
        ]

    @_metric_query
    def session_outcomes(
        self,
        user_id: UUID,
        modes: Sequence[str],
        since: datetime,
    ) -> List[SessionOutcome]:
        stats = (
            select(
                GameSessionPlayer.session_id.label("session_id"),
                func.count().label("players"),
                func.max(GameSessionPlayer.score).label("max_score"),
            )
            .group_by(GameSessionPlayer.session_id)
            .subquery()
        )
        stmt = (
            select(
                GameSession.id,
                GameSession.mode,
                GameSession.started_at,
                GameSessionPlayer.score,
                stats.c.max_score,
                GameSessionPlayer.correct_answers,
                GameSessionPlayer.total_questions,
            )
            .select_from(GameSession)
            .join(GameSessionPlayer, GameSessionPlayer.session_id == GameSession.id)
            .join(stats, stats.c.session_id == GameSession.id)
            .where(
                GameSessionPlayer.user_id == user_id,
                GameSession.status == GameSessionStatus.COMPLETED,
                GameSession.mode.in_(list(modes)),
                GameSession.started_at >= since,
                stats.c.players > 1,
            )
            .order_by(GameSession.started_at)
        )

        return [
            SessionOutcome(
                session_id=row[0],
                mode=row[1],
                played_at=row[2],
                score=row[3],
                max_score=row[4],
                correct_answers=row[5],
                total_questions=row[6],
            )
            for row in self.session.execute(stmt).all()
        ]

    def _block_players_stmt(self, owner_id: UUID, window_days: int, now: datetime):
        """Distinct players of completed sessions on the owner's blocks in the window."""
        window_start = now - timedelta(days=window_days)
        return (
            select(distinct(GameSessionPlayer.user_id))
            .join(GameSession, GameSession.id == GameSessionPlayer.session_id)
            .join(GameSessionBlock, GameSessionBlock.session_id == GameSession.id)
            .join(Block, Block.id == GameSessionBlock.block_id)
            .where(
                Block.creator_id == owner_id,
                GameSession.status == GameSessionStatus.COMPLETED,
                GameSession.started_at >= window_start,
                GameSession.started_at <= now,
            )
        )

    def _active_student_ids(self, teacher_id: UUID, window_days: int, now: datetime) -> List[UUID]:
        stmt = self._block_players_stmt(teacher_id, window_days, now).where(
            GameSessionPlayer.user_id != teacher_id
        )
        enrolled = select(TeacherStudent.student_id).where(TeacherStudent.teacher_id == teacher_id)
        has_enrolments = self.session.execute(enrolled.limit(1)).first() is not None
        if has_enrolments:
            stmt = stmt.where(GameSessionPlayer.user_id.in_(enrolled))
        return list(self.session.execute(stmt).scalars())

    @_metric_query
    def active_user_count(self, creator_id: UUID, window_days: int, now: datetime) -> int:
        players = self._block_players_stmt(creator_id, window_days, now).subquery()
        return int(self.session.execute(select(func.count()).select_from(players)).scalar_one())

    @_metric_query
    def active_student_count(self, teacher_id: UUID, window_days: int, now: datetime) -> int:
        return len(self._active_student_ids(teacher_id, window_days, now))

    @_metric_query
    def student_average_consolidation(
        self,
        teacher_id: UUID,
        window_days: int,
        now: datetime,
    ) -> float:
        students = self._active_student_ids(teacher_id, window_days, now)
        if not students:
            return 0.0

        block_ids = list(
            self.session.execute(select(Block.id).where(Block.creator_id == teacher_id)).scalars()
        )
        values = []
        for student_id in students:
            answered_blocks = list(self.session.execute(
                select(distinct(Question.block_id))
                .join(Answer, Answer.question_id == Question.id)
                .where(Answer.user_id == student_id, Question.block_id.in_(block_ids))
            ).scalars())
            values.extend(self.consolidation(student_id, block_id) for block_id in answered_blocks)

        if not values:
            return 0.0
        return round(sum(values) / len(values), 2)

    @_metric_query
    def recently_active_users(
        self,
        now: datetime,
        answer_hours: int,
        creator_days: int,
    ) -> List[UUID]:
        answer_start = now - timedelta(hours=answer_hours)
        session_start = now - timedelta(days=creator_days)

        answering = select(Answer.user_id).where(
            Answer.answered_at >= answer_start, Answer.answered_at <= now
        )
        creators = (
            select(Block.creator_id)
            .join(GameSessionBlock, GameSessionBlock.block_id == Block.id)
            .join(GameSession, GameSession.id == GameSessionBlock.session_id)
            .where(
                GameSession.status == GameSessionStatus.COMPLETED,
                GameSession.started_at >= session_start,
                GameSession.started_at <= now,
            )
        )
        teachers = (
            select(TeacherStudent.teacher_id)
            .join(Answer, Answer.user_id == TeacherStudent.student_id)
            .where(Answer.answered_at >= session_start, Answer.answered_at <= now)
        )

        combined = union(answering, creators, teachers).subquery()
        rows = self.session.execute(select(combined.c[0])).scalars()
        return sorted(set(rows), key=str)
