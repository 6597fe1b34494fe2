"""Read-only activity queries used by validators and the level calculator."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional, Sequence
from uuid import UUID


@dataclass(frozen=True)
class AnswerStats:
    """Answer counters for a user, optionally scoped to a block."""
    total: int
    correct: int
    topics_covered: int = 0

    @property
    def accuracy_percentage(self) -> float:
        if self.total == 0:
            return 0.0
        return self.correct / self.total * 100


@dataclass(frozen=True)
class UnitAttempts:
    """Completed sessions touching one unit (block) and the best score among them."""
    attempts: int
    best_score: int


@dataclass(frozen=True)
class DailyActivity:
    day: date
    sessions: int
    minutes: float
    questions: int


@dataclass(frozen=True)
class SessionOutcome:
    """A completed multi-player session as seen by one player."""
    session_id: UUID
    mode: str
    played_at: datetime
    score: int
    max_score: int
    correct_answers: int
    total_questions: int

    @property
    def is_win(self) -> bool:
        # Ties share the win
        return self.score == self.max_score


class ActivityReadModel(ABC):
    """
    Pure queries over activity facts.

    Implementations raise MetricSourceUnavailableError when the underlying
    store cannot be read; they never write.
    """

    @abstractmethod
    def answered_count(
        self,
        user_id: UUID,
        scope_id: Optional[UUID],
        since: datetime,
        topics: Optional[Sequence[str]] = None,
    ) -> AnswerStats:
        """Answers given since ``since``, in one block or all blocks when scope is None."""
        pass

    @abstractmethod
    def unit_attempts(self, user_id: UUID, unit_id: UUID, since: datetime) -> UnitAttempts:
        pass

    @abstractmethod
    def consolidation(
        self,
        user_id: UUID,
        scope_id: UUID,
        since: Optional[datetime] = None,
    ) -> float:
        """Percentage of the block's questions the user has answered correctly."""
        pass

    @abstractmethod
    def answered_scopes(self, user_id: UUID) -> List[UUID]:
        """Blocks the user has answered at least one question in."""
        pass

    @abstractmethod
    def daily_activity(self, user_id: UUID, since: datetime) -> List[DailyActivity]:
        """Per-day session counts, minutes and answers, ordered by day."""
        pass

    @abstractmethod
    def session_outcomes(
        self,
        user_id: UUID,
        modes: Sequence[str],
        since: datetime,
    ) -> List[SessionOutcome]:
        pass

    @abstractmethod
    def active_user_count(self, creator_id: UUID, window_days: int, now: datetime) -> int:
        """Distinct players of the creator's blocks in the trailing window."""
        pass

    @abstractmethod
    def active_student_count(self, teacher_id: UUID, window_days: int, now: datetime) -> int:
        pass

    @abstractmethod
    def student_average_consolidation(
        self,
        teacher_id: UUID,
        window_days: int,
        now: datetime,
    ) -> float:
        pass

    @abstractmethod
    def recently_active_users(
        self,
        now: datetime,
        answer_hours: int,
        creator_days: int,
    ) -> List[UUID]:
        """Users with recent answers, plus creators and teachers with recent sessions."""
        pass
