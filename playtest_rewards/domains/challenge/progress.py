"""
Typed progress records produced by the challenge validators.

Every record carries ``progress_percentage`` plus the raw counters it was
computed from. Records contain no timestamps, so validating twice without new
activity yields identical snapshots.
"""

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict


class ProgressRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    progress_percentage: float

    def to_snapshot(self) -> Dict[str, Any]:
        """JSON-safe snapshot stored on the participant row."""
        return self.model_dump(mode="json")


class UnitProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    attempts: int
    best_score: int
    passed: bool


class MarathonProgress(ProgressRecord):
    type: Literal["marathon"] = "marathon"
    units: Dict[str, UnitProgress]
    passed_units: int
    total_units: int
    average_score: float


class LevelTargetProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    consolidation: float
    current_ordinal: int
    target_ordinal: int
    achieved: bool


class LevelProgress(ProgressRecord):
    type: Literal["level"] = "level"
    targets: Dict[str, LevelTargetProgress]
    achieved_targets: int
    total_targets: int


class StreakProgress(ProgressRecord):
    type: Literal["streak"] = "streak"
    current_streak: int
    max_streak: int
    required_days: int
    counted_days: int
    breaks_used: int
    allowed_breaks: int


class CompetitionProgress(ProgressRecord):
    type: Literal["competition"] = "competition"
    games_played: int
    wins: int
    required_wins: int
    win_rate: float
    accuracy: float


class ConsolidationProgress(ProgressRecord):
    type: Literal["consolidation"] = "consolidation"
    total_answers: int
    correct_answers: int
    current_percentage: float
    target_percentage: float
    topics_covered: int


class ObjectiveProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    weight: float
    progress_percentage: float
    completed: bool
    detail: Optional[Dict[str, Any]] = None


class TemporalProgress(ProgressRecord):
    type: Literal["temporal"] = "temporal"
    objectives: Dict[str, ObjectiveProgress]
    average_progress: float
