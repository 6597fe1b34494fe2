"""
Typed challenge configurations.

Each challenge type has exactly one configuration model; the stored JSON is
parsed into the matching model before a challenge may leave draft, and again
whenever a validator runs. Malformed configuration raises
ChallengeConfigurationError.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from ...shared.exceptions.base import ChallengeConfigurationError


class ChallengeType:
    """Challenge type values."""
    MARATHON = "marathon"
    LEVEL = "level"
    STREAK = "streak"
    COMPETITION = "competition"
    CONSOLIDATION = "consolidation"
    TEMPORAL = "temporal"

    ALL = (MARATHON, LEVEL, STREAK, COMPETITION, CONSOLIDATION, TEMPORAL)


DEFAULT_GAME_MODES = ["duel", "trivia"]

DEFAULT_TIER_MAPPING = {
    "beginner": 1,
    "intermediate": 2,
    "advanced": 3,
    "expert": 4,
    "master": 5,
}


class _Config(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class MarathonConfig(_Config):
    type: Literal["marathon"] = "marathon"
    required_units: List[UUID] = Field(..., min_length=1)
    min_score: float = Field(70, ge=0)
    max_attempts_per_unit: Optional[int] = Field(None, ge=1, description="None means unlimited")
    must_complete_all: bool = True

    @field_validator("required_units")
    @classmethod
    def validate_unique_units(cls, v: List[UUID]) -> List[UUID]:
        if len(set(v)) != len(v):
            raise ValueError("required_units must not contain duplicates")
        return v


class LevelConfig(_Config):
    type: Literal["level"] = "level"
    targets: Dict[UUID, str] = Field(..., min_length=1, description="scope id -> target tier name")
    tier_mapping: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_TIER_MAPPING))
    min_consolidation: float = Field(75, ge=0, le=100)

    @model_validator(mode="after")
    def validate_targets_are_mapped(self) -> "LevelConfig":
        unknown = sorted(set(self.targets.values()) - set(self.tier_mapping))
        if unknown:
            raise ValueError(f"target tiers not in tier_mapping: {unknown}")
        if any(ordinal < 1 for ordinal in self.tier_mapping.values()):
            raise ValueError("tier_mapping ordinals must be positive")
        return self

    def target_ordinal(self, scope_id: UUID) -> int:
        return self.tier_mapping[self.targets[scope_id]]


class StreakConfig(_Config):
    type: Literal["streak"] = "streak"
    required_days: int = Field(..., ge=1)
    min_daily_sessions: int = Field(1, ge=0)
    min_daily_minutes: float = Field(15, ge=0)
    min_daily_questions: int = Field(10, ge=0)
    allowed_breaks: Optional[int] = Field(None, ge=0, description="None uses the engine default")


class CompetitionConfig(_Config):
    type: Literal["competition"] = "competition"
    required_wins: int = Field(..., ge=1)
    game_modes: List[str] = Field(default_factory=lambda: list(DEFAULT_GAME_MODES), min_length=1)
    min_win_rate: float = Field(0.6, ge=0, le=1)
    min_accuracy: float = Field(0.7, ge=0, le=1)


class ConsolidationConfig(_Config):
    type: Literal["consolidation"] = "consolidation"
    scope_id: Optional[UUID] = Field(None, description="Block to measure; None means every block")
    target_percentage: float = Field(..., gt=0, le=100)
    topics: List[str] = Field(default_factory=list)


# Temporal objectives


class _Objective(_Config):
    id: str = Field(..., min_length=1)


class UnitsCompletedObjective(_Objective):
    kind: Literal["units_completed"]
    target_units: List[UUID] = Field(..., min_length=1)
    min_score: float = Field(70, ge=0)

    def as_config(self) -> MarathonConfig:
        return MarathonConfig(
            required_units=self.target_units,
            min_score=self.min_score,
            must_complete_all=False,
        )


class GamesWonObjective(_Objective):
    kind: Literal["games_won"]
    target_wins: int = Field(..., ge=1)
    game_modes: List[str] = Field(default_factory=lambda: list(DEFAULT_GAME_MODES), min_length=1)

    def as_config(self) -> CompetitionConfig:
        return CompetitionConfig(
            required_wins=self.target_wins,
            game_modes=self.game_modes,
            min_win_rate=0,
            min_accuracy=0,
        )


class StreakMaintainedObjective(_Objective):
    kind: Literal["streak_maintained"]
    target_days: int = Field(..., ge=1)
    min_sessions: int = Field(1, ge=0)
    min_minutes: float = Field(15, ge=0)
    min_questions: int = Field(10, ge=0)
    allowed_breaks: Optional[int] = Field(None, ge=0)

    def as_config(self) -> StreakConfig:
        return StreakConfig(
            required_days=self.target_days,
            min_daily_sessions=self.min_sessions,
            min_daily_minutes=self.min_minutes,
            min_daily_questions=self.min_questions,
            allowed_breaks=self.allowed_breaks,
        )


class ConsolidationReachedObjective(_Objective):
    kind: Literal["consolidation_reached"]
    scope_id: Optional[UUID] = None
    target_percentage: float = Field(..., gt=0, le=100)
    topics: List[str] = Field(default_factory=list)

    def as_config(self) -> ConsolidationConfig:
        return ConsolidationConfig(
            scope_id=self.scope_id,
            target_percentage=self.target_percentage,
            topics=self.topics,
        )


class LevelReachedObjective(_Objective):
    kind: Literal["level_reached"]
    targets: Dict[UUID, str] = Field(..., min_length=1)
    tier_mapping: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_TIER_MAPPING))
    min_consolidation: float = Field(75, ge=0, le=100)

    def as_config(self) -> LevelConfig:
        return LevelConfig(
            targets=self.targets,
            tier_mapping=self.tier_mapping,
            min_consolidation=self.min_consolidation,
        )


Objective = Annotated[
    Union[
        UnitsCompletedObjective,
        GamesWonObjective,
        StreakMaintainedObjective,
        ConsolidationReachedObjective,
        LevelReachedObjective,
    ],
    Field(discriminator="kind"),
]


class TemporalConfig(_Config):
    type: Literal["temporal"] = "temporal"
    objectives: List[Objective] = Field(..., min_length=1)
    weights: Dict[str, float] = Field(default_factory=dict, description="objective id -> weight, default 1")

    @model_validator(mode="after")
    def validate_objectives(self) -> "TemporalConfig":
        ids = [objective.id for objective in self.objectives]
        if len(set(ids)) != len(ids):
            raise ValueError("objective ids must be unique")
        unknown = sorted(set(self.weights) - set(ids))
        if unknown:
            raise ValueError(f"weights reference unknown objectives: {unknown}")
        if any(weight <= 0 for weight in self.weights.values()):
            raise ValueError("weights must be positive")
        return self

    def weight_of(self, objective_id: str) -> float:
        return self.weights.get(objective_id, 1.0)


ChallengeConfig = Annotated[
    Union[
        MarathonConfig,
        LevelConfig,
        StreakConfig,
        CompetitionConfig,
        ConsolidationConfig,
        TemporalConfig,
    ],
    Field(discriminator="type"),
]

_config_adapter = TypeAdapter(ChallengeConfig)


def parse_challenge_config(challenge_type: str, raw: Any) -> ChallengeConfig:
    """Parse stored JSON into the typed configuration for ``challenge_type``."""
    if challenge_type not in ChallengeType.ALL:
        raise ChallengeConfigurationError(
            f"Unknown challenge type: {challenge_type}", challenge_type=challenge_type
        )
    if isinstance(raw, BaseModel):
        raw = raw.model_dump(mode="json")
    if not isinstance(raw, dict):
        raise ChallengeConfigurationError(
            "Challenge configuration must be an object", challenge_type=challenge_type
        )

    declared = raw.get("type", challenge_type)
    if declared != challenge_type:
        raise ChallengeConfigurationError(
            f"Configuration type '{declared}' does not match challenge type '{challenge_type}'",
            challenge_type=challenge_type,
        )

    try:
        return _config_adapter.validate_python({**raw, "type": challenge_type})
    except ValidationError as e:
        raise ChallengeConfigurationError(
            f"Invalid {challenge_type} configuration: {e.error_count()} error(s)",
            challenge_type=challenge_type,
            context={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
        ) from e


def dump_challenge_config(config: ChallengeConfig) -> Dict[str, Any]:
    """JSON-safe form stored on the challenge row."""
    return config.model_dump(mode="json")
