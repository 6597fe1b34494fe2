"""
Challenge Validators - Pure Business Logic

One validation method per challenge type. Validators only read activity
through the injected read model and never write. "Not yet complete" is a
normal result; they raise only for malformed configuration or when the
activity source is unavailable.
"""

from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, Optional, Tuple

import structlog

from ...shared.exceptions.base import ChallengeConfigurationError
from ..activity.read_model import ActivityReadModel, DailyActivity
from ..levels.ladder import ordinal_for_consolidation
from .configs import (
    ChallengeConfig,
    CompetitionConfig,
    ConsolidationConfig,
    LevelConfig,
    MarathonConfig,
    StreakConfig,
    TemporalConfig,
    parse_challenge_config,
)
from .progress import (
    CompetitionProgress,
    ConsolidationProgress,
    LevelProgress,
    LevelTargetProgress,
    MarathonProgress,
    ObjectiveProgress,
    ProgressRecord,
    StreakProgress,
    TemporalProgress,
    UnitProgress,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of one validation pass for a participant."""
    is_completed: bool
    progress: ProgressRecord

    @property
    def progress_percentage(self) -> float:
        return self.progress.progress_percentage


def _percentage(part: float, whole: float) -> float:
    if whole <= 0:
        return 0.0
    return round(min(part / whole * 100, 100.0), 2)


def compute_streak(
    counted_days: Iterable[date],
    allowed_breaks: int,
) -> Tuple[int, int, int]:
    """
    Walk counted days in order and return (current, max, breaks_used).

    A gap of exactly one missed day is bridged while budget remains; the
    missed day itself never adds to the streak. Larger gaps, or a gap once
    the budget is spent, restart the streak at 1.
    """
    current = 0
    longest = 0
    breaks_used = 0
    last_day: Optional[date] = None

    for day in sorted(set(counted_days)):
        if last_day is None:
            current = 1
        else:
            gap = (day - last_day).days
            if gap == 1:
                current += 1
            elif gap == 2 and breaks_used < allowed_breaks:
                breaks_used += 1
                current += 1
            else:
                current = 1
        last_day = day
        longest = max(longest, current)

    return current, longest, breaks_used


class ChallengeValidator:
    """Validates participant progress against a challenge configuration."""

    def __init__(self, read_model: ActivityReadModel, default_allowed_breaks: int = 1):
        self.read_model = read_model
        self.default_allowed_breaks = default_allowed_breaks

    def validate(self, participant: Any, config: Any, challenge_type: Optional[str] = None) -> ValidationResult:
        """
        Dispatch to the validator for the configuration's type.

        ``config`` may be a parsed configuration model or the raw JSON stored on
        the challenge, in which case ``challenge_type`` is required.
        """
        if not hasattr(config, "type"):
            if challenge_type is None:
                raise ChallengeConfigurationError("Raw configuration requires a challenge type")
            config = parse_challenge_config(challenge_type, config)

        handlers = {
            "marathon": self.validate_marathon,
            "level": self.validate_level,
            "streak": self.validate_streak,
            "competition": self.validate_competition,
            "consolidation": self.validate_consolidation,
            "temporal": self.validate_temporal,
        }
        handler = handlers.get(config.type)
        if handler is None:
            raise ChallengeConfigurationError(
                f"No validator for challenge type '{config.type}'", challenge_type=config.type
            )

        result = handler(participant, config)

        logger.debug(
            "Participant validated",
            participant_id=str(getattr(participant, "id", None)),
            challenge_type=config.type,
            is_completed=result.is_completed,
            progress_percentage=result.progress_percentage,
        )
        return result

    def validate_marathon(self, participant: Any, config: MarathonConfig) -> ValidationResult:
        units: Dict[str, UnitProgress] = {}
        passed = 0
        score_total = 0

        for unit_id in config.required_units:
            attempts = self.read_model.unit_attempts(participant.user_id, unit_id, participant.joined_at)
            within_cap = (
                config.max_attempts_per_unit is None or attempts.attempts <= config.max_attempts_per_unit
            )
            unit_passed = attempts.attempts > 0 and attempts.best_score >= config.min_score and within_cap
            if unit_passed:
                passed += 1
            # An unattempted unit contributes a best score of 0
            score_total += attempts.best_score
            units[str(unit_id)] = UnitProgress(
                attempts=attempts.attempts,
                best_score=attempts.best_score,
                passed=unit_passed,
            )

        total = len(config.required_units)
        average_score = round(score_total / total, 2)

        if config.must_complete_all:
            is_completed = passed == total
        else:
            is_completed = passed > 0 and average_score >= config.min_score

        progress = MarathonProgress(
            units=units,
            passed_units=passed,
            total_units=total,
            average_score=average_score,
            progress_percentage=_percentage(passed, total),
        )
        return ValidationResult(is_completed=is_completed, progress=progress)

    def validate_level(self, participant: Any, config: LevelConfig) -> ValidationResult:
        targets: Dict[str, LevelTargetProgress] = {}
        achieved = 0

        for scope_id in config.targets:
            consolidation = self.read_model.consolidation(
                participant.user_id, scope_id, participant.joined_at
            )
            current_ordinal = ordinal_for_consolidation(consolidation)
            target_ordinal = config.target_ordinal(scope_id)
            target_achieved = (
                current_ordinal >= target_ordinal and consolidation >= config.min_consolidation
            )
            if target_achieved:
                achieved += 1
            targets[str(scope_id)] = LevelTargetProgress(
                consolidation=consolidation,
                current_ordinal=current_ordinal,
                target_ordinal=target_ordinal,
                achieved=target_achieved,
            )

        total = len(config.targets)
        progress = LevelProgress(
            targets=targets,
            achieved_targets=achieved,
            total_targets=total,
            progress_percentage=_percentage(achieved, total),
        )
        return ValidationResult(is_completed=achieved == total, progress=progress)

    def _day_counts(self, day: DailyActivity, config: StreakConfig) -> bool:
        return (
            day.sessions >= config.min_daily_sessions
            and day.minutes >= config.min_daily_minutes
            and day.questions >= config.min_daily_questions
        )

    def validate_streak(self, participant: Any, config: StreakConfig) -> ValidationResult:
        allowed_breaks = (
            config.allowed_breaks if config.allowed_breaks is not None else self.default_allowed_breaks
        )
        activity = self.read_model.daily_activity(participant.user_id, participant.joined_at)
        counted = [day.day for day in activity if self._day_counts(day, config)]

        current, longest, breaks_used = compute_streak(counted, allowed_breaks)

        progress = StreakProgress(
            current_streak=current,
            max_streak=longest,
            required_days=config.required_days,
            counted_days=len(counted),
            breaks_used=breaks_used,
            allowed_breaks=allowed_breaks,
            progress_percentage=_percentage(longest, config.required_days),
        )
        return ValidationResult(is_completed=longest >= config.required_days, progress=progress)

    def validate_competition(self, participant: Any, config: CompetitionConfig) -> ValidationResult:
        outcomes = self.read_model.session_outcomes(
            participant.user_id, config.game_modes, participant.joined_at
        )
        games = len(outcomes)
        wins = sum(1 for outcome in outcomes if outcome.is_win)
        correct = sum(outcome.correct_answers for outcome in outcomes)
        answered = sum(outcome.total_questions for outcome in outcomes)

        win_rate = wins / games if games else 0.0
        accuracy = correct / answered if answered else 0.0
        is_completed = (
            wins >= config.required_wins
            and win_rate >= config.min_win_rate
            and accuracy >= config.min_accuracy
        )

        progress = CompetitionProgress(
            games_played=games,
            wins=wins,
            required_wins=config.required_wins,
            win_rate=round(win_rate, 4),
            accuracy=round(accuracy, 4),
            progress_percentage=_percentage(wins, config.required_wins),
        )
        return ValidationResult(is_completed=is_completed, progress=progress)

    def validate_consolidation(self, participant: Any, config: ConsolidationConfig) -> ValidationResult:
        stats = self.read_model.answered_count(
            participant.user_id,
            config.scope_id,
            participant.joined_at,
            topics=config.topics or None,
        )
        current = round(stats.accuracy_percentage, 2)

        progress = ConsolidationProgress(
            total_answers=stats.total,
            correct_answers=stats.correct,
            current_percentage=current,
            target_percentage=config.target_percentage,
            topics_covered=stats.topics_covered,
            progress_percentage=_percentage(current, config.target_percentage),
        )
        return ValidationResult(is_completed=current >= config.target_percentage, progress=progress)

    def validate_temporal(self, participant: Any, config: TemporalConfig) -> ValidationResult:
        objectives: Dict[str, ObjectiveProgress] = {}
        weighted_total = 0.0
        total_weight = 0.0

        for objective in config.objectives:
            weight = config.weight_of(objective.id)
            sub_result = self.validate(participant, objective.as_config())
            percentage = min(sub_result.progress_percentage, 100.0)

            objectives[objective.id] = ObjectiveProgress(
                kind=objective.kind,
                weight=weight,
                progress_percentage=percentage,
                completed=percentage >= 100,
                detail=sub_result.progress.to_snapshot(),
            )
            weighted_total += percentage * weight
            total_weight += weight

        average = round(weighted_total / total_weight, 2) if total_weight else 0.0
        progress = TemporalProgress(
            objectives=objectives,
            average_progress=average,
            progress_percentage=min(average, 100.0),
        )
        return ValidationResult(is_completed=average >= 100, progress=progress)
