"""
Unit tests for the challenge validators.

The activity read model is a Mock so each scenario controls exactly what the
validator sees.
"""

from datetime import date, datetime, timedelta
from unittest.mock import Mock
from uuid import uuid4

import pytest

from playtest_rewards.domains.activity.read_model import (
    ActivityReadModel,
    AnswerStats,
    DailyActivity,
    SessionOutcome,
    UnitAttempts,
)
from playtest_rewards.domains.challenge.configs import parse_challenge_config
from playtest_rewards.domains.challenge.validators import ChallengeValidator, compute_streak
from playtest_rewards.shared.exceptions.base import (
    ChallengeConfigurationError,
    MetricSourceUnavailableError,
)


JOINED_AT = datetime(2024, 3, 1, 9, 0, 0)


@pytest.fixture
def read_model():
    return Mock(spec=ActivityReadModel)


@pytest.fixture
def validator(read_model):
    return ChallengeValidator(read_model, default_allowed_breaks=1)


@pytest.fixture
def participant():
    return Mock(id=uuid4(), user_id=uuid4(), joined_at=JOINED_AT)


def _day(offset, sessions=1, minutes=20, questions=12):
    return DailyActivity(
        day=date(2024, 3, 1) + timedelta(days=offset),
        sessions=sessions,
        minutes=minutes,
        questions=questions,
    )


def _outcome(score, max_score, correct=8, total=10):
    return SessionOutcome(
        session_id=uuid4(),
        mode="duel",
        played_at=JOINED_AT,
        score=score,
        max_score=max_score,
        correct_answers=correct,
        total_questions=total,
    )


class TestMarathonValidation:
    """Marathon: pass required units with a minimum score."""

    def test_must_complete_all_with_one_unit_passed(self, validator, read_model, participant):
        """WHEN must_complete_all and only one of two units is passed
        THEN not completed and progress is 50%
        """
        unit_a, unit_b = uuid4(), uuid4()
        read_model.unit_attempts.side_effect = lambda user, unit, since: (
            UnitAttempts(attempts=2, best_score=85) if unit == unit_a else UnitAttempts(attempts=0, best_score=0)
        )
        config = parse_challenge_config("marathon", {"required_units": [str(unit_a), str(unit_b)], "min_score": 70})

        result = validator.validate(participant, config)

        assert result.is_completed is False
        assert result.progress_percentage == 50.0
        assert result.progress.passed_units == 1
        assert result.progress.units[str(unit_b)].passed is False

    def test_all_units_passed_completes(self, validator, read_model, participant):
        """WHEN every required unit has a best score above the minimum
        THEN the marathon is completed at 100%
        """
        read_model.unit_attempts.return_value = UnitAttempts(attempts=1, best_score=90)
        config = parse_challenge_config("marathon", {"required_units": [str(uuid4()), str(uuid4())]})

        result = validator.validate(participant, config)

        assert result.is_completed is True
        assert result.progress_percentage == 100.0

    def test_attempt_cap_exceeded_fails_unit(self, validator, read_model, participant):
        """WHEN a unit was passed but with more attempts than allowed
        THEN the unit does not count as passed
        """
        read_model.unit_attempts.return_value = UnitAttempts(attempts=4, best_score=95)
        config = parse_challenge_config(
            "marathon", {"required_units": [str(uuid4())], "max_attempts_per_unit": 3}
        )

        result = validator.validate(participant, config)

        assert result.is_completed is False
        assert result.progress.passed_units == 0

    def test_any_mode_uses_average_score(self, validator, read_model, participant):
        """WHEN must_complete_all is false
        THEN completion requires one passed unit and an average at the minimum
        """
        unit_a, unit_b = uuid4(), uuid4()
        read_model.unit_attempts.side_effect = lambda user, unit, since: (
            UnitAttempts(attempts=1, best_score=100) if unit == unit_a else UnitAttempts(attempts=1, best_score=40)
        )
        config = parse_challenge_config(
            "marathon",
            {"required_units": [str(unit_a), str(unit_b)], "min_score": 70, "must_complete_all": False},
        )

        result = validator.validate(participant, config)

        assert result.progress.average_score == 70.0
        assert result.is_completed is True

    def test_metrics_read_since_joining(self, validator, read_model, participant):
        """WHEN validating
        THEN activity is read from the participant's join time
        """
        unit = uuid4()
        read_model.unit_attempts.return_value = UnitAttempts(attempts=0, best_score=0)
        config = parse_challenge_config("marathon", {"required_units": [str(unit)]})

        validator.validate(participant, config)

        read_model.unit_attempts.assert_called_once_with(participant.user_id, unit, JOINED_AT)


class TestLevelValidation:
    """Level: reach a target tier ordinal per block."""

    def test_target_reached(self, validator, read_model, participant):
        """WHEN consolidation 88 (ordinal 4) meets an 'expert' target
        THEN the target is achieved
        """
        scope = uuid4()
        read_model.consolidation.return_value = 88.0
        config = parse_challenge_config("level", {"targets": {str(scope): "expert"}})

        result = validator.validate(participant, config)

        assert result.is_completed is True
        assert result.progress.targets[str(scope)].current_ordinal == 4

    def test_partial_targets(self, validator, read_model, participant):
        """WHEN one of two targets is below its ordinal
        THEN progress is 50% and not completed
        """
        low, high = uuid4(), uuid4()
        read_model.consolidation.side_effect = lambda user, scope, since: 96.0 if scope == high else 62.0
        config = parse_challenge_config(
            "level", {"targets": {str(low): "advanced", str(high): "master"}}
        )

        result = validator.validate(participant, config)

        assert result.is_completed is False
        assert result.progress_percentage == 50.0

    def test_min_consolidation_also_required(self, validator, read_model, participant):
        """WHEN the ordinal is met but consolidation is under min_consolidation
        THEN the target is not achieved
        """
        read_model.consolidation.return_value = 65.0
        config = parse_challenge_config(
            "level", {"targets": {str(uuid4()): "intermediate"}, "min_consolidation": 75}
        )

        result = validator.validate(participant, config)

        assert result.is_completed is False


class TestStreakValidation:
    """Streak: consecutive qualifying days with a grace-break budget."""

    def test_one_missed_day_bridged_with_budget_one(self, validator, read_model, participant):
        """WHEN days 1, 2 and 4 qualify and one break is allowed
        THEN the streak is 3
        """
        read_model.daily_activity.return_value = [_day(0), _day(1), _day(3)]
        config = parse_challenge_config("streak", {"required_days": 3, "allowed_breaks": 1})

        result = validator.validate(participant, config)

        assert result.progress.max_streak == 3
        assert result.progress.breaks_used == 1
        assert result.is_completed is True

    def test_missed_day_breaks_streak_without_budget(self, validator, read_model, participant):
        """WHEN days 1, 2 and 4 qualify and no breaks are allowed
        THEN the longest streak is 2
        """
        read_model.daily_activity.return_value = [_day(0), _day(1), _day(3)]
        config = parse_challenge_config("streak", {"required_days": 3, "allowed_breaks": 0})

        result = validator.validate(participant, config)

        assert result.progress.max_streak == 2
        assert result.is_completed is False
        assert result.progress_percentage == pytest.approx(66.67)

    def test_engine_default_budget_used_when_unset(self, validator, read_model, participant):
        """WHEN the configuration does not set allowed_breaks
        THEN the engine default applies
        """
        read_model.daily_activity.return_value = [_day(0), _day(2)]
        config = parse_challenge_config("streak", {"required_days": 2})

        result = validator.validate(participant, config)

        assert result.progress.allowed_breaks == 1
        assert result.progress.max_streak == 2

    def test_day_below_thresholds_does_not_count(self, validator, read_model, participant):
        """WHEN a day has too few questions
        THEN it is not a counted day
        """
        read_model.daily_activity.return_value = [_day(0), _day(1, questions=3), _day(2)]
        config = parse_challenge_config("streak", {"required_days": 3, "allowed_breaks": 0})

        result = validator.validate(participant, config)

        assert result.progress.counted_days == 2
        assert result.progress.max_streak == 1


class TestComputeStreak:
    def test_gap_larger_than_one_day_restarts(self):
        days = [date(2024, 3, 1), date(2024, 3, 2), date(2024, 3, 5)]

        assert compute_streak(days, allowed_breaks=5) == (1, 2, 0)

    def test_empty_history(self):
        assert compute_streak([], allowed_breaks=1) == (0, 0, 0)

    def test_budget_spent_once(self):
        days = [date(2024, 3, 1), date(2024, 3, 3), date(2024, 3, 5)]

        current, longest, breaks_used = compute_streak(days, allowed_breaks=1)

        assert (current, longest, breaks_used) == (1, 2, 1)


class TestCompetitionValidation:
    """Competition: wins in multi-player sessions with rate and accuracy floors."""

    def test_required_wins_with_rate_and_accuracy(self, validator, read_model, participant):
        """WHEN 3 wins out of 4 games at 80% accuracy against a 3-win target
        THEN the competition is completed
        """
        read_model.session_outcomes.return_value = [
            _outcome(10, 10), _outcome(9, 9), _outcome(5, 8), _outcome(7, 7),
        ]
        config = parse_challenge_config("competition", {"required_wins": 3})

        result = validator.validate(participant, config)

        assert result.progress.wins == 3
        assert result.progress.win_rate == 0.75
        assert result.is_completed is True

    def test_ties_count_as_wins(self, validator, read_model, participant):
        read_model.session_outcomes.return_value = [_outcome(6, 6)]
        config = parse_challenge_config("competition", {"required_wins": 1})

        result = validator.validate(participant, config)

        assert result.progress.wins == 1

    def test_low_accuracy_blocks_completion(self, validator, read_model, participant):
        """WHEN wins are enough but accuracy is below the floor
        THEN not completed even though progress shows 100%
        """
        read_model.session_outcomes.return_value = [_outcome(5, 5, correct=3, total=10)]
        config = parse_challenge_config("competition", {"required_wins": 1, "min_accuracy": 0.7})

        result = validator.validate(participant, config)

        assert result.progress_percentage == 100.0
        assert result.is_completed is False

    def test_no_games(self, validator, read_model, participant):
        read_model.session_outcomes.return_value = []
        config = parse_challenge_config("competition", {"required_wins": 2})

        result = validator.validate(participant, config)

        assert result.progress.win_rate == 0.0
        assert result.progress_percentage == 0.0
        assert result.is_completed is False


class TestConsolidationValidation:
    def test_accuracy_meets_target(self, validator, read_model, participant):
        """WHEN 9 of 10 answers are correct against an 85% target
        THEN the challenge is completed
        """
        read_model.answered_count.return_value = AnswerStats(total=10, correct=9, topics_covered=2)
        config = parse_challenge_config("consolidation", {"target_percentage": 85})

        result = validator.validate(participant, config)

        assert result.is_completed is True
        assert result.progress.current_percentage == 90.0

    def test_topic_filter_passed_to_read_model(self, validator, read_model, participant):
        scope = uuid4()
        read_model.answered_count.return_value = AnswerStats(total=0, correct=0)
        config = parse_challenge_config(
            "consolidation", {"scope_id": str(scope), "target_percentage": 50, "topics": ["algebra"]}
        )

        result = validator.validate(participant, config)

        read_model.answered_count.assert_called_once_with(
            participant.user_id, scope, JOINED_AT, topics=["algebra"]
        )
        assert result.progress_percentage == 0.0


class TestTemporalValidation:
    """Temporal: weighted average of sub-objectives."""

    def test_weighted_composite_not_completed(self, validator, read_model, participant):
        """WHEN one objective is complete and the other at 25% with equal weights
        THEN the average is 62.5 and the challenge is not completed
        """
        read_model.answered_count.return_value = AnswerStats(total=10, correct=10)
        read_model.session_outcomes.return_value = [_outcome(4, 4)]
        config = parse_challenge_config(
            "temporal",
            {
                "objectives": [
                    {"id": "accuracy", "kind": "consolidation_reached", "target_percentage": 90},
                    {"id": "wins", "kind": "games_won", "target_wins": 4},
                ],
            },
        )

        result = validator.validate(participant, config)

        assert result.progress.average_progress == 62.5
        assert result.is_completed is False
        assert result.progress.objectives["accuracy"].completed is True
        assert result.progress.objectives["wins"].progress_percentage == 25.0

    def test_weights_shift_average(self, validator, read_model, participant):
        read_model.answered_count.return_value = AnswerStats(total=10, correct=10)
        read_model.session_outcomes.return_value = []
        config = parse_challenge_config(
            "temporal",
            {
                "objectives": [
                    {"id": "accuracy", "kind": "consolidation_reached", "target_percentage": 90},
                    {"id": "wins", "kind": "games_won", "target_wins": 4},
                ],
                "weights": {"accuracy": 3},
            },
        )

        result = validator.validate(participant, config)

        assert result.progress.average_progress == 75.0

    def test_all_objectives_complete(self, validator, read_model, participant):
        read_model.answered_count.return_value = AnswerStats(total=4, correct=4)
        read_model.daily_activity.return_value = [_day(0), _day(1)]
        config = parse_challenge_config(
            "temporal",
            {
                "objectives": [
                    {"id": "accuracy", "kind": "consolidation_reached", "target_percentage": 100},
                    {"id": "habit", "kind": "streak_maintained", "target_days": 2},
                ],
            },
        )

        result = validator.validate(participant, config)

        assert result.is_completed is True
        assert result.progress_percentage == 100.0


class TestValidatorContract:
    def test_revalidation_is_idempotent(self, validator, read_model, participant):
        """WHEN validating twice with no new activity
        THEN the two progress snapshots are identical
        """
        read_model.unit_attempts.return_value = UnitAttempts(attempts=1, best_score=60)
        raw = {"required_units": [str(uuid4()), str(uuid4())]}

        first = validator.validate(participant, raw, "marathon")
        second = validator.validate(participant, raw, "marathon")

        assert first.progress.to_snapshot() == second.progress.to_snapshot()
        assert first.is_completed == second.is_completed

    def test_raw_config_requires_type(self, validator, participant):
        with pytest.raises(ChallengeConfigurationError):
            validator.validate(participant, {"target_percentage": 80})

    def test_malformed_config_raises(self, validator, participant):
        with pytest.raises(ChallengeConfigurationError):
            validator.validate(participant, {"required_days": 0}, "streak")

    def test_read_model_failure_propagates(self, validator, read_model, participant):
        """WHEN the activity source is unavailable
        THEN the transient error reaches the caller
        """
        read_model.answered_count.side_effect = MetricSourceUnavailableError("down")
        config = parse_challenge_config("consolidation", {"target_percentage": 80})

        with pytest.raises(MetricSourceUnavailableError):
            validator.validate(participant, config)
