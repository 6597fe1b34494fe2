"""Tests for the settlement worker jobs and its command line."""

from datetime import date, timedelta
from unittest.mock import Mock
from uuid import uuid4

import pytest

from playtest_rewards.infrastructure.config.settings import AppSettings, DatabaseConfig
from playtest_rewards.infrastructure.database.session import DatabaseSessionManager
from playtest_rewards.shared.exceptions.base import MetricSourceUnavailableError
from playtest_rewards.workers import settlement_worker
from playtest_rewards.workers.settlement_worker import SettlementWorker, build_parser, previous_week_start


@pytest.fixture
def worker(sessions, event_bus):
    return SettlementWorker(AppSettings(), sessions, event_bus)


class TestPreviousWeekStart:
    def test_midweek(self):
        assert previous_week_start(date(2024, 3, 13)) == date(2024, 3, 4)

    def test_on_monday(self):
        assert previous_week_start(date(2024, 3, 11)) == date(2024, 3, 4)


class TestRunJob:
    def test_unknown_job(self, worker):
        with pytest.raises(ValueError):
            worker.run_job("backfill")

    def test_expirations_close_and_refund(self, worker, active_challenge, balance_of, now):
        creator = uuid4()
        active_challenge(creator_id=creator)

        result = worker.run_job("expirations", now=now + timedelta(days=8))

        assert result == {"closed": 1, "refunded_amount": 120, "failed_participants": 0}
        assert balance_of(creator) == 120

    def test_payouts_default_to_previous_week(self, worker, now):
        result = worker.run_job("payouts", now=now)

        assert result["week_start"] == "2024-03-04"
        assert result["paid"] == 0

    def test_validations_summary(self, worker, now):
        assert worker.run_job("validations", now=now) == {"processed": 0, "completed": 0, "errors": 0}

    def test_failing_job_does_not_stop_others(self, worker, now):
        """WHEN one job raises a rewards error
        THEN its error is reported and the next job still runs
        """
        worker.validation_runner.run_once = Mock(side_effect=MetricSourceUnavailableError("store down"))

        results = worker.run_jobs(["validations", "levels"], now=now)

        assert results["validations"]["error"]["error_code"] == "METRIC_SOURCE_UNAVAILABLE"
        assert results["levels"] == {"users_processed": 0, "level_changes": 0, "errors": 0}


class TestCommandLine:
    def test_parser_options(self):
        args = build_parser().parse_args(["payouts", "--week-start", "2024-03-04", "--retry-failed"])

        assert args.jobs == ["payouts"]
        assert args.week_start == date(2024, 3, 4)
        assert args.retry_failed is True
        assert args.loop is None

    def test_unknown_job_exits(self):
        with pytest.raises(SystemExit) as exc_info:
            settlement_worker.main(["backfill"])

        assert exc_info.value.code == 2

    def test_main_runs_jobs(self, tmp_path, monkeypatch):
        settings = AppSettings(database=DatabaseConfig(url=f"sqlite:///{tmp_path / 'cli.db'}"))
        monkeypatch.setattr(settlement_worker, "get_settings", lambda: settings)
        monkeypatch.setattr(settlement_worker, "configure_logging", Mock())

        code = settlement_worker.main(["--init-db", "validations", "payouts", "--week-start", "2024-03-04"])

        assert code == 0

    def test_main_refuses_unreachable_database(self, tmp_path, monkeypatch):
        """WHEN the database fails its health check THEN no job runs and main returns 1."""
        settings = AppSettings(database=DatabaseConfig(url=f"sqlite:///{tmp_path / 'down.db'}"))
        monkeypatch.setattr(settlement_worker, "get_settings", lambda: settings)
        monkeypatch.setattr(settlement_worker, "configure_logging", Mock())
        monkeypatch.setattr(DatabaseSessionManager, "health_check", lambda self: False)
        run_jobs = Mock()
        monkeypatch.setattr(SettlementWorker, "run_jobs", run_jobs)

        code = settlement_worker.main(["validations"])

        assert code == 1
        run_jobs.assert_not_called()

    def test_health_check_answers_for_live_database(self, sessions):
        assert sessions.health_check() is True
