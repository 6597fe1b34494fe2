"""Settlement worker: the scheduler-invoked jobs of the rewards engine."""

import argparse
import sys
import time
from dataclasses import asdict
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

import structlog

from ..domains.challenge.service import ChallengeService
from ..domains.levels.calculator import LevelCalculator
from ..domains.levels.payouts import WeeklyPayoutService
from ..domains.levels.repository import TierRepository
from ..domains.settlement.engine import SettlementEngine
from ..infrastructure.config.settings import AppSettings, get_settings
from ..infrastructure.database.session import DatabaseSessionManager
from ..infrastructure.logging.structured_logger import configure_logging
from ..infrastructure.messaging.in_memory_bus import InMemoryEventBus
from ..orchestration.runner import LevelRunner, ValidationRunner
from ..shared.events.event_bus import EventBus
from ..shared.exceptions.base import PlaytestRewardsError
from ..shared.utils import clock

logger = structlog.get_logger()

JOBS = ("validations", "expirations", "levels", "payouts")


def previous_week_start(today: date) -> date:
    """Monday of the last fully elapsed week."""
    return clock.week_start(today) - timedelta(days=7)


class SettlementWorker:
    """Wires the services once and runs jobs on demand or in a loop."""

    def __init__(
        self,
        settings: AppSettings,
        sessions: DatabaseSessionManager,
        event_bus: Optional[EventBus] = None,
    ):
        self.settings = settings
        self.sessions = sessions
        self.event_bus = event_bus or InMemoryEventBus()
        self.running = False

        self.settlement_engine = SettlementEngine(sessions, self.event_bus)
        self.challenge_service = ChallengeService(sessions, self.event_bus, settings.engine)
        self.calculator = LevelCalculator(sessions, self.event_bus, settings.levels)
        self.payout_service = WeeklyPayoutService(sessions, self.event_bus, settings.levels)
        self.validation_runner = ValidationRunner(sessions, self.settlement_engine, settings.engine)
        self.level_runner = LevelRunner(sessions, self.calculator, settings.levels)

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "SettlementWorker":
        return cls(settings, DatabaseSessionManager.from_config(settings.database))

    def prepare_database(self) -> None:
        """Create missing tables and seed the default tier ladders."""
        self.sessions.create_tables()
        with self.sessions.session_scope() as session:
            TierRepository(session).seed_defaults()

    def run_job(
        self,
        job: str,
        now: Optional[datetime] = None,
        week_start: Optional[date] = None,
        retry_failed: bool = False,
    ) -> Dict[str, Any]:
        """Run one job and return its summary as a dict."""
        now = now or clock.utcnow()

        if job == "validations":
            return asdict(self.validation_runner.run_once(now))
        if job == "expirations":
            closed = self.challenge_service.close_expired_challenges(now)
            return {
                "closed": len(closed),
                "refunded_amount": sum(result.refunded_amount for result in closed),
                "failed_participants": sum(result.failed_participants for result in closed),
            }
        if job == "levels":
            return asdict(self.level_runner.run_once(now))
        if job == "payouts":
            week = week_start or previous_week_start(now.date())
            if retry_failed:
                summary = self.payout_service.retry_failed(week)
            else:
                summary = self.payout_service.process_week(week)
            return {"week_start": week.isoformat(), **asdict(summary)}

        raise ValueError(f"Unknown job '{job}', expected one of {', '.join(JOBS)}")

    def run_jobs(self, jobs: Sequence[str], **kwargs: Any) -> Dict[str, Dict[str, Any]]:
        """Run jobs in order; a failing job is logged and does not stop the others."""
        results = {}
        for job in jobs:
            try:
                results[job] = self.run_job(job, **kwargs)
            except PlaytestRewardsError as e:
                logger.error("Job failed", job=job, **e.to_dict())
                results[job] = {"error": e.to_dict()}
            else:
                logger.info("Job finished", job=job, **results[job])
        return results

    def start(self, jobs: Sequence[str], interval_seconds: float) -> None:
        """Run the jobs every ``interval_seconds`` until stopped."""
        logger.info("Starting settlement worker", jobs=list(jobs), interval_seconds=interval_seconds)
        self.running = True
        try:
            while self.running:
                self.run_jobs(jobs)
                time.sleep(interval_seconds)
        except KeyboardInterrupt:
            logger.info("Settlement worker interrupted")
        finally:
            self.stop()

    def stop(self) -> None:
        logger.info("Stopping settlement worker")
        self.running = False
        self.sessions.dispose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run playtest rewards settlement jobs")
    parser.add_argument("jobs", nargs="*", help=f"Jobs to run: {', '.join(JOBS)} (default: all)")
    parser.add_argument("--week-start", type=date.fromisoformat, help="Payout week (YYYY-MM-DD, a Monday)")
    parser.add_argument("--retry-failed", action="store_true", help="Retry failed payouts instead of paying new ones")
    parser.add_argument("--loop", type=float, metavar="SECONDS", help="Repeat the jobs at this interval")
    parser.add_argument("--init-db", action="store_true", help="Create tables and seed tier ladders first")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    unknown = [job for job in args.jobs if job not in JOBS]
    if unknown:
        parser.error(f"unknown job(s): {', '.join(unknown)}")

    settings = get_settings()
    configure_logging(settings.logging)

    worker = SettlementWorker.from_settings(settings)
    if not worker.sessions.health_check():
        logger.error("Database unreachable, not running jobs")
        worker.stop()
        return 1
    if args.init_db:
        worker.prepare_database()

    jobs = args.jobs or list(JOBS)
    if args.loop:
        worker.start(jobs, args.loop)
        return 0

    try:
        results = worker.run_jobs(jobs, week_start=args.week_start, retry_failed=args.retry_failed)
    finally:
        worker.stop()
    return 1 if any("error" in result for result in results.values()) else 0


if __name__ == "__main__":
    sys.exit(main())
