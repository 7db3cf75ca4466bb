"""
Scheduler module for the Marketplace Worker.

Uses APScheduler to fire a single tick every minute. Each tick fans out to
the jobs at their own cadence (in ticks):

- Every tick: settle expired auctions
- Every 5: match new listings against buyer signals
- Every 15: remind bidders of auctions ending within the hour
- Every 30: notify favoriting users of price drops
- Every 60: expire stale listings
- Every 360: tell sellers about buyer interest
- Every 1440: purge old signals, then reset the tick counter

Can also be run manually via command line.
"""

import logging
import os
import signal
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .config import WorkerConfig, get_worker_config
from .db import ConfigurationError, Database, get_db
from .interest import notify_seller_interest
from .matching import match_new_listings
from .price_drop import notify_price_drops
from .reminders import expire_listings, remind_ending_soon
from .retention import purge_old_signals
from .settlement import finalize_expired_auctions

logger = logging.getLogger(__name__)


@dataclass
class ScheduledJob:
    """A job and how often (in ticks) it runs."""
    name: str
    every: int
    func: Callable[..., dict]

    def is_due(self, tick: int) -> bool:
        return tick % self.every == 0


# Fixed priority order; settlement always first
JOBS = [
    ScheduledJob("auction_settlement", 1, finalize_expired_auctions),
    ScheduledJob("new_listing_matching", 5, match_new_listings),
    ScheduledJob("ending_soon_reminder", 15, remind_ending_soon),
    ScheduledJob("price_drop", 30, notify_price_drops),
    ScheduledJob("expiry_sweep", 60, expire_listings),
    ScheduledJob("interest_aggregation", 360, notify_seller_interest),
    ScheduledJob("retention_sweep", 1440, purge_old_signals),
]

# Ticks in a day at the default one-minute period; the counter resets here
DAY_TICKS = 1440


class TickScheduler:
    """
    Drives the worker jobs from a fixed-interval tick.

    The tick counter lives here and only advances on ticks that actually
    reach the store, so cadences stay aligned with work done.

    Usage:
        worker = TickScheduler()
        worker.run_forever()
    """

    def __init__(
        self,
        db_factory: Callable[[], Database] = get_db,
        jobs: Optional[list[ScheduledJob]] = None,
        config: Optional[WorkerConfig] = None,
    ):
        self.db_factory = db_factory
        self.jobs = jobs if jobs is not None else list(JOBS)
        self.config = config or get_worker_config()
        self.tick_count = 0

        self._db: Optional[Database] = None
        self._healthy = False
        self._idle = threading.Event()
        self._idle.set()
        self._scheduler: Optional[BlockingScheduler] = None

    # =========================================================================
    # TICK
    # =========================================================================

    def connect(self) -> Optional[Database]:
        """
        Return a healthy store handle, or None if it is not usable yet.

        Missing configuration and failed health checks are logged and
        retried on the next tick; they never stop the process.
        """
        if self._db is None:
            try:
                self._db = self.db_factory()
            except ConfigurationError as e:
                logger.error(f"Store not configured, worker idle: {e}")
                return None
            except Exception as e:
                logger.error(f"Could not create store client: {e}")
                return None

        if not self._healthy:
            try:
                self._db.ping()
            except Exception as e:
                logger.error(f"Store health check failed, retrying next tick: {e}")
                return None
            self._healthy = True
            logger.info("Store health check passed")

        return self._db

    def tick(self) -> list[str]:
        """
        Run one tick.

        Returns:
            Names of the jobs that ran (successfully or not)
        """
        self._idle.clear()
        try:
            db = self.connect()
            if db is None:
                return []

            self.tick_count += 1
            ran = []
            for job in self.jobs:
                if job.is_due(self.tick_count):
                    self.run_job(job, db)
                    ran.append(job.name)

            if self.tick_count % DAY_TICKS == 0:
                logger.info("Daily cadence complete, resetting tick counter")
                self.tick_count = 0
            return ran
        finally:
            self._idle.set()

    def run_job(self, job: ScheduledJob, db: Database) -> Optional[dict]:
        """Run a job; failures are logged and never propagate."""
        started = datetime.now(timezone.utc)
        try:
            summary = job.func(db=db)
        except Exception:
            logger.exception(f"Job {job.name} failed")
            return None
        duration = (datetime.now(timezone.utc) - started).total_seconds()
        logger.info(f"Job {job.name} done in {duration:.1f}s: {summary}")
        return summary

    def run_once(self, only: Optional[str] = None) -> dict:
        """
        Run every job (or just `only`) once, ignoring cadence.

        Returns:
            Map of job name to summary (None for failed jobs)
        """
        db = self.connect()
        if db is None:
            return {}
        results = {}
        for job in self.jobs:
            if only and job.name != only:
                continue
            results[job.name] = self.run_job(job, db)
        return results

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def run_forever(self) -> bool:
        """
        Tick until SIGTERM/SIGINT, then give an in-flight tick a grace period.

        Returns:
            True if the worker stopped cleanly within the grace period
        """
        self._scheduler = BlockingScheduler(timezone=timezone.utc)
        self._scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self.config.tick_seconds),
            id="tick",
            name="Worker tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )

        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)

        logger.info("Marketplace worker started")
        logger.info(f"  - Tick interval: {self.config.tick_seconds}s")
        for job in self.jobs:
            logger.info(f"  - {job.name}: every {job.every} tick(s)")

        try:
            self._scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            pass

        return self.wait_for_idle(self.config.shutdown_grace_seconds)

    def stop(self) -> None:
        """Stop scheduling new ticks."""
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    def wait_for_idle(self, timeout: float) -> bool:
        """Wait up to `timeout` seconds for an in-flight tick to finish."""
        if self._idle.wait(timeout=timeout):
            logger.info("Worker stopped")
            return True
        logger.warning(f"In-flight tick did not finish within {timeout:.0f}s grace period")
        return False

    def _handle_signal(self, signum, frame) -> None:
        logger.info(f"Received signal {signum}, shutting down")
        self.stop()


# =============================================================================
# CLI ENTRY POINT
# =============================================================================

def main():
    """CLI entry point for the worker."""
    import argparse

    parser = argparse.ArgumentParser(description="Marketplace background worker")
    parser.add_argument(
        "--mode",
        choices=["schedule", "once", "job"],
        default="schedule",
        help="Mode to run: schedule (continuous), once (every job a single time), job (one named job)"
    )
    parser.add_argument(
        "--job",
        choices=[job.name for job in JOBS],
        help="Job to run with --mode job"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (defaults to LOG_LEVEL or INFO)"
    )

    args = parser.parse_args()
    config = get_worker_config()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, args.log_level or config.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    worker = TickScheduler(config=config)

    if args.mode == "schedule":
        if not worker.run_forever():
            # A tick is still running past the grace period; don't wait for it
            logging.shutdown()
            os._exit(1)
    elif args.mode == "once":
        logger.info("Running every job once...")
        print(f"Run complete: {worker.run_once()}")
    elif args.mode == "job":
        if not args.job:
            parser.error("--job is required with --mode job")
        logger.info(f"Running {args.job}...")
        print(f"Run complete: {worker.run_once(only=args.job)}")


if __name__ == "__main__":
    main()
