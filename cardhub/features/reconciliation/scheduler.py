"""
Reconciliation scheduler.

Jobs (cron, scheduler timezone):
  - subscriptions: daily 01:00   (renew / cancel / expire, renewal reminders)
  - boosts:        hourly :00    (expire finished boosts)
  - plans:         daily 02:00   (scheduled activation / deactivation)
  - usage_reset:   day 1 03:00   (monthly usage counters)

Two ways to drive it:
  - run_pending(): fire every job whose next cron time has arrived on the
    injected clock (deterministic; tests advance a FrozenClock)
  - start()/shutdown(): real time via an APScheduler BackgroundScheduler

Every tick is recorded in sweep_runs when storage allows; a failed write is
logged and never stops other jobs. A per-job run-lock stops a tick from
overlapping a still-running tick of the same job.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional
from uuid import uuid4
import logging
import threading

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import insert, select
import pytz

from cardhub.core.clock import Clock, SystemClock
from cardhub.core.database import Database, sweep_runs
from cardhub.core.errors import NotFoundError
from cardhub.core.logging import correlation_scope
from cardhub.features.reconciliation.sweeps import FAILED, SKIPPED, ReconciliationSweeps, SweepResult


logger = logging.getLogger(__name__)

SUBSCRIPTIONS_JOB = "subscriptions"
BOOSTS_JOB = "boosts"
PLANS_JOB = "plans"
USAGE_RESET_JOB = "usage_reset"


@dataclass
class Job:
    name: str
    trigger: CronTrigger
    func: Callable[[], SweepResult]
    next_run_at: Optional[datetime] = None


def build_default_jobs(sweeps: ReconciliationSweeps, timezone: str = "UTC") -> List[Job]:
    tz = pytz.timezone(timezone)
    return [
        Job(SUBSCRIPTIONS_JOB, CronTrigger(hour=1, minute=0, timezone=tz), sweeps.sweep_subscriptions),
        Job(BOOSTS_JOB, CronTrigger(minute=0, timezone=tz), sweeps.sweep_boosts),
        Job(PLANS_JOB, CronTrigger(hour=2, minute=0, timezone=tz), sweeps.sweep_plans),
        Job(USAGE_RESET_JOB, CronTrigger(day=1, hour=3, minute=0, timezone=tz), sweeps.sweep_usage_reset),
    ]


class ReconciliationScheduler:
    def __init__(
        self,
        jobs: Iterable[Job],
        clock: Optional[Clock] = None,
        database: Optional[Database] = None,
        timezone: str = "UTC",
    ):
        self.clock = clock or SystemClock()
        self.database = database
        self.timezone = timezone
        self._jobs: Dict[str, Job] = {job.name: job for job in jobs}
        self._locks = {name: threading.Lock() for name in self._jobs}
        self._background: Optional[BackgroundScheduler] = None

    @property
    def jobs(self) -> List[Job]:
        return list(self._jobs.values())

    def get_job(self, name: str) -> Job:
        try:
            return self._jobs[name]
        except KeyError:
            raise NotFoundError(f"Unknown reconciliation job: {name}") from None

    # Recording

    def _record(self, run_id: str, result: SweepResult, started_at: datetime) -> None:
        if self.database is None:
            return
        try:
            with self.database.session() as session:
                session.execute(
                    insert(sweep_runs).values(
                        id=run_id,
                        job_name=result.job,
                        started_at=started_at,
                        finished_at=self.clock.now(),
                        status=result.status,
                        stats=result.as_stats(),
                        error=result.error,
                    )
                )
        except Exception:
            # Other jobs on this tick still run
            logger.exception(
                "[reconcile] %s run not recorded",
                result.job,
                extra={"job": result.job, "status": result.status},
            )

    def recent_runs(self, job_name: Optional[str] = None, limit: int = 20) -> List[dict]:
        if self.database is None:
            return []
        query = select(sweep_runs).order_by(sweep_runs.c.started_at.desc()).limit(limit)
        if job_name:
            query = query.where(sweep_runs.c.job_name == job_name)
        with self.database.session() as session:
            return [dict(row._mapping) for row in session.execute(query).all()]

    # Execution

    def run_job(self, name: str) -> SweepResult:
        """Run one job now, unless a run of the same job is in progress."""
        job = self.get_job(name)
        lock = self._locks[name]
        run_id = str(uuid4())
        started_at = self.clock.now()

        with correlation_scope(run_id):
            if not lock.acquire(blocking=False):
                logger.warning("[reconcile] %s already running, skipping tick", name, extra={"job": name})
                result = SweepResult(job=name, status=SKIPPED)
                self._record(run_id, result, started_at)
                return result

            try:
                logger.info("[reconcile] %s started", name, extra={"job": name})
                try:
                    result = job.func()
                except Exception as exc:
                    # Sweep-level failure: abort this tick, retry at next trigger
                    logger.exception("[reconcile] %s failed", name, extra={"job": name})
                    result = SweepResult(job=name, status=FAILED, error=f"{exc.__class__.__name__}: {exc}")
                self._record(run_id, result, started_at)
                return result
            finally:
                lock.release()

    def _next_fire(self, job: Job, after: datetime) -> Optional[datetime]:
        return job.trigger.get_next_fire_time(None, after)

    def prime(self) -> None:
        """Compute each job's first fire time from the clock's current time."""
        now = self.clock.now()
        for job in self._jobs.values():
            job.next_run_at = self._next_fire(job, now)

    def run_pending(self) -> List[SweepResult]:
        """
        Run every job whose next fire time is at or before the clock's now.

        Missed fire times are coalesced into a single run. A job seen for
        the first time is scheduled from now, not run.
        """
        now = self.clock.now()
        results = []
        for job in self._jobs.values():
            if job.next_run_at is None:
                job.next_run_at = self._next_fire(job, now)
                continue
            if job.next_run_at > now:
                continue
            results.append(self.run_job(job.name))
            # Strictly after now; cron resolution is one second
            job.next_run_at = self._next_fire(job, now + timedelta(microseconds=1))
        return results

    def start(self) -> BackgroundScheduler:
        if self._background is not None:
            logger.info("[reconcile] scheduler already running")
            return self._background

        background = BackgroundScheduler(timezone=pytz.timezone(self.timezone))
        for job in self._jobs.values():
            background.add_job(
                func=self.run_job,
                args=[job.name],
                trigger=job.trigger,
                id=job.name,
                name=f"reconcile {job.name}",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        background.start()
        self._background = background
        logger.info("[reconcile] scheduler started", extra={"jobs": sorted(self._jobs)})
        return background

    def shutdown(self, wait: bool = False) -> None:
        if self._background is not None:
            self._background.shutdown(wait=wait)
            self._background = None
            logger.info("[reconcile] scheduler stopped")

    @property
    def running(self) -> bool:
        return self._background is not None
