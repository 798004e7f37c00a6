"""
Reconciliation scheduler: cron timing on the injected clock, run-lock,
run recording.
"""
from datetime import datetime, timedelta, timezone

import pytest
import pytz
from apscheduler.triggers.cron import CronTrigger

from cardhub.core.errors import NotFoundError, StorageError
from cardhub.features.reconciliation.scheduler import (
    BOOSTS_JOB,
    PLANS_JOB,
    SUBSCRIPTIONS_JOB,
    USAGE_RESET_JOB,
    Job,
    ReconciliationScheduler,
    build_default_jobs,
)
from cardhub.features.reconciliation.sweeps import SweepResult
from cardhub.models.boost import BoostStatus


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def scheduler(services, clock):
    # Half past: between hourly boundaries
    clock.set(utc(2026, 3, 10, 12, 30))
    return services.scheduler


def test_default_cron_times(scheduler):
    scheduler.prime()
    next_runs = {job.name: job.next_run_at for job in scheduler.jobs}

    assert next_runs == {
        SUBSCRIPTIONS_JOB: utc(2026, 3, 11, 1, 0),
        BOOSTS_JOB: utc(2026, 3, 10, 13, 0),
        PLANS_JOB: utc(2026, 3, 11, 2, 0),
        USAGE_RESET_JOB: utc(2026, 4, 1, 3, 0),
    }


def test_cron_follows_scheduler_timezone(services, clock):
    clock.set(utc(2026, 3, 10, 12, 30))
    berlin = ReconciliationScheduler(build_default_jobs(services.sweeps, "Europe/Berlin"), clock=clock)
    berlin.prime()
    # 01:00 CET
    assert berlin.get_job(SUBSCRIPTIONS_JOB).next_run_at == utc(2026, 3, 11, 0, 0)


def test_first_tick_only_schedules(scheduler):
    assert scheduler.run_pending() == []
    assert all(job.next_run_at is not None for job in scheduler.jobs)


def test_run_pending_fires_due_jobs_once(scheduler, clock):
    scheduler.prime()
    assert scheduler.run_pending() == []

    clock.set(utc(2026, 3, 10, 13, 0))
    assert [r.job for r in scheduler.run_pending()] == [BOOSTS_JOB]
    assert scheduler.run_pending() == []

    # Missed hourly ticks collapse into one run
    clock.set(utc(2026, 3, 11, 1, 0))
    assert [r.job for r in scheduler.run_pending()] == [SUBSCRIPTIONS_JOB, BOOSTS_JOB]
    assert scheduler.get_job(BOOSTS_JOB).next_run_at == utc(2026, 3, 11, 2, 0)
    assert scheduler.get_job(SUBSCRIPTIONS_JOB).next_run_at == utc(2026, 3, 12, 1, 0)


def test_run_pending_drives_the_sweeps(scheduler, services, subscribe, listings, clock):
    scheduler.prime()
    subscribe("alice", "basic")
    listing = listings.add("alice")
    boost = services.boosts.create_boost("alice", listing.listing_id, 1)

    # Ends 12:30 the next day; the 13:00 tick expires it
    clock.set(utc(2026, 3, 11, 13, 0))
    results = {r.job: r for r in scheduler.run_pending()}

    assert results[BOOSTS_JOB].counts == {"expired": 1}
    assert services.boosts.get(boost.id).status == BoostStatus.EXPIRED


def test_overlapping_tick_is_skipped(scheduler):
    lock = scheduler._locks[BOOSTS_JOB]
    lock.acquire()
    try:
        result = scheduler.run_job(BOOSTS_JOB)
    finally:
        lock.release()

    assert result.status == "skipped"
    assert scheduler.recent_runs(BOOSTS_JOB)[0]["status"] == "skipped"
    assert scheduler.run_job(BOOSTS_JOB).status == "success"


def test_runs_are_recorded(scheduler, clock):
    scheduler.run_job(PLANS_JOB)
    clock.advance(minutes=1)
    scheduler.run_job(BOOSTS_JOB)

    runs = scheduler.recent_runs()
    assert [r["job_name"] for r in runs] == [BOOSTS_JOB, PLANS_JOB]
    assert runs[1]["status"] == "success"
    assert runs[1]["stats"] == {"processed": 0, "failed": 0}
    assert runs[1]["started_at"] == utc(2026, 3, 10, 12, 30)
    assert runs[1]["error"] is None
    assert [r["job_name"] for r in scheduler.recent_runs(PLANS_JOB)] == [PLANS_JOB]


def _explode() -> SweepResult:
    raise RuntimeError("database went away")


def test_sweep_failure_is_recorded_not_raised(database, clock):
    broken = Job("broken", CronTrigger(minute=0, timezone=pytz.utc), _explode)
    scheduler = ReconciliationScheduler([broken], clock=clock, database=database)

    result = scheduler.run_job("broken")

    assert result.status == "failed"
    assert result.error == "RuntimeError: database went away"
    run, = scheduler.recent_runs("broken")
    assert run["status"] == "failed"
    assert run["error"] == "RuntimeError: database went away"
    # The lock is released after a failure
    assert scheduler.run_job("broken").status == "failed"


class _UnavailableDatabase:
    def session(self):
        raise StorageError("db down")


def _storage_failure() -> SweepResult:
    raise StorageError("db down")


def test_unrecorded_failure_does_not_stop_other_jobs(clock):
    ran = []

    def healthy() -> SweepResult:
        ran.append("healthy")
        return SweepResult(job="healthy")

    scheduler = ReconciliationScheduler(
        [
            Job("failing", CronTrigger(minute=0, timezone=pytz.utc), _storage_failure),
            Job("healthy", CronTrigger(minute=0, timezone=pytz.utc), healthy),
        ],
        clock=clock,
        database=_UnavailableDatabase(),
    )
    clock.set(utc(2026, 3, 10, 12, 30))
    scheduler.prime()
    clock.set(utc(2026, 3, 10, 13, 0))

    results = scheduler.run_pending()

    assert [(r.job, r.status) for r in results] == [("failing", "failed"), ("healthy", "success")]
    assert ran == ["healthy"]
    assert scheduler.get_job("failing").next_run_at == utc(2026, 3, 10, 14, 0)


def test_unknown_job(scheduler):
    with pytest.raises(NotFoundError):
        scheduler.run_job("nightly")


def test_background_scheduler_lifecycle(scheduler):
    background = scheduler.start()
    try:
        assert scheduler.running
        assert scheduler.start() is background
        assert {job.id for job in background.get_jobs()} == {
            SUBSCRIPTIONS_JOB,
            BOOSTS_JOB,
            PLANS_JOB,
            USAGE_RESET_JOB,
        }
        assert all(job.max_instances == 1 for job in background.get_jobs())
    finally:
        scheduler.shutdown()
    assert not scheduler.running


def test_next_fire_is_strictly_after_a_boundary(scheduler, clock):
    clock.set(utc(2026, 3, 10, 13, 0))
    scheduler.prime()
    # Exactly on the boundary the job is due now
    assert scheduler.get_job(BOOSTS_JOB).next_run_at == clock.now()
    scheduler.run_pending()
    assert scheduler.get_job(BOOSTS_JOB).next_run_at == clock.now() + timedelta(hours=1)
