"""
Reconciliation worker.

Usage:
  python -m cardhub.workers.reconcile --job boosts --once
  python -m cardhub.workers.reconcile --job all --once
  python -m cardhub.workers.reconcile --serve
"""
from __future__ import annotations

import argparse
import json
import logging
import time
from typing import List, Optional

from cardhub.app import build_services
from cardhub.core.config import settings, validate_config
from cardhub.core.logging import configure_logging
from cardhub.features.reconciliation.scheduler import (
    BOOSTS_JOB,
    PLANS_JOB,
    SUBSCRIPTIONS_JOB,
    USAGE_RESET_JOB,
)

logger = logging.getLogger("cardhub.workers.reconcile")

JOB_CHOICES = [SUBSCRIPTIONS_JOB, BOOSTS_JOB, PLANS_JOB, USAGE_RESET_JOB, "all"]


def run_once(services, job: str) -> List[dict]:
    names = [j.name for j in services.scheduler.jobs] if job == "all" else [job]
    reports = []
    for name in names:
        result = services.scheduler.run_job(name)
        reports.append({"job": result.job, "status": result.status, **result.as_stats()})
    return reports


def serve(services, poll_seconds: float = 1.0) -> None:
    services.scheduler.start()
    try:
        while True:
            time.sleep(poll_seconds)
    except KeyboardInterrupt:
        logger.info("[reconcile] interrupted, shutting down")
    finally:
        services.scheduler.shutdown()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run entitlement reconciliation sweeps.")
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("--once", action="store_true", help="Run the selected job(s) once and exit.")
    mode.add_argument("--serve", action="store_true", help="Run all jobs on their cron triggers.")
    parser.add_argument("--job", choices=JOB_CHOICES, default="all")
    parser.add_argument("--create-tables", action="store_true", help="Create missing tables first.")
    parser.add_argument("--seed-plans", action="store_true", help="Seed the default plans first.")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV, settings.LOG_LEVEL)
    validate_config()

    services = build_services()
    if args.create_tables:
        services.database.create_all()
    if args.seed_plans:
        services.catalog.seed_default_plans(currency=settings.DEFAULT_CURRENCY)

    if args.serve:
        serve(services)
        return 0

    reports = run_once(services, args.job)
    print(json.dumps(reports, indent=2))
    return 1 if any(r["status"] == "failed" for r in reports) else 0


if __name__ == "__main__":
    raise SystemExit(main())
