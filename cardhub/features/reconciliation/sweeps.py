"""
Reconciliation sweeps.

Each sweep is idempotent and safe to re-run. A failure on one entity is
logged, counted and skipped; a failure to list candidates propagates and
aborts the tick (the scheduler records it and the next trigger retries).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Optional
import logging

import pytz

from cardhub.core.clock import Clock, SystemClock
from cardhub.core.config import settings
from cardhub.core.periods import month_start
from cardhub.features.boosts.service import BoostManager
from cardhub.features.notifications.provider import RENEWAL_REMINDER, Notifier, notify_safely
from cardhub.features.plans.service import PlanCatalog
from cardhub.features.subscriptions.service import SubscriptionManager
from cardhub.features.usage.service import UsageLedger
from cardhub.models.subscription import PeriodEndOutcome


logger = logging.getLogger(__name__)

SUCCESS = "success"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass
class SweepResult:
    """Counts from one sweep tick."""
    job: str
    status: str = SUCCESS
    processed: int = 0
    failed: int = 0
    counts: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None

    def count(self, key: str, n: int = 1) -> None:
        self.counts[key] = self.counts.get(key, 0) + n

    def as_stats(self) -> Dict[str, Any]:
        return {"processed": self.processed, "failed": self.failed, **self.counts}


class ReconciliationSweeps:
    """The four background sweeps, wired to the services they drive."""

    def __init__(
        self,
        catalog: PlanCatalog,
        subscriptions: SubscriptionManager,
        ledger: UsageLedger,
        boosts: BoostManager,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
        batch_size: Optional[int] = None,
        reminder_days: Optional[int] = None,
        timezone: Optional[str] = None,
    ):
        self.catalog = catalog
        self.subscriptions = subscriptions
        self.ledger = ledger
        self.boosts = boosts
        self.clock = clock or SystemClock()
        self.notifier = notifier
        self.batch_size = batch_size or settings.SWEEP_BATCH_SIZE
        self.reminder_days = reminder_days if reminder_days is not None else settings.RENEWAL_REMINDER_DAYS
        # Calendar months are counted in the scheduler timezone
        self.timezone = pytz.timezone(timezone or settings.SCHEDULER_TIMEZONE)

    def _entity_failed(self, result: SweepResult, entity: str, entity_id: str) -> None:
        result.failed += 1
        logger.warning(
            "[reconcile] %s sweep: %s %s failed, skipping",
            result.job,
            entity,
            entity_id,
            exc_info=True,
            extra={"job": result.job},
        )

    def _finish(self, result: SweepResult) -> SweepResult:
        logger.info(
            "[reconcile] %s sweep complete",
            result.job,
            extra={"job": result.job, "stats": result.as_stats()},
        )
        return result

    def sweep_subscriptions(self) -> SweepResult:
        """Cancel, renew or expire every subscription whose period has ended,
        then send renewal reminders."""
        result = SweepResult(job="subscriptions")
        now = self.clock.now()

        # A renewed subscription that is still due moves forward in the
        # keyset order; it gets one interval per tick
        handled = set()
        cursor = None
        while True:
            batch = self.subscriptions.list_due(now, limit=self.batch_size, after=cursor)
            if not batch:
                break
            for subscription in batch:
                if subscription.id in handled:
                    continue
                handled.add(subscription.id)
                result.processed += 1
                try:
                    outcome = self.subscriptions.process_period_end(subscription.id, now)
                except Exception:
                    self._entity_failed(result, "subscription", subscription.id)
                    continue
                result.count(PeriodEndOutcome(outcome).value)
            cursor = batch[-1]

        if self.reminder_days > 0:
            upcoming = self.subscriptions.list_upcoming_renewals(
                now, self.reminder_days, window=timedelta(days=1)
            )
            for subscription in upcoming:
                sent = notify_safely(
                    self.notifier,
                    RENEWAL_REMINDER,
                    subscription.subscriber_id,
                    {
                        "subscription_id": subscription.id,
                        "plan_id": subscription.plan_id,
                        "current_period_end": subscription.current_period_end.isoformat(),
                    },
                )
                result.count("reminded" if sent else "reminder_failed")

        return self._finish(result)

    def sweep_boosts(self) -> SweepResult:
        """Expire every active boost whose end date has passed."""
        result = SweepResult(job="boosts")
        now = self.clock.now()

        cursor = None
        while True:
            batch = self.boosts.list_expired(now, limit=self.batch_size, after=cursor)
            if not batch:
                break
            for boost in batch:
                result.processed += 1
                try:
                    self.boosts.expire(boost.id)
                except Exception:
                    self._entity_failed(result, "boost", boost.id)
                    continue
                result.count("expired")
            cursor = batch[-1]

        return self._finish(result)

    def sweep_plans(self) -> SweepResult:
        """Apply plan activations/deactivations whose scheduled time has passed."""
        result = SweepResult(job="plans")
        now = self.clock.now()

        for plan in self.catalog.list_scheduled():
            activate_due = plan.scheduled_activate_at is not None and plan.scheduled_activate_at <= now
            deactivate_due = plan.scheduled_deactivate_at is not None and plan.scheduled_deactivate_at <= now
            if not (activate_due or deactivate_due):
                continue

            result.processed += 1
            try:
                if activate_due and self.catalog.apply_scheduled_activation(plan.id):
                    result.count("activated")
                if deactivate_due and self.catalog.apply_scheduled_deactivation(plan.id):
                    result.count("deactivated")
            except Exception:
                self._entity_failed(result, "plan", plan.id)

        return self._finish(result)

    def sweep_usage_reset(self) -> SweepResult:
        """Start a new usage period for every active subscriber.

        Only periods that began before the current calendar month are reset,
        so re-running within the month changes nothing. The month is
        taken in the scheduler timezone, matching the cron trigger.
        """
        result = SweepResult(job="usage_reset")
        local_now = self.clock.now().astimezone(self.timezone)
        started_before = self.timezone.localize(month_start(local_now.replace(tzinfo=None)))

        after_id = None
        while True:
            batch = self.subscriptions.list_active(limit=self.batch_size, after_id=after_id)
            if not batch:
                break
            for subscription in batch:
                result.processed += 1
                try:
                    reset = self.ledger.reset_period_counters(
                        subscription.subscriber_id, started_before=started_before
                    )
                except Exception:
                    self._entity_failed(result, "subscriber", subscription.subscriber_id)
                    continue
                result.count("reset" if reset else "unchanged")
            after_id = batch[-1].id

        return self._finish(result)
