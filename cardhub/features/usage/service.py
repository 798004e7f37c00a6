"""
cardhub/features/usage/service.py

Usage ledger: per-subscriber consumption counters and quota enforcement.

Handles:
- Idempotent UsagePeriod creation (one row per subscriber)
- Atomic reserve-if-below-limit for listings and boosts
- Compensating releases when a downstream creation fails
- Period counter resets driven by the monthly sweep
- Usage summaries with limit warnings

Quota limits always come from the subscriber's ACTIVE subscription's plan,
not from the plan_id recorded on the usage row.
"""

from datetime import datetime
from typing import Optional
import logging

from sqlalchemy import select, update

from cardhub.core.clock import Clock, SystemClock
from cardhub.core.config import settings
from cardhub.core.database import Database, fetch_one, plans, subscriptions, usage_periods
from cardhub.core.errors import NotFoundError, QuotaExceededError
from cardhub.core.periods import add_months
from cardhub.features.notifications.provider import LIMIT_WARNING, Notifier, notify_safely
from cardhub.models.plan import UNLIMITED
from cardhub.models.subscription import SubscriptionStatus
from cardhub.models.usage_period import ResourceStatus, ResourceUsage, UsagePeriod, UsageSummary


logger = logging.getLogger(__name__)

LISTINGS = "listings"
BOOSTS = "boosts"

# resource -> (counter column, plan feature key)
_RESOURCES = {
    LISTINGS: ("listings_created", "max_listings"),
    BOOSTS: ("boosts_used", "max_boosts"),
}


def _row_to_usage(row) -> UsagePeriod:
    return UsagePeriod(
        subscriber_id=row.subscriber_id,
        plan_id=row.plan_id,
        listings_created=row.listings_created,
        boosts_used=row.boosts_used,
        period_start=row.period_start,
        period_end=row.period_end,
    )


def resource_usage(limit: int, used: int, warning_ratio: float) -> ResourceUsage:
    """Classify usage of one resource against its plan limit."""
    if limit == UNLIMITED:
        return ResourceUsage(limit=None, used=used, remaining=None, status=ResourceStatus.OK)

    remaining = max(limit - used, 0)
    if used >= limit:
        status = ResourceStatus.AT_LIMIT
    elif used >= limit * warning_ratio:
        status = ResourceStatus.APPROACHING_LIMIT
    else:
        status = ResourceStatus.OK
    return ResourceUsage(limit=limit, used=used, remaining=remaining, status=status)


class UsageLedger:
    """The quota-enforcement authority."""

    def __init__(
        self,
        database: Database,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
        warning_ratio: Optional[float] = None,
    ):
        self.database = database
        self.clock = clock or SystemClock()
        self.notifier = notifier
        self.warning_ratio = warning_ratio if warning_ratio is not None else settings.LIMIT_WARNING_RATIO

    def _active_plan(self, session, subscriber_id: str):
        row = session.execute(
            select(plans.c.id, plans.c.features)
            .select_from(subscriptions.join(plans, plans.c.id == subscriptions.c.plan_id))
            .where(subscriptions.c.subscriber_id == subscriber_id)
            .where(subscriptions.c.status == SubscriptionStatus.ACTIVE.value)
        ).first()
        if not row:
            raise NotFoundError(f"No active subscription for subscriber {subscriber_id}")
        return row

    # Reads

    def find(self, subscriber_id: str) -> Optional[UsagePeriod]:
        with self.database.session() as session:
            row = fetch_one(session, usage_periods, usage_periods.c.subscriber_id == subscriber_id)
            return _row_to_usage(row) if row else None

    def get(self, subscriber_id: str) -> UsagePeriod:
        usage = self.find(subscriber_id)
        if usage is None:
            raise NotFoundError(f"Usage period for subscriber {subscriber_id} not found")
        return usage

    def summary(self, subscriber_id: str) -> UsageSummary:
        """Limits, consumption and remaining allowance per resource."""
        with self.database.session() as session:
            plan = self._active_plan(session, subscriber_id)
            row = fetch_one(session, usage_periods, usage_periods.c.subscriber_id == subscriber_id)
            if not row:
                raise NotFoundError(f"Usage period for subscriber {subscriber_id} not found")

        return UsageSummary(
            subscriber_id=subscriber_id,
            plan_id=plan.id,
            listings=resource_usage(plan.features["max_listings"], row.listings_created, self.warning_ratio),
            boosts=resource_usage(plan.features["max_boosts"], row.boosts_used, self.warning_ratio),
            period_start=row.period_start,
            period_end=row.period_end,
        )

    # Writes

    def ensure(self, subscriber_id: str, plan_id: str) -> UsagePeriod:
        """
        Create the subscriber's UsagePeriod if it does not exist.

        A second call is a no-op and returns the existing row unchanged.
        Backed by INSERT ... ON CONFLICT DO NOTHING, so concurrent callers
        cannot create duplicates or fail on each other.
        """
        now = self.clock.now()
        with self.database.session() as session:
            created = self.database.insert_ignore(
                session,
                usage_periods,
                {
                    "subscriber_id": subscriber_id,
                    "plan_id": plan_id,
                    "listings_created": 0,
                    "boosts_used": 0,
                    "period_start": now,
                    "period_end": add_months(now, 1),
                    "created_at": now,
                    "updated_at": now,
                },
                conflict_columns=["subscriber_id"],
            )
            row = fetch_one(session, usage_periods, usage_periods.c.subscriber_id == subscriber_id)

        if created:
            logger.info("[usage] period created", extra={"subscriber_id": subscriber_id, "plan_id": plan_id})
        return _row_to_usage(row)

    def set_plan(self, subscriber_id: str, plan_id: str) -> UsagePeriod:
        """Point the usage row at a new plan; creates the row if missing."""
        with self.database.session() as session:
            result = session.execute(
                update(usage_periods)
                .where(usage_periods.c.subscriber_id == subscriber_id)
                .values(plan_id=plan_id, updated_at=self.clock.now())
            )
            updated = bool(result.rowcount)
        if not updated:
            return self.ensure(subscriber_id, plan_id)
        return self.get(subscriber_id)

    def _reserve(self, subscriber_id: str, resource: str) -> UsagePeriod:
        column_name, feature_key = _RESOURCES[resource]
        column = usage_periods.c[column_name]

        with self.database.session() as session:
            plan = self._active_plan(session, subscriber_id)
            limit = plan.features[feature_key]

            # Single conditional increment: the limit check and the write
            # happen in one statement.
            stmt = (
                update(usage_periods)
                .where(usage_periods.c.subscriber_id == subscriber_id)
                .values({column_name: column + 1, "updated_at": self.clock.now()})
            )
            if limit != UNLIMITED:
                stmt = stmt.where(column < limit)
            result = session.execute(stmt)

            row = fetch_one(session, usage_periods, usage_periods.c.subscriber_id == subscriber_id)
            if row is None:
                raise NotFoundError(f"Usage period for subscriber {subscriber_id} not found")
            if not result.rowcount:
                logger.info(
                    "[usage] quota exceeded",
                    extra={
                        "subscriber_id": subscriber_id,
                        "plan_id": plan.id,
                        "resource": resource,
                        "limit": limit,
                        "error_code": QuotaExceededError.code,
                    },
                )
                raise QuotaExceededError(
                    f"{resource.capitalize()} limit reached ({limit}). Upgrade your plan to continue."
                )

        used = getattr(row, column_name)
        logger.info(
            "[usage] reserved",
            extra={"subscriber_id": subscriber_id, "resource": resource, "used": used, "limit": limit},
        )
        self._maybe_warn(subscriber_id, resource, limit, used)
        return _row_to_usage(row)

    def _maybe_warn(self, subscriber_id: str, resource: str, limit: int, used: int) -> None:
        if limit == UNLIMITED or limit <= 0:
            return
        threshold = limit * self.warning_ratio
        # Only on the reservation that crosses the threshold
        if used >= threshold and used - 1 < threshold:
            notify_safely(
                self.notifier,
                LIMIT_WARNING,
                subscriber_id,
                {"resource": resource, "used": used, "limit": limit, "remaining": max(limit - used, 0)},
            )

    def check_and_reserve_listing(self, subscriber_id: str) -> UsagePeriod:
        """
        Reserve one listing unit against the active plan's max_listings.

        Raises:
            NotFoundError: No active subscription, or no usage period
            QuotaExceededError: listings_created already at the limit
        """
        return self._reserve(subscriber_id, LISTINGS)

    def check_and_reserve_boost(self, subscriber_id: str) -> UsagePeriod:
        """Reserve one boost unit against the active plan's max_boosts."""
        return self._reserve(subscriber_id, BOOSTS)

    def _release(self, subscriber_id: str, resource: str) -> bool:
        column_name, _ = _RESOURCES[resource]
        column = usage_periods.c[column_name]
        with self.database.session() as session:
            result = session.execute(
                update(usage_periods)
                .where(usage_periods.c.subscriber_id == subscriber_id)
                .where(column > 0)
                .values({column_name: column - 1, "updated_at": self.clock.now()})
            )
            released = bool(result.rowcount)
        if released:
            logger.info("[usage] released", extra={"subscriber_id": subscriber_id, "resource": resource})
        return released

    def release_listing(self, subscriber_id: str) -> bool:
        """Give back a reserved listing unit (never below zero)."""
        return self._release(subscriber_id, LISTINGS)

    def release_boost(self, subscriber_id: str) -> bool:
        return self._release(subscriber_id, BOOSTS)

    def reset_period_counters(self, subscriber_id: str, started_before: Optional[datetime] = None) -> bool:
        """
        Start a new usage period: boosts_used -> 0, window -> [now, now + 1 month).

        listings_created is NOT reset; the listing limit is a lifetime cap
        while the boost limit is a monthly allowance.

        Args:
            started_before: Only reset if the current period started before
                this instant (makes repeated monthly sweeps no-ops)

        Returns:
            True if the row was reset
        """
        now = self.clock.now()
        stmt = (
            update(usage_periods)
            .where(usage_periods.c.subscriber_id == subscriber_id)
            .values(boosts_used=0, period_start=now, period_end=add_months(now, 1), updated_at=now)
        )
        if started_before is not None:
            stmt = stmt.where(usage_periods.c.period_start < started_before)

        with self.database.session() as session:
            reset = bool(session.execute(stmt).rowcount)

        if reset:
            logger.info("[usage] period counters reset", extra={"subscriber_id": subscriber_id})
        return reset
