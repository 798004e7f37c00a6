"""
cardhub/features/subscriptions/service.py

Subscription lifecycle.

Handles:
- Subscribe (one active subscription per subscriber, payment for paid plans)
- Immediate and end-of-period cancellation
- Plan changes, with downgrade reconciliation when the listing limit shrinks
- Period-end processing for the renewal sweep (cancel / renew / expire)

Invariant: at most one subscription with status=active per subscriber. The
service checks first for a clean error, and the partial unique index
``uq_subscriptions_active_subscriber`` settles races.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import uuid4
import logging

from sqlalchemy import select, insert, update, func, and_, or_
from sqlalchemy.exc import IntegrityError

from cardhub.core.clock import Clock, SystemClock
from cardhub.core.database import Database, fetch_one, subscriptions
from cardhub.core.errors import ConflictError, NotFoundError, PaymentRequiredError, ValidationError
from cardhub.core.logging import log_event
from cardhub.core.periods import advance_period
from cardhub.features.downgrade.service import DowngradeReconciler, DowngradeReport
from cardhub.features.notifications.provider import (
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_CONFIRMED,
    SUBSCRIPTION_EXPIRED,
    SUBSCRIPTION_RENEWED,
    Notifier,
    notify_safely,
)
from cardhub.features.payments.provider import NoopPaymentProvider, PaymentProvider
from cardhub.features.plans.service import PlanCatalog
from cardhub.features.usage.service import UsageLedger
from cardhub.models.plan import Plan
from cardhub.models.subscription import (
    PeriodEndOutcome,
    Subscription,
    SubscriptionPage,
    SubscriptionStatus,
)


logger = logging.getLogger(__name__)

ACTIVE = SubscriptionStatus.ACTIVE.value


@dataclass(frozen=True)
class PlanChange:
    subscription: Subscription
    previous_plan_id: str
    downgrade: Optional[DowngradeReport] = None


def row_to_subscription(row) -> Subscription:
    return Subscription(
        id=row.id,
        subscriber_id=row.subscriber_id,
        plan_id=row.plan_id,
        status=row.status,
        current_period_start=row.current_period_start,
        current_period_end=row.current_period_end,
        cancel_at_period_end=bool(row.cancel_at_period_end),
        payment_method_id=row.payment_method_id,
        cancellation_reason=row.cancellation_reason,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _shrinks_listings(old_plan: Optional[Plan], new_plan: Plan) -> bool:
    if new_plan.features.unlimited_listings:
        return False
    if old_plan is None or old_plan.features.unlimited_listings:
        return True
    return new_plan.features.max_listings < old_plan.features.max_listings


class SubscriptionManager:
    """Owns the one-active-subscription-per-subscriber invariant."""

    def __init__(
        self,
        database: Database,
        catalog: PlanCatalog,
        ledger: UsageLedger,
        clock: Optional[Clock] = None,
        payments: Optional[PaymentProvider] = None,
        notifier: Optional[Notifier] = None,
        reconciler: Optional[DowngradeReconciler] = None,
    ):
        self.database = database
        self.catalog = catalog
        self.ledger = ledger
        self.clock = clock or SystemClock()
        self.payments = payments or NoopPaymentProvider()
        self.notifier = notifier
        self.reconciler = reconciler

    # Reads

    def find_active(self, subscriber_id: str) -> Optional[Subscription]:
        with self.database.session() as session:
            row = fetch_one(
                session,
                subscriptions,
                subscriptions.c.subscriber_id == subscriber_id,
                subscriptions.c.status == ACTIVE,
            )
            return row_to_subscription(row) if row else None

    def get_active(self, subscriber_id: str) -> Subscription:
        """Return the subscriber's active subscription or raise NotFoundError."""
        subscription = self.find_active(subscriber_id)
        if subscription is None:
            raise NotFoundError(f"No active subscription for subscriber {subscriber_id}")
        return subscription

    def get(self, subscription_id: str) -> Subscription:
        with self.database.session() as session:
            row = fetch_one(session, subscriptions, subscriptions.c.id == subscription_id)
        if not row:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        return row_to_subscription(row)

    def list_subscriptions(
        self,
        page: int = 1,
        limit: int = 20,
        status: Optional[SubscriptionStatus] = None,
    ) -> SubscriptionPage:
        """Newest first."""
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")

        query = select(subscriptions)
        count_query = select(func.count()).select_from(subscriptions)
        if status is not None:
            value = SubscriptionStatus(status).value
            query = query.where(subscriptions.c.status == value)
            count_query = count_query.where(subscriptions.c.status == value)

        with self.database.session() as session:
            total = session.execute(count_query).scalar_one()
            rows = session.execute(
                query.order_by(subscriptions.c.created_at.desc(), subscriptions.c.id)
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()

        return SubscriptionPage(
            items=[row_to_subscription(row) for row in rows],
            total=total,
            page=page,
            limit=limit,
        )

    def list_due(self, now: datetime, limit: int = 500, after: Optional[Subscription] = None) -> List[Subscription]:
        """
        Active subscriptions whose current period ended at or before ``now``.

        Ordered by (current_period_end, id); pass the last row of a batch as
        ``after`` to fetch the next one.
        """
        query = (
            select(subscriptions)
            .where(subscriptions.c.status == ACTIVE)
            .where(subscriptions.c.current_period_end <= now)
        )
        if after is not None:
            query = query.where(
                or_(
                    subscriptions.c.current_period_end > after.current_period_end,
                    and_(
                        subscriptions.c.current_period_end == after.current_period_end,
                        subscriptions.c.id > after.id,
                    ),
                )
            )
        with self.database.session() as session:
            rows = session.execute(
                query
                .order_by(subscriptions.c.current_period_end, subscriptions.c.id)
                .limit(limit)
            ).all()
        return [row_to_subscription(row) for row in rows]

    def list_active(self, limit: int = 500, after_id: Optional[str] = None) -> List[Subscription]:
        """Page through active subscriptions by id (keyset pagination)."""
        query = select(subscriptions).where(subscriptions.c.status == ACTIVE)
        if after_id is not None:
            query = query.where(subscriptions.c.id > after_id)
        with self.database.session() as session:
            rows = session.execute(query.order_by(subscriptions.c.id).limit(limit)).all()
        return [row_to_subscription(row) for row in rows]

    def list_upcoming_renewals(
        self,
        now: datetime,
        within_days: int,
        window: Optional[timedelta] = None,
    ) -> List[Subscription]:
        """
        Active subscriptions that will renew within ``within_days``.

        With ``window`` set, only periods ending in
        (now + within_days - window, now + within_days] are returned, so a
        daily caller sees each subscription once.
        """
        horizon = now + timedelta(days=within_days)
        lower = horizon - window if window is not None else now
        with self.database.session() as session:
            rows = session.execute(
                select(subscriptions)
                .where(subscriptions.c.status == ACTIVE)
                .where(subscriptions.c.cancel_at_period_end == False)  # noqa: E712
                .where(subscriptions.c.current_period_end > lower)
                .where(subscriptions.c.current_period_end <= horizon)
                .order_by(subscriptions.c.current_period_end)
            ).all()
        return [row_to_subscription(row) for row in rows]

    # Writes

    def subscribe(
        self,
        subscriber_id: str,
        plan_id: str,
        payment_method_id: Optional[str] = None,
    ) -> Subscription:
        """
        Subscribe to a plan.

        Raises:
            NotFoundError: Plan does not exist
            ValidationError: Plan is not active
            ConflictError: Subscriber already has an active subscription
            PaymentRequiredError: Paid plan without a payment method, or declined
        """
        plan = self.catalog.find(plan_id)
        if plan is None:
            raise NotFoundError(f"Plan {plan_id} not found")
        if not plan.is_active:
            raise ValidationError(f"Plan {plan_id} is not available")

        if self.find_active(subscriber_id) is not None:
            raise ConflictError("You already have an active subscription. Please cancel it first.")

        if plan.is_paid:
            if not payment_method_id:
                raise PaymentRequiredError("Payment method required for paid plans")
            result = self.payments.authorize(subscriber_id, payment_method_id, plan.price, plan.currency)
            if not result.approved:
                logger.info(
                    "[subscriptions] payment declined",
                    extra={"subscriber_id": subscriber_id, "plan_id": plan_id, "reason": result.decline_reason},
                )
                raise PaymentRequiredError(f"Payment declined: {result.decline_reason or 'unknown reason'}")

        now = self.clock.now()
        subscription_id = str(uuid4())
        with self.database.session() as session:
            try:
                session.execute(
                    insert(subscriptions).values(
                        id=subscription_id,
                        subscriber_id=subscriber_id,
                        plan_id=plan.id,
                        status=ACTIVE,
                        current_period_start=now,
                        current_period_end=advance_period(now, plan.interval.value),
                        cancel_at_period_end=False,
                        payment_method_id=payment_method_id,
                        created_at=now,
                        updated_at=now,
                    )
                )
            except IntegrityError as exc:
                raise ConflictError(
                    "You already have an active subscription. Please cancel it first."
                ) from exc

        logger.info(
            "[subscriptions] subscribed",
            extra={"subscriber_id": subscriber_id, "plan_id": plan.id, "subscription_id": subscription_id},
        )

        # Secondary step: never rolls back the committed subscription
        try:
            usage = self.ledger.ensure(subscriber_id, plan.id)
            if usage.plan_id != plan.id:
                self.ledger.set_plan(subscriber_id, plan.id)
        except Exception as exc:
            log_event(
                "error",
                "subscription.usage_init_failed",
                subscriber_id=subscriber_id,
                plan_id=plan.id,
                event_type="subscription.usage_init_failed",
                error_code=getattr(exc, "code", exc.__class__.__name__),
                extra={"subscription_id": subscription_id, "error": exc},
            )

        subscription = self.get(subscription_id)
        notify_safely(
            self.notifier,
            SUBSCRIPTION_CONFIRMED,
            subscriber_id,
            {
                "subscription_id": subscription.id,
                "plan_id": plan.id,
                "plan_name": plan.name,
                "current_period_end": subscription.current_period_end.isoformat(),
            },
        )
        return subscription

    def cancel(self, subscriber_id: str, immediate: bool = False, reason: Optional[str] = None) -> Subscription:
        """
        Cancel the active subscription.

        immediate=True cancels now; otherwise the subscription stays active
        with cancel_at_period_end=True until the renewal sweep retires it.
        """
        current = self.get_active(subscriber_id)
        now = self.clock.now()

        values = {"cancellation_reason": reason, "updated_at": now}
        if immediate:
            values["status"] = SubscriptionStatus.CANCELLED.value
        else:
            values["cancel_at_period_end"] = True

        with self.database.session() as session:
            result = session.execute(
                update(subscriptions)
                .where(subscriptions.c.id == current.id)
                .where(subscriptions.c.status == ACTIVE)
                .values(**values)
            )
            if not result.rowcount:
                raise NotFoundError(f"No active subscription for subscriber {subscriber_id}")

        logger.info(
            "[subscriptions] cancelled",
            extra={"subscriber_id": subscriber_id, "subscription_id": current.id, "immediate": immediate},
        )
        notify_safely(
            self.notifier,
            SUBSCRIPTION_CANCELLED,
            subscriber_id,
            {
                "subscription_id": current.id,
                "immediate": immediate,
                "effective_at": (now if immediate else current.current_period_end).isoformat(),
                "reason": reason,
            },
        )
        return self.get(current.id)

    def change_plan(self, subscriber_id: str, new_plan_id: str) -> PlanChange:
        """
        Move the active subscription to another plan, keeping its period.

        When the new listing limit is smaller, the downgrade reconciler
        hides the excess oldest listings.
        """
        current = self.get_active(subscriber_id)
        new_plan = self.catalog.get(new_plan_id)
        if not new_plan.is_active:
            raise ValidationError(f"Plan {new_plan_id} is not available")
        if current.plan_id == new_plan.id:
            return PlanChange(subscription=current, previous_plan_id=current.plan_id)
        if new_plan.is_paid and not current.payment_method_id:
            raise PaymentRequiredError("Payment method required for paid plans")

        old_plan = self.catalog.find(current.plan_id)

        with self.database.session() as session:
            result = session.execute(
                update(subscriptions)
                .where(subscriptions.c.id == current.id)
                .where(subscriptions.c.status == ACTIVE)
                .values(plan_id=new_plan.id, updated_at=self.clock.now())
            )
            if not result.rowcount:
                raise ConflictError("Subscription changed concurrently; retry")

        self.ledger.set_plan(subscriber_id, new_plan.id)
        logger.info(
            "[subscriptions] plan changed",
            extra={
                "subscriber_id": subscriber_id,
                "subscription_id": current.id,
                "plan_id": new_plan.id,
                "previous_plan_id": current.plan_id,
            },
        )

        report = None
        if self.reconciler is not None and _shrinks_listings(old_plan, new_plan):
            report = self.reconciler.reconcile(subscriber_id, new_plan.id)

        return PlanChange(
            subscription=self.get(current.id),
            previous_plan_id=current.plan_id,
            downgrade=report,
        )

    def _transition(self, observed: Subscription, **values) -> bool:
        """Compare-and-set on (status, current_period_end) as observed."""
        with self.database.session() as session:
            result = session.execute(
                update(subscriptions)
                .where(subscriptions.c.id == observed.id)
                .where(subscriptions.c.status == ACTIVE)
                .where(subscriptions.c.current_period_end == observed.current_period_end)
                .values(updated_at=self.clock.now(), **values)
            )
            return bool(result.rowcount)

    def _expire(self, subscription: Subscription, reason: str) -> PeriodEndOutcome:
        if not self._transition(subscription, status=SubscriptionStatus.EXPIRED.value):
            return PeriodEndOutcome.SKIPPED
        logger.info(
            "[subscriptions] expired",
            extra={"subscriber_id": subscription.subscriber_id, "subscription_id": subscription.id, "reason": reason},
        )
        notify_safely(
            self.notifier,
            SUBSCRIPTION_EXPIRED,
            subscription.subscriber_id,
            {"subscription_id": subscription.id, "reason": reason},
        )
        return PeriodEndOutcome.EXPIRED

    def process_period_end(self, subscription_id: str, now: Optional[datetime] = None) -> PeriodEndOutcome:
        """
        Retire or renew a subscription whose period has ended.

        - cancel_at_period_end -> cancelled, no new period
        - plan gone or payment declined -> expired
        - otherwise the period advances by exactly one interval and paid
          plans are charged for it; a subscription several intervals
          behind stays due and is renewed again on the next call

        Every write is conditional on the status/period observed here, so a
        repeated or concurrent sweep cannot renew twice.
        """
        now = now or self.clock.now()
        subscription = self.get(subscription_id)
        if subscription.status != SubscriptionStatus.ACTIVE or subscription.current_period_end > now:
            return PeriodEndOutcome.SKIPPED

        if subscription.cancel_at_period_end:
            if not self._transition(subscription, status=SubscriptionStatus.CANCELLED.value):
                return PeriodEndOutcome.SKIPPED
            logger.info(
                "[subscriptions] cancelled at period end",
                extra={"subscriber_id": subscription.subscriber_id, "subscription_id": subscription.id},
            )
            return PeriodEndOutcome.CANCELLED

        plan = self.catalog.find(subscription.plan_id)
        if plan is None:
            return self._expire(subscription, "plan_unavailable")

        period_start = subscription.current_period_end
        period_end = advance_period(period_start, plan.interval.value)

        if plan.is_paid:
            if not subscription.payment_method_id:
                return self._expire(subscription, "no_payment_method")
            result = self.payments.charge(
                subscription.subscriber_id,
                subscription.payment_method_id,
                plan.price,
                plan.currency,
                reference=f"{subscription.id}:{period_start.isoformat()}",
            )
            if not result.approved:
                return self._expire(subscription, result.decline_reason or "payment_declined")

        if not self._transition(subscription, current_period_start=period_start, current_period_end=period_end):
            return PeriodEndOutcome.SKIPPED

        logger.info(
            "[subscriptions] renewed",
            extra={
                "subscriber_id": subscription.subscriber_id,
                "subscription_id": subscription.id,
                "plan_id": plan.id,
                "current_period_end": period_end.isoformat(),
            },
        )
        notify_safely(
            self.notifier,
            SUBSCRIPTION_RENEWED,
            subscription.subscriber_id,
            {"subscription_id": subscription.id, "current_period_end": period_end.isoformat()},
        )
        return PeriodEndOutcome.RENEWED
