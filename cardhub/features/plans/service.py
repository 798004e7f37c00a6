"""
cardhub/features/plans/service.py

Plan catalog service.

Handles:
- Plan CRUD for administrators
- Default plan seeding (free, basic, premium, business)
- Derived subscriber stats (active subscriber count, revenue)
- Scheduled activation/deactivation bookkeeping (the reconciliation
  sweep decides when a schedule is due; the catalog never compares times)
"""

from decimal import Decimal
from enum import Enum
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Union
from uuid import uuid4
import logging

import pydantic
from sqlalchemy import select, insert, update, delete, func, or_

from cardhub.core.clock import Clock, SystemClock, ensure_utc
from cardhub.core.database import Database, plans, subscriptions
from cardhub.core.errors import ConflictError, NotFoundError, ValidationError
from cardhub.models.plan import BillingInterval, Plan, PlanCreate, PlanFeatures, PlanUpdate
from cardhub.models.subscription import SubscriptionStatus


logger = logging.getLogger(__name__)


# Default plan configurations
DEFAULT_PLANS = {
    "free": {
        "name": "Free Plan",
        "price": Decimal("0"),
        "description": "Perfect for getting started with basic features",
        "features": {
            "max_listings": 1,
            "max_boosts": 0,
            "can_explore_cards": True,
        },
    },
    "basic": {
        "name": "Basic Plan",
        "price": Decimal("9.99"),
        "description": "Great for individuals and small businesses",
        "features": {
            "max_listings": 5,
            "max_boosts": 3,
            "can_explore_cards": True,
            "verification_badge": True,
        },
    },
    "premium": {
        "name": "Premium Plan",
        "price": Decimal("29.99"),
        "description": "For growing businesses that need more features",
        "features": {
            "max_listings": 20,
            "max_boosts": 10,
            "can_explore_cards": True,
            "priority_support": True,
            "verification_badge": True,
            "advanced_analytics": True,
        },
    },
    "business": {
        "name": "Business Plan",
        "price": Decimal("99.99"),
        "description": "Enterprise solution with unlimited features",
        "features": {
            "max_listings": -1,  # unlimited
            "max_boosts": -1,  # unlimited
            "can_explore_cards": True,
            "priority_support": True,
            "verification_badge": True,
            "advanced_analytics": True,
            "custom_branding": True,
            "api_access": True,
        },
    },
}

_CENTS = Decimal("0.01")


def _coerce(model_cls, data):
    if isinstance(data, model_cls):
        return data
    try:
        return model_cls.model_validate(data)
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Invalid {model_cls.__name__}: {exc.errors()[0]['msg']}") from exc


def _column_values(values: Mapping[str, Any]) -> Dict[str, Any]:
    out = {}
    for key, value in values.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, PlanFeatures):
            value = value.model_dump()
        out[key] = value
    return out


def _read_interval(value) -> BillingInterval:
    try:
        return BillingInterval(value)
    except ValueError:
        # Unrecognized intervals bill monthly
        logger.warning("[plans] unknown billing interval, treating as monthly", extra={"interval": value})
        return BillingInterval.MONTH


def _row_to_plan(row, subscriber_count: int = 0) -> Plan:
    price = Decimal(row.price)
    return Plan(
        id=row.id,
        name=row.name,
        tier=row.tier,
        price=price,
        currency=row.currency,
        interval=_read_interval(row.interval),
        description=row.description or "",
        features=PlanFeatures(**row.features),
        is_active=bool(row.is_active),
        scheduled_activate_at=row.scheduled_activate_at,
        scheduled_deactivate_at=row.scheduled_deactivate_at,
        subscriber_count=subscriber_count,
        revenue=(price * subscriber_count).quantize(_CENTS),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _check_schedule_order(activate_at: Optional[datetime], deactivate_at: Optional[datetime]) -> None:
    if activate_at and deactivate_at and activate_at >= deactivate_at:
        raise ValidationError("Activation date must be before deactivation date")


class PlanCatalog:
    """Purchasable tiers and their resource limits."""

    def __init__(self, database: Database, clock: Optional[Clock] = None):
        self.database = database
        self.clock = clock or SystemClock()

    # Stats

    def _active_counts(self, session, plan_ids: Optional[List[str]] = None) -> Dict[str, int]:
        query = (
            select(subscriptions.c.plan_id, func.count())
            .where(subscriptions.c.status == SubscriptionStatus.ACTIVE.value)
            .group_by(subscriptions.c.plan_id)
        )
        if plan_ids is not None:
            query = query.where(subscriptions.c.plan_id.in_(plan_ids))
        return {plan_id: int(count) for plan_id, count in session.execute(query).all()}

    def subscriber_count(self, plan_id: str) -> int:
        """Number of active subscriptions on the plan."""
        with self.database.session() as session:
            return self._active_counts(session, [plan_id]).get(plan_id, 0)

    # Reads

    def find(self, plan_id: str) -> Optional[Plan]:
        with self.database.session() as session:
            row = session.execute(select(plans).where(plans.c.id == plan_id)).first()
            if not row:
                return None
            counts = self._active_counts(session, [plan_id])
            return _row_to_plan(row, counts.get(plan_id, 0))

    def get(self, plan_id: str) -> Plan:
        plan = self.find(plan_id)
        if plan is None:
            raise NotFoundError(f"Plan {plan_id} not found")
        return plan

    def list_all(self, include_inactive: bool = False) -> List[Plan]:
        """List plans ordered by price (cheapest first)."""
        with self.database.session() as session:
            query = select(plans).order_by(plans.c.price, plans.c.created_at)
            if not include_inactive:
                query = query.where(plans.c.is_active == True)  # noqa: E712
            rows = session.execute(query).all()
            counts = self._active_counts(session)
            return [_row_to_plan(row, counts.get(row.id, 0)) for row in rows]

    def list_active(self) -> List[Plan]:
        return self.list_all(include_inactive=False)

    def list_scheduled(self) -> List[Plan]:
        """Plans with a pending activation or deactivation timestamp."""
        with self.database.session() as session:
            rows = session.execute(
                select(plans).where(
                    or_(
                        plans.c.scheduled_activate_at.isnot(None),
                        plans.c.scheduled_deactivate_at.isnot(None),
                    )
                )
            ).all()
            return [_row_to_plan(row) for row in rows]

    # Writes

    def create(self, data: Union[PlanCreate, Dict[str, Any]]) -> Plan:
        payload = _coerce(PlanCreate, data)
        now = self.clock.now()
        plan_id = str(uuid4())

        with self.database.session() as session:
            session.execute(
                insert(plans).values(
                    id=plan_id,
                    created_at=now,
                    updated_at=now,
                    **_column_values(payload.model_dump()),
                )
            )

        logger.info(
            "[plans] created",
            extra={"plan_id": plan_id, "tier": payload.tier.value, "price": str(payload.price)},
        )
        return self.get(plan_id)

    def update(self, plan_id: str, patch: Union[PlanUpdate, Dict[str, Any]]) -> Plan:
        """
        Apply a partial update.

        Only fields explicitly present in the patch are written; supplying
        ``features`` replaces the whole feature set.

        Raises:
            NotFoundError: If the plan does not exist
            ValidationError: If the patch is invalid or the schedule is inverted
        """
        changes = _coerce(PlanUpdate, patch).model_dump(exclude_unset=True)
        # model_dump turns nested models into dicts; re-validate features
        if changes.get("features") is not None:
            changes["features"] = PlanFeatures(**changes["features"])
        for key in ("scheduled_activate_at", "scheduled_deactivate_at"):
            if changes.get(key) is not None:
                changes[key] = ensure_utc(changes[key])

        with self.database.session() as session:
            row = session.execute(select(plans).where(plans.c.id == plan_id)).first()
            if not row:
                raise NotFoundError(f"Plan {plan_id} not found")

            _check_schedule_order(
                changes.get("scheduled_activate_at", row.scheduled_activate_at),
                changes.get("scheduled_deactivate_at", row.scheduled_deactivate_at),
            )
            if changes:
                session.execute(
                    update(plans)
                    .where(plans.c.id == plan_id)
                    .values(updated_at=self.clock.now(), **_column_values(changes))
                )

        logger.info("[plans] updated", extra={"plan_id": plan_id, "fields": sorted(changes)})
        return self.get(plan_id)

    def delete(self, plan_id: str) -> None:
        """
        Delete a plan.

        Raises:
            ConflictError: If the plan still has active subscribers
            NotFoundError: If the plan does not exist
        """
        with self.database.session() as session:
            active = self._active_counts(session, [plan_id]).get(plan_id, 0)
            if active > 0:
                raise ConflictError(
                    f"Cannot delete plan {plan_id} with {active} active subscription(s)"
                )
            result = session.execute(delete(plans).where(plans.c.id == plan_id))
            if not result.rowcount:
                raise NotFoundError(f"Plan {plan_id} not found")

        logger.info("[plans] deleted", extra={"plan_id": plan_id})

    # Scheduling

    def schedule(
        self,
        plan_id: str,
        activate_at: Optional[datetime] = None,
        deactivate_at: Optional[datetime] = None,
    ) -> Plan:
        """Set both schedule timestamps at once (None clears one)."""
        return self.update(
            plan_id,
            PlanUpdate(scheduled_activate_at=activate_at, scheduled_deactivate_at=deactivate_at),
        )

    def schedule_activation(self, plan_id: str, at: datetime) -> Plan:
        return self.update(plan_id, PlanUpdate(scheduled_activate_at=at))

    def schedule_deactivation(self, plan_id: str, at: datetime) -> Plan:
        return self.update(plan_id, PlanUpdate(scheduled_deactivate_at=at))

    def apply_scheduled_activation(self, plan_id: str) -> bool:
        """Activate the plan and clear its activation schedule.

        Returns False if there was no pending activation (already applied).
        """
        with self.database.session() as session:
            result = session.execute(
                update(plans)
                .where(plans.c.id == plan_id)
                .where(plans.c.scheduled_activate_at.isnot(None))
                .values(is_active=True, scheduled_activate_at=None, updated_at=self.clock.now())
            )
            applied = bool(result.rowcount)
        if applied:
            logger.info("[plans] scheduled activation applied", extra={"plan_id": plan_id})
        return applied

    def apply_scheduled_deactivation(self, plan_id: str) -> bool:
        """Deactivate the plan and clear its deactivation schedule."""
        with self.database.session() as session:
            result = session.execute(
                update(plans)
                .where(plans.c.id == plan_id)
                .where(plans.c.scheduled_deactivate_at.isnot(None))
                .values(is_active=False, scheduled_deactivate_at=None, updated_at=self.clock.now())
            )
            applied = bool(result.rowcount)
        if applied:
            logger.info("[plans] scheduled deactivation applied", extra={"plan_id": plan_id})
        return applied

    # Seeding

    def seed_default_plans(self, currency: str = "USD") -> List[Plan]:
        """
        Seed default plans into the catalog (idempotent).

        A tier that already has a plan is left untouched. Safe to call
        multiple times.
        """
        now = self.clock.now()
        with self.database.session() as session:
            existing = {row.tier for row in session.execute(select(plans.c.tier)).all()}
            for tier, config in DEFAULT_PLANS.items():
                if tier in existing:
                    continue
                payload = PlanCreate(
                    name=config["name"],
                    tier=tier,
                    price=config["price"],
                    currency=currency,
                    description=config["description"],
                    features=PlanFeatures(**config["features"]),
                )
                session.execute(
                    insert(plans).values(
                        id=str(uuid4()),
                        created_at=now,
                        updated_at=now,
                        **_column_values(payload.model_dump()),
                    )
                )
        return self.list_all(include_inactive=True)
