"""
cardhub/features/reports/service.py

Read-only administrator reports over subscriptions.

Handles:
- Revenue report for active subscriptions created in a date range
- Plan usage stats grouped by tier
- Paginated active subscribers of a plan
"""

from decimal import Decimal
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import select, func

from cardhub.core.database import Database, plans, subscriptions
from cardhub.core.errors import ValidationError
from cardhub.features.subscriptions.service import row_to_subscription
from cardhub.models.subscription import SubscriptionPage, SubscriptionStatus


ACTIVE = SubscriptionStatus.ACTIVE.value


class RevenueReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: Optional[datetime] = None
    end: Optional[datetime] = None
    total_revenue: Decimal = Decimal("0")
    subscription_count: int = 0


class TierUsage(BaseModel):
    model_config = ConfigDict(frozen=True)

    tier: str
    count: int
    revenue: Decimal
    percentage: float


class PlanUsageStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_subscribers: int
    by_tier: List[TierUsage]


class SubscriptionReports:
    def __init__(self, database: Database):
        self.database = database

    def _active_with_plan(self):
        return subscriptions.join(plans, plans.c.id == subscriptions.c.plan_id)

    def revenue_report(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> RevenueReport:
        """Sum of plan prices over active subscriptions created in [start, end]."""
        if start and end and start > end:
            raise ValidationError("start must not be after end")

        query = (
            select(func.coalesce(func.sum(plans.c.price), 0), func.count())
            .select_from(self._active_with_plan())
            .where(subscriptions.c.status == ACTIVE)
        )
        if start is not None:
            query = query.where(subscriptions.c.created_at >= start)
        if end is not None:
            query = query.where(subscriptions.c.created_at <= end)

        with self.database.session() as session:
            total, count = session.execute(query).one()

        return RevenueReport(
            start=start,
            end=end,
            total_revenue=Decimal(str(total)).quantize(Decimal("0.01")),
            subscription_count=int(count),
        )

    def plan_usage_stats(self) -> PlanUsageStats:
        with self.database.session() as session:
            rows = session.execute(
                select(plans.c.tier, func.count(), func.coalesce(func.sum(plans.c.price), 0))
                .select_from(self._active_with_plan())
                .where(subscriptions.c.status == ACTIVE)
                .group_by(plans.c.tier)
                .order_by(plans.c.tier)
            ).all()

        total = sum(int(count) for _, count, _ in rows)
        by_tier = [
            TierUsage(
                tier=tier,
                count=int(count),
                revenue=Decimal(str(revenue)).quantize(Decimal("0.01")),
                percentage=round(int(count) / total * 100, 2) if total else 0.0,
            )
            for tier, count, revenue in rows
        ]
        return PlanUsageStats(total_subscribers=total, by_tier=by_tier)

    def plan_subscribers(self, plan_id: str, page: int = 1, limit: int = 20) -> SubscriptionPage:
        """Active subscribers of a plan, newest first."""
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")

        criteria = (subscriptions.c.plan_id == plan_id, subscriptions.c.status == ACTIVE)
        with self.database.session() as session:
            total = session.execute(select(func.count()).select_from(subscriptions).where(*criteria)).scalar_one()
            rows = session.execute(
                select(subscriptions)
                .where(*criteria)
                .order_by(subscriptions.c.created_at.desc(), subscriptions.c.id)
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()

        return SubscriptionPage(
            items=[row_to_subscription(row) for row in rows],
            total=total,
            page=page,
            limit=limit,
        )
