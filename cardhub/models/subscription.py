"""
cardhub/models/subscription.py

Subscription model: a subscriber's binding to a plan for a billing period.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict


class SubscriptionStatus(str, Enum):
    INACTIVE = "inactive"  # transient pre-state, never persisted as a resting state
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Subscription(BaseModel):
    """
    Subscription represents a subscriber's plan binding.

    Constraint: at most one subscription with status=active per subscriber.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    subscriber_id: str
    plan_id: str
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    payment_method_id: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE


class PeriodEndOutcome(str, Enum):
    """Result of processing a subscription whose period has ended."""
    CANCELLED = "cancelled"
    RENEWED = "renewed"
    EXPIRED = "expired"
    SKIPPED = "skipped"


class SubscriptionPage(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: List[Subscription]
    total: int
    page: int
    limit: int
