"""
cardhub/models/plan.py

Plan models for the subscription catalog.

Plans are purchasable tiers: a price, a billing interval and a feature set
whose numeric limits bound how many listings and boosts a subscriber gets.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

UNLIMITED = -1


class PlanTier(str, Enum):
    """Ordered tiers: free < basic < premium < business."""
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    BUSINESS = "business"

    @property
    def rank(self) -> int:
        return list(PlanTier).index(self)

    def __lt__(self, other):
        if not isinstance(other, PlanTier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, PlanTier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, PlanTier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, PlanTier):
            return NotImplemented
        return self.rank >= other.rank


class BillingInterval(str, Enum):
    MONTH = "month"
    YEAR = "year"


class PlanFeatures(BaseModel):
    """
    Resource limits and feature flags granted by a plan.

    Limits:
    - max_listings (int): listings a subscriber may create (-1 = unlimited)
    - max_boosts (int): boosts per usage period (-1 = unlimited)
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    max_listings: int = Field(ge=UNLIMITED)
    max_boosts: int = Field(ge=UNLIMITED)
    can_explore_cards: bool = True
    priority_support: bool = False
    verification_badge: bool = False
    advanced_analytics: bool = False
    custom_branding: bool = False
    api_access: bool = False

    @property
    def unlimited_listings(self) -> bool:
        return self.max_listings == UNLIMITED

    @property
    def unlimited_boosts(self) -> bool:
        return self.max_boosts == UNLIMITED


class Plan(BaseModel):
    """
    Plan as stored in the catalog, with derived subscriber stats.

    subscriber_count counts active subscriptions only; revenue is
    price x subscriber_count.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    tier: PlanTier
    price: Decimal
    currency: str
    interval: BillingInterval
    description: str = ""
    features: PlanFeatures
    is_active: bool = True
    scheduled_activate_at: Optional[datetime] = None
    scheduled_deactivate_at: Optional[datetime] = None
    subscriber_count: int = 0
    revenue: Decimal = Decimal("0")
    created_at: datetime
    updated_at: datetime

    @property
    def is_paid(self) -> bool:
        return self.price > 0


class PlanCreate(BaseModel):
    """Administrator input for a new plan."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1, max_length=200)
    tier: PlanTier
    price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    currency: str = Field(default="USD", pattern=r"^[A-Z]{3}$")
    interval: BillingInterval = BillingInterval.MONTH
    description: str = ""
    features: PlanFeatures
    is_active: bool = True


class PlanUpdate(BaseModel):
    """Partial plan edit. Only fields explicitly set are applied.

    Required columns may be left out but not set to null; only the two
    schedule fields accept an explicit None (clears the schedule).
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    tier: Optional[PlanTier] = None
    price: Optional[Decimal] = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    currency: Optional[str] = Field(default=None, pattern=r"^[A-Z]{3}$")
    interval: Optional[BillingInterval] = None
    description: Optional[str] = None
    features: Optional[PlanFeatures] = None
    is_active: Optional[bool] = None
    scheduled_activate_at: Optional[datetime] = None
    scheduled_deactivate_at: Optional[datetime] = None

    @field_validator("name", "tier", "price", "currency", "interval", "description", "features", "is_active")
    @classmethod
    def _not_null(cls, value):
        if value is None:
            raise ValueError("may be omitted but cannot be null")
        return value
