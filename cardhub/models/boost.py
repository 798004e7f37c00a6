"""
cardhub/models/boost.py

Boost model: a time-boxed promotional elevation of a single listing.
"""

from datetime import datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict

MIN_BOOST_DAYS = 1
MAX_BOOST_DAYS = 30


class BoostStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


class Boost(BaseModel):
    """
    Boost on a listing, billed against the subscriber's boost quota.

    Constraint: at most one active, unexpired boost per listing.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    listing_id: str
    subscriber_id: str
    duration_days: int
    start_date: datetime
    end_date: datetime
    status: BoostStatus
    impressions: int = 0
    clicks: int = 0
    created_at: datetime

    def is_running(self, now: datetime) -> bool:
        return self.status == BoostStatus.ACTIVE and self.end_date > now


class BoostStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    listing_id: str
    total_boosts: int = 0
    total_days: int = 0
    total_impressions: int = 0
    total_clicks: int = 0
