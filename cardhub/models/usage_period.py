"""
cardhub/models/usage_period.py

UsagePeriod model: per-subscriber consumption counters.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class UsagePeriod(BaseModel):
    """
    UsagePeriod tracks what a subscriber has consumed against plan limits.

    - listings_created: lifetime counter, never reset
    - boosts_used: reset at the start of each usage period
    """
    model_config = ConfigDict(frozen=True)

    subscriber_id: str
    plan_id: str
    listings_created: int = 0
    boosts_used: int = 0
    period_start: datetime
    period_end: datetime


class ResourceStatus(str, Enum):
    OK = "ok"
    APPROACHING_LIMIT = "approaching_limit"
    AT_LIMIT = "at_limit"


class ResourceUsage(BaseModel):
    """Usage of one metered resource. limit/remaining are None when unlimited."""
    model_config = ConfigDict(frozen=True)

    limit: Optional[int]
    used: int
    remaining: Optional[int]
    status: ResourceStatus


class UsageSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    subscriber_id: str
    plan_id: str
    listings: ResourceUsage
    boosts: ResourceUsage
    period_start: datetime
    period_end: datetime
