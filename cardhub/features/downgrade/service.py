"""
cardhub/features/downgrade/service.py

Downgrade reconciliation: bring a subscriber's public listings back within
a smaller plan's listing limit.

Policy: the oldest listings are hidden first so the newest ``max_listings``
stay visible. Ordering is (created_at, listing_id) and is computed here;
the listing collaborator's return order is not relied on. Listings are
made non-public, never deleted.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple
import logging

from cardhub.features.listings.provider import Listing, ListingProvider
from cardhub.features.notifications.provider import LISTINGS_DISABLED, Notifier, notify_safely
from cardhub.features.plans.service import PlanCatalog


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DowngradePreview:
    """What a downgrade would do, computed without mutating anything."""
    subscriber_id: str
    plan_id: str
    current_listings: int
    new_limit: Optional[int]  # None = unlimited
    listings_to_disable: int
    listing_ids_to_disable: Tuple[str, ...] = ()

    @property
    def will_lose_access(self) -> bool:
        return self.listings_to_disable > 0


@dataclass(frozen=True)
class DowngradeReport:
    subscriber_id: str
    plan_id: str
    excess_count: int
    disabled_count: int
    disabled_listing_ids: Tuple[str, ...] = field(default_factory=tuple)


def oldest_first(listings: List[Listing]) -> List[Listing]:
    return sorted(listings, key=lambda listing: (listing.created_at, listing.listing_id))


class DowngradeReconciler:
    def __init__(self, catalog: PlanCatalog, listings: ListingProvider, notifier: Optional[Notifier] = None):
        self.catalog = catalog
        self.listings = listings
        self.notifier = notifier

    def _public_listings(self, subscriber_id: str) -> List[Listing]:
        return oldest_first(
            [listing for listing in self.listings.list_by_subscriber(subscriber_id) if listing.is_public]
        )

    def preview_downgrade(self, subscriber_id: str, new_plan_id: str) -> DowngradePreview:
        """
        Compute the effect of moving the subscriber to ``new_plan_id``.

        Raises:
            NotFoundError: If the plan does not exist
        """
        plan = self.catalog.get(new_plan_id)
        public = self._public_listings(subscriber_id)

        if plan.features.unlimited_listings:
            return DowngradePreview(
                subscriber_id=subscriber_id,
                plan_id=plan.id,
                current_listings=len(public),
                new_limit=None,
                listings_to_disable=0,
            )

        new_limit = plan.features.max_listings
        excess = max(len(public) - new_limit, 0)
        return DowngradePreview(
            subscriber_id=subscriber_id,
            plan_id=plan.id,
            current_listings=len(public),
            new_limit=new_limit,
            listings_to_disable=excess,
            listing_ids_to_disable=tuple(listing.listing_id for listing in public[:excess]),
        )

    def reconcile(self, subscriber_id: str, new_plan_id: str) -> DowngradeReport:
        """
        Hide exactly the excess oldest public listings.

        Safe to re-run: a second call finds no excess and does nothing.
        Collaborator failures propagate; listings hidden before the failure
        stay hidden and the next run picks up the remainder.
        """
        preview = self.preview_downgrade(subscriber_id, new_plan_id)
        if not preview.will_lose_access:
            return DowngradeReport(
                subscriber_id=subscriber_id,
                plan_id=preview.plan_id,
                excess_count=0,
                disabled_count=0,
            )

        disabled = []
        for listing_id in preview.listing_ids_to_disable:
            self.listings.deactivate(listing_id)
            disabled.append(listing_id)

        logger.info(
            "[downgrade] listings disabled",
            extra={
                "subscriber_id": subscriber_id,
                "plan_id": preview.plan_id,
                "excess_count": preview.listings_to_disable,
                "disabled_count": len(disabled),
            },
        )
        notify_safely(
            self.notifier,
            LISTINGS_DISABLED,
            subscriber_id,
            {"plan_id": preview.plan_id, "listing_ids": list(disabled), "new_limit": preview.new_limit},
        )
        return DowngradeReport(
            subscriber_id=subscriber_id,
            plan_id=preview.plan_id,
            excess_count=preview.listings_to_disable,
            disabled_count=len(disabled),
            disabled_listing_ids=tuple(disabled),
        )
