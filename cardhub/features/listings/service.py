"""
Foreground listing creation behind the listing quota.

Flow: reserve a unit in the usage ledger, create through the listing
collaborator, give the unit back if the collaborator fails.
"""
from typing import Any, Dict, Optional
import logging

from cardhub.features.listings.provider import Listing, ListingProvider
from cardhub.features.usage.service import UsageLedger


logger = logging.getLogger(__name__)


class ListingCreationGate:
    def __init__(self, ledger: UsageLedger, listings: ListingProvider):
        self.ledger = ledger
        self.listings = listings

    def create_listing(self, subscriber_id: str, data: Optional[Dict[str, Any]] = None) -> Listing:
        """
        Raises:
            NotFoundError: No active subscription / usage period
            QuotaExceededError: Listing limit reached (nothing is created)
        """
        self.ledger.check_and_reserve_listing(subscriber_id)
        try:
            listing = self.listings.create(subscriber_id, data or {})
        except Exception:
            logger.warning(
                "[listings] create failed, releasing reservation",
                extra={"subscriber_id": subscriber_id},
            )
            self.ledger.release_listing(subscriber_id)
            raise

        logger.info(
            "[listings] created",
            extra={"subscriber_id": subscriber_id, "listing_id": listing.listing_id},
        )
        return listing
