"""
Listing collaborator protocol.

The listing/search subsystem owns listings; the entitlement engine only
needs to look them up, create them behind a quota check, enumerate a
subscriber's listings and hide them on downgrade.
"""
from typing import Protocol, Dict, Any, List, Optional
from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class Listing:
    """Listing as seen by the entitlement engine."""
    listing_id: str
    subscriber_id: str
    created_at: datetime
    is_public: bool = True
    data: Dict[str, Any] = field(default_factory=dict)


class ListingProvider(Protocol):
    """
    Protocol for the listing subsystem.

    Implementations must handle:
    - Point lookup by id
    - Creation on behalf of a subscriber
    - Enumeration of a subscriber's listings
    - Soft deactivation (hide, never delete)
    """

    def get(self, listing_id: str) -> Optional[Listing]:
        """Return the listing, or None if it does not exist."""
        ...

    def create(self, subscriber_id: str, data: Dict[str, Any]) -> Listing:
        """
        Create a listing owned by the subscriber.

        Raises:
            ListingProviderError: If creation fails
        """
        ...

    def list_by_subscriber(self, subscriber_id: str) -> List[Listing]:
        """
        Return every listing owned by the subscriber, public or not.

        Order is not part of the contract; callers that care about age sort
        by created_at themselves.
        """
        ...

    def deactivate(self, listing_id: str) -> None:
        """
        Make the listing non-public. Idempotent.

        Raises:
            ListingProviderError: If the update fails
        """
        ...


class ListingProviderError(Exception):
    """Base exception for listing collaborator failures."""
    pass
