"""
Listing creation behind the listing quota.
"""
import pytest

from cardhub.core.errors import NotFoundError, QuotaExceededError
from cardhub.features.listings.provider import ListingProviderError


def test_sixth_listing_on_basic_is_refused(services, subscribe, listings):
    subscribe("alice", "basic")
    for n in range(5):
        services.listings.create_listing("alice", {"title": f"Card {n}"})

    with pytest.raises(QuotaExceededError):
        services.listings.create_listing("alice", {"title": "One too many"})

    assert len(listings.list_by_subscriber("alice")) == 5
    assert services.ledger.get("alice").listings_created == 5


def test_collaborator_failure_releases_the_unit(services, subscribe, listings):
    subscribe("alice", "free")
    listings.fail_create = True
    with pytest.raises(ListingProviderError):
        services.listings.create_listing("alice", {"title": "Holo"})
    assert services.ledger.get("alice").listings_created == 0

    listings.fail_create = False
    listing = services.listings.create_listing("alice", {"title": "Holo"})
    assert listing.data == {"title": "Holo"}
    assert services.ledger.get("alice").listings_created == 1


def test_no_subscription_means_no_listing(services, plans, listings):
    with pytest.raises(NotFoundError):
        services.listings.create_listing("nobody")
    assert listings.list_by_subscriber("nobody") == []
