"""
Downgrade reconciliation: the oldest public listings are hidden first.
"""
from datetime import timedelta

import pytest

from cardhub.core.errors import NotFoundError
from cardhub.features.listings.provider import ListingProviderError
from cardhub.features.notifications.provider import LISTINGS_DISABLED


def test_downgrade_hides_oldest_excess(services, plans, listings, subscribe, notifier):
    subscribe("alice", "business")
    created = listings.add_many("alice", 8)

    report = services.reconciler.reconcile("alice", plans["basic"].id)

    oldest = [l.listing_id for l in created[:3]]
    assert report.excess_count == 3
    assert report.disabled_count == 3
    assert list(report.disabled_listing_ids) == oldest
    assert listings.deactivated == oldest
    assert listings.public_ids("alice") == {l.listing_id for l in created[3:]}

    (subscriber_id, payload), = notifier.events(LISTINGS_DISABLED)
    assert subscriber_id == "alice"
    assert payload["listing_ids"] == oldest
    assert payload["new_limit"] == 5


def test_preview_does_not_mutate(services, plans, listings):
    created = listings.add_many("alice", 4)

    preview = services.reconciler.preview_downgrade("alice", plans["free"].id)

    assert preview.current_listings == 4
    assert preview.new_limit == 1
    assert preview.listings_to_disable == 3
    assert preview.will_lose_access
    assert list(preview.listing_ids_to_disable) == [l.listing_id for l in created[:3]]
    assert listings.deactivated == []


def test_unlimited_target_is_a_no_op(services, plans, listings, notifier):
    listings.add_many("alice", 40)

    preview = services.reconciler.preview_downgrade("alice", plans["business"].id)
    assert preview.new_limit is None
    assert not preview.will_lose_access

    report = services.reconciler.reconcile("alice", plans["business"].id)
    assert report.disabled_count == 0
    assert listings.deactivated == []
    assert notifier.events(LISTINGS_DISABLED) == []


def test_within_limit_is_a_no_op(services, plans, listings):
    listings.add_many("alice", 5)
    report = services.reconciler.reconcile("alice", plans["basic"].id)
    assert (report.excess_count, report.disabled_count) == (0, 0)
    assert listings.deactivated == []


def test_hidden_listings_do_not_count(services, plans, listings):
    listings.add_many("alice", 3)
    listings.add("alice", is_public=False)

    preview = services.reconciler.preview_downgrade("alice", plans["free"].id)
    assert preview.current_listings == 3
    assert preview.listings_to_disable == 2


def test_ties_on_created_at_break_by_listing_id(services, plans, listings, clock):
    at = clock.now() - timedelta(days=1)
    listings.add("alice", created_at=at, listing_id="b")
    listings.add("alice", created_at=at, listing_id="a")
    listings.add("alice", created_at=at + timedelta(hours=1), listing_id="c")

    report = services.reconciler.reconcile("alice", plans["free"].id)
    assert list(report.disabled_listing_ids) == ["a", "b"]


def test_rerun_is_idempotent(services, plans, listings):
    listings.add_many("alice", 8)
    services.reconciler.reconcile("alice", plans["basic"].id)

    again = services.reconciler.reconcile("alice", plans["basic"].id)

    assert again.disabled_count == 0
    assert len(listings.deactivated) == 3


def test_collaborator_failure_propagates_and_rerun_finishes(services, plans, listings, monkeypatch):
    created = listings.add_many("alice", 4)
    deactivate = listings.deactivate
    calls = []

    def flaky(listing_id):
        calls.append(listing_id)
        if len(calls) == 2:
            raise ListingProviderError("listing store unavailable")
        deactivate(listing_id)

    monkeypatch.setattr(listings, "deactivate", flaky)
    with pytest.raises(ListingProviderError):
        services.reconciler.reconcile("alice", plans["free"].id)
    assert listings.public_ids("alice") == {l.listing_id for l in created[1:]}

    report = services.reconciler.reconcile("alice", plans["free"].id)
    assert report.disabled_count == 2
    assert listings.public_ids("alice") == {created[3].listing_id}


def test_unknown_plan(services, listings):
    listings.add_many("alice", 2)
    with pytest.raises(NotFoundError):
        services.reconciler.preview_downgrade("alice", "missing")
