"""
Boost lifecycle: duration bounds, one active boost per listing, quota,
expiry and engagement.
"""
from datetime import timedelta

import pytest
from sqlalchemy import insert

from cardhub.core.database import boosts as boosts_table
from cardhub.core.errors import (
    ConflictError,
    NotFoundError,
    PermissionError,
    QuotaExceededError,
    StorageError,
    ValidationError,
)
from cardhub.models.boost import BoostStatus


@pytest.fixture
def owner(subscribe, listings):
    subscribe("alice", "basic")  # 3 boosts per period
    return listings.add("alice")


@pytest.mark.parametrize("days", [0, 31, -1, 7.5, "7", True])
def test_invalid_durations_are_rejected(services, owner, days):
    with pytest.raises(ValidationError):
        services.boosts.create_boost("alice", owner.listing_id, days)
    assert services.ledger.get("alice").boosts_used == 0


@pytest.mark.parametrize("days", [1, 30])
def test_boundary_durations_are_accepted(services, owner, clock, days):
    boost = services.boosts.create_boost("alice", owner.listing_id, days)
    assert boost.status == BoostStatus.ACTIVE
    assert boost.start_date == clock.now()
    assert boost.end_date == clock.now() + timedelta(days=days)


def test_second_boost_on_same_listing_conflicts(services, owner, clock):
    services.boosts.create_boost("alice", owner.listing_id, 7)
    clock.advance(days=3)
    with pytest.raises(ConflictError):
        services.boosts.create_boost("alice", owner.listing_id, 7)
    assert services.ledger.get("alice").boosts_used == 1


def test_different_listings_can_each_be_boosted(services, owner, listings):
    other = listings.add("alice")
    services.boosts.create_boost("alice", owner.listing_id, 7)
    services.boosts.create_boost("alice", other.listing_id, 7)
    assert len(services.boosts.get_active_for_subscriber("alice")) == 2


def test_boost_quota(services, listings, owner):
    extra = [listings.add("alice") for _ in range(3)]
    for listing in [owner] + extra[:2]:
        services.boosts.create_boost("alice", listing.listing_id, 3)

    with pytest.raises(QuotaExceededError):
        services.boosts.create_boost("alice", extra[2].listing_id, 3)
    assert services.boosts.get_active_for_listing(extra[2].listing_id) is None


def test_free_plan_cannot_boost(services, subscribe, listings):
    subscribe("bob", "free")
    listing = listings.add("bob")
    with pytest.raises(QuotaExceededError):
        services.boosts.create_boost("bob", listing.listing_id, 3)


def test_unknown_listing(services, owner):
    with pytest.raises(NotFoundError):
        services.boosts.create_boost("alice", "listing-missing", 3)


def test_cannot_boost_someone_elses_listing(services, owner, subscribe):
    subscribe("mallory", "basic")
    with pytest.raises(PermissionError):
        services.boosts.create_boost("mallory", owner.listing_id, 3)


def test_stale_boost_does_not_block_new_one(services, owner, clock):
    old = services.boosts.create_boost("alice", owner.listing_id, 1)
    clock.advance(days=2)

    new = services.boosts.create_boost("alice", owner.listing_id, 5)

    assert services.boosts.get(old.id).status == BoostStatus.EXPIRED
    assert services.boosts.get_active_for_listing(owner.listing_id).id == new.id


def test_lost_race_releases_reserved_unit(services, owner, clock, monkeypatch):
    reserve = services.ledger.check_and_reserve_boost

    def reserve_then_lose_race(subscriber_id):
        usage = reserve(subscriber_id)
        now = clock.now()
        with services.database.session() as session:
            session.execute(
                insert(boosts_table).values(
                    id="rival",
                    listing_id=owner.listing_id,
                    subscriber_id=subscriber_id,
                    duration_days=1,
                    start_date=now,
                    end_date=now + timedelta(days=1),
                    status="active",
                    impressions=0,
                    clicks=0,
                    created_at=now,
                )
            )
        return usage

    monkeypatch.setattr(services.ledger, "check_and_reserve_boost", reserve_then_lose_race)

    with pytest.raises(ConflictError):
        services.boosts.create_boost("alice", owner.listing_id, 3)
    assert services.ledger.get("alice").boosts_used == 0
    assert services.boosts.get_active_for_listing(owner.listing_id).id == "rival"


def _storage_down(*args, **kwargs):
    raise StorageError("Storage operation failed: OperationalError")


def test_storage_failure_releases_reserved_unit(services, owner, monkeypatch):
    monkeypatch.setattr("cardhub.features.boosts.service.insert", _storage_down)

    with pytest.raises(StorageError):
        services.boosts.create_boost("alice", owner.listing_id, 3)
    assert services.ledger.get("alice").boosts_used == 0
    assert services.boosts.get_active_for_listing(owner.listing_id) is None


def test_expire_is_idempotent(services, owner):
    boost = services.boosts.create_boost("alice", owner.listing_id, 3)

    first = services.boosts.expire(boost.id)
    second = services.boosts.expire(boost.id)

    assert first.status == BoostStatus.EXPIRED
    assert second == first
    assert services.boosts.get_active_for_listing(owner.listing_id) is None


def test_expire_unknown_boost(services):
    with pytest.raises(NotFoundError):
        services.boosts.expire("missing")


def test_active_queries_ignore_finished_boosts(services, owner, clock):
    services.boosts.create_boost("alice", owner.listing_id, 1)
    assert services.boosts.get_active_for_listing(owner.listing_id) is not None

    clock.advance(days=1)
    assert services.boosts.get_active_for_listing(owner.listing_id) is None
    assert services.boosts.get_active_for_subscriber("alice") == []
    assert len(services.boosts.list_expired(clock.now())) == 1


def test_engagement_and_stats(services, owner, clock):
    first = services.boosts.create_boost("alice", owner.listing_id, 2)
    services.boosts.record_engagement(first.id, impressions=100, clicks=4)
    services.boosts.record_engagement(first.id, impressions=50)
    clock.advance(days=3)
    second = services.boosts.create_boost("alice", owner.listing_id, 5)
    services.boosts.record_engagement(second.id, impressions=10, clicks=1)

    assert services.boosts.get(first.id).impressions == 150
    stats = services.boosts.stats_for_listing(owner.listing_id)
    assert stats.total_boosts == 2
    assert stats.total_days == 7
    assert stats.total_impressions == 160
    assert stats.total_clicks == 5

    with pytest.raises(ValidationError):
        services.boosts.record_engagement(first.id, impressions=-1)
    with pytest.raises(NotFoundError):
        services.boosts.record_engagement("missing", clicks=1)
