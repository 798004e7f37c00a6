"""
Administrator reports over active subscriptions.
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from cardhub.core.errors import ValidationError


@pytest.fixture
def population(subscribe, services, clock):
    subscribe("alice", "basic")
    clock.advance(days=1)
    subscribe("bob", "basic")
    clock.advance(days=1)
    subscribe("carol", "premium")
    subscribe("dave", "free")
    subscribe("erin", "basic")
    services.subscriptions.cancel("erin", immediate=True)


def test_revenue_report_covers_active_subscriptions(services, population):
    report = services.reports.revenue_report()
    assert report.total_revenue == Decimal("49.97")
    assert report.subscription_count == 4


def test_revenue_report_date_range(services, population, clock):
    start = clock.now() - timedelta(days=1)
    report = services.reports.revenue_report(start, clock.now())
    assert report.total_revenue == Decimal("39.98")
    assert report.subscription_count == 3


def test_revenue_report_rejects_inverted_range(services, clock):
    with pytest.raises(ValidationError):
        services.reports.revenue_report(clock.now(), clock.now() - timedelta(days=1))


def test_plan_usage_stats(services, population):
    stats = services.reports.plan_usage_stats()
    by_tier = {t.tier: t for t in stats.by_tier}

    assert stats.total_subscribers == 4
    assert by_tier["basic"].count == 2
    assert by_tier["basic"].revenue == Decimal("19.98")
    assert by_tier["basic"].percentage == 50.0
    assert by_tier["free"].percentage == 25.0
    assert "business" not in by_tier


def test_plan_usage_stats_empty(services, plans):
    stats = services.reports.plan_usage_stats()
    assert stats.total_subscribers == 0
    assert stats.by_tier == []


def test_plan_subscribers_pages_newest_first(services, plans, population):
    first = services.reports.plan_subscribers(plans["basic"].id, page=1, limit=1)
    second = services.reports.plan_subscribers(plans["basic"].id, page=2, limit=1)

    assert first.total == 2
    assert [s.subscriber_id for s in first.items] == ["bob"]
    assert [s.subscriber_id for s in second.items] == ["alice"]

    with pytest.raises(ValidationError):
        services.reports.plan_subscribers(plans["basic"].id, page=0)
