# cardhub/conftest.py
from datetime import datetime, timezone

import pytest

from cardhub.app import build_services
from cardhub.core.clock import FrozenClock
from cardhub.core.config import Settings
from cardhub.core.database import Database
from cardhub.tests.mocks import FakeListingProvider, FakePaymentProvider, RecordingNotifier

# Tuesday, mid-month, mid-day: away from every cron boundary
START = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
PAYMENT_METHOD = "pm_test_visa"


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite:///:memory:",
        SWEEP_BATCH_SIZE=2,
        RENEWAL_REMINDER_DAYS=3,
        LIMIT_WARNING_RATIO=0.8,
    )


@pytest.fixture
def database():
    """
    Isolated in-memory SQLite database (StaticPool) per test.
    """
    db = Database("sqlite:///:memory:")
    db.create_all()
    yield db
    db.drop_all()
    db.engine.dispose()


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def listings(clock):
    return FakeListingProvider(clock)


@pytest.fixture
def payments():
    return FakePaymentProvider()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def services(database, clock, listings, payments, notifier, test_settings):
    return build_services(
        database,
        clock=clock,
        listings=listings,
        payments=payments,
        notifier=notifier,
        config=test_settings,
    )


@pytest.fixture
def plans(services):
    """Default catalog keyed by tier: free 1/0, basic 5/3, premium 20/10, business unlimited."""
    return {plan.tier.value: plan for plan in services.catalog.seed_default_plans()}


@pytest.fixture
def subscribe(services, plans):
    """Subscribe a subscriber to a default tier (paid tiers get a payment method)."""

    def _subscribe(subscriber_id, tier="basic"):
        plan = plans[tier]
        return services.subscriptions.subscribe(
            subscriber_id,
            plan.id,
            payment_method_id=PAYMENT_METHOD if plan.is_paid else None,
        )

    return _subscribe
