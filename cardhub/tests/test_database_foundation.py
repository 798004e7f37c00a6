"""
Database foundation: session scope, idempotent insert, UTC handling, indexes.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import insert, inspect, select, text

from cardhub.core.database import Database, subscriptions, usage_periods
from cardhub.core.errors import NotFoundError, StorageError


def _usage_row(subscriber_id, now):
    return {
        "subscriber_id": subscriber_id,
        "plan_id": "plan-1",
        "listings_created": 0,
        "boosts_used": 0,
        "period_start": now,
        "period_end": now + timedelta(days=30),
        "created_at": now,
        "updated_at": now,
    }


def test_tables_and_indexes_exist(database):
    inspector = inspect(database.engine)
    assert {"plans", "subscriptions", "usage_periods", "boosts", "sweep_runs"} <= set(inspector.get_table_names())
    sub_indexes = {ix["name"] for ix in inspector.get_indexes("subscriptions")}
    assert "uq_subscriptions_active_subscriber" in sub_indexes
    boost_indexes = {ix["name"] for ix in inspector.get_indexes("boosts")}
    assert "uq_boosts_active_listing" in boost_indexes


def test_insert_ignore_is_idempotent(database, clock):
    now = clock.now()
    with database.session() as session:
        assert database.insert_ignore(session, usage_periods, _usage_row("sub-1", now), ["subscriber_id"])
    with database.session() as session:
        again = _usage_row("sub-1", now)
        again["plan_id"] = "plan-2"
        assert not database.insert_ignore(session, usage_periods, again, ["subscriber_id"])
        row = session.execute(select(usage_periods)).one()
    assert row.plan_id == "plan-1"


def test_datetimes_come_back_as_utc(database, clock):
    with database.session() as session:
        database.insert_ignore(session, usage_periods, _usage_row("sub-1", clock.now()), ["subscriber_id"])
    with database.session() as session:
        row = session.execute(select(usage_periods)).one()
    assert row.period_start == clock.now()
    assert row.period_start.tzinfo is not None


def test_sqlalchemy_failures_surface_as_storage_error(database):
    with pytest.raises(StorageError):
        with database.session() as session:
            session.execute(text("SELECT * FROM no_such_table"))


def test_domain_errors_roll_back_and_propagate(database, clock):
    with pytest.raises(NotFoundError):
        with database.session() as session:
            database.insert_ignore(session, usage_periods, _usage_row("sub-1", clock.now()), ["subscriber_id"])
            raise NotFoundError("nope")
    with database.session() as session:
        assert session.execute(select(usage_periods)).first() is None


def test_partial_unique_index_allows_one_active_subscription(database, clock):
    now = clock.now()

    def _sub(sub_id, status):
        return insert(subscriptions).values(
            id=sub_id,
            subscriber_id="sub-1",
            plan_id="plan-1",
            status=status,
            current_period_start=now,
            current_period_end=now + timedelta(days=30),
            created_at=now,
            updated_at=now,
        )

    with database.session() as session:
        session.execute(_sub("s1", "active"))
        session.execute(_sub("s2", "cancelled"))
        session.execute(_sub("s3", "expired"))

    with pytest.raises(StorageError):
        with database.session() as session:
            session.execute(_sub("s4", "active"))


def test_check_connection(database):
    assert database.check_connection()


def test_missing_url_is_rejected(monkeypatch):
    monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
    monkeypatch.setattr("cardhub.core.database.settings.DATABASE_URL", None)
    with pytest.raises(ValueError):
        Database()
