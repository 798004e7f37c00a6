"""
cardhub/features/boosts/service.py

Boost lifecycle: time-boxed promotion of a single listing, billed against
the owner's boost quota.

Invariant: at most one active, unexpired boost per listing. A boost whose
end_date has passed but which the hourly sweep has not yet expired is
"stale": it no longer blocks a new boost and is expired on the spot.
"""

from datetime import datetime, timedelta
from typing import List, Optional
from uuid import uuid4
import logging

from sqlalchemy import select, insert, update, func, and_, or_
from sqlalchemy.exc import IntegrityError

from cardhub.core.clock import Clock, SystemClock
from cardhub.core.database import Database, boosts, fetch_one
from cardhub.core.errors import ConflictError, NotFoundError, PermissionError, ValidationError
from cardhub.features.listings.provider import ListingProvider
from cardhub.features.usage.service import UsageLedger
from cardhub.models.boost import MAX_BOOST_DAYS, MIN_BOOST_DAYS, Boost, BoostStats, BoostStatus


logger = logging.getLogger(__name__)

ACTIVE = BoostStatus.ACTIVE.value
EXPIRED = BoostStatus.EXPIRED.value


def _row_to_boost(row) -> Boost:
    return Boost(
        id=row.id,
        listing_id=row.listing_id,
        subscriber_id=row.subscriber_id,
        duration_days=row.duration_days,
        start_date=row.start_date,
        end_date=row.end_date,
        status=row.status,
        impressions=row.impressions,
        clicks=row.clicks,
        created_at=row.created_at,
    )


def validate_duration(duration_days) -> int:
    if isinstance(duration_days, bool) or not isinstance(duration_days, int):
        raise ValidationError("Boost duration must be a whole number of days")
    if not MIN_BOOST_DAYS <= duration_days <= MAX_BOOST_DAYS:
        raise ValidationError(
            f"Boost duration must be between {MIN_BOOST_DAYS} and {MAX_BOOST_DAYS} days"
        )
    return duration_days


class BoostManager:
    def __init__(
        self,
        database: Database,
        ledger: UsageLedger,
        clock: Optional[Clock] = None,
        listings: Optional[ListingProvider] = None,
    ):
        self.database = database
        self.ledger = ledger
        self.clock = clock or SystemClock()
        self.listings = listings

    # Reads

    def get(self, boost_id: str) -> Boost:
        with self.database.session() as session:
            row = fetch_one(session, boosts, boosts.c.id == boost_id)
        if not row:
            raise NotFoundError(f"Boost {boost_id} not found")
        return _row_to_boost(row)

    def get_active_for_listing(self, listing_id: str) -> Optional[Boost]:
        now = self.clock.now()
        with self.database.session() as session:
            row = fetch_one(
                session,
                boosts,
                boosts.c.listing_id == listing_id,
                boosts.c.status == ACTIVE,
                boosts.c.end_date > now,
            )
        return _row_to_boost(row) if row else None

    def get_active_for_subscriber(self, subscriber_id: str) -> List[Boost]:
        now = self.clock.now()
        with self.database.session() as session:
            rows = session.execute(
                select(boosts)
                .where(boosts.c.subscriber_id == subscriber_id)
                .where(boosts.c.status == ACTIVE)
                .where(boosts.c.end_date > now)
                .order_by(boosts.c.end_date)
            ).all()
        return [_row_to_boost(row) for row in rows]

    def list_expired(self, now: datetime, limit: int = 500, after: Optional[Boost] = None) -> List[Boost]:
        """Active boosts whose end_date is at or before ``now`` (sweep input).

        Keyset-paginated on (end_date, id) via ``after``.
        """
        query = select(boosts).where(boosts.c.status == ACTIVE).where(boosts.c.end_date <= now)
        if after is not None:
            query = query.where(
                or_(
                    boosts.c.end_date > after.end_date,
                    and_(boosts.c.end_date == after.end_date, boosts.c.id > after.id),
                )
            )
        with self.database.session() as session:
            rows = session.execute(
                query
                .order_by(boosts.c.end_date, boosts.c.id)
                .limit(limit)
            ).all()
        return [_row_to_boost(row) for row in rows]

    def stats_for_listing(self, listing_id: str) -> BoostStats:
        with self.database.session() as session:
            row = session.execute(
                select(
                    func.count(),
                    func.coalesce(func.sum(boosts.c.duration_days), 0),
                    func.coalesce(func.sum(boosts.c.impressions), 0),
                    func.coalesce(func.sum(boosts.c.clicks), 0),
                ).where(boosts.c.listing_id == listing_id)
            ).one()
        return BoostStats(
            listing_id=listing_id,
            total_boosts=int(row[0]),
            total_days=int(row[1]),
            total_impressions=int(row[2]),
            total_clicks=int(row[3]),
        )

    # Writes

    def _check_listing(self, subscriber_id: str, listing_id: str) -> None:
        if self.listings is None:
            return
        listing = self.listings.get(listing_id)
        if listing is None:
            raise NotFoundError(f"Listing {listing_id} not found")
        if listing.subscriber_id != subscriber_id:
            raise PermissionError("You can only boost your own listings")

    def create_boost(self, subscriber_id: str, listing_id: str, duration_days: int) -> Boost:
        """
        Boost a listing for ``duration_days`` (1-30).

        Raises:
            ValidationError: Bad duration (checked before anything is touched)
            NotFoundError: Unknown listing, or no active subscription
            PermissionError: Listing belongs to another subscriber
            ConflictError: Listing already has an unexpired active boost
            QuotaExceededError: Boost allowance for the period is used up
        """
        duration_days = validate_duration(duration_days)
        self._check_listing(subscriber_id, listing_id)
        now = self.clock.now()

        with self.database.session() as session:
            stale = session.execute(
                update(boosts)
                .where(boosts.c.listing_id == listing_id)
                .where(boosts.c.status == ACTIVE)
                .where(boosts.c.end_date <= now)
                .values(status=EXPIRED)
            ).rowcount
            existing = fetch_one(session, boosts, boosts.c.listing_id == listing_id, boosts.c.status == ACTIVE)
            if existing is not None:
                raise ConflictError("This listing already has an active boost")
        if stale:
            logger.info("[boosts] stale boost expired", extra={"listing_id": listing_id, "count": stale})

        self.ledger.check_and_reserve_boost(subscriber_id)

        boost_id = str(uuid4())
        try:
            with self.database.session() as session:
                try:
                    session.execute(
                        insert(boosts).values(
                            id=boost_id,
                            listing_id=listing_id,
                            subscriber_id=subscriber_id,
                            duration_days=duration_days,
                            start_date=now,
                            end_date=now + timedelta(days=duration_days),
                            status=ACTIVE,
                            impressions=0,
                            clicks=0,
                            created_at=now,
                        )
                    )
                except IntegrityError as exc:
                    raise ConflictError("This listing already has an active boost") from exc
        except Exception:
            # Lost the race for the listing, or storage failed; give the unit back
            logger.warning(
                "[boosts] create failed, releasing reservation",
                extra={"subscriber_id": subscriber_id, "listing_id": listing_id},
            )
            self.ledger.release_boost(subscriber_id)
            raise

        logger.info(
            "[boosts] created",
            extra={
                "subscriber_id": subscriber_id,
                "listing_id": listing_id,
                "boost_id": boost_id,
                "duration_days": duration_days,
            },
        )
        return self.get(boost_id)

    def expire(self, boost_id: str) -> Boost:
        """Mark a boost expired. Expiring an expired boost is a no-op."""
        with self.database.session() as session:
            changed = session.execute(
                update(boosts)
                .where(boosts.c.id == boost_id)
                .where(boosts.c.status == ACTIVE)
                .values(status=EXPIRED)
            ).rowcount
            row = fetch_one(session, boosts, boosts.c.id == boost_id)
            if not row:
                raise NotFoundError(f"Boost {boost_id} not found")

        if changed:
            logger.info("[boosts] expired", extra={"boost_id": boost_id, "listing_id": row.listing_id})
        return _row_to_boost(row)

    def record_engagement(self, boost_id: str, impressions: int = 0, clicks: int = 0) -> Boost:
        if impressions < 0 or clicks < 0:
            raise ValidationError("Engagement counts cannot be negative")
        with self.database.session() as session:
            result = session.execute(
                update(boosts)
                .where(boosts.c.id == boost_id)
                .values(
                    impressions=boosts.c.impressions + impressions,
                    clicks=boosts.c.clicks + clicks,
                )
            )
            if not result.rowcount:
                raise NotFoundError(f"Boost {boost_id} not found")
        return self.get(boost_id)
