"""
Composition root.

Every component receives its collaborators explicitly; nothing is looked
up from process-wide state. Host applications and the worker CLI call
build_services() once and keep the returned bundle.
"""
from dataclasses import dataclass
from typing import Optional

from cardhub.core.clock import Clock, SystemClock
from cardhub.core.config import Settings, settings as default_settings
from cardhub.core.database import Database
from cardhub.features.boosts.service import BoostManager
from cardhub.features.downgrade.service import DowngradeReconciler
from cardhub.features.listings.provider import ListingProvider
from cardhub.features.listings.service import ListingCreationGate
from cardhub.features.notifications.provider import LoggingNotifier, Notifier
from cardhub.features.payments.provider import NoopPaymentProvider, PaymentProvider
from cardhub.features.plans.service import PlanCatalog
from cardhub.features.reconciliation.scheduler import ReconciliationScheduler, build_default_jobs
from cardhub.features.reconciliation.sweeps import ReconciliationSweeps
from cardhub.features.reports.service import SubscriptionReports
from cardhub.features.subscriptions.service import SubscriptionManager
from cardhub.features.usage.service import UsageLedger


@dataclass
class Services:
    database: Database
    clock: Clock
    catalog: PlanCatalog
    ledger: UsageLedger
    subscriptions: SubscriptionManager
    boosts: BoostManager
    reports: SubscriptionReports
    sweeps: ReconciliationSweeps
    scheduler: ReconciliationScheduler
    # Require a listing collaborator
    reconciler: Optional[DowngradeReconciler] = None
    listings: Optional[ListingCreationGate] = None


def build_services(
    database: Optional[Database] = None,
    *,
    clock: Optional[Clock] = None,
    listings: Optional[ListingProvider] = None,
    payments: Optional[PaymentProvider] = None,
    notifier: Optional[Notifier] = None,
    config: Optional[Settings] = None,
) -> Services:
    cfg = config or default_settings
    database = database or Database()
    clock = clock or SystemClock()
    notifier = notifier or LoggingNotifier()
    payments = payments or NoopPaymentProvider()

    catalog = PlanCatalog(database, clock)
    ledger = UsageLedger(database, clock, notifier=notifier, warning_ratio=cfg.LIMIT_WARNING_RATIO)
    reconciler = DowngradeReconciler(catalog, listings, notifier=notifier) if listings is not None else None
    subscriptions = SubscriptionManager(
        database,
        catalog,
        ledger,
        clock=clock,
        payments=payments,
        notifier=notifier,
        reconciler=reconciler,
    )
    boosts = BoostManager(database, ledger, clock=clock, listings=listings)
    sweeps = ReconciliationSweeps(
        catalog,
        subscriptions,
        ledger,
        boosts,
        clock=clock,
        notifier=notifier,
        batch_size=cfg.SWEEP_BATCH_SIZE,
        reminder_days=cfg.RENEWAL_REMINDER_DAYS,
        timezone=cfg.SCHEDULER_TIMEZONE,
    )
    scheduler = ReconciliationScheduler(
        build_default_jobs(sweeps, cfg.SCHEDULER_TIMEZONE),
        clock=clock,
        database=database,
        timezone=cfg.SCHEDULER_TIMEZONE,
    )

    return Services(
        database=database,
        clock=clock,
        catalog=catalog,
        ledger=ledger,
        subscriptions=subscriptions,
        boosts=boosts,
        reports=SubscriptionReports(database),
        sweeps=sweeps,
        scheduler=scheduler,
        reconciler=reconciler,
        listings=ListingCreationGate(ledger, listings) if listings is not None else None,
    )
