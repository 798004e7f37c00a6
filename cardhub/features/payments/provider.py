"""
Payment collaborator protocol.

Payment processing is not modeled by the entitlement engine. The
subscription manager calls through this protocol when a paid plan is
subscribed to or renewed; gateway integrations live elsewhere.
"""
from typing import Protocol, Dict, Optional
from dataclasses import dataclass, field
from decimal import Decimal
import logging


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of an authorization or charge."""
    approved: bool
    reference: Optional[str] = None
    decline_reason: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


class PaymentProvider(Protocol):

    def authorize(
        self,
        subscriber_id: str,
        payment_method_id: str,
        amount: Decimal,
        currency: str,
    ) -> PaymentResult:
        """
        Authorize a payment method for an initial subscription charge.

        Returns:
            PaymentResult with approved=False on a decline

        Raises:
            PaymentProviderError: If the gateway cannot be reached
        """
        ...

    def charge(
        self,
        subscriber_id: str,
        payment_method_id: Optional[str],
        amount: Decimal,
        currency: str,
        *,
        reference: str,
    ) -> PaymentResult:
        """
        Charge a renewal.

        Args:
            reference: Idempotency reference (subscription id + period end)
        """
        ...


class PaymentProviderError(Exception):
    """Base exception for payment collaborator failures."""
    pass


class NoopPaymentProvider:
    """Approves every request. Stand-in until a gateway is wired."""

    def authorize(self, subscriber_id, payment_method_id, amount, currency) -> PaymentResult:
        logger.info(
            "[payments] authorize (noop)",
            extra={"subscriber_id": subscriber_id, "amount": str(amount), "currency": currency},
        )
        return PaymentResult(approved=True, reference=f"noop-auth-{subscriber_id}")

    def charge(self, subscriber_id, payment_method_id, amount, currency, *, reference) -> PaymentResult:
        logger.info(
            "[payments] charge (noop)",
            extra={"subscriber_id": subscriber_id, "amount": str(amount), "reference": reference},
        )
        return PaymentResult(approved=True, reference=reference)
