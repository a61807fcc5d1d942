"""
Billing provider protocol.

Route handlers and the billing service only talk to this interface, so
tests can swap Stripe for an in-memory fake.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol


@dataclass
class CheckoutSession:
    session_id: str
    url: str


@dataclass
class BillingEvent:
    """A verified webhook event."""
    event_id: str
    event_type: str
    data: Dict[str, Any]  # event.data.object
    raw: Dict[str, Any]


@dataclass
class SubscriptionState:
    subscription_id: str
    status: str
    cancel_at_period_end: bool
    canceled_at: Optional[int] = None  # unix seconds


class BillingProvider(Protocol):
    def ensure_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """Return the provider customer id for ``user_id``, creating it if needed."""
        ...

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        trial_days: Optional[int] = None,
        require_billing_address: bool = False,
    ) -> CheckoutSession:
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Return the portal URL."""
        ...

    def cancel_at_period_end(self, subscription_id: str, reason: str) -> SubscriptionState:
        """Schedule cancellation at the end of the current period, recording ``reason``."""
        ...

    def verify_webhook(self, headers: Dict[str, str], body: bytes) -> BillingEvent:
        """Verify the signature header and parse the event.

        Raises:
            BillingWebhookError: missing/invalid signature or malformed payload
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""


class BillingWebhookError(BillingProviderError):
    """Exception for webhook verification/parsing errors."""
