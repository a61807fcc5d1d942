"""
Stripe implementation of the BillingProvider protocol.
"""
import json
from datetime import datetime, timezone
from typing import Dict, Optional

import stripe

from promptforge.features.billing.provider import (
    BillingEvent,
    BillingProviderError,
    BillingWebhookError,
    CheckoutSession,
    SubscriptionState,
)


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str], webhook_secret: Optional[str] = None):
        if not secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        stripe.api_key = secret_key

    def ensure_customer(self, user_id: str, email: Optional[str] = None) -> str:
        try:
            found = stripe.Customer.search(query=f"metadata['user_id']:'{user_id}'", limit=1)
            if found.data:
                return found.data[0].id

            params: Dict[str, object] = {"metadata": {"user_id": user_id}}
            if email:
                params["email"] = email
            return stripe.Customer.create(**params).id
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer lookup failed: {e}")

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
        subscription_data: Dict[str, object] = {"metadata": {"plan_id": metadata.get("plan_id", ""), "user_id": metadata.get("user_id", "")}}
        if trial_days:
            subscription_data["trial_period_days"] = trial_days

        params: Dict[str, object] = {
            "customer": customer_id,
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "mode": "subscription",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "subscription_data": subscription_data,
        }
        if require_billing_address:
            params["billing_address_collection"] = "required"

        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")
        return CheckoutSession(session_id=session.id, url=session.url)

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        try:
            session = stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}")
        return session.url

    def cancel_at_period_end(self, subscription_id: str, reason: str) -> SubscriptionState:
        try:
            sub = stripe.Subscription.modify(
                subscription_id,
                cancel_at_period_end=True,
                metadata={
                    "cancellation_reason": reason,
                    "cancelled_at": datetime.now(timezone.utc).isoformat(),
                },
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription cancellation failed: {e}")
        return SubscriptionState(
            subscription_id=sub.id,
            status=sub.status,
            cancel_at_period_end=bool(sub.cancel_at_period_end),
            canceled_at=getattr(sub, "canceled_at", None),
        )

    def verify_webhook(self, headers: Dict[str, str], body: bytes) -> BillingEvent:
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            payload = body.decode("utf-8")
            stripe.WebhookSignature.verify_header(payload, sig_header, self.webhook_secret)
            event = json.loads(payload)
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")

        if not isinstance(event, dict) or "id" not in event or "type" not in event:
            raise BillingWebhookError("Invalid payload: not a Stripe event")

        data = (event.get("data") or {}).get("object") or {}
        return BillingEvent(event_id=event["id"], event_type=event["type"], data=data, raw=event)
