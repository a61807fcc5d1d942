"""
Billing service orchestrator.

Coordinates the plan catalogue, checkout/portal session creation,
subscription cancellation, plan resolution for a user and webhook
persistence. Stripe specifics live in stripe_provider.py; table
writes go through the backend REST client.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from promptforge.core.errors import NotFoundError, UpstreamError, ValidationError
from promptforge.core.metrics import stripe_webhooks_total
from promptforge.core.supabase import SupabaseRest, ensure_backend
from promptforge.features.billing.provider import (
    BillingEvent,
    BillingProvider,
    BillingProviderError,
    SubscriptionState,
)
from promptforge.features.billing.stripe_provider import StripeProvider
from promptforge.features.entitlements.plans import PLAN_ORDER, PlanTier, allowed_formats, parse_plan

logger = logging.getLogger(__name__)

BILLING_CYCLES = ("monthly", "yearly")

# Subscription statuses that grant the subscribed plan
ENTITLING_STATUSES = frozenset({"active", "trialing"})


@dataclass(frozen=True)
class PlanOffer:
    tier: PlanTier
    name: str
    description: str
    price_monthly: int  # cents
    price_yearly: int  # cents
    features: Tuple[str, ...] = ()
    trial_days: Optional[int] = None
    require_billing_address: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.tier.value,
            "name": self.name,
            "description": self.description,
            "price_monthly": self.price_monthly,
            "price_yearly": self.price_yearly,
            "features": list(self.features),
            "trial_days": self.trial_days,
            "export_formats": [f.value for f in sorted(allowed_formats(self.tier), key=lambda f: f.value)],
        }


PLAN_CATALOG: Dict[PlanTier, PlanOffer] = {
    PlanTier.FREE: PlanOffer(
        PlanTier.FREE, "Free", "Get started with basic prompt optimization", 0, 0,
        ("Basic modules", "Text export only", "Limited runs"),
    ),
    PlanTier.CREATOR: PlanOffer(
        PlanTier.CREATOR, "Creator", "Content creator focused with markdown export", 900, 9000,
        ("All modules", "Markdown export", "50 runs/month"),
    ),
    PlanTier.PRO: PlanOffer(
        PlanTier.PRO, "Pro", "Professional prompt engineering with advanced features", 2900, 29000,
        ("All modules", "PDF/JSON export", "Live GPT testing", "Cloud history", "100 runs/month"),
        trial_days=7,
    ),
    PlanTier.ENTERPRISE: PlanOffer(
        PlanTier.ENTERPRISE, "Enterprise", "Enterprise-grade with full API access and bundle exports", 9900, 99000,
        ("All modules", "All exports", "API access", "White-label", "Bundle exports", "1000 runs/month"),
        require_billing_address=True,
    ),
}


def list_plans() -> List[Dict[str, Any]]:
    return [PLAN_CATALOG[tier].to_dict() for tier in PLAN_ORDER]


def billing_enabled(settings_obj) -> bool:
    """Billing is enabled when a Stripe secret key is configured."""
    return bool(getattr(settings_obj, "STRIPE_SECRET_KEY", None))


def price_id_for(settings_obj, tier: PlanTier, cycle: str) -> Optional[str]:
    if tier == PlanTier.FREE or cycle not in BILLING_CYCLES:
        return None
    return getattr(settings_obj, f"STRIPE_PRICE_{tier.value.upper()}_{cycle.upper()}", None)


def plan_for_price(settings_obj, price_id: Optional[str]) -> Optional[str]:
    if not price_id:
        return None
    for tier in PLAN_ORDER:
        for cycle in BILLING_CYCLES:
            if price_id_for(settings_obj, tier, cycle) == price_id:
                return tier.value
    return None


def _iso_from_ts(value: Any) -> Optional[str]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), timezone.utc).isoformat()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def find_customer_id(backend: Optional[SupabaseRest], user_id: str) -> Optional[str]:
    if backend is None:
        return None
    rows = backend.select("stripe_customers", {"user_id": user_id}, columns="stripe_customer_id", limit=1)
    return rows[0].get("stripe_customer_id") if rows else None


def _subscriptions_for(backend: SupabaseRest, customer_id: str) -> List[Dict[str, Any]]:
    rows = backend.select("stripe_subscriptions", {"stripe_customer_id": customer_id})
    return sorted(rows, key=lambda r: r.get("updated_at") or "", reverse=True)


def resolve_plan(backend: Optional[SupabaseRest], user_id: str) -> PlanTier:
    """Highest plan among the user's active or trialing subscriptions; free otherwise.

    Backend failures propagate as UpstreamError rather than downgrading the caller.
    """
    customer_id = find_customer_id(backend, user_id)
    if not customer_id:
        return PlanTier.FREE
    tiers = [
        parse_plan(row.get("plan_id"))
        for row in _subscriptions_for(backend, customer_id)
        if row.get("status") in ENTITLING_STATUSES
    ]
    return max(tiers, key=PLAN_ORDER.index, default=PlanTier.FREE)


def current_subscription(backend: Optional[SupabaseRest], user_id: str) -> Optional[Dict[str, Any]]:
    """Most recently updated subscription record for the user, or None."""
    customer_id = find_customer_id(backend, user_id)
    if not customer_id:
        return None
    rows = _subscriptions_for(backend, customer_id)
    if not rows:
        return None
    row = rows[0]
    return {
        "id": row.get("stripe_subscription_id"),
        "status": row.get("status"),
        "plan_id": row.get("plan_id"),
        "current_period_start": row.get("current_period_start"),
        "current_period_end": row.get("current_period_end"),
        "cancel_at_period_end": bool(row.get("cancel_at_period_end")),
        "customer_id": customer_id,
    }


def same_origin(url: str, base_url: str) -> bool:
    target, base = urlparse(url), urlparse(base_url)
    return bool(target.netloc) and (target.scheme, target.netloc) == (base.scheme, base.netloc)


@dataclass
class WebhookOutcome:
    event_id: str
    event_type: str
    handled: bool
    writes: List[str] = field(default_factory=list)
    duplicate: bool = False


class BillingService:
    def __init__(self, provider: BillingProvider, settings_obj, backend: Optional[SupabaseRest] = None):
        self.provider = provider
        self.settings = settings_obj
        self.backend = backend

    # Checkout / portal

    def start_checkout(self, user_id: str, plan_id: Any, billing_cycle: str = "monthly", email: Optional[str] = None) -> Dict[str, Any]:
        try:
            tier = PlanTier(str(plan_id).lower())
        except ValueError:
            raise ValidationError("Invalid plan ID", code="invalid_plan")

        if tier == PlanTier.FREE:
            return {"success": True, "message": "Free plan activated", "plan": tier.value}

        if billing_cycle not in BILLING_CYCLES:
            raise ValidationError("Invalid billing cycle", code="invalid_billing_cycle")

        price_id = price_id_for(self.settings, tier, billing_cycle)
        if not price_id:
            raise ValidationError("Price not found for plan", code="price_not_configured")

        offer = PLAN_CATALOG[tier]
        app_url = self.settings.APP_URL.rstrip("/")
        try:
            customer_id = self.provider.ensure_customer(user_id, email)
        except BillingProviderError as e:
            logger.error("billing.customer_failed", extra={"user_id": user_id, "error_code": "stripe_error"})
            raise UpstreamError("Failed to create checkout session", code="checkout_failed") from e
        self._remember_customer(user_id, customer_id, email)

        try:
            session = self.provider.create_checkout_session(
                customer_id=customer_id,
                price_id=price_id,
                success_url=f"{app_url}/dashboard?success=true&session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{app_url}/pricing?canceled=true",
                metadata={"plan_id": tier.value, "user_id": user_id, "billing_cycle": billing_cycle},
                trial_days=offer.trial_days,
                require_billing_address=offer.require_billing_address,
            )
        except BillingProviderError as e:
            logger.error("billing.checkout_failed", extra={"user_id": user_id, "plan": tier.value, "error_code": "stripe_error"})
            raise UpstreamError("Failed to create checkout session", code="checkout_failed") from e

        logger.info("billing.checkout_created", extra={"user_id": user_id, "plan": tier.value, "event_type": "billing.checkout_created"})
        return {
            "success": True,
            "sessionId": session.session_id,
            "url": session.url,
            "plan": tier.value,
            "billingCycle": billing_cycle,
        }

    def _remember_customer(self, user_id: str, customer_id: str, email: Optional[str]) -> None:
        """Link the user to their customer id; plan lookups start from this row."""
        if self.backend is None:
            logger.warning("billing.customer_not_persisted", extra={"user_id": user_id})
            return
        self.backend.upsert(
            "stripe_customers",
            {"user_id": user_id, "stripe_customer_id": customer_id, "email": email, "updated_at": _now_iso()},
            on_conflict="user_id",
        )

    def _require_backend(self) -> SupabaseRest:
        return ensure_backend(self.backend)

    def _require_customer(self, user_id: str) -> str:
        customer_id = find_customer_id(self._require_backend(), user_id)
        if not customer_id:
            raise NotFoundError("Customer not found", code="customer_not_found")
        return customer_id

    def start_portal(self, user_id: str, return_url: Optional[str] = None) -> str:
        """Portal URL for the caller's own customer record.

        ``return_url`` must stay on APP_URL's origin; it defaults to the dashboard.
        """
        app_url = self.settings.APP_URL.rstrip("/")
        if return_url is None:
            return_url = f"{app_url}/dashboard"
        elif not same_origin(return_url, app_url):
            raise ValidationError("return_url must be on the application origin", code="invalid_return_url")

        customer_id = self._require_customer(user_id)
        try:
            return self.provider.create_portal_session(customer_id, return_url)
        except BillingProviderError as e:
            raise UpstreamError("Failed to create billing portal session", code="portal_failed") from e

    def cancel_subscription(self, user_id: str, subscription_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """Cancel one of the caller's subscriptions at the end of its period."""
        customer_id = self._require_customer(user_id)
        owned = self.backend.select(
            "stripe_subscriptions",
            {"stripe_subscription_id": subscription_id, "stripe_customer_id": customer_id},
            limit=1,
        )
        if not owned:
            raise NotFoundError("Subscription not found", code="subscription_not_found")

        try:
            state: SubscriptionState = self.provider.cancel_at_period_end(
                subscription_id, reason or "User requested cancellation",
            )
        except BillingProviderError as e:
            logger.error("billing.cancel_failed", extra={"user_id": user_id, "error_code": "stripe_error"})
            raise UpstreamError("Failed to cancel subscription", code="cancel_failed") from e

        self.backend.update(
            "stripe_subscriptions",
            {"cancel_at_period_end": state.cancel_at_period_end, "status": state.status, "updated_at": _now_iso()},
            {"stripe_subscription_id": subscription_id},
        )
        logger.info("billing.subscription_cancel_scheduled", extra={"user_id": user_id, "event_type": "billing.cancel_scheduled"})
        return {
            "id": state.subscription_id,
            "status": state.status,
            "cancel_at_period_end": state.cancel_at_period_end,
            "canceled_at": _iso_from_ts(state.canceled_at),
        }

    # Webhooks

    def process_webhook(self, headers: Dict[str, str], body: bytes) -> WebhookOutcome:
        """Verify and persist a webhook event.

        Raises BillingWebhookError on signature/payload problems.
        """
        event = self.provider.verify_webhook(headers, body)
        stripe_webhooks_total.inc(labels={"event_type": event.event_type})
        outcome = WebhookOutcome(event_id=event.event_id, event_type=event.event_type, handled=False)

        if self.backend is None:
            logger.warning("billing.webhook_not_persisted", extra={"event_type": event.event_type, "stripe_event_id": event.event_id})
            return outcome

        # Stripe retries deliveries; an event already processed is acknowledged without rewriting
        seen = self.backend.select("stripe_webhooks", {"stripe_event_id": event.event_id}, columns="processed", limit=1)
        if seen and seen[0].get("processed"):
            logger.info("billing.webhook_duplicate", extra={"stripe_event_id": event.event_id, "stripe_event_type": event.event_type})
            outcome.duplicate = True
            return outcome

        self.backend.upsert("stripe_webhooks", {
            "stripe_event_id": event.event_id,
            "event_type": event.event_type,
            "payload": event.raw,
            "processed": False,
            "created_at": _now_iso(),
        }, on_conflict="stripe_event_id")
        outcome.writes.append("stripe_webhooks")

        if event.event_type.startswith("customer.subscription."):
            self.backend.upsert("stripe_subscriptions", self._subscription_row(event), on_conflict="stripe_subscription_id")
            outcome.writes.append("stripe_subscriptions")
            outcome.handled = True
        elif event.event_type.startswith("invoice."):
            self.backend.upsert("stripe_invoices", self._invoice_row(event), on_conflict="stripe_invoice_id")
            outcome.writes.append("stripe_invoices")
            outcome.handled = True
        else:
            logger.info("billing.webhook_unhandled", extra={"event_type": event.event_type})

        self.backend.update(
            "stripe_webhooks",
            {"processed": True, "processed_at": _now_iso()},
            {"stripe_event_id": event.event_id},
        )
        logger.info(
            "billing.webhook_processed",
            extra={"event_type": "billing.webhook_processed", "stripe_event_type": event.event_type, "handled": outcome.handled},
        )
        return outcome

    def _subscription_row(self, event: BillingEvent) -> Dict[str, Any]:
        sub = event.data
        items = (sub.get("items") or {}).get("data") or []
        price_id = ((items[0].get("price") or {}).get("id")) if items else None
        status = "canceled" if event.event_type == "customer.subscription.deleted" else sub.get("status")
        return {
            "stripe_subscription_id": sub.get("id"),
            "stripe_customer_id": sub.get("customer"),
            "status": status,
            "plan_id": (sub.get("metadata") or {}).get("plan_id") or plan_for_price(self.settings, price_id),
            "price_id": price_id,
            "current_period_start": _iso_from_ts(sub.get("current_period_start")),
            "current_period_end": _iso_from_ts(sub.get("current_period_end")),
            "trial_end": _iso_from_ts(sub.get("trial_end")),
            "cancel_at_period_end": bool(sub.get("cancel_at_period_end", False)),
            "updated_at": _now_iso(),
        }

    def _invoice_row(self, event: BillingEvent) -> Dict[str, Any]:
        invoice = event.data
        return {
            "stripe_invoice_id": invoice.get("id"),
            "stripe_customer_id": invoice.get("customer"),
            "stripe_subscription_id": invoice.get("subscription"),
            "status": invoice.get("status"),
            "amount_due": invoice.get("amount_due"),
            "amount_paid": invoice.get("amount_paid"),
            "currency": invoice.get("currency"),
            "hosted_invoice_url": invoice.get("hosted_invoice_url"),
            "updated_at": _now_iso(),
        }


def get_provider(settings_obj) -> Optional[BillingProvider]:
    """Stripe provider when billing is enabled, else None."""
    if not billing_enabled(settings_obj):
        return None
    return StripeProvider(settings_obj.STRIPE_SECRET_KEY, settings_obj.STRIPE_WEBHOOK_SECRET)
