"""
Billing API routes (Stripe proxy).

- GET  /api/stripe/products: plan catalogue
- POST /api/stripe/create-checkout-session: subscription checkout
- POST /api/stripe/create-portal-session: customer self-service portal for the caller
- GET  /api/stripe/subscription: the caller's current subscription
- POST /api/stripe/subscriptions/{subscription_id}/cancel: cancel at period end
- POST /api/stripe/webhook: Stripe webhook receiver
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from promptforge.core.auth import get_current_user_id
from promptforge.core.config import Settings, get_settings
from promptforge.core.errors import ServiceUnavailableError, ValidationError
from promptforge.core.supabase import SupabaseRest, ensure_backend, get_backend
from promptforge.features.billing.provider import BillingProviderError, BillingWebhookError
from promptforge.features.billing.service import BillingService, current_subscription, get_provider, list_plans

router = APIRouter(prefix="/api/stripe", tags=["billing"])


class CheckoutRequest(BaseModel):
    plan_id: str
    billing_cycle: str = "monthly"
    email: Optional[str] = None


class PortalRequest(BaseModel):
    return_url: Optional[str] = Field(default=None, min_length=1)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


def get_billing_service(
    backend: Optional[SupabaseRest] = Depends(get_backend),
    cfg: Settings = Depends(get_settings),
) -> BillingService:
    try:
        provider = get_provider(cfg)
    except BillingProviderError:
        provider = None
    if provider is None:
        raise ServiceUnavailableError(
            "Stripe is not configured. Set STRIPE_SECRET_KEY environment variable.",
            code="billing_disabled",
        )
    return BillingService(provider, cfg, backend)


@router.get("/products")
def products():
    return {"plans": list_plans()}


@router.post("/create-checkout-session")
def create_checkout_session(
    body: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    service: BillingService = Depends(get_billing_service),
):
    return service.start_checkout(user_id, body.plan_id, body.billing_cycle, email=body.email)


@router.post("/create-portal-session")
def create_portal_session(
    body: Optional[PortalRequest] = None,
    user_id: str = Depends(get_current_user_id),
    service: BillingService = Depends(get_billing_service),
):
    return {"url": service.start_portal(user_id, body.return_url if body else None)}


@router.get("/subscription")
def get_subscription(
    user_id: str = Depends(get_current_user_id),
    backend: Optional[SupabaseRest] = Depends(get_backend),
):
    return {"subscription": current_subscription(ensure_backend(backend), user_id)}


@router.post("/subscriptions/{subscription_id}/cancel")
def cancel_subscription(
    subscription_id: str,
    body: Optional[CancelRequest] = None,
    user_id: str = Depends(get_current_user_id),
    service: BillingService = Depends(get_billing_service),
):
    subscription = service.cancel_subscription(user_id, subscription_id, body.reason if body else None)
    return {"success": True, "subscription": subscription}


@router.post("/webhook")
async def stripe_webhook(request: Request, service: BillingService = Depends(get_billing_service)):
    """Verify and persist a Stripe event. Signature failures are 400; replays are acknowledged."""
    body = await request.body()
    try:
        outcome = service.process_webhook(dict(request.headers), body)
    except BillingWebhookError as e:
        raise ValidationError(str(e), code="invalid_webhook")
    return {
        "received": True,
        "event_id": outcome.event_id,
        "handled": outcome.handled,
        "duplicate": outcome.duplicate,
    }
