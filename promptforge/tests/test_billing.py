"""
Tests for plan catalogue, checkout, portal and webhook persistence.
"""
import hashlib
import hmac
import json
import time
from unittest.mock import Mock, patch

import pytest

from promptforge.api.billing import get_billing_service
from promptforge.core.config import Settings
from promptforge.core.errors import NotFoundError, UpstreamError, ValidationError
from promptforge.core.metrics import stripe_webhooks_total
from promptforge.features.billing.provider import BillingProviderError, BillingWebhookError
from promptforge.features.billing.service import BillingService, plan_for_price, resolve_plan
from promptforge.features.entitlements.plans import PlanTier
from promptforge.features.billing.stripe_provider import StripeProvider
from promptforge.tests.mocks import FakeBillingProvider, FakePostgrest

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def billing_settings():
    return Settings(
        APP_URL="https://app.promptforge.test",
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        STRIPE_PRICE_CREATOR_MONTHLY="price_creator_m",
        STRIPE_PRICE_PRO_MONTHLY="price_pro_m",
        STRIPE_PRICE_PRO_YEARLY="price_pro_y",
        STRIPE_PRICE_ENTERPRISE_MONTHLY="price_ent_m",
    )


@pytest.fixture
def provider():
    return FakeBillingProvider()


def _event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def test_products_lists_all_plans(make_client):
    resp = make_client().get("/api/stripe/products")
    assert resp.status_code == 200
    plans = resp.json()["plans"]
    assert [p["id"] for p in plans] == ["free", "creator", "pro", "enterprise"]
    assert plans[2]["trial_days"] == 7
    assert plans[3]["export_formats"] == ["bundle", "json", "md", "pdf", "txt"]


def test_billing_disabled_returns_503(make_client, test_settings):
    test_settings(STRIPE_SECRET_KEY=None, ENV="development")
    client = make_client()

    resp = client.post(
        "/api/stripe/create-checkout-session",
        json={"plan_id": "pro"},
        headers={"X-User-Id": "user_1"},
    )
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "billing_disabled"


def test_checkout_pro_has_trial(provider, billing_settings):
    service = BillingService(provider, billing_settings)
    result = service.start_checkout("user_1", "pro", "monthly", email="ada@example.com")

    assert result == {
        "success": True,
        "sessionId": "cs_test_123",
        "url": "https://checkout.stripe.com/c/cs_test_123",
        "plan": "pro",
        "billingCycle": "monthly",
    }
    call = provider.checkout_calls[0]
    assert call["customer_id"] == "cus_user_1"
    assert call["price_id"] == "price_pro_m"
    assert call["trial_days"] == 7
    assert call["require_billing_address"] is False
    assert call["success_url"].startswith("https://app.promptforge.test/dashboard?success=true")
    assert call["metadata"] == {"plan_id": "pro", "user_id": "user_1", "billing_cycle": "monthly"}


def test_checkout_enterprise_requires_billing_address(provider, billing_settings):
    BillingService(provider, billing_settings).start_checkout("user_1", "enterprise")
    assert provider.checkout_calls[0]["require_billing_address"] is True
    assert provider.checkout_calls[0]["trial_days"] is None


def test_checkout_free_plan_needs_no_session(provider, billing_settings):
    result = BillingService(provider, billing_settings).start_checkout("user_1", "free")
    assert result == {"success": True, "message": "Free plan activated", "plan": "free"}
    assert provider.checkout_calls == []


@pytest.mark.parametrize(
    "plan_id,cycle,code",
    [
        ("gold", "monthly", "invalid_plan"),
        ("pro", "weekly", "invalid_billing_cycle"),
        ("creator", "yearly", "price_not_configured"),
    ],
)
def test_checkout_rejects(provider, billing_settings, plan_id, cycle, code):
    with pytest.raises(ValidationError) as exc_info:
        BillingService(provider, billing_settings).start_checkout("user_1", plan_id, cycle)
    assert exc_info.value.code == code


def test_checkout_endpoint(make_client, provider, billing_settings, test_settings):
    test_settings(ENV="development", SUPABASE_JWT_SECRET=None)
    client = make_client(overrides={get_billing_service: lambda: BillingService(provider, billing_settings)})

    resp = client.post(
        "/api/stripe/create-checkout-session",
        json={"plan_id": "pro", "billing_cycle": "yearly"},
        headers={"X-User-Id": "user_9"},
    )
    assert resp.status_code == 200
    assert resp.json()["sessionId"] == "cs_test_123"
    assert provider.checkout_calls[0]["price_id"] == "price_pro_y"


def test_checkout_endpoint_requires_user(make_client, provider, billing_settings, test_settings):
    test_settings(ENV="development", SUPABASE_JWT_SECRET=None)
    client = make_client(overrides={get_billing_service: lambda: BillingService(provider, billing_settings)})

    resp = client.post("/api/stripe/create-checkout-session", json={"plan_id": "pro"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"


def test_checkout_remembers_customer(provider, billing_settings):
    backend = FakePostgrest()
    service = BillingService(provider, billing_settings, backend.client())

    service.start_checkout("user_1", "pro", email="ada@example.com")
    service.start_checkout("user_1", "enterprise", email="ada@example.com")

    rows = backend.tables["stripe_customers"]
    assert len(rows) == 1
    assert rows[0]["user_id"] == "user_1"
    assert rows[0]["stripe_customer_id"] == "cus_user_1"


def test_portal_session_for_own_customer(provider, billing_settings):
    backend = FakePostgrest({"stripe_customers": [{"user_id": "user_1", "stripe_customer_id": "cus_42"}]})
    service = BillingService(provider, billing_settings, backend.client())

    url = service.start_portal("user_1", "https://app.promptforge.test/account")
    assert url == "https://billing.stripe.com/p/cus_42"
    assert provider.portal_calls == [{"customer_id": "cus_42", "return_url": "https://app.promptforge.test/account"}]

    service.start_portal("user_1")
    assert provider.portal_calls[1]["return_url"] == "https://app.promptforge.test/dashboard"

    with pytest.raises(NotFoundError):
        service.start_portal("user_2")


@pytest.mark.parametrize(
    "return_url",
    [
        "https://evil.example/phish",
        "http://app.promptforge.test/account",
        "https://app.promptforge.test.evil.example/",
        "//evil.example/",
        "/account",
    ],
)
def test_portal_rejects_foreign_return_url(provider, billing_settings, return_url):
    backend = FakePostgrest({"stripe_customers": [{"user_id": "user_1", "stripe_customer_id": "cus_42"}]})
    service = BillingService(provider, billing_settings, backend.client())

    with pytest.raises(ValidationError) as exc_info:
        service.start_portal("user_1", return_url)
    assert exc_info.value.code == "invalid_return_url"
    assert provider.portal_calls == []


def test_portal_endpoint_requires_user(make_client, provider, billing_settings, test_settings):
    test_settings(ENV="development", SUPABASE_JWT_SECRET=None)
    backend = FakePostgrest({"stripe_customers": [{"user_id": "user_1", "stripe_customer_id": "cus_42"}]})
    client = make_client(overrides={
        get_billing_service: lambda: BillingService(provider, billing_settings, backend.client()),
    })

    assert client.post("/api/stripe/create-portal-session", json={}).status_code == 401

    resp = client.post("/api/stripe/create-portal-session", json={}, headers={"X-User-Id": "user_1"})
    assert resp.status_code == 200
    assert resp.json() == {"url": "https://billing.stripe.com/p/cus_42"}


# Subscriptions and plan resolution

def _subscription_tables():
    return {
        "stripe_customers": [{"user_id": "user_1", "stripe_customer_id": "cus_1"}],
        "stripe_subscriptions": [
            {
                "stripe_subscription_id": "sub_old",
                "stripe_customer_id": "cus_1",
                "plan_id": "enterprise",
                "status": "canceled",
                "updated_at": "2026-01-01T00:00:00+00:00",
            },
            {
                "stripe_subscription_id": "sub_1",
                "stripe_customer_id": "cus_1",
                "plan_id": "pro",
                "status": "active",
                "current_period_end": "2026-11-01T00:00:00+00:00",
                "cancel_at_period_end": False,
                "updated_at": "2026-10-01T00:00:00+00:00",
            },
            {
                "stripe_subscription_id": "sub_other",
                "stripe_customer_id": "cus_2",
                "plan_id": "enterprise",
                "status": "active",
                "updated_at": "2026-10-02T00:00:00+00:00",
            },
        ],
    }


def test_resolve_plan_uses_entitling_subscriptions():
    backend = FakePostgrest(_subscription_tables()).client()
    assert resolve_plan(backend, "user_1") == PlanTier.PRO
    assert resolve_plan(backend, "user_unknown") == PlanTier.FREE
    assert resolve_plan(None, "user_1") == PlanTier.FREE


def test_resolve_plan_trialing_counts_past_due_does_not():
    tables = _subscription_tables()
    tables["stripe_subscriptions"][1]["status"] = "trialing"
    assert resolve_plan(FakePostgrest(tables).client(), "user_1") == PlanTier.PRO

    tables["stripe_subscriptions"][1]["status"] = "past_due"
    assert resolve_plan(FakePostgrest(tables).client(), "user_1") == PlanTier.FREE


def test_resolve_plan_backend_failure_is_an_error():
    backend = FakePostgrest(_subscription_tables(), fail_tables={"stripe_subscriptions"}).client()
    with pytest.raises(UpstreamError):
        resolve_plan(backend, "user_1")


def test_subscription_endpoint(make_client, test_settings):
    test_settings(ENV="development", SUPABASE_JWT_SECRET=None)
    client = make_client(backend=FakePostgrest(_subscription_tables()))

    resp = client.get("/api/stripe/subscription", headers={"X-User-Id": "user_1"})
    assert resp.status_code == 200
    sub = resp.json()["subscription"]
    assert sub["id"] == "sub_1"
    assert sub["plan_id"] == "pro"
    assert sub["status"] == "active"
    assert sub["cancel_at_period_end"] is False
    assert sub["customer_id"] == "cus_1"

    assert client.get("/api/stripe/subscription", headers={"X-User-Id": "user_9"}).json() == {"subscription": None}
    assert client.get("/api/stripe/subscription").status_code == 401


def test_cancel_subscription_at_period_end(provider, billing_settings):
    backend = FakePostgrest(_subscription_tables())
    service = BillingService(provider, billing_settings, backend.client())

    result = service.cancel_subscription("user_1", "sub_1", "Too expensive")
    assert result == {"id": "sub_1", "status": "active", "cancel_at_period_end": True, "canceled_at": None}
    assert provider.cancel_calls == [{"subscription_id": "sub_1", "reason": "Too expensive"}]
    row = next(r for r in backend.tables["stripe_subscriptions"] if r["stripe_subscription_id"] == "sub_1")
    assert row["cancel_at_period_end"] is True

    service.cancel_subscription("user_1", "sub_1")
    assert provider.cancel_calls[1]["reason"] == "User requested cancellation"


def test_cancel_someone_elses_subscription_is_not_found(provider, billing_settings):
    service = BillingService(provider, billing_settings, FakePostgrest(_subscription_tables()).client())

    with pytest.raises(NotFoundError) as exc_info:
        service.cancel_subscription("user_1", "sub_other")
    assert exc_info.value.code == "subscription_not_found"
    assert provider.cancel_calls == []


def test_cancel_provider_failure(provider, billing_settings):
    provider.fail_cancel = True
    service = BillingService(provider, billing_settings, FakePostgrest(_subscription_tables()).client())

    with pytest.raises(UpstreamError) as exc_info:
        service.cancel_subscription("user_1", "sub_1")
    assert exc_info.value.code == "cancel_failed"


def test_cancel_endpoint(make_client, provider, billing_settings, test_settings):
    test_settings(ENV="development", SUPABASE_JWT_SECRET=None)
    backend = FakePostgrest(_subscription_tables())
    client = make_client(overrides={
        get_billing_service: lambda: BillingService(provider, billing_settings, backend.client()),
    })

    resp = client.post(
        "/api/stripe/subscriptions/sub_1/cancel",
        json={"reason": "Switching tools"},
        headers={"X-User-Id": "user_1"},
    )
    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert resp.json()["subscription"]["cancel_at_period_end"] is True
    assert provider.cancel_calls == [{"subscription_id": "sub_1", "reason": "Switching tools"}]

    resp = client.post("/api/stripe/subscriptions/sub_other/cancel", headers={"X-User-Id": "user_1"})
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "subscription_not_found"


def test_entitlements_endpoint(make_client, test_settings):
    test_settings(ENV="development", SUPABASE_JWT_SECRET=None)
    client = make_client(backend=FakePostgrest(_subscription_tables()))

    resp = client.get("/api/entitlements", headers={"X-User-Id": "user_1"})
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["user_id"] == "user_1"
    assert data["plan"] == "pro"
    assert data["export_formats"] == ["txt", "md", "json", "pdf"]
    assert data["bundle_available"] is False
    assert "Live GPT testing" in data["features"]

    free = client.get("/api/entitlements", headers={"X-User-Id": "user_9"}).json()["data"]
    assert free["plan"] == "free"
    assert free["export_formats"] == ["txt"]

    assert client.get("/api/entitlements").status_code == 401


# Webhooks

def test_webhook_subscription_upsert(provider, billing_settings):
    backend = FakePostgrest()
    service = BillingService(provider, billing_settings, backend.client())
    sub = {
        "id": "sub_1",
        "customer": "cus_1",
        "status": "active",
        "items": {"data": [{"price": {"id": "price_pro_m"}}]},
        "current_period_start": 1767225600,
        "current_period_end": 1769904000,
        "cancel_at_period_end": False,
    }
    body = json.dumps(_event("customer.subscription.created", sub)).encode()

    outcome = service.process_webhook({"stripe-signature": "valid"}, body)
    assert outcome.handled is True
    assert outcome.writes == ["stripe_webhooks", "stripe_subscriptions"]

    row = backend.tables["stripe_subscriptions"][0]
    assert row["status"] == "active"
    assert row["plan_id"] == "pro"
    assert row["current_period_start"] == "2026-01-01T00:00:00+00:00"
    assert backend.tables["stripe_webhooks"][0]["processed"] is True
    assert stripe_webhooks_total.value(labels={"event_type": "customer.subscription.created"}) == 1

    deleted = json.dumps(_event("customer.subscription.deleted", sub, event_id="evt_2")).encode()
    service.process_webhook({"stripe-signature": "valid"}, deleted)
    assert len(backend.tables["stripe_subscriptions"]) == 1
    assert backend.tables["stripe_subscriptions"][0]["status"] == "canceled"


def test_webhook_invoice_and_unhandled(provider, billing_settings):
    backend = FakePostgrest()
    service = BillingService(provider, billing_settings, backend.client())

    invoice = {"id": "in_1", "customer": "cus_1", "status": "paid", "amount_paid": 2900, "currency": "usd"}
    service.process_webhook({"stripe-signature": "valid"}, json.dumps(_event("invoice.paid", invoice)).encode())
    assert backend.tables["stripe_invoices"][0]["amount_paid"] == 2900

    outcome = service.process_webhook(
        {"stripe-signature": "valid"},
        json.dumps(_event("checkout.session.completed", {"id": "cs_1"}, event_id="evt_3")).encode(),
    )
    assert outcome.handled is False
    assert len(backend.tables["stripe_webhooks"]) == 2


def test_webhook_endpoint_rejects_bad_signature(make_client, provider, billing_settings):
    client = make_client(overrides={get_billing_service: lambda: BillingService(provider, billing_settings)})

    resp = client.post(
        "/api/stripe/webhook",
        content=json.dumps(_event("invoice.paid", {"id": "in_1"})),
        headers={"stripe-signature": "forged"},
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_webhook"


def test_webhook_endpoint_accepts_event(make_client, provider, billing_settings, fake_backend):
    client = make_client(overrides={
        get_billing_service: lambda: BillingService(provider, billing_settings, fake_backend.client()),
    })

    resp = client.post(
        "/api/stripe/webhook",
        content=json.dumps(_event("invoice.paid", {"id": "in_1"})),
        headers={"stripe-signature": "valid"},
    )
    assert resp.status_code == 200
    assert resp.json() == {"received": True, "event_id": "evt_1", "handled": True, "duplicate": False}


def test_webhook_replay_is_acknowledged_without_rewriting(provider, billing_settings):
    backend = FakePostgrest()
    service = BillingService(provider, billing_settings, backend.client())
    sub = {"id": "sub_1", "customer": "cus_1", "status": "active", "items": {"data": [{"price": {"id": "price_pro_m"}}]}}
    body = json.dumps(_event("customer.subscription.updated", sub)).encode()

    first = service.process_webhook({"stripe-signature": "valid"}, body)
    backend.tables["stripe_subscriptions"][0]["status"] = "past_due"
    backend.requests.clear()

    replay = service.process_webhook({"stripe-signature": "valid"}, body)
    assert first.duplicate is False
    assert replay.duplicate is True
    assert replay.handled is False
    assert replay.writes == []
    assert [r.method for r in backend.requests] == ["GET"]
    assert len(backend.tables["stripe_webhooks"]) == 1
    assert backend.tables["stripe_subscriptions"][0]["status"] == "past_due"


def test_webhook_left_unprocessed_is_retried(provider, billing_settings):
    backend = FakePostgrest({
        "stripe_webhooks": [{"stripe_event_id": "evt_1", "event_type": "invoice.paid", "processed": False}],
    })
    service = BillingService(provider, billing_settings, backend.client())

    invoice = {"id": "in_1", "customer": "cus_1", "status": "paid", "amount_paid": 900, "currency": "usd"}
    outcome = service.process_webhook({"stripe-signature": "valid"}, json.dumps(_event("invoice.paid", invoice)).encode())

    assert outcome.handled is True
    assert outcome.duplicate is False
    assert len(backend.tables["stripe_webhooks"]) == 1
    assert backend.tables["stripe_webhooks"][0]["processed"] is True
    assert backend.tables["stripe_invoices"][0]["amount_paid"] == 900


def test_webhook_endpoint_reports_duplicates(make_client, provider, billing_settings, fake_backend):
    client = make_client(overrides={
        get_billing_service: lambda: BillingService(provider, billing_settings, fake_backend.client()),
    })
    payload = json.dumps(_event("invoice.paid", {"id": "in_1"}))

    client.post("/api/stripe/webhook", content=payload, headers={"stripe-signature": "valid"})
    resp = client.post("/api/stripe/webhook", content=payload, headers={"stripe-signature": "valid"})
    assert resp.status_code == 200
    assert resp.json()["duplicate"] is True
    assert len(fake_backend.tables["stripe_invoices"]) == 1


def test_plan_for_price(billing_settings):
    assert plan_for_price(billing_settings, "price_pro_y") == "pro"
    assert plan_for_price(billing_settings, "price_unknown") is None
    assert plan_for_price(billing_settings, None) is None


# Stripe signature verification against real HMAC headers

def _signed_header(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    ts = timestamp or int(time.time())
    signature = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def test_stripe_provider_verifies_signature():
    provider = StripeProvider("sk_test_123", WEBHOOK_SECRET)
    payload = json.dumps(_event("invoice.paid", {"id": "in_9"}))

    event = provider.verify_webhook({"stripe-signature": _signed_header(payload)}, payload.encode())
    assert event.event_id == "evt_1"
    assert event.event_type == "invoice.paid"
    assert event.data == {"id": "in_9"}


def test_stripe_provider_rejects_tampered_payload():
    provider = StripeProvider("sk_test_123", WEBHOOK_SECRET)
    payload = json.dumps(_event("invoice.paid", {"id": "in_9"}))
    header = _signed_header(payload)

    with pytest.raises(BillingWebhookError):
        provider.verify_webhook({"stripe-signature": header}, payload.replace("in_9", "in_0").encode())


def test_stripe_provider_requires_signature_header():
    provider = StripeProvider("sk_test_123", WEBHOOK_SECRET)
    with pytest.raises(BillingWebhookError, match="Missing stripe-signature header"):
        provider.verify_webhook({}, b"{}")


def test_stripe_provider_requires_webhook_secret():
    provider = StripeProvider("sk_test_123")
    with pytest.raises(BillingWebhookError, match="STRIPE_WEBHOOK_SECRET not configured"):
        provider.verify_webhook({"stripe-signature": "t=1,v1=abc"}, b"{}")


def test_stripe_checkout_params():
    provider = StripeProvider("sk_test_123", WEBHOOK_SECRET)
    with patch("stripe.checkout.Session.create") as create:
        create.return_value = Mock(id="cs_live_1", url="https://checkout.stripe.com/c/cs_live_1")
        session = provider.create_checkout_session(
            customer_id="cus_1",
            price_id="price_pro_m",
            success_url="https://app/ok",
            cancel_url="https://app/cancel",
            metadata={"plan_id": "pro", "user_id": "u1"},
            trial_days=7,
            require_billing_address=True,
        )

    assert session.session_id == "cs_live_1"
    kwargs = create.call_args.kwargs
    assert kwargs["mode"] == "subscription"
    assert kwargs["line_items"] == [{"price": "price_pro_m", "quantity": 1}]
    assert kwargs["subscription_data"] == {"metadata": {"plan_id": "pro", "user_id": "u1"}, "trial_period_days": 7}
    assert kwargs["billing_address_collection"] == "required"


def test_stripe_customer_reused_when_found():
    provider = StripeProvider("sk_test_123")
    with patch("stripe.Customer.search") as search, patch("stripe.Customer.create") as create:
        search.return_value = Mock(data=[Mock(id="cus_existing")])
        assert provider.ensure_customer("u1", "ada@example.com") == "cus_existing"
        create.assert_not_called()

        search.return_value = Mock(data=[])
        create.return_value = Mock(id="cus_new")
        assert provider.ensure_customer("u2", "bob@example.com") == "cus_new"
        create.assert_called_once_with(metadata={"user_id": "u2"}, email="bob@example.com")


def test_stripe_errors_become_provider_errors():
    import stripe

    provider = StripeProvider("sk_test_123")
    with patch("stripe.billing_portal.Session.create", side_effect=stripe.StripeError("down")):
        with pytest.raises(BillingProviderError, match="portal session creation failed"):
            provider.create_portal_session("cus_1", "https://app/account")


def test_stripe_cancel_params():
    provider = StripeProvider("sk_test_123")
    with patch("stripe.Subscription.modify") as modify:
        modify.return_value = Mock(id="sub_1", status="active", cancel_at_period_end=True, canceled_at=None)
        state = provider.cancel_at_period_end("sub_1", "Too expensive")

    assert state.subscription_id == "sub_1"
    assert state.cancel_at_period_end is True
    args, kwargs = modify.call_args
    assert args == ("sub_1",)
    assert kwargs["cancel_at_period_end"] is True
    assert kwargs["metadata"]["cancellation_reason"] == "Too expensive"
    assert "cancelled_at" in kwargs["metadata"]
