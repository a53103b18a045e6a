"""
Tests for Stripe billing: webhook idempotence, entitlement effects and
subscription snapshot ordering.
"""
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import stripe

from crud.subscription import SubscriptionRepository
from crud.user import UserRepository
from database_models import SUBSCRIPTION_ACTIVE, SUBSCRIPTION_PAST_DUE
from services.billing_service import BillingService, normalize_status, snapshot_from_subscription


def checkout_event(event_id, user_id, purchase="credits", credits=10, customer="cus_test"):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "created": 1_700_000_000,
        "data": {"object": {
            "id": "cs_test",
            "customer": customer,
            "client_reference_id": str(user_id),
            "metadata": {"user_id": str(user_id), "purchase": purchase, "credits": str(credits)},
        }},
    }


def subscription_event(event_id, user_id, status, created, event_type="customer.subscription.updated"):
    return {
        "id": event_id,
        "type": event_type,
        "created": created,
        "data": {"object": {
            "id": "sub_test",
            "customer": "cus_test",
            "status": status,
            "cancel_at_period_end": False,
            "current_period_end": 1_800_000_000,
            "metadata": {"user_id": str(user_id)},
            "items": {"data": [{"price": {"id": "price_monthly", "lookup_key": "monthly"}}]},
        }},
    }


async def _process(session_factory, event):
    async with session_factory() as session:
        return await BillingService(session).process_webhook(event)


async def _user(session_factory, user_id):
    async with session_factory() as session:
        return await UserRepository(session).get_user_by_id(user_id)


async def _subscription(session_factory, user_id):
    async with session_factory() as session:
        return await SubscriptionRepository(session).get_for_user(user_id)


@pytest.mark.asyncio
async def test_credit_pack_event_applied_once(session_factory, make_user):
    """
    A redelivered checkout event with the same id adds the pack exactly once.
    """
    user_id = await make_user(credits=0)
    event = checkout_event("evt_pack_1", user_id, credits=10)

    first = await _process(session_factory, event)
    second = await _process(session_factory, event)

    assert first == {"data": {"duplicate": False}, "is_error": False}
    assert second == {"data": {"duplicate": True}, "is_error": False}
    user = await _user(session_factory, user_id)
    assert user.credits == 10
    assert user.stripe_customer_id == "cus_test"


@pytest.mark.asyncio
async def test_concurrent_duplicate_deliveries_apply_once(session_factory, make_user):
    user_id = await make_user(credits=0)
    event = checkout_event("evt_pack_race", user_id, credits=10)

    results = await asyncio.gather(_process(session_factory, event), _process(session_factory, event))

    assert sorted(r["data"]["duplicate"] for r in results) == [False, True]
    assert (await _user(session_factory, user_id)).credits == 10


@pytest.mark.asyncio
async def test_duplicate_caught_by_event_ledger_key(session_factory, make_user):
    """
    A duplicate that passes the processed check (the first delivery had not
    committed yet) fails on the ledger's primary key and changes nothing.
    """
    user_id = await make_user(credits=0)
    event = checkout_event("evt_pack_late", user_id, credits=10)
    await _process(session_factory, event)

    with patch("crud.webhook_event.WebhookEventRepository.is_processed", AsyncMock(return_value=False)):
        second = await _process(session_factory, event)

    assert second == {"data": {"duplicate": True}, "is_error": False}
    assert (await _user(session_factory, user_id)).credits == 10


@pytest.mark.asyncio
async def test_lifetime_purchase_grants_lifetime_access(session_factory, make_user):
    user_id = await make_user()

    await _process(session_factory, checkout_event("evt_life", user_id, purchase="lifetime"))

    user = await _user(session_factory, user_id)
    assert user.lifetime_access is True
    assert user.credits == 0


@pytest.mark.asyncio
async def test_subscription_event_creates_snapshot(session_factory, make_user):
    user_id = await make_user()

    await _process(session_factory, subscription_event(
        "evt_sub_1", user_id, "trialing", 2_000, event_type="customer.subscription.created"
    ))

    snapshot = await _subscription(session_factory, user_id)
    assert snapshot.status == "trialing"
    assert snapshot.tier == "monthly"
    assert snapshot.stripe_subscription_id == "sub_test"
    assert snapshot.current_period_end is not None


@pytest.mark.asyncio
async def test_stale_subscription_update_is_ignored(session_factory, make_user):
    """An event older than the stored snapshot does not overwrite it."""
    user_id = await make_user()

    await _process(session_factory, subscription_event("evt_new", user_id, "active", 3_000))
    await _process(session_factory, subscription_event("evt_old", user_id, "canceled", 1_000))

    snapshot = await _subscription(session_factory, user_id)
    assert snapshot.status == SUBSCRIPTION_ACTIVE
    assert snapshot.processor_updated_at == 3_000


@pytest.mark.asyncio
async def test_invoice_failure_marks_subscription_past_due(session_factory, make_user):
    user_id = await make_user()
    await _process(session_factory, subscription_event("evt_sub", user_id, "active", 3_000))

    await _process(session_factory, {
        "id": "evt_inv_failed",
        "type": "invoice.payment_failed",
        "created": 4_000,
        "data": {"object": {"id": "in_1", "subscription": "sub_test", "customer": "cus_test"}},
    })

    snapshot = await _subscription(session_factory, user_id)
    assert snapshot.status == SUBSCRIPTION_PAST_DUE


@pytest.mark.asyncio
async def test_unhandled_event_type_is_recorded_and_ignored(session_factory):
    event = {"id": "evt_misc", "type": "customer.created", "created": 1, "data": {"object": {}}}

    assert (await _process(session_factory, event))["data"]["duplicate"] is False
    assert (await _process(session_factory, event))["data"]["duplicate"] is True


def test_status_normalization():
    assert normalize_status("unpaid") == SUBSCRIPTION_PAST_DUE
    assert normalize_status("incomplete_expired") == "inactive"
    assert normalize_status(None) == "inactive"
    assert normalize_status("something-new") == "inactive"


def test_snapshot_reads_period_end_from_item():
    snapshot = snapshot_from_subscription({
        "id": "sub_item",
        "status": "active",
        "items": {"data": [{"price": {"id": "price_x"}, "current_period_end": 1_800_000_000}]},
    })

    assert snapshot["tier"] == "price_x"
    assert snapshot["current_period_end"].year == 2027
    assert snapshot["trial_end"] is None


def _post_webhook(api, event, signature="t=1,v1=test"):
    headers = {"Content-Type": "application/json"}
    if signature:
        headers["stripe-signature"] = signature
    return api.client.post("/api/billing/webhook", content=json.dumps(event), headers=headers)


def test_webhook_endpoint_applies_verified_event_once(api):
    user_id = api.make_user()
    event = checkout_event("evt_http_1", user_id, credits=10)

    with patch("stripe.WebhookSignature.verify_header", return_value=True):
        first = _post_webhook(api, event)
        second = _post_webhook(api, event)

    assert first.status_code == 200
    assert first.json()["duplicate"] is False
    assert second.status_code == 200
    assert second.json()["duplicate"] is True

    credits = api.client.get("/api/credits", headers=api.auth_headers(user_id))
    assert credits.json()["credits"] == 10


def test_webhook_rejects_bad_signature(api):
    user_id = api.make_user()
    error = stripe.SignatureVerificationError("No signatures found", "t=1,v1=bad")

    with patch("stripe.WebhookSignature.verify_header", side_effect=error):
        response = _post_webhook(api, checkout_event("evt_forged", user_id))

    assert response.status_code == 400
    assert response.json()["received"] is False
    credits = api.client.get("/api/credits", headers=api.auth_headers(user_id))
    assert credits.json()["credits"] == 0


def test_webhook_requires_signature_header(api):
    response = _post_webhook(api, {"id": "evt_x", "type": "customer.created"}, signature=None)

    assert response.status_code == 400


def test_checkout_session_for_credit_pack(api, monkeypatch, test_settings):
    monkeypatch.setattr(test_settings, "stripe_secret_key", "sk_test_123")
    monkeypatch.setattr(test_settings, "stripe_price_credits", "price_pack")
    user_id = api.make_user()

    with patch("stripe.Customer.create", return_value=MagicMock(id="cus_new")) as create_customer, \
            patch("stripe.checkout.Session.create",
                  return_value=MagicMock(url="https://checkout.stripe.test/s")) as create_session:
        response = api.client.post(
            "/api/billing/checkout",
            json={"purchase": "credits"},
            headers=api.auth_headers(user_id),
        )

    assert response.status_code == 200
    assert response.json()["data"]["url"] == "https://checkout.stripe.test/s"
    create_customer.assert_called_once()
    params = create_session.call_args.kwargs
    assert params["customer"] == "cus_new"
    assert params["mode"] == "payment"
    assert params["metadata"] == {"user_id": str(user_id), "purchase": "credits", "credits": "10"}


def test_checkout_rejects_unknown_purchase(api, monkeypatch, test_settings):
    monkeypatch.setattr(test_settings, "stripe_secret_key", "sk_test_123")
    user_id = api.make_user()

    response = api.client.post(
        "/api/billing/checkout",
        json={"purchase": "indulgence"},
        headers=api.auth_headers(user_id),
    )

    assert response.status_code == 400
    assert response.json()["error"] == "billing-error"


def test_billing_status_reflects_entitlement(api):
    user_id = api.make_user(credits=4)
    api.seed_turns(user_id, "moses", 5)

    response = api.client.get("/api/billing/status", headers=api.auth_headers(user_id))

    data = response.json()["data"]
    assert data["decision"] == "allowed-via-credit"
    assert data["credits"] == 4
    assert data["free_turns_remaining"] == 0
