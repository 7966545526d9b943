"""Checkout and portal sessions."""
import pytest

from anygym.core.config import settings
from anygym.features.billing.service import BillingEventProcessor
from anygym.features.users.service import get_user_by_external_id
from anygym.tests.mocks import FakeNotifier, FakeGeocoder, FakeStripeProvider, seed_user

BOB = "auth0|bob"


@pytest.fixture
def provider():
    return FakeStripeProvider()


@pytest.fixture
def billing_client(client, provider):
    client.app.state.billing = BillingEventProcessor(provider, FakeGeocoder(), FakeNotifier())
    return client


def test_checkout_creates_and_stores_customer(billing_client, provider):
    resp = billing_client.post("/billing/checkout", json={"priceId": "price_premium"}, headers={"X-User-Id": BOB})

    assert resp.status_code == 200
    assert resp.json() == {"sessionId": "cs_test_new", "url": "https://checkout.stripe.test/cs_test_new"}
    assert provider.customers == [{"external_id": BOB, "email": None, "name": None}]
    assert provider.checkouts[0]["customer_id"] == "cus_1"
    assert provider.checkouts[0]["metadata"] == {"userId": BOB, "priceId": "price_premium"}
    assert get_user_by_external_id(BOB).stripe_customer_id == "cus_1"


def test_checkout_reuses_stored_customer(billing_client, provider):
    seed_user(BOB, email="bob@example.com", stripe_customer_id="cus_existing")

    resp = billing_client.post("/billing/checkout", json={"priceId": "price_premium"}, headers={"X-User-Id": BOB})

    assert resp.status_code == 200
    assert provider.customers == []
    assert provider.checkouts[0]["customer_id"] == "cus_existing"


def test_checkout_falls_back_to_configured_price(billing_client, provider, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_PRICE_ID", "price_default")

    resp = billing_client.post("/billing/checkout", json={}, headers={"X-User-Id": BOB})

    assert resp.status_code == 200
    assert provider.checkouts[0]["price_id"] == "price_default"


def test_checkout_without_price_is_rejected(billing_client, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_PRICE_ID", None)

    resp = billing_client.post("/billing/checkout", json={}, headers={"X-User-Id": BOB})

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_checkout_requires_identity(billing_client):
    resp = billing_client.post("/billing/checkout", json={"priceId": "price_premium"})

    assert resp.status_code == 401


def test_portal_without_customer_is_not_found(billing_client):
    seed_user(BOB)

    resp = billing_client.post("/billing/portal", headers={"X-User-Id": BOB})

    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_portal_returns_url(billing_client):
    seed_user(BOB, stripe_customer_id="cus_bob")

    resp = billing_client.post("/billing/portal", headers={"X-User-Id": BOB})

    assert resp.status_code == 200
    assert resp.json() == {"url": "https://billing.stripe.test/cus_bob"}


def test_checkout_when_billing_disabled(client):
    resp = client.post("/billing/checkout", json={"priceId": "price_premium"}, headers={"X-User-Id": BOB})

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "billing_disabled"


def test_malformed_checkout_body_is_a_validation_error(billing_client):
    resp = billing_client.post("/billing/checkout", json={"priceId": 5}, headers={"X-User-Id": BOB})

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"]["code"] == "validation_error"
    assert body["error"]["fields"] == ["body.priceId"]
