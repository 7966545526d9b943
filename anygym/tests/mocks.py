"""Fakes and seed helpers shared by the test modules."""
import hashlib
import hmac
import json
import time
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import insert

from anygym.core.database import get_db_session, gyms, subscriptions, users
from anygym.features.billing.provider import BillingProviderError, SubscriptionDetails
from anygym.features.billing.stripe_provider import StripeProvider
from anygym.models.gym import Coordinate

WEBHOOK_SECRET = "whsec_test_secret"


def sign_payload(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """A Stripe-Signature header value for body, computed the way Stripe does."""
    ts = int(timestamp if timestamp is not None else time.time())
    signed = f"{ts}.".encode("utf-8") + body
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def event_body(event_id: str, event_type: str, obj: Dict[str, Any]) -> bytes:
    return json.dumps(
        {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}
    ).encode("utf-8")


def checkout_object(
    user_external_id: Optional[str] = "auth0|alice",
    customer: str = "cus_alice",
    subscription: str = "sub_alice",
    email: str = "alice@example.com",
    name: str = "Alice Smith",
) -> Dict[str, Any]:
    metadata = {"userId": user_external_id} if user_external_id else {}
    return {
        "id": "cs_test_1",
        "object": "checkout.session",
        "mode": "subscription",
        "customer": customer,
        "subscription": subscription,
        "metadata": metadata,
        "customer_details": {"email": email, "name": name},
    }


class FakeStripeProvider(StripeProvider):
    """Real webhook verification; canned Stripe API responses."""

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET, subscription: Optional[SubscriptionDetails] = None):
        super().__init__(secret_key="sk_test_fake", webhook_secret=webhook_secret, tolerance_seconds=300, client=object())
        self.subscription = subscription or SubscriptionDetails(
            subscription_id="sub_alice",
            customer_id="cus_alice",
            status="active",
            current_period_start=date(2024, 5, 1),
            current_period_end=date(2024, 6, 1),
            price_id="price_premium",
            unit_amount=4999,
            product_name="AnyGym Premium",
            metadata={},
        )
        self.fail_retrieve = False
        self.retrieved: List[str] = []
        self.customers: List[Dict[str, Any]] = []
        self.checkouts: List[Dict[str, Any]] = []

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionDetails:
        self.retrieved.append(subscription_id)
        if self.fail_retrieve:
            raise BillingProviderError("Stripe unavailable")
        return self.subscription

    def create_customer(self, external_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        self.customers.append({"external_id": external_id, "email": email, "name": name})
        return f"cus_{len(self.customers)}"

    def create_checkout_session(self, customer_id, price_id, success_url, cancel_url, metadata=None):
        self.checkouts.append(
            {"customer_id": customer_id, "price_id": price_id, "success_url": success_url, "metadata": metadata}
        )
        return {"id": "cs_test_new", "url": "https://checkout.stripe.test/cs_test_new"}

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        return f"https://billing.stripe.test/{customer_id}"


class FakeGeocoder:
    def __init__(self, result: Optional[Coordinate] = None):
        self.result = result
        self.calls: List[Optional[str]] = []

    def geocode(self, postcode: Optional[str]) -> Optional[Coordinate]:
        self.calls.append(postcode)
        return self.result


class FakeNotifier:
    def __init__(self, accept: bool = True):
        self.accept = accept
        self.sent: List[Dict[str, Any]] = []

    def send_welcome(self, email_address: Optional[str], template_data: Dict[str, Any]) -> bool:
        self.sent.append({"email": email_address, "data": template_data})
        return self.accept


def seed_user(external_id: str = "auth0|alice", email: str = "alice@example.com", postcode: Optional[str] = None, **extra) -> int:
    now = datetime.now(timezone.utc)
    with get_db_session() as session:
        result = session.execute(
            insert(users).values(
                external_id=external_id,
                email=email,
                full_name=extra.pop("full_name", "Alice Smith"),
                address_postcode=postcode,
                created_at=now,
                updated_at=now,
                **extra,
            )
        )
        return result.inserted_primary_key[0]


def seed_gym(name: str, latitude: Optional[float] = None, longitude: Optional[float] = None, **extra) -> int:
    with get_db_session() as session:
        result = session.execute(
            insert(gyms).values(
                name=name,
                address=extra.pop("address", f"1 {name} Street"),
                city=extra.pop("city", "London"),
                latitude=latitude,
                longitude=longitude,
                **extra,
            )
        )
        return result.inserted_primary_key[0]


def seed_subscription(user_id: int, monthly_limit: int = 20, visits_used: int = 0, tier: str = "premium", **extra) -> int:
    now = datetime.now(timezone.utc)
    with get_db_session() as session:
        result = session.execute(
            insert(subscriptions).values(
                user_id=user_id,
                tier=tier,
                monthly_limit=monthly_limit,
                visits_used=visits_used,
                status=extra.pop("status", "active"),
                created_at=now,
                updated_at=now,
                **extra,
            )
        )
        return result.inserted_primary_key[0]
