"""
Stripe billing provider implementation.

Implements the BillingProvider protocol with an explicit StripeClient owned by
the provider instance; nothing here touches the module-global stripe.api_key.
The provider is constructed once at startup and injected where needed.
"""
import json
from datetime import date, datetime, timezone
from typing import Any, Dict, Mapping, Optional

import stripe

from anygym.core.config import settings
from anygym.features.billing.provider import (
    BillingPayloadError,
    BillingProviderError,
    BillingSignatureError,
    SubscriptionDetails,
)
from anygym.models.billing_event import BillingEvent

SIGNATURE_HEADER = "stripe-signature"


def _to_plain(obj: Any) -> Dict[str, Any]:
    """StripeObject -> plain dict (StripeObject's str() is its JSON form)."""
    if obj is None:
        return {}
    if type(obj) is dict:
        return obj
    return json.loads(str(obj))


def _date_from_ts(value: Any) -> Optional[date]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).date()
    except (TypeError, ValueError, OverflowError):
        return None


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def parse_event(body: bytes) -> BillingEvent:
    """Parse a raw webhook body into a BillingEvent (signature already checked)."""
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise BillingPayloadError(f"Invalid payload: {e}")

    if not isinstance(payload, dict):
        raise BillingPayloadError("Invalid payload: not an object")
    event_id = payload.get("id")
    event_type = payload.get("type")
    if not event_id or not event_type:
        raise BillingPayloadError("Invalid payload: missing id or type")

    data = payload.get("data") or {}
    obj = data.get("object") if isinstance(data, dict) else None
    return BillingEvent(
        event_id=str(event_id),
        event_type=str(event_type),
        data=obj if isinstance(obj, dict) else {},
    )


def subscription_details_from_object(sub: Dict[str, Any]) -> SubscriptionDetails:
    """Normalize a Stripe subscription object (handles both period-field layouts)."""
    items = ((sub.get("items") or {}).get("data")) or []
    first_item = items[0] if items else {}
    price = first_item.get("price") or {}
    product = price.get("product")
    product_obj = product if isinstance(product, dict) else {}

    # Newer API versions moved period bounds onto subscription items
    period_start = sub.get("current_period_start") or first_item.get("current_period_start")
    period_end = sub.get("current_period_end") or first_item.get("current_period_end")

    metadata: Dict[str, Any] = {}
    metadata.update(product_obj.get("metadata") or {})
    metadata.update(price.get("metadata") or {})
    metadata.update(sub.get("metadata") or {})

    customer = sub.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")

    return SubscriptionDetails(
        subscription_id=sub.get("id"),
        customer_id=customer,
        status=sub.get("status") or "unknown",
        current_period_start=_date_from_ts(period_start),
        current_period_end=_date_from_ts(period_end),
        price_id=price.get("id"),
        unit_amount=price.get("unit_amount"),
        product_name=product_obj.get("name"),
        metadata=metadata,
    )


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        tolerance_seconds: Optional[int] = None,
        client: Optional[Any] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
            tolerance_seconds: accepted signature age (defaults to STRIPE_WEBHOOK_TOLERANCE_SECONDS)
            client: pre-built StripeClient (tests)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.tolerance_seconds = (
            tolerance_seconds if tolerance_seconds is not None else settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
        )

        if client is not None:
            self._client = client
        elif self.secret_key:
            self._client = stripe.StripeClient(self.secret_key)
        else:
            self._client = None

    def _require_client(self):
        if self._client is None:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")
        return self._client

    def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> BillingEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingProviderError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = _header(headers, SIGNATURE_HEADER)
        if not sig_header:
            raise BillingSignatureError("Missing stripe-signature header")

        try:
            payload = body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise BillingPayloadError(f"Invalid payload: {e}")

        try:
            stripe.WebhookSignature.verify_header(
                payload, sig_header, self.webhook_secret, self.tolerance_seconds
            )
        except stripe.SignatureVerificationError as e:
            raise BillingSignatureError(f"Invalid signature: {e}")

        return parse_event(body)

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionDetails:
        client = self._require_client()
        try:
            sub = client.subscriptions.retrieve(
                subscription_id,
                params={"expand": ["items.data.price.product"]},
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription lookup failed: {e}")
        return subscription_details_from_object(_to_plain(sub))

    def create_customer(self, external_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        client = self._require_client()
        params: Dict[str, Any] = {"metadata": {"userId": external_id}}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        try:
            customer = client.customers.create(params=params)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}")
        return customer.id

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> Dict[str, str]:
        client = self._require_client()
        try:
            session = client.checkout.sessions.create(
                params={
                    "customer": customer_id,
                    "mode": "subscription",
                    "payment_method_types": ["card"],
                    "line_items": [{"price": price_id, "quantity": 1}],
                    "success_url": success_url,
                    "cancel_url": cancel_url,
                    "metadata": metadata or {},
                    "allow_promotion_codes": True,
                }
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")
        return {"id": session.id, "url": session.url}

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        client = self._require_client()
        try:
            session = client.billing_portal.sessions.create(
                params={"customer": customer_id, "return_url": return_url}
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}")
        return session.url
