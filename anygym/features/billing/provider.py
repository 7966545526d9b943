"""
Billing provider protocol.

Defines the interface the billing processor's client must offer.
This allows swapping providers (or a fake in tests) without changing
business logic.
"""
from typing import Protocol, Dict, Any, Mapping, Optional
from dataclasses import dataclass, field
from datetime import date

from anygym.models.billing_event import BillingEvent


@dataclass
class SubscriptionDetails:
    """The billing processor's view of a subscription, normalized."""
    subscription_id: str
    customer_id: Optional[str]
    status: str
    current_period_start: Optional[date]
    current_period_end: Optional[date]
    price_id: Optional[str] = None
    unit_amount: Optional[int] = None  # minor units (pence/cents)
    product_name: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)  # subscription + price + product metadata, merged


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Webhook signature verification and parsing
    - Subscription retrieval
    - Customer, checkout and portal session creation
    """

    def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> BillingEvent:
        """
        Verify webhook signature and parse the event.

        Raises:
            BillingSignatureError: missing or invalid signature
            BillingPayloadError: body is not a well-formed event
        """
        ...

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionDetails:
        """
        Raises:
            BillingProviderError: If the lookup fails
        """
        ...

    def create_customer(self, external_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> Dict[str, str]:
        """Returns {"id": ..., "url": ...}."""
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingSignatureError(BillingProviderError):
    """Webhook signature missing, malformed, stale, or wrong."""
    pass


class BillingPayloadError(BillingProviderError):
    """Webhook body is not a well-formed event."""
    pass
