"""Normalized billing event as parsed from a verified webhook delivery."""

from typing import Any, Dict
from pydantic import BaseModel, ConfigDict, Field


CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


class BillingEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    data: Dict[str, Any] = Field(default_factory=dict)  # event.data.object
