"""
Subscription model: the quota ledger row.

Constraint: at most one subscription per user has status "active".
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Tier(str, Enum):
    STANDARD = "standard"
    PREMIUM = "premium"
    ELITE = "elite"


ACTIVE = "active"
CANCELLED = "cancelled"  # replaced by a newer activation
CANCELED = "canceled"  # deleted upstream by the billing processor

# Billing-processor statuses that grant visits; stored locally as ACTIVE
ENTITLED_STATUSES = frozenset({"active", "trialing"})
# Rows in these states are never made active again
TERMINAL_STATUSES = frozenset({CANCELLED, CANCELED})


class Subscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: int
    tier: str
    monthly_limit: int
    guest_passes_limit: int = 0
    visits_used: int = 0
    guest_passes_used: int = 0
    price: float = 0.0
    start_date: Optional[date] = None
    next_billing_date: Optional[date] = None
    status: str
    stripe_subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    created_at: Optional[datetime] = None
