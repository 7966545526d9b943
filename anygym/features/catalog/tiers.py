"""
Tier catalog.

Maps billing-processor product/price metadata onto subscription tiers and
limits, and answers "what does one visit cost on this tier right now".
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional
from sqlalchemy import select, and_
from sqlalchemy.orm import Session

from anygym.core.config import settings
from anygym.core.database import pass_pricing
from anygym.models.subscription import Tier


@dataclass(frozen=True)
class TierDefaults:
    tier: str
    monthly_limit: int
    guest_passes_limit: int


TIER_DEFAULTS: Dict[str, TierDefaults] = {
    Tier.STANDARD.value: TierDefaults(Tier.STANDARD.value, 8, 0),
    Tier.PREMIUM.value: TierDefaults(Tier.PREMIUM.value, 20, 2),
    Tier.ELITE.value: TierDefaults(Tier.ELITE.value, 30, 6),
}


def normalize_tier(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    candidate = str(value).strip().lower()
    return candidate if candidate in TIER_DEFAULTS else None


def tier_from_metadata(metadata: Optional[Mapping[str, Any]], product_name: Optional[str] = None) -> str:
    """Explicit tier metadata wins, then the product name, then standard."""
    metadata = metadata or {}
    for key in ("tier", "tierGyms"):
        tier = normalize_tier(metadata.get(key))
        if tier:
            return tier

    name = (product_name or "").lower()
    if "premium" in name:
        return Tier.PREMIUM.value
    if "elite" in name:
        return Tier.ELITE.value
    return Tier.STANDARD.value


def _int_or(value: Any, fallback: int) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return fallback


def limits_for(tier: str, metadata: Optional[Mapping[str, Any]] = None) -> TierDefaults:
    """Limits for a tier, overridable by metadata ('monthly_limit' / 'Gym Passes', ...)."""
    metadata = metadata or {}
    defaults = TIER_DEFAULTS.get(tier, TIER_DEFAULTS[Tier.STANDARD.value])
    monthly = metadata.get("monthly_limit", metadata.get("Gym Passes"))
    guests = metadata.get("guest_passes_limit", metadata.get("Guest Passes"))
    return TierDefaults(
        tier=defaults.tier,
        monthly_limit=_int_or(monthly, defaults.monthly_limit),
        guest_passes_limit=_int_or(guests, defaults.guest_passes_limit),
    )


def default_pass_price(tier: str) -> float:
    return {
        Tier.STANDARD.value: settings.PASS_PRICE_STANDARD,
        Tier.PREMIUM.value: settings.PASS_PRICE_PREMIUM,
        Tier.ELITE.value: settings.PASS_PRICE_ELITE,
    }.get(tier, settings.PASS_PRICE_STANDARD)


def current_pass_price(session: Session, tier: str, now: Optional[datetime] = None) -> float:
    """Price of one visit on `tier` in effect at `now` (latest effective_from <= now)."""
    now = now or datetime.now(timezone.utc)
    row = session.execute(
        select(pass_pricing.c.price)
        .where(and_(pass_pricing.c.tier == tier, pass_pricing.c.effective_from <= now))
        .order_by(pass_pricing.c.effective_from.desc(), pass_pricing.c.id.desc())
        .limit(1)
    ).first()
    if row is None:
        return float(default_pass_price(tier))
    return float(row.price)
