from typing import Optional

from fastapi import APIRouter, Query

from anygym.features.gyms.query import GymFilters, list_gyms, parse_chain_id

router = APIRouter(tags=["gyms"])


@router.get("/gyms")
def get_gyms(
    search: Optional[str] = Query(None),
    tier: Optional[str] = Query(None),
    chain: Optional[str] = Query(None),
):
    """Gym directory. "All Tiers" / "All Chains" mean no filter."""
    filters = GymFilters(search=search, tier=tier, chain_id=parse_chain_id(chain))
    return {"gyms": [gym.model_dump() for gym in list_gyms(filters)]}
