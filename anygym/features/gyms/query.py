"""
Gym query builder.

One parameterized SELECT built from a conjunction of optional predicates;
absent filters simply contribute nothing.
"""

from dataclasses import dataclass
from typing import List, Optional
from sqlalchemy import select, and_, or_, func
from sqlalchemy.sql import Select

from anygym.core.database import get_db_session, gyms
from anygym.models.gym import Gym

ALL_TIERS = "All Tiers"
ALL_CHAINS = "All Chains"


@dataclass(frozen=True)
class GymFilters:
    search: Optional[str] = None
    tier: Optional[str] = None
    chain_id: Optional[int] = None
    gym_id: Optional[int] = None
    geolocated_only: bool = False
    active_only: bool = True
    limit: Optional[int] = None


def parse_chain_id(raw: Optional[str]) -> Optional[int]:
    if raw is None or raw == "" or raw == ALL_CHAINS:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def build_gym_query(filters: GymFilters) -> Select:
    predicates = []

    if filters.gym_id is not None:
        predicates.append(gyms.c.id == filters.gym_id)
    if filters.active_only:
        predicates.append(or_(gyms.c.status.is_(None), gyms.c.status != "inactive"))
    if filters.geolocated_only:
        predicates.append(gyms.c.latitude.is_not(None))
        predicates.append(gyms.c.longitude.is_not(None))
    if filters.search and filters.search.strip():
        pattern = f"%{filters.search.strip().lower()}%"
        predicates.append(
            or_(
                func.lower(gyms.c.name).like(pattern),
                func.lower(gyms.c.city).like(pattern),
                func.lower(gyms.c.postcode).like(pattern),
            )
        )
    if filters.tier and filters.tier != ALL_TIERS:
        predicates.append(gyms.c.required_tier == filters.tier)
    if filters.chain_id is not None:
        predicates.append(gyms.c.gym_chain_id == filters.chain_id)

    query = select(gyms)
    if predicates:
        query = query.where(and_(*predicates))
    query = query.order_by(gyms.c.name, gyms.c.id)
    if filters.limit:
        query = query.limit(filters.limit)
    return query


def _row_to_gym(row) -> Gym:
    return Gym(
        id=row.id,
        name=row.name,
        address=row.address,
        city=row.city,
        postcode=row.postcode,
        latitude=row.latitude,
        longitude=row.longitude,
        gym_chain_id=row.gym_chain_id,
        required_tier=row.required_tier,
        status=row.status,
    )


def list_gyms(filters: GymFilters) -> List[Gym]:
    with get_db_session() as session:
        rows = session.execute(build_gym_query(filters)).all()
        return [_row_to_gym(row) for row in rows]


def get_gym(gym_id: int) -> Optional[Gym]:
    """Known, non-inactive gym by id."""
    found = list_gyms(GymFilters(gym_id=gym_id, limit=1))
    return found[0] if found else None
