"""
GymPass model.

Tier and cost are snapshotted at issuance and never rewritten afterwards.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class GymPass(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: int
    gym_id: int
    gym_name: Optional[str] = None
    pass_code: str
    status: str
    created_at: datetime
    valid_until: datetime
    subscription_tier: Optional[str] = None
    pass_cost: Optional[float] = None
