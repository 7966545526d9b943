from typing import Optional
from pydantic import BaseModel, ConfigDict


class Identity(BaseModel):
    """Caller identity established from a verified token."""
    model_config = ConfigDict(frozen=True)

    external_id: str
    email: Optional[str] = None
    name: Optional[str] = None
