"""
Pass API routes.

- POST /passes: issue a 24h pass for a gym (debits one visit)
- GET  /passes: the caller's passes, newest first
"""
import json
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool

from anygym.core.auth import get_current_identity
from anygym.core.errors import ValidationError
from anygym.features.passes.service import issue_pass, list_passes
from anygym.models.gym_pass import GymPass
from anygym.models.identity import Identity

router = APIRouter(tags=["passes"])


def parse_gym_id(payload: Any) -> int:
    """gymId as an int; numeric strings are accepted, booleans and floats are not."""
    if not isinstance(payload, dict) or "gymId" not in payload:
        raise ValidationError("gymId is required")
    raw = payload["gymId"]
    if isinstance(raw, bool):
        raise ValidationError("gymId must be an integer")
    if isinstance(raw, int):
        gym_id = raw
    elif isinstance(raw, str) and raw.strip().isdigit():
        gym_id = int(raw.strip())
    else:
        raise ValidationError("gymId must be an integer")
    if gym_id <= 0:
        raise ValidationError("gymId must be positive")
    return gym_id


def serialize_pass(gym_pass: GymPass) -> Dict[str, Any]:
    return {
        "id": gym_pass.id,
        "code": gym_pass.pass_code,
        "gym": {"id": gym_pass.gym_id, "name": gym_pass.gym_name},
        "validUntil": gym_pass.valid_until.isoformat(),
        "createdAt": gym_pass.created_at.isoformat(),
        "tier": gym_pass.subscription_tier,
        "cost": gym_pass.pass_cost,
        "status": gym_pass.status,
    }


@router.post("/passes", status_code=201)
async def create_pass(request: Request, identity: Identity = Depends(get_current_identity)):
    """
    Issue a pass.

    Errors:
        400: gymId missing or malformed
        401: no identity
        403: no active subscription, or monthly limit reached
        404: unknown gym
        500: storage failure
    """
    body = await request.body()
    try:
        payload = json.loads(body) if body else None
    except ValueError:
        raise ValidationError("Body must be JSON")
    gym_id = parse_gym_id(payload)

    gym_pass = await run_in_threadpool(issue_pass, identity, gym_id)
    return serialize_pass(gym_pass)


@router.get("/passes")
def get_passes(identity: Identity = Depends(get_current_identity)):
    return {"passes": [serialize_pass(p) for p in list_passes(identity)]}
