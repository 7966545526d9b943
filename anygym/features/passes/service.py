"""
Pass issuer.

Admission control for gym visits:
1. resolve the caller to a user
2. check the gym exists
3. find the active subscription
4. atomically debit one visit
5. persist a uniquely coded, 24h pass with a tier/price snapshot

If storing the pass fails after the debit committed, the visit is refunded
before the failure is surfaced.
"""

import logging
import secrets
import string
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from sqlalchemy import select, insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from anygym.core.config import settings
from anygym.core.database import get_db_session, gym_passes, gyms
from anygym.core.errors import (
    AppError,
    NotFoundError,
    QuotaExceededError,
    UnauthorizedError,
    UpstreamFailure,
)
from anygym.core.logging import log_event
from anygym.features.catalog.tiers import current_pass_price
from anygym.features.gyms.query import get_gym
from anygym.features.ledger.service import debit_visit, get_active_subscription, refund_visit
from anygym.features.users.service import get_user_by_external_id, resolve_user
from anygym.models.gym import Gym
from anygym.models.gym_pass import GymPass
from anygym.models.identity import Identity
from anygym.models.subscription import Subscription

logger = logging.getLogger("anygym.passes")

PASS_CODE_PREFIX = "AG"
PASS_CODE_SUFFIX_LENGTH = 6
_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits
PASS_INSERT_ATTEMPTS = 2  # first try + one regeneration


def generate_pass_code(now_ms: Optional[int] = None) -> str:
    """AG-<epoch ms>-<6 random [A-Z0-9]>."""
    ms = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(PASS_CODE_SUFFIX_LENGTH))
    return f"{PASS_CODE_PREFIX}-{ms}-{suffix}"


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _insert_pass(user_id: int, gym: Gym, subscription: Subscription) -> GymPass:
    """Persist one pass, regenerating the code once on a uniqueness collision."""
    last_error: Optional[Exception] = None
    for attempt in range(PASS_INSERT_ATTEMPTS):
        issued_at = datetime.now(timezone.utc)
        valid_until = issued_at + timedelta(hours=settings.PASS_VALIDITY_HOURS)
        code = generate_pass_code(int(issued_at.timestamp() * 1000))
        try:
            with get_db_session() as session:
                cost = current_pass_price(session, subscription.tier, issued_at)
                result = session.execute(
                    insert(gym_passes).values(
                        user_id=user_id,
                        gym_id=gym.id,
                        pass_code=code,
                        status="active",
                        valid_until=valid_until,
                        subscription_tier=subscription.tier,
                        pass_cost=cost,
                        created_at=issued_at,
                    )
                )
                pass_id = result.inserted_primary_key[0]
            return GymPass(
                id=pass_id,
                user_id=user_id,
                gym_id=gym.id,
                gym_name=gym.name,
                pass_code=code,
                status="active",
                created_at=issued_at,
                valid_until=valid_until,
                subscription_tier=subscription.tier,
                pass_cost=cost,
            )
        except IntegrityError as e:
            last_error = e
            logger.warning("passes.code_collision", extra={"user_id": user_id, "gym_id": gym.id, "attempt": attempt + 1})
    raise UpstreamFailure("Could not allocate a unique pass code") from last_error


def issue_pass(identity: Optional[Identity], gym_id: int) -> GymPass:
    """
    Issue a pass for `gym_id` to the calling identity.

    Raises:
        UnauthorizedError: no identity
        NotFoundError: unknown gym
        QuotaExceededError: no active subscription, or monthly limit reached
        UpstreamFailure: storage error
    """
    if identity is None or not identity.external_id:
        raise UnauthorizedError("Unauthorized")

    try:
        user = resolve_user(identity.external_id, identity.email, identity.name)

        gym = get_gym(gym_id)
        if gym is None:
            raise NotFoundError(f"Gym {gym_id} not found")

        subscription = get_active_subscription(user.id)
        if subscription is None:
            raise QuotaExceededError("No active subscription")

        if not debit_visit(subscription.id):
            raise QuotaExceededError("Monthly visit limit reached")
    except AppError:
        raise
    except SQLAlchemyError as e:
        raise UpstreamFailure("Storage unavailable") from e

    try:
        gym_pass = _insert_pass(user.id, gym, subscription)
    except (UpstreamFailure, SQLAlchemyError) as e:
        _compensate_debit(user.id, subscription.id)
        if isinstance(e, UpstreamFailure):
            raise
        raise UpstreamFailure("Could not store pass") from e

    log_event(
        "info",
        "passes.issued",
        user_id=user.id,
        extra={"gym_id": gym.id, "pass_id": gym_pass.id, "tier": gym_pass.subscription_tier},
    )
    return gym_pass


def _compensate_debit(user_id: int, subscription_id: int) -> None:
    try:
        refunded = refund_visit(subscription_id)
    except SQLAlchemyError:
        refunded = False
        logger.exception("passes.refund_failed", extra={"user_id": user_id, "subscription_id": subscription_id})
    log_event(
        "warning",
        "passes.debit_refunded" if refunded else "passes.debit_not_refunded",
        user_id=user_id,
        error_code="upstream_failure",
        extra={"subscription_id": subscription_id},
    )


def list_passes(identity: Identity, limit: int = 50) -> List[GymPass]:
    """The caller's passes, newest first. Unknown identities have none."""
    user = get_user_by_external_id(identity.external_id)
    if user is None:
        return []
    with get_db_session() as session:
        rows = session.execute(
            select(gym_passes, gyms.c.name.label("gym_name"))
            .join(gyms, gyms.c.id == gym_passes.c.gym_id)
            .where(gym_passes.c.user_id == user.id)
            .order_by(gym_passes.c.created_at.desc(), gym_passes.c.id.desc())
            .limit(limit)
        ).all()
        return [
            GymPass(
                id=row.id,
                user_id=row.user_id,
                gym_id=row.gym_id,
                gym_name=row.gym_name,
                pass_code=row.pass_code,
                status=row.status,
                created_at=_as_utc(row.created_at),
                valid_until=_as_utc(row.valid_until),
                subscription_tier=row.subscription_tier,
                pass_cost=row.pass_cost,
            )
            for row in rows
        ]
