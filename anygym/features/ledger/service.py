"""
Quota ledger.

Holds each user's active subscription: tier, usage counters, limits and
billing-period boundaries. Every mutation that races is expressed as a single
conditional UPDATE so the database, not the process, arbitrates.
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional
from sqlalchemy import select, insert, update, and_
from sqlalchemy.exc import IntegrityError

from anygym.core.database import get_db_session, subscriptions
from anygym.core.errors import ConflictRace
from anygym.models.subscription import Subscription, ACTIVE, CANCELLED, CANCELED, TERMINAL_STATUSES

logger = logging.getLogger("anygym.ledger")

# Columns replace_active_subscription accepts from callers
SUBSCRIPTION_FIELDS = (
    "tier",
    "monthly_limit",
    "guest_passes_limit",
    "price",
    "start_date",
    "next_billing_date",
    "stripe_subscription_id",
    "stripe_customer_id",
)


def _row_to_subscription(row) -> Subscription:
    return Subscription(
        id=row.id,
        user_id=row.user_id,
        tier=row.tier,
        monthly_limit=row.monthly_limit,
        guest_passes_limit=row.guest_passes_limit,
        visits_used=row.visits_used,
        guest_passes_used=row.guest_passes_used,
        price=row.price or 0.0,
        start_date=row.start_date,
        next_billing_date=row.next_billing_date,
        status=row.status,
        stripe_subscription_id=row.stripe_subscription_id,
        stripe_customer_id=row.stripe_customer_id,
        created_at=row.created_at,
    )


def get_active_subscription(user_id: int) -> Optional[Subscription]:
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions)
            .where(and_(subscriptions.c.user_id == user_id, subscriptions.c.status == ACTIVE))
            .order_by(subscriptions.c.created_at.desc(), subscriptions.c.id.desc())
            .limit(1)
        ).first()
        return _row_to_subscription(row) if row else None


def get_subscription(subscription_id: int) -> Optional[Subscription]:
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions).where(subscriptions.c.id == subscription_id)
        ).first()
        return _row_to_subscription(row) if row else None


def debit_visit(subscription_id: int) -> bool:
    """
    Consume one visit if the subscription is active and under its limit.

    Returns:
        True if a visit was debited, False if the limit was already reached
        (or the subscription is no longer active)
    """
    with get_db_session() as session:
        result = session.execute(
            update(subscriptions)
            .where(
                and_(
                    subscriptions.c.id == subscription_id,
                    subscriptions.c.status == ACTIVE,
                    subscriptions.c.visits_used < subscriptions.c.monthly_limit,
                )
            )
            .values(
                visits_used=subscriptions.c.visits_used + 1,
                updated_at=datetime.now(timezone.utc),
            )
        )
        return result.rowcount == 1


def refund_visit(subscription_id: int) -> bool:
    """Give back one debited visit (compensation when a pass could not be stored)."""
    with get_db_session() as session:
        result = session.execute(
            update(subscriptions)
            .where(
                and_(
                    subscriptions.c.id == subscription_id,
                    subscriptions.c.visits_used > 0,
                )
            )
            .values(
                visits_used=subscriptions.c.visits_used - 1,
                updated_at=datetime.now(timezone.utc),
            )
        )
        return result.rowcount == 1


def replace_active_subscription(user_id: int, fields: Dict[str, Any]) -> Subscription:
    """
    Make a new subscription the user's only active one (all-or-nothing).

    Prior active rows are marked cancelled first. If a row already carries the
    same stripe_subscription_id (redelivered activation), it is refreshed and
    re-asserted as the sole active row instead of inserting a duplicate.
    Counters are never reset on a refresh. A row that is already cancelled or
    canceled is returned untouched: a late activation never revives it.
    """
    values = {k: fields[k] for k in SUBSCRIPTION_FIELDS if k in fields}
    if "tier" not in values or "monthly_limit" not in values:
        raise ValueError("tier and monthly_limit are required")
    now = datetime.now(timezone.utc)
    stripe_subscription_id = values.get("stripe_subscription_id")

    with get_db_session() as session:
        existing = None
        if stripe_subscription_id:
            existing = session.execute(
                select(subscriptions).where(subscriptions.c.stripe_subscription_id == stripe_subscription_id)
            ).first()

        if existing is not None and existing.status in TERMINAL_STATUSES:
            logger.info(
                "ledger.activation_skipped",
                extra={"user_id": user_id, "subscription_id": existing.id, "status": existing.status},
            )
            return _row_to_subscription(existing)

        keep_id = existing.id if existing is not None and existing.user_id == user_id else None

        cancel_stmt = update(subscriptions).where(
            and_(subscriptions.c.user_id == user_id, subscriptions.c.status == ACTIVE)
        )
        if keep_id is not None:
            cancel_stmt = cancel_stmt.where(subscriptions.c.id != keep_id)
        cancelled = session.execute(cancel_stmt.values(status=CANCELLED, updated_at=now)).rowcount

        if keep_id is not None:
            session.execute(
                update(subscriptions)
                .where(subscriptions.c.id == keep_id)
                .values(status=ACTIVE, updated_at=now, **values)
            )
            subscription_id = keep_id
        else:
            result = session.execute(
                insert(subscriptions).values(
                    user_id=user_id,
                    status=ACTIVE,
                    visits_used=0,
                    guest_passes_used=0,
                    guest_passes_limit=values.pop("guest_passes_limit", 0),
                    price=values.pop("price", 0.0),
                    created_at=now,
                    updated_at=now,
                    **values,
                )
            )
            subscription_id = result.inserted_primary_key[0]

        row = session.execute(
            select(subscriptions).where(subscriptions.c.id == subscription_id)
        ).first()
        subscription = _row_to_subscription(row)

    logger.info(
        "ledger.subscription_activated",
        extra={"user_id": user_id, "subscription_id": subscription.id, "cancelled_prior": cancelled, "refreshed": keep_id is not None},
    )
    return subscription


def update_subscription_status(
    stripe_subscription_id: str,
    status: str,
    next_billing_date: Optional[date] = None,
) -> bool:
    """
    Update status (and period end) by billing-processor id.

    Returns False when nothing matched. Activation only applies to rows that
    are not cancelled/canceled, so those also report False.

    Raises:
        ConflictRace: the user already has a different active subscription
    """
    values: Dict[str, Any] = {"status": status, "updated_at": datetime.now(timezone.utc)}
    if next_billing_date is not None:
        values["next_billing_date"] = next_billing_date
    stmt = update(subscriptions).where(subscriptions.c.stripe_subscription_id == stripe_subscription_id)
    if status == ACTIVE:
        stmt = stmt.where(subscriptions.c.status.not_in(TERMINAL_STATUSES))
    try:
        with get_db_session() as session:
            result = session.execute(stmt.values(**values))
            return result.rowcount > 0
    except IntegrityError as e:
        raise ConflictRace(f"Another active subscription blocks {stripe_subscription_id}") from e


def cancel_subscription(stripe_subscription_id: str) -> bool:
    """Mark a subscription cancelled upstream. False on no match."""
    return update_subscription_status(stripe_subscription_id, CANCELED)
