"""
Identity resolver.
- resolve_user(external_id, email_hint, name_hint)
- get_user_by_external_id / get_user_by_customer_id
- set_stripe_customer_id(user_id, customer_id)

Users are created lazily on first authenticated access. Concurrent first
access is resolved by insert-then-reselect, never by check-then-insert.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from anygym.core.database import get_db_session, users as app_users
from anygym.core.errors import ConflictRace, UpstreamFailure
from anygym.models.user import User

logger = logging.getLogger("anygym.users")


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        external_id=row.external_id,
        email=row.email,
        full_name=row.full_name,
        address_postcode=row.address_postcode,
        stripe_customer_id=row.stripe_customer_id,
        created_at=row.created_at,
    )


def _select_one(where_clause) -> Optional[User]:
    with get_db_session() as session:
        row = session.execute(select(app_users).where(where_clause)).first()
        return _row_to_user(row) if row else None


def get_user_by_external_id(external_id: str) -> Optional[User]:
    return _select_one(app_users.c.external_id == external_id)


def get_user_by_customer_id(stripe_customer_id: str) -> Optional[User]:
    return _select_one(app_users.c.stripe_customer_id == stripe_customer_id)


def _insert_user(external_id: str, email: Optional[str], name: Optional[str]) -> User:
    now = datetime.now(timezone.utc)
    try:
        with get_db_session() as session:
            result = session.execute(
                insert(app_users).values(
                    external_id=external_id,
                    email=email,
                    full_name=name,
                    created_at=now,
                    updated_at=now,
                )
            )
            user_id = result.inserted_primary_key[0]
    except IntegrityError as e:
        raise ConflictRace(str(e)) from e

    return User(id=user_id, external_id=external_id, email=email, full_name=name, created_at=now)


def resolve_user(external_id: str, email_hint: Optional[str] = None, name_hint: Optional[str] = None) -> User:
    """
    Map an external identity to its internal user, creating it on first sight.

    Hints are only used when the row is created.

    Raises:
        UpstreamFailure: creation failed for a reason other than a
            uniqueness conflict and no row exists afterwards
    """
    external_id = (external_id or "").strip()
    if not external_id:
        raise UpstreamFailure("Cannot resolve an empty identity")

    try:
        existing = get_user_by_external_id(external_id)
    except SQLAlchemyError as e:
        raise UpstreamFailure("User lookup failed") from e
    if existing:
        return existing

    try:
        user = _insert_user(external_id, email_hint, name_hint)
        logger.info("user.created", extra={"user_id": user.id})
        return user
    except ConflictRace:
        # Another request created the same identity first
        logger.info("user.create_race_recovered")
    except SQLAlchemyError as e:
        logger.warning(f"user.create_failed: {e}")

    try:
        existing = get_user_by_external_id(external_id)
    except SQLAlchemyError as e:
        raise UpstreamFailure("User lookup failed") from e
    if existing:
        return existing
    raise UpstreamFailure("Could not create user")


def set_stripe_customer_id(user_id: int, stripe_customer_id: str) -> None:
    """Store the billing customer reference on the user (overwrite is safe)."""
    with get_db_session() as session:
        session.execute(
            update(app_users)
            .where(app_users.c.id == user_id)
            .values(stripe_customer_id=stripe_customer_id, updated_at=datetime.now(timezone.utc))
        )
