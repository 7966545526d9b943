"""Identity resolution: lazy creation and the first-access race."""
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import select, func

from anygym.core.database import get_db_session, users
from anygym.core.errors import UpstreamFailure
from anygym.features.users.service import (
    get_user_by_customer_id,
    resolve_user,
    set_stripe_customer_id,
)


def _user_count(external_id: str) -> int:
    with get_db_session() as session:
        return session.execute(
            select(func.count()).select_from(users).where(users.c.external_id == external_id)
        ).scalar()


def test_first_access_creates_user_with_hints():
    user = resolve_user("auth0|new", "new@example.com", "New Person")

    assert user.id is not None
    assert user.email == "new@example.com"
    assert user.full_name == "New Person"
    assert _user_count("auth0|new") == 1


def test_existing_user_ignores_hints():
    first = resolve_user("auth0|same", "first@example.com", "First")
    again = resolve_user("auth0|same", "second@example.com", "Second")

    assert again.id == first.id
    assert again.email == "first@example.com"


def test_concurrent_first_access_creates_exactly_one_user():
    with ThreadPoolExecutor(max_workers=8) as pool:
        resolved = list(pool.map(lambda _: resolve_user("auth0|racer", "r@example.com"), range(16)))

    assert len({u.id for u in resolved}) == 1
    assert _user_count("auth0|racer") == 1


def test_empty_identity_is_rejected():
    with pytest.raises(UpstreamFailure):
        resolve_user("   ")


def test_customer_reference_round_trip():
    user = resolve_user("auth0|billing")
    set_stripe_customer_id(user.id, "cus_123")
    set_stripe_customer_id(user.id, "cus_123")

    found = get_user_by_customer_id("cus_123")
    assert found is not None
    assert found.id == user.id
