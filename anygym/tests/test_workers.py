from datetime import datetime, timedelta, timezone

from sqlalchemy import insert, select

from anygym.core.database import get_db_session, gym_passes
from anygym.workers.expire_passes import expire_passes
from anygym.tests.mocks import seed_gym, seed_user


def _pass(user_id, gym_id, code, valid_until, status="active"):
    with get_db_session() as session:
        session.execute(
            insert(gym_passes).values(
                user_id=user_id,
                gym_id=gym_id,
                pass_code=code,
                status=status,
                valid_until=valid_until,
                created_at=valid_until - timedelta(hours=24),
            )
        )


def _statuses():
    with get_db_session() as session:
        rows = session.execute(select(gym_passes.c.pass_code, gym_passes.c.status)).all()
    return {row.pass_code: row.status for row in rows}


def test_expire_passes_only_touches_lapsed_active_passes():
    now = datetime.now(timezone.utc)
    user_id = seed_user()
    gym_id = seed_gym("Central Fitness")
    _pass(user_id, gym_id, "AG-1-OLD000", now - timedelta(hours=1))
    _pass(user_id, gym_id, "AG-2-NEW000", now + timedelta(hours=1))
    _pass(user_id, gym_id, "AG-3-USED00", now - timedelta(hours=2), status="used")

    assert expire_passes(now) == 1
    assert _statuses() == {"AG-1-OLD000": "expired", "AG-2-NEW000": "active", "AG-3-USED00": "used"}
    assert expire_passes(now) == 0
