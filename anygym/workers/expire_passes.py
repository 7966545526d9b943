"""Pass expiry sweep.

Usage:
    python -m anygym.workers.expire_passes --once
    python -m anygym.workers.expire_passes --loop
"""
import argparse
import logging
import time
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update, and_

from anygym.core.config import settings
from anygym.core.database import get_db_session, gym_passes
from anygym.core.logging import configure_logging

logger = logging.getLogger("anygym.workers.expire_passes")

DEFAULT_LOOP_SECONDS = 60


def expire_passes(now: Optional[datetime] = None) -> int:
    """Mark active passes past valid_until as expired. Returns the number expired."""
    cutoff = now or datetime.now(timezone.utc)
    with get_db_session() as session:
        result = session.execute(
            update(gym_passes)
            .where(and_(gym_passes.c.status == "active", gym_passes.c.valid_until < cutoff))
            .values(status="expired")
        )
        expired = result.rowcount or 0

    if expired:
        logger.info("[expire] passes expired", extra={"expired": expired})
    return expired


def main() -> None:
    parser = argparse.ArgumentParser(description="Expire gym passes past their validity window")
    parser.add_argument("--once", action="store_true", help="Sweep once and exit")
    parser.add_argument("--loop", action="store_true", help="Run in continuous loop")
    parser.add_argument("--sleep", type=int, default=DEFAULT_LOOP_SECONDS, help="Seconds between sweeps (when --loop)")
    args = parser.parse_args()

    configure_logging(settings.ENV)

    if args.once or not args.loop:
        print(f"[expire-worker] Expired: {expire_passes()}")
        return

    print(f"[expire-worker] Starting loop (sleep={args.sleep}s). CTRL+C to stop.")
    try:
        while True:
            expire_passes()
            time.sleep(args.sleep)
    except KeyboardInterrupt:
        print("[expire-worker] Stopped")


if __name__ == "__main__":
    main()
