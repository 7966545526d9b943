"""Billing event retry worker.

Re-runs webhook events whose processing failed, from the stored payload.
A redelivery from Stripe and this worker cannot both claim the same event.

Usage:
    python -m anygym.workers.retry_billing_events --once
    python -m anygym.workers.retry_billing_events --loop
"""
import argparse
import time

from anygym.core.config import settings
from anygym.core.logging import configure_logging
from anygym.features.billing.service import build_processor

DEFAULT_LOOP_SECONDS = 300


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay failed billing events")
    parser.add_argument("--once", action="store_true", help="Replay once and exit")
    parser.add_argument("--loop", action="store_true", help="Run in continuous loop")
    parser.add_argument("--limit", type=int, default=50, help="Batch size per iteration")
    parser.add_argument("--sleep", type=int, default=DEFAULT_LOOP_SECONDS, help="Seconds between batches (when --loop)")
    args = parser.parse_args()

    configure_logging(settings.ENV)

    processor = build_processor()
    if processor is None:
        print("[billing-retry] Billing disabled (STRIPE_SECRET_KEY not set). Exiting.")
        return

    if args.once or not args.loop:
        print(f"[billing-retry] {processor.replay_failed(limit=args.limit)}")
        return

    print(f"[billing-retry] Starting loop (sleep={args.sleep}s, batch={args.limit}). CTRL+C to stop.")
    try:
        while True:
            counts = processor.replay_failed(limit=args.limit)
            if counts["claimed"]:
                print(f"[billing-retry] {counts}")
            time.sleep(args.sleep)
    except KeyboardInterrupt:
        print("[billing-retry] Stopped")


if __name__ == "__main__":
    main()
