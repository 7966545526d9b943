"""
Billing event processor.

Turns verified Stripe webhook deliveries into quota-ledger state:
- checkout.session.completed: activate the user's subscription, then a
  best-effort welcome email listing the nearest gyms
- customer.subscription.updated: status / next billing date
- customer.subscription.deleted: canceled

Deliveries are deduplicated through billing_events (unique stripe_event_id).
Handlers are idempotent and a processed event is never applied again, however
often Stripe redelivers it. A delivery whose processing failed, or whose lease
went stale because the worker died before settling it, can be re-claimed by a
redelivery or by the retry worker with a single conditional UPDATE.

Checkout and portal session helpers live here too, so every Stripe
interaction goes through the one injected provider.
"""

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from sqlalchemy import select, insert, update, and_, or_, false
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from anygym.core.config import settings
from anygym.core.database import get_db_session, billing_events
from anygym.core.errors import (
    AppError,
    BillingDisabledError,
    ConflictRace,
    NotFoundError,
    SignatureInvalidError,
    UpstreamFailure,
    ValidationError,
)
from anygym.core.logging import log_event
from anygym.features.billing.provider import (
    BillingPayloadError,
    BillingProvider,
    BillingProviderError,
    BillingSignatureError,
)
from anygym.features.billing.stripe_provider import StripeProvider, parse_event, subscription_details_from_object
from anygym.features.catalog.tiers import limits_for, tier_from_metadata
from anygym.features.geo.service import Geocoder, haversine_km, rank_by_distance
from anygym.features.gyms.query import GymFilters, list_gyms
from anygym.features.ledger.service import (
    cancel_subscription,
    replace_active_subscription,
    update_subscription_status,
)
from anygym.features.notifications.service import (
    WELCOME_GYM_SLOTS,
    WelcomeNotifier,
    build_welcome_template_data,
)
from anygym.features.users.service import (
    get_user_by_customer_id,
    get_user_by_external_id,
    resolve_user,
    set_stripe_customer_id,
)
from anygym.models.billing_event import (
    BillingEvent,
    CHECKOUT_COMPLETED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
)
from anygym.models.gym import Gym
from anygym.models.identity import Identity
from anygym.models.subscription import ACTIVE, ENTITLED_STATUSES
from anygym.models.user import User

logger = logging.getLogger("anygym.billing")

# Event types handled after the webhook has been acknowledged
DETACHED_EVENT_TYPES = frozenset({CHECKOUT_COMPLETED})

MAX_REPLAY_ATTEMPTS = 10
LEASE_OWNER_WEBHOOK = "webhook"
LEASE_OWNER_REPLAY = "replay"
_ERROR_TEXT_LIMIT = 1000


def payload_hash(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


def _error_text(exc: Exception) -> str:
    text = f"{type(exc).__name__}: {exc}"
    return text[:_ERROR_TEXT_LIMIT]


class BillingEventProcessor:
    """Verifies, deduplicates and applies billing events; built once per app."""

    def __init__(
        self,
        provider: BillingProvider,
        geocoder: Optional[Geocoder] = None,
        notifier: Optional[WelcomeNotifier] = None,
        lease_seconds: Optional[int] = None,
    ):
        self.provider = provider
        self.geocoder = geocoder
        self.notifier = notifier
        self.lease_seconds = lease_seconds if lease_seconds is not None else settings.BILLING_EVENT_LEASE_SECONDS
        self._handlers: Dict[str, Callable[[BillingEvent], None]] = {
            CHECKOUT_COMPLETED: self._handle_checkout_completed,
            SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
        }

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def verify(self, headers: Mapping[str, str], body: bytes) -> BillingEvent:
        """
        Check the Stripe-Signature header and parse the event.

        Raises:
            SignatureInvalidError: missing, stale or wrong signature
            ValidationError: body is not a well-formed event
            BillingDisabledError: no webhook secret configured
        """
        try:
            return self.provider.verify_webhook(headers, body)
        except BillingSignatureError as e:
            raise SignatureInvalidError(str(e))
        except BillingPayloadError as e:
            raise ValidationError(str(e))
        except BillingProviderError as e:
            raise BillingDisabledError(str(e))

    def _claimable(self, now: datetime):
        """Unprocessed rows that failed, or whose lease holder went away without settling."""
        stale_before = now - timedelta(seconds=self.lease_seconds)
        return and_(
            billing_events.c.processed == false(),
            or_(
                billing_events.c.error.is_not(None),
                billing_events.c.locked_at.is_(None),
                billing_events.c.locked_at < stale_before,
            ),
        )

    def record(self, event: BillingEvent, body: bytes, now: Optional[datetime] = None) -> bool:
        """
        Register a delivery in the idempotency ledger and lease it to the caller.

        Returns:
            True if this delivery should be processed: first sight of the event,
            or a redelivery of one whose earlier processing failed or was abandoned.
        """
        now = now or datetime.now(timezone.utc)
        try:
            with get_db_session() as session:
                session.execute(
                    insert(billing_events).values(
                        stripe_event_id=event.event_id,
                        event_type=event.event_type,
                        received_at=now,
                        payload_hash=payload_hash(body),
                        payload=body.decode("utf-8", errors="replace"),
                        processed=False,
                        attempts=1,
                        locked_at=now,
                        lock_owner=LEASE_OWNER_WEBHOOK,
                    )
                )
            return True
        except IntegrityError:
            pass
        except SQLAlchemyError as e:
            raise UpstreamFailure("Could not record billing event") from e

        try:
            reclaimed = self._reclaim(event.event_id, LEASE_OWNER_WEBHOOK, now)
        except SQLAlchemyError as e:
            raise UpstreamFailure("Could not record billing event") from e

        log_event(
            "info",
            "billing.event_retry_claimed" if reclaimed else "billing.event_duplicate",
            event_type=event.event_type,
            extra={"stripe_event_id": event.event_id},
        )
        return reclaimed

    def _reclaim(self, event_id: str, owner: str, now: datetime) -> bool:
        """Take the lease on a claimable event. Only one caller can win."""
        with get_db_session() as session:
            result = session.execute(
                update(billing_events)
                .where(and_(billing_events.c.stripe_event_id == event_id, self._claimable(now)))
                .values(
                    attempts=billing_events.c.attempts + 1,
                    error=None,
                    locked_at=now,
                    lock_owner=owner,
                )
            )
            return result.rowcount == 1

    def should_detach(self, event: BillingEvent) -> bool:
        return event.event_type in DETACHED_EVENT_TYPES

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process(self, event: BillingEvent) -> None:
        """Apply one event's effects. Raises on failure."""
        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.info("billing.event_ignored", extra={"stripe_event_id": event.event_id, "event_type": event.event_type})
            return
        handler(event)

    def run_detached(self, event: BillingEvent) -> bool:
        """
        Process an event and settle its ledger row. Never raises.

        The error channel is the log plus billing_events.error.
        """
        try:
            self.process(event)
        except Exception as e:
            log_event(
                "error",
                "billing.event_failed",
                event_type=event.event_type,
                error_code=getattr(e, "code", "internal_error"),
                exc_info=True,
                extra={"stripe_event_id": event.event_id},
            )
            self._settle(event.event_id, error=_error_text(e))
            return False

        self._settle(event.event_id)
        return True

    def _settle(self, event_id: str, error: Optional[str] = None) -> None:
        """Record the outcome and release the lease."""
        values: Dict[str, Any] = {"locked_at": None, "lock_owner": None}
        if error is None:
            values.update(processed=True, processed_at=datetime.now(timezone.utc), error=None)
        else:
            values["error"] = error
        try:
            with get_db_session() as session:
                session.execute(
                    update(billing_events)
                    .where(billing_events.c.stripe_event_id == event_id)
                    .values(**values)
                )
        except SQLAlchemyError:
            logger.exception("billing.event_settle_failed", extra={"stripe_event_id": event_id})

    def replay_failed(self, limit: int = 50, now: Optional[datetime] = None) -> Dict[str, int]:
        """Re-run failed or abandoned events from their stored payload (retry worker)."""
        now = now or datetime.now(timezone.utc)
        with get_db_session() as session:
            rows = session.execute(
                select(billing_events.c.stripe_event_id, billing_events.c.payload)
                .where(and_(self._claimable(now), billing_events.c.attempts < MAX_REPLAY_ATTEMPTS))
                .order_by(billing_events.c.received_at, billing_events.c.id)
                .limit(limit)
            ).all()

        counts = {"claimed": 0, "succeeded": 0, "failed": 0}
        for row in rows:
            if not self._reclaim(row.stripe_event_id, LEASE_OWNER_REPLAY, now):
                continue
            counts["claimed"] += 1
            try:
                event = parse_event((row.payload or "").encode("utf-8"))
            except BillingPayloadError as e:
                self._settle(row.stripe_event_id, error=_error_text(e))
                counts["failed"] += 1
                continue
            if self.run_detached(event):
                counts["succeeded"] += 1
            else:
                counts["failed"] += 1

        if counts["claimed"]:
            logger.info("billing.replay_complete", extra=counts)
        return counts

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _resolve_owner(
        self,
        customer_id: Optional[str],
        metadata: Mapping[str, Any],
        email: Optional[str],
        name: Optional[str],
    ) -> Optional[User]:
        """Stored customer mapping first, then the metadata identity hint."""
        if customer_id:
            user = get_user_by_customer_id(customer_id)
            if user is not None:
                return user

        hint = metadata.get("userId") or metadata.get("user_id")
        if hint:
            user = get_user_by_external_id(str(hint))
            if user is not None:
                return user
            return resolve_user(str(hint), email, name)
        return None

    def _handle_checkout_completed(self, event: BillingEvent) -> None:
        checkout = event.data
        subscription_ref = checkout.get("subscription")
        if isinstance(subscription_ref, dict):
            subscription_ref = subscription_ref.get("id")
        if not subscription_ref:
            logger.info("billing.checkout_without_subscription", extra={"stripe_event_id": event.event_id})
            return

        customer_id = checkout.get("customer")
        if isinstance(customer_id, dict):
            customer_id = customer_id.get("id")
        metadata = checkout.get("metadata") or {}
        details = checkout.get("customer_details") or {}
        email = details.get("email") or checkout.get("customer_email")
        name = details.get("name")

        user = self._resolve_owner(customer_id, metadata, email, name)
        if user is None:
            raise NotFoundError(f"No user for checkout session {checkout.get('id')}")

        if customer_id and user.stripe_customer_id != customer_id:
            set_stripe_customer_id(user.id, customer_id)

        sub = self.provider.retrieve_subscription(subscription_ref)
        stripe_subscription_id = sub.subscription_id or subscription_ref
        if sub.status not in ENTITLED_STATUSES:
            # Late or replayed checkout for a subscription that no longer grants access
            update_subscription_status(stripe_subscription_id, sub.status, sub.current_period_end)
            log_event(
                "info",
                "billing.checkout_not_entitled",
                user_id=user.id,
                event_type=event.event_type,
                extra={"stripe_event_id": event.event_id, "status": sub.status},
            )
            return

        tier = tier_from_metadata({**sub.metadata, **metadata}, sub.product_name)
        limits = limits_for(tier, sub.metadata)
        price = sub.unit_amount / 100 if sub.unit_amount is not None else 0.0

        subscription = replace_active_subscription(
            user.id,
            {
                "tier": tier,
                "monthly_limit": limits.monthly_limit,
                "guest_passes_limit": limits.guest_passes_limit,
                "price": price,
                "start_date": sub.current_period_start or datetime.now(timezone.utc).date(),
                "next_billing_date": sub.current_period_end,
                "stripe_subscription_id": stripe_subscription_id,
                "stripe_customer_id": customer_id or sub.customer_id,
            },
        )
        if subscription.status != ACTIVE:
            log_event(
                "info",
                "billing.checkout_not_entitled",
                user_id=user.id,
                event_type=event.event_type,
                extra={"stripe_event_id": event.event_id, "status": subscription.status},
            )
            return

        log_event(
            "info",
            "billing.subscription_activated",
            user_id=user.id,
            event_type=event.event_type,
            extra={"stripe_event_id": event.event_id, "subscription_id": subscription.id, "tier": tier},
        )

        self._send_welcome(user, tier, email, name)

    def _handle_subscription_updated(self, event: BillingEvent) -> None:
        details = subscription_details_from_object(event.data)
        if not details.subscription_id:
            raise ValidationError("Subscription event without id")
        status = ACTIVE if details.status in ENTITLED_STATUSES else details.status
        try:
            matched = update_subscription_status(details.subscription_id, status, details.current_period_end)
        except ConflictRace:
            # The user moved to another subscription; this one stays as it is
            logger.warning(
                "billing.subscription_status_conflict",
                extra={"stripe_event_id": event.event_id, "status": status},
            )
            return
        if not matched:
            logger.info("billing.subscription_unknown", extra={"stripe_event_id": event.event_id, "event_type": event.event_type})
            return
        logger.info("billing.subscription_updated", extra={"stripe_event_id": event.event_id, "status": status})

    def _handle_subscription_deleted(self, event: BillingEvent) -> None:
        subscription_id = event.data.get("id")
        if not subscription_id:
            raise ValidationError("Subscription event without id")
        if not cancel_subscription(subscription_id):
            logger.info("billing.subscription_unknown", extra={"stripe_event_id": event.event_id, "event_type": event.event_type})
            return
        logger.info("billing.subscription_canceled", extra={"stripe_event_id": event.event_id})

    # ------------------------------------------------------------------
    # Welcome email
    # ------------------------------------------------------------------

    def nearest_gyms(
        self,
        postcode: Optional[str],
        count: int = WELCOME_GYM_SLOTS,
    ) -> Tuple[List[Gym], Optional[List[float]]]:
        """Nearest `count` geolocated gyms, or the first `count` by name without a coordinate."""
        origin = self.geocoder.geocode(postcode) if self.geocoder is not None and postcode else None
        if origin is None:
            return list_gyms(GymFilters(limit=count)), None

        candidates = list_gyms(GymFilters(geolocated_only=True))
        ranked = rank_by_distance(origin, candidates, key=lambda gym: gym.coordinate)[:count]
        return ranked, [haversine_km(origin, gym.coordinate) for gym in ranked]

    def _send_welcome(self, user: User, tier: str, email: Optional[str], name: Optional[str]) -> None:
        if self.notifier is None:
            return
        try:
            gyms, distances = self.nearest_gyms(user.address_postcode)
            data = build_welcome_template_data(user.full_name or name, tier, gyms, distances)
        except SQLAlchemyError:
            logger.exception("billing.welcome_gyms_failed", extra={"user_id": user.id})
            data = build_welcome_template_data(user.full_name or name, tier, [])
        self.notifier.send_welcome(user.email or email, data)

    # ------------------------------------------------------------------
    # Checkout / portal
    # ------------------------------------------------------------------

    def ensure_customer(self, user: User) -> str:
        """The user's Stripe customer, created and stored on first use."""
        if user.stripe_customer_id:
            return user.stripe_customer_id
        customer_id = self.provider.create_customer(user.external_id, user.email, user.full_name)
        set_stripe_customer_id(user.id, customer_id)
        logger.info("billing.customer_created", extra={"user_id": user.id})
        return customer_id

    def start_checkout(self, identity: Identity, price_id: Optional[str] = None) -> Dict[str, str]:
        """
        Create a subscription checkout session for the caller.

        Returns:
            {"sessionId": ..., "url": ...}
        """
        price_id = price_id or settings.STRIPE_PRICE_ID
        if not price_id:
            raise ValidationError("priceId is required")

        base = settings.BASE_URL.rstrip("/")
        try:
            user = resolve_user(identity.external_id, identity.email, identity.name)
            customer_id = self.ensure_customer(user)
            session = self.provider.create_checkout_session(
                customer_id=customer_id,
                price_id=price_id,
                success_url=f"{base}/dashboard?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{base}/pricing",
                metadata={"userId": identity.external_id, "priceId": price_id},
            )
        except AppError:
            raise
        except BillingProviderError as e:
            raise UpstreamFailure(str(e)) from e
        except SQLAlchemyError as e:
            raise UpstreamFailure("Storage unavailable") from e

        log_event("info", "billing.checkout_started", user_id=user.id, extra={"price_id": price_id})
        return {"sessionId": session["id"], "url": session["url"]}

    def start_portal(self, identity: Identity) -> str:
        """Billing portal URL for the caller. NotFoundError until a first checkout."""
        try:
            user = get_user_by_external_id(identity.external_id)
        except SQLAlchemyError as e:
            raise UpstreamFailure("Storage unavailable") from e
        if user is None or not user.stripe_customer_id:
            raise NotFoundError("No billing customer. Complete checkout first.")

        try:
            return self.provider.create_portal_session(
                customer_id=user.stripe_customer_id,
                return_url=f"{settings.BASE_URL.rstrip('/')}/dashboard",
            )
        except BillingProviderError as e:
            raise UpstreamFailure(str(e)) from e


def build_processor() -> Optional[BillingEventProcessor]:
    """One processor (and one Stripe client) per process; None when Stripe is unconfigured."""
    if not settings.STRIPE_SECRET_KEY and not settings.STRIPE_WEBHOOK_SECRET:
        logger.warning("Billing disabled: STRIPE_SECRET_KEY / STRIPE_WEBHOOK_SECRET not set")
        return None
    return BillingEventProcessor(
        provider=StripeProvider(),
        geocoder=Geocoder(),
        notifier=WelcomeNotifier(),
    )
