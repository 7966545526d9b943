"""
Billing API routes.

- POST /billing/webhook: Stripe webhook intake (signature-verified, idempotent)
- POST /billing/checkout: create a subscription checkout session
- POST /billing/portal: create a customer portal session
"""
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from anygym.core.auth import get_current_identity
from anygym.core.errors import BillingDisabledError
from anygym.features.billing.service import BillingEventProcessor
from anygym.models.identity import Identity

router = APIRouter(prefix="/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    priceId: Optional[str] = None


class CheckoutResponse(BaseModel):
    sessionId: str
    url: str


class PortalResponse(BaseModel):
    url: str


def get_processor(request: Request) -> BillingEventProcessor:
    """The processor built at startup; 503 when billing is not configured."""
    processor = getattr(request.app.state, "billing", None)
    if processor is None:
        raise BillingDisabledError("Billing is not configured")
    return processor


@router.post("/webhook")
async def handle_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    processor: BillingEventProcessor = Depends(get_processor),
):
    """
    Handle Stripe webhook events.

    Acknowledges with 200 once the signature is valid and the payload parses,
    whatever happens downstream. Checkout completion is applied after the
    response; other events are applied before it.

    Errors:
        400: missing/invalid signature or malformed payload
        503: billing disabled
    """
    body = await request.body()
    headers = dict(request.headers)

    event = processor.verify(headers, body)
    if await run_in_threadpool(processor.record, event, body):
        if processor.should_detach(event):
            background_tasks.add_task(processor.run_detached, event)
        else:
            await run_in_threadpool(processor.run_detached, event)

    return {"received": True, "event_id": event.event_id}


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(
    body: Optional[CheckoutRequest] = None,
    identity: Identity = Depends(get_current_identity),
    processor: BillingEventProcessor = Depends(get_processor),
):
    """
    Create Stripe checkout session.

    Errors:
        400: no priceId and no STRIPE_PRICE_ID default
        503: billing disabled
        500: Stripe API error
    """
    price_id = body.priceId if body else None
    return processor.start_checkout(identity, price_id)


@router.post("/portal", response_model=PortalResponse)
def create_portal(
    identity: Identity = Depends(get_current_identity),
    processor: BillingEventProcessor = Depends(get_processor),
):
    """
    Create Stripe billing portal session.

    Errors:
        404: user never checked out
        503: billing disabled
        500: Stripe API error
    """
    return {"url": processor.start_portal(identity)}
