"""Stripe webhook endpoint."""

from fastapi import APIRouter, Depends, Header, Request

from coursebill.api.dependencies import get_stripe_client, get_webhook_service
from coursebill.api.schemas import WebhookAck
from coursebill.core import get_logger
from coursebill.services.stripe_client import StripeClient
from coursebill.services.webhook_service import WebhookService

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(default="", alias="Stripe-Signature"),
    stripe: StripeClient = Depends(get_stripe_client),
    service: WebhookService = Depends(get_webhook_service),
):
    """
    Receive a Stripe event.

    The raw body is verified before anything is decoded. Events that cannot
    be applied are acknowledged anyway so Stripe stops redelivering them;
    only signature failures and unexpected errors answer non-2xx.
    """
    payload = await request.body()
    event = stripe.construct_event(payload, stripe_signature)

    logger.info("Stripe webhook received", event_type=event.type, event_id=event.id)
    outcome = await service.process_event(event)
    return WebhookAck(outcome=outcome)
