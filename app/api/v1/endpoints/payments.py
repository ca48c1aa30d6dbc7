"""Payment provider webhook."""

from typing import Annotated

from fastapi import APIRouter, Header, Request, status

from app.dependencies import Scheduling
from app.schemas.appointments import WebhookAck

router = APIRouter()


@router.post(
    "/webhook",
    response_model=WebhookAck,
    status_code=status.HTTP_200_OK,
    tags=["Payments"],
    summary="Stripe webhook",
)
async def stripe_webhook(
    request: Request,
    service: Scheduling,
    stripe_signature: Annotated[str | None, Header(alias="Stripe-Signature")] = None,
) -> WebhookAck:
    """
    Receive Stripe events.

    The body is verified byte for byte, so it is read raw. Any authenticated
    event is acknowledged, including duplicates and events for superseded
    sessions; only a bad signature is answered with 400.
    """
    payload = await request.body()
    outcome = await service.handle_payment_callback(payload, stripe_signature)
    return WebhookAck(outcome=outcome.value)
