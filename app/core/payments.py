"""Payment provider capability.

``PaymentGateway`` is either a ``StripeGateway`` (payments switched on) or a
``NoOpGateway`` (no provider configured, appointments are confirmed without
payment). Callers branch on the variant explicitly via ``is_configured``.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import stripe
import structlog
from starlette.concurrency import run_in_threadpool

from app.config import Settings
from app.core.exceptions import (
    BadRequestException,
    ExternalProviderError,
    WebhookSignatureInvalid,
)

logger = structlog.get_logger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


def to_minor_units(amount: Decimal) -> int:
    """Convert a decimal amount to integer cents."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    """Convert integer cents back to a two-place decimal."""
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class CheckoutRequest:
    """Everything the provider needs to open a hosted checkout page."""

    appointment_id: str
    patient_id: str
    doctor_id: str
    scheduled_for: str
    amount_minor: int
    currency: str
    description: str
    expires_at: int  # unix seconds


@dataclass(frozen=True)
class CheckoutSession:
    """Provider-side session reference."""

    session_id: str
    url: str | None


@dataclass(frozen=True)
class VerifiedEvent:
    """Authenticated callback, reduced to the fields scheduling cares about."""

    event_id: str
    event_type: str
    session_id: str | None
    metadata: dict[str, str] = field(default_factory=dict)
    amount_total: int | None = None
    currency: str | None = None

    @property
    def appointment_ref(self) -> str | None:
        """Appointment id carried in the session metadata."""
        return self.metadata.get("appointment_id")


class PaymentGateway(ABC):
    """Capability for creating checkout sessions and authenticating callbacks."""

    is_configured: bool = False

    @abstractmethod
    async def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        """Open a hosted checkout session."""

    @abstractmethod
    async def expire_checkout_session(self, session_id: str) -> bool:
        """Close a session so it can no longer be paid. Never raises."""

    @abstractmethod
    def verify_event(self, payload: bytes, signature: str | None) -> VerifiedEvent:
        """Authenticate and parse a provider callback."""


class NoOpGateway(PaymentGateway):
    """Stand-in used when no payment provider is configured."""

    is_configured = False

    async def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        """Never reached: callers confirm directly when payments are off."""
        raise ExternalProviderError("Payment provider is not configured")

    async def expire_checkout_session(self, session_id: str) -> bool:
        """Nothing was ever opened."""
        return False

    def verify_event(self, payload: bytes, signature: str | None) -> VerifiedEvent:
        """No signing secret exists, so nothing can be authenticated."""
        raise WebhookSignatureInvalid("Payment provider is not configured")


class StripeGateway(PaymentGateway):
    """Stripe Checkout backed gateway."""

    is_configured = True

    def __init__(
        self,
        api_key: str,
        webhook_secret: str | None,
        client_origin: str,
        tolerance: int = 300,
    ):
        """Initialize with credentials; the Stripe module's global key is never set."""
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.client_origin = client_origin.rstrip("/")
        self.tolerance = tolerance

    def _checkout_params(self, request: CheckoutRequest) -> dict[str, Any]:
        return {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": request.currency.lower(),
                        "unit_amount": request.amount_minor,
                        "product_data": {
                            "name": f"Medical Appointment #{request.appointment_id}",
                            "description": request.description,
                        },
                    },
                    "quantity": 1,
                },
            ],
            "metadata": {
                "appointment_id": request.appointment_id,
                "patient_id": request.patient_id,
                "doctor_id": request.doctor_id,
                "scheduled_for": request.scheduled_for,
            },
            "expires_at": request.expires_at,
            "success_url": (
                f"{self.client_origin}/payment-success?session_id={{CHECKOUT_SESSION_ID}}"
            ),
            "cancel_url": f"{self.client_origin}/my-appointments",
        }

    async def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        """
        Create a Stripe Checkout session.

        Raises:
            ExternalProviderError: If Stripe rejects or cannot be reached
        """
        params = self._checkout_params(request)
        try:
            session = await run_in_threadpool(
                stripe.checkout.Session.create,
                api_key=self.api_key,
                **params,
            )
        except stripe.StripeError as e:
            logger.error(
                "stripe_checkout_failed",
                appointment_id=request.appointment_id,
                error=str(e),
            )
            raise ExternalProviderError(f"Could not create payment session: {e}") from e

        return CheckoutSession(session_id=session.id, url=session.url)

    async def expire_checkout_session(self, session_id: str) -> bool:
        """
        Expire an open Checkout session.

        Failures are logged and reported as False; a session that was already
        paid or expired is refused by Stripe and lands here too.
        """
        try:
            await run_in_threadpool(
                stripe.checkout.Session.expire,
                session_id,
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            logger.warning("stripe_checkout_expire_failed", session_id=session_id, error=str(e))
            return False

        logger.info("stripe_checkout_expired", session_id=session_id)
        return True

    def verify_event(self, payload: bytes, signature: str | None) -> VerifiedEvent:
        """
        Check the ``Stripe-Signature`` header and parse the event body.

        Raises:
            WebhookSignatureInvalid: If the secret is missing or the signature is wrong
            BadRequestException: If a correctly signed body is not a Stripe event
        """
        if not self.webhook_secret:
            raise WebhookSignatureInvalid("Missing STRIPE_WEBHOOK_SECRET")
        if not signature:
            raise WebhookSignatureInvalid("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise WebhookSignatureInvalid("Payload is not valid UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(
                body,
                signature,
                self.webhook_secret,
                self.tolerance,
            )
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureInvalid(str(e)) from e

        try:
            event = json.loads(body)
            obj = event["data"]["object"]
            return VerifiedEvent(
                event_id=event["id"],
                event_type=event["type"],
                session_id=obj.get("id"),
                metadata={k: str(v) for k, v in (obj.get("metadata") or {}).items()},
                amount_total=obj.get("amount_total"),
                currency=obj.get("currency"),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise BadRequestException("Malformed payment event payload") from e


def build_payment_gateway(settings: Settings) -> PaymentGateway:
    """Choose the gateway variant from configuration."""
    if settings.payments_configured:
        return StripeGateway(
            api_key=settings.stripe_secret_key or "",
            webhook_secret=settings.stripe_webhook_secret,
            client_origin=settings.client_origin,
            tolerance=settings.stripe_webhook_tolerance_seconds,
        )

    logger.warning("stripe_not_configured", note="appointments will be confirmed directly")
    return NoOpGateway()
