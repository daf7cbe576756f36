"""
Stripe Payment Provider Implementation.

NO DICTIONARIES - All data uses strongly typed models.
"""

from typing import Any

import stripe
from structlog import get_logger

from app.exceptions import PaymentProviderError, WebhookVerificationError
from app.services.payment_provider import (
    PaymentIntent,
    PaymentResult,
    WebhookEvent,
)

logger = get_logger(__name__)


def _metadata(stripe_object: Any) -> Any:
    metadata = stripe_object.get("metadata")
    return metadata if metadata is not None else {}


def _parse_quantity(raw: Any) -> int | None:
    """Stripe metadata values are strings; anything unparsable is treated as absent."""
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _to_payment_result(payment_intent: Any) -> PaymentResult:
    metadata = _metadata(payment_intent)
    return PaymentResult(
        payment_id=payment_intent.id,
        client_secret=payment_intent.get("client_secret") or "",
        status=payment_intent.status,
        amount_minor=payment_intent.get("amount") or 0,
        amount_received_minor=payment_intent.get("amount_received") or 0,
        currency=(payment_intent.get("currency") or "").lower(),
        metadata_device_id=metadata.get("device_id"),
        metadata_quantity=_parse_quantity(metadata.get("quantity")),
    )


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol for Stripe.
    """

    def __init__(self, api_key: str, webhook_secret: str) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        stripe.api_key = api_key

    def _require_configured(self) -> None:
        if not self.api_key:
            raise PaymentProviderError("Payment provider not configured")

    async def create_payment_intent(self, intent: PaymentIntent) -> PaymentResult:
        """
        Create a Stripe PaymentIntent.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        self._require_configured()
        try:
            logger.info(
                "creating_stripe_payment_intent",
                amount_minor=intent.amount_minor,
                currency=intent.currency,
                device_id=intent.metadata_device_id,
                quantity=intent.metadata_quantity,
            )

            options: dict[str, Any] = {}
            if intent.idempotency_key:
                options["idempotency_key"] = intent.idempotency_key

            payment_intent = stripe.PaymentIntent.create(
                amount=intent.amount_minor,
                currency=intent.currency.lower(),
                description=intent.description,
                automatic_payment_methods={"enabled": True},
                metadata={
                    "device_id": intent.metadata_device_id,
                    "quantity": str(intent.metadata_quantity),
                },
                **options,
            )

            logger.info(
                "stripe_payment_intent_created",
                payment_intent_id=payment_intent.id,
                status=payment_intent.status,
            )
            return _to_payment_result(payment_intent)

        except stripe.StripeError as exc:
            logger.error(
                "stripe_payment_intent_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe payment failed: {exc}") from exc

    async def get_payment_status(self, payment_id: str) -> PaymentResult:
        """
        Get the current PaymentIntent record from Stripe.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        self._require_configured()
        try:
            payment_intent = stripe.PaymentIntent.retrieve(payment_id)

            logger.info(
                "stripe_payment_status_retrieved",
                payment_intent_id=payment_id,
                status=payment_intent.status,
            )
            return _to_payment_result(payment_intent)

        except stripe.StripeError as exc:
            logger.error(
                "stripe_payment_status_failed",
                payment_intent_id=payment_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Failed to get payment status: {exc}") from exc

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse Stripe webhook event.

        Raises:
            WebhookVerificationError: If signature verification or parsing fails
        """
        if not self.webhook_secret:
            raise WebhookVerificationError("Webhook secret is not configured")

        try:
            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        logger.info("stripe_webhook_verified", event_id=event.id, event_type=event.type)

        data_object = event.data.object
        is_payment_intent = data_object.get("object") == "payment_intent"
        return WebhookEvent(
            event_id=event.id,
            event_type=event.type,
            payment_id=data_object.get("id") if is_payment_intent else None,
            status=data_object.get("status") if is_payment_intent else None,
            metadata_device_id=_metadata(data_object).get("device_id")
            if is_payment_intent
            else None,
        )
