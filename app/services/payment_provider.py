"""
Payment Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from typing import Protocol

PAYMENT_SUCCEEDED = "succeeded"


@dataclass(frozen=True)
class PaymentIntent:
    """
    Provider-agnostic payment intent.

    Represents a request to create a pending payment for credits.
    The device and quantity are bound into the processor metadata so
    reconciliation can verify them later.
    """

    amount_minor: int
    currency: str
    description: str
    metadata_device_id: str
    metadata_quantity: int
    idempotency_key: str | None = None


@dataclass(frozen=True)
class PaymentResult:
    """
    Provider-agnostic view of a processor payment record.
    """

    payment_id: str  # Provider-specific payment ID
    client_secret: str  # For client-side payment confirmation
    status: str
    amount_minor: int
    amount_received_minor: int
    currency: str
    metadata_device_id: str | None
    metadata_quantity: int | None

    @property
    def succeeded(self) -> bool:
        return self.status == PAYMENT_SUCCEEDED


@dataclass(frozen=True)
class WebhookEvent:
    """
    Provider-agnostic webhook event.

    Represents a verified webhook notification from the payment provider.
    """

    event_id: str
    event_type: str
    payment_id: str | None
    status: str | None
    metadata_device_id: str | None


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Any payment provider must implement this interface so the reconciler
    stays provider-agnostic.
    """

    async def create_payment_intent(self, intent: PaymentIntent) -> PaymentResult:
        """
        Create a pending payment with the provider.

        Raises:
            PaymentProviderError: If payment creation fails
        """
        ...

    async def get_payment_status(self, payment_id: str) -> PaymentResult:
        """
        Retrieve the authoritative processor record for a payment.

        Raises:
            PaymentProviderError: If the lookup fails
        """
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse a webhook event from the provider.

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        ...
