"""
Tests for the Stripe payment provider adapter.

The Stripe SDK is patched; no network calls are made.
"""

from types import SimpleNamespace
from unittest.mock import patch

import pytest
import stripe

from app.exceptions import PaymentProviderError, WebhookVerificationError
from app.services.payment_provider import PaymentIntent
from app.services.stripe_provider import StripeProvider


class StripeDict(dict):
    """Dict with attribute access, like stripe.StripeObject."""

    def __getattr__(self, name: str):
        try:
            return self[name]
        except KeyError as exc:
            raise AttributeError(name) from exc


def payment_intent(**overrides) -> StripeDict:
    data = {
        "id": "pi_123",
        "object": "payment_intent",
        "client_secret": "pi_123_secret",
        "status": "succeeded",
        "amount": 100,
        "amount_received": 100,
        "currency": "EUR",
        "metadata": {"device_id": "device-1", "quantity": "5"},
    }
    data.update(overrides)
    return StripeDict(data)


@pytest.fixture
def provider() -> StripeProvider:
    return StripeProvider(api_key="sk_test_x", webhook_secret="whsec_x")


class TestCreatePaymentIntent:
    @pytest.mark.asyncio
    async def test_binds_metadata(self, provider: StripeProvider) -> None:
        with patch.object(
            stripe.PaymentIntent,
            "create",
            return_value=payment_intent(status="requires_payment_method", amount_received=0),
        ) as create:
            result = await provider.create_payment_intent(
                PaymentIntent(
                    amount_minor=100,
                    currency="EUR",
                    description="5 conversation credits",
                    metadata_device_id="device-1",
                    metadata_quantity=5,
                )
            )

        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 100
        assert kwargs["currency"] == "eur"
        assert kwargs["metadata"] == {"device_id": "device-1", "quantity": "5"}
        assert "idempotency_key" not in kwargs
        assert result.client_secret == "pi_123_secret"
        assert result.metadata_quantity == 5
        assert not result.succeeded

    @pytest.mark.asyncio
    async def test_idempotency_key_is_forwarded(self, provider: StripeProvider) -> None:
        with patch.object(stripe.PaymentIntent, "create", return_value=payment_intent()) as create:
            await provider.create_payment_intent(
                PaymentIntent(
                    amount_minor=40,
                    currency="eur",
                    description="2 conversation credits",
                    metadata_device_id="device-1",
                    metadata_quantity=2,
                    idempotency_key="purchase:device-1:buy-7:2",
                )
            )

        assert create.call_args.kwargs["idempotency_key"] == "purchase:device-1:buy-7:2"

    @pytest.mark.asyncio
    async def test_sdk_error_is_wrapped(self, provider: StripeProvider) -> None:
        with patch.object(
            stripe.PaymentIntent, "create", side_effect=stripe.APIConnectionError("offline")
        ):
            with pytest.raises(PaymentProviderError):
                await provider.create_payment_intent(
                    PaymentIntent(
                        amount_minor=20,
                        currency="eur",
                        description="1 conversation credit",
                        metadata_device_id="device-1",
                        metadata_quantity=1,
                    )
                )

    @pytest.mark.asyncio
    async def test_unconfigured_provider_fails_fast(self) -> None:
        with pytest.raises(PaymentProviderError):
            await StripeProvider(api_key="", webhook_secret="").get_payment_status("pi_1")


class TestGetPaymentStatus:
    @pytest.mark.asyncio
    async def test_normalizes_record(self, provider: StripeProvider) -> None:
        with patch.object(stripe.PaymentIntent, "retrieve", return_value=payment_intent()):
            result = await provider.get_payment_status("pi_123")

        assert result.succeeded
        assert result.currency == "eur"
        assert result.amount_received_minor == 100
        assert result.metadata_device_id == "device-1"
        assert result.metadata_quantity == 5

    @pytest.mark.asyncio
    async def test_unparsable_quantity_is_absent(self, provider: StripeProvider) -> None:
        record = payment_intent(metadata={"device_id": "device-1", "quantity": "lots"})
        with patch.object(stripe.PaymentIntent, "retrieve", return_value=record):
            result = await provider.get_payment_status("pi_123")

        assert result.metadata_quantity is None


class TestVerifyWebhook:
    @pytest.mark.asyncio
    async def test_payment_intent_event(self, provider: StripeProvider) -> None:
        event = SimpleNamespace(
            id="evt_1",
            type="payment_intent.succeeded",
            data=SimpleNamespace(object=payment_intent()),
        )
        with patch.object(stripe.Webhook, "construct_event", return_value=event):
            parsed = await provider.verify_webhook(b"{}", "t=1,v1=abc")

        assert parsed.event_id == "evt_1"
        assert parsed.payment_id == "pi_123"
        assert parsed.metadata_device_id == "device-1"

    @pytest.mark.asyncio
    async def test_other_object_has_no_payment(self, provider: StripeProvider) -> None:
        event = SimpleNamespace(
            id="evt_2",
            type="charge.refunded",
            data=SimpleNamespace(object=StripeDict({"id": "ch_1", "object": "charge"})),
        )
        with patch.object(stripe.Webhook, "construct_event", return_value=event):
            parsed = await provider.verify_webhook(b"{}", "t=1,v1=abc")

        assert parsed.payment_id is None
        assert parsed.metadata_device_id is None

    @pytest.mark.asyncio
    async def test_bad_signature(self, provider: StripeProvider) -> None:
        with patch.object(
            stripe.Webhook,
            "construct_event",
            side_effect=stripe.SignatureVerificationError("bad signature", "t=1,v1=abc"),
        ):
            with pytest.raises(WebhookVerificationError):
                await provider.verify_webhook(b"{}", "t=1,v1=abc")

    @pytest.mark.asyncio
    async def test_missing_secret(self) -> None:
        with pytest.raises(WebhookVerificationError):
            await StripeProvider(api_key="sk_test_x", webhook_secret="").verify_webhook(b"{}", "sig")
