"""
Payment Reconciler - verifies processor payments and credits them exactly once.

Both the client confirmation and the processor webhook funnel through
reconcile(); the ledger's PaymentRecord primary key makes repeats harmless.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.exceptions import PaymentIntegrityError, PaymentNotCompletedError
from app.models.api import ReconciliationSource
from app.models.domain import CreditSnapshot, PurchaseIntent, WebhookOutcome, validate_device_id
from app.observability.metrics import metrics
from app.services.ledger import CreditLedger
from app.services.payment_provider import PaymentIntent, PaymentProvider, PaymentResult

logger = get_logger(__name__)

PAYMENT_SUCCEEDED_EVENT = "payment_intent.succeeded"


class PaymentReconciler:
    """Bridges the payment processor and the credit ledger."""

    def __init__(
        self,
        session: AsyncSession,
        provider: PaymentProvider,
        ledger: CreditLedger | None = None,
    ) -> None:
        self.session = session
        self.provider = provider
        self.ledger = ledger or CreditLedger(session)

    async def create_payment_intent(
        self, device_id: str, quantity: int, request_id: str | None = None
    ) -> PaymentResult:
        """
        Create a pending payment for `quantity` credits bound to `device_id`.

        A client retry carrying the same `request_id` gets the same processor
        payment back instead of a second one.

        Raises:
            ValueError: quantity outside 1..max_purchase_quantity
            PaymentProviderError: processor call failed
        """
        validate_device_id(device_id)
        if quantity < 1 or quantity > settings.max_purchase_quantity:
            raise ValueError(
                f"quantity must be between 1 and {settings.max_purchase_quantity}, got {quantity}"
            )

        amount_minor = quantity * settings.unit_price_minor
        return await self.provider.create_payment_intent(
            PaymentIntent(
                amount_minor=amount_minor,
                currency=settings.currency,
                description=f"{quantity} conversation credit{'s' if quantity != 1 else ''}",
                metadata_device_id=device_id,
                metadata_quantity=quantity,
                idempotency_key=(
                    f"purchase:{device_id}:{request_id}:{quantity}" if request_id else None
                ),
            )
        )

    async def reconcile(
        self,
        device_id: str,
        payment_reference: str,
        source: ReconciliationSource,
    ) -> CreditSnapshot:
        """
        Verify a processor payment against the claiming device and credit it.

        Raises:
            PaymentNotCompletedError: payment has not succeeded yet
            PaymentIntegrityError: device, amount or currency do not match
            PaymentProviderError: processor lookup failed
        """
        validate_device_id(device_id)
        record = await self.provider.get_payment_status(payment_reference)

        if not record.succeeded:
            metrics.reconciliation_rejected_total.labels(reason="not_completed").inc()
            logger.info(
                "payment_not_completed",
                device_id=device_id,
                payment_id=payment_reference,
                status=record.status,
                source=source.value,
            )
            raise PaymentNotCompletedError(payment_reference, record.status)

        quantity = self._verify(device_id, record, source)

        return await self.ledger.credit_purchase(
            PurchaseIntent(
                device_id=device_id,
                quantity=quantity,
                transaction_id=record.payment_id,
                received_amount_minor=record.amount_received_minor,
                currency=record.currency,
                source=source,
            )
        )

    async def handle_webhook(self, payload: bytes, signature: str) -> WebhookOutcome:
        """
        Verify a processor notification and reconcile succeeded payments.

        Integrity failures are acknowledged so the processor stops redelivering;
        transient failures propagate and the processor retries.

        Raises:
            WebhookVerificationError: bad signature or payload
        """
        event = await self.provider.verify_webhook(payload, signature)

        if event.event_type != PAYMENT_SUCCEEDED_EVENT or event.payment_id is None:
            logger.info(
                "webhook_event_acknowledged",
                event_id=event.event_id,
                event_type=event.event_type,
            )
            return WebhookOutcome(event_id=event.event_id, status="acknowledged")

        if not event.metadata_device_id:
            metrics.reconciliation_rejected_total.labels(reason="missing_device").inc()
            logger.error(
                "webhook_payment_missing_device",
                event_id=event.event_id,
                payment_id=event.payment_id,
            )
            return WebhookOutcome(event_id=event.event_id, status="ignored")

        try:
            snapshot = await self.reconcile(
                event.metadata_device_id, event.payment_id, ReconciliationSource.WEBHOOK
            )
        except PaymentIntegrityError:
            return WebhookOutcome(event_id=event.event_id, status="ignored")

        return WebhookOutcome(event_id=event.event_id, status="success", snapshot=snapshot)

    def _verify(
        self, device_id: str, record: PaymentResult, source: ReconciliationSource
    ) -> int:
        """Return the bound quantity, or raise if the record does not match."""
        quantity = record.metadata_quantity
        expected_currency = settings.currency.lower()

        reason: str | None = None
        if record.metadata_device_id != device_id:
            reason = "device_mismatch"
        elif quantity is None or quantity < 1:
            reason = "missing_quantity"
        elif record.amount_received_minor != quantity * settings.unit_price_minor:
            reason = "amount_mismatch"
        elif record.currency.lower() != expected_currency:
            reason = "currency_mismatch"

        if reason is not None:
            metrics.reconciliation_rejected_total.labels(reason=reason).inc()
            logger.warning(
                "payment_rejected",
                reason=reason,
                device_id=device_id,
                payment_id=record.payment_id,
                bound_device_id=record.metadata_device_id,
                quantity=quantity,
                amount_received_minor=record.amount_received_minor,
                expected_unit_price_minor=settings.unit_price_minor,
                currency=record.currency,
                expected_currency=expected_currency,
                source=source.value,
            )
            raise PaymentIntegrityError(record.payment_id, reason)

        assert quantity is not None
        return quantity
