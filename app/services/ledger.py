"""
Credit Ledger - sole owner of device balances and the global free pool.

Every mutating operation follows the pattern:
1. Lock rows with SELECT ... FOR UPDATE (account first, then pool)
2. Decide and apply the mutation
3. Flush, read back and verify
4. Commit

Serialization failures and deadlocks roll back and retry with jittered
exponential backoff.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime
from typing import TypeVar

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import FREE_POOL_ID, DeviceAccount, FreePool, PaymentRecord
from app.exceptions import (
    BillingError,
    ConcurrencyError,
    DataIntegrityError,
    NoCreditsError,
    WriteVerificationError,
)
from app.models.api import CreditMode
from app.models.domain import (
    ConsumptionResult,
    CreditSnapshot,
    PurchaseIntent,
    validate_device_id,
)
from app.observability.metrics import metrics

logger = get_logger(__name__)

T = TypeVar("T")

SERIALIZATION_FAILURE = "40001"
DEADLOCK_DETECTED = "40P01"
UNIQUE_VIOLATION = "23505"


def _utc_today() -> date:
    """Current UTC calendar date; free grants reset at UTC midnight."""
    return datetime.now(UTC).date()


def free_granted_since(last_free_date: date | None, today: date) -> bool:
    """Whether a free grant already covers `today`; a date ahead of today counts."""
    return last_free_date is not None and last_free_date >= today


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code is None and orig is not None and orig.__cause__ is not None:
        code = getattr(orig.__cause__, "sqlstate", None)
    return code


def _is_retryable(exc: DBAPIError) -> bool:
    """Serialization failures, deadlocks and implicit-creation races are retried."""
    if isinstance(exc, IntegrityError):
        return _sqlstate(exc) in (UNIQUE_VIOLATION, None)
    return _sqlstate(exc) in (SERIALIZATION_FAILURE, DEADLOCK_DETECTED)


def decide_mode(
    policy: str,
    *,
    paid_credits: int,
    free_eligible: bool,
) -> CreditMode | None:
    """
    Choose how a consumption is paid for; None means the device is out of credit.

    free_first: free grant when eligible, otherwise a paid credit.
    paid_first: paid credit when any remain, otherwise the free grant.
    """
    has_paid = paid_credits > 0
    if policy == "paid_first":
        if has_paid:
            return CreditMode.PAID
        return CreditMode.FREE if free_eligible else None
    if free_eligible:
        return CreditMode.FREE
    return CreditMode.PAID if has_paid else None


class CreditLedger:
    """Device balances, the free pool and purchase idempotency."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        free_pool_limit: int | None = None,
        quota_policy: str | None = None,
        max_attempts: int | None = None,
        retry_base_delay: float | None = None,
    ) -> None:
        self.session = session
        self.free_pool_limit = (
            settings.free_pool_limit if free_pool_limit is None else free_pool_limit
        )
        self.quota_policy = quota_policy or settings.quota_policy
        self.max_attempts = max_attempts or settings.ledger_max_attempts
        self.retry_base_delay = (
            settings.ledger_retry_base_delay if retry_base_delay is None else retry_base_delay
        )

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_snapshot(self, device_id: str) -> CreditSnapshot:
        """Read-only view of a device's credits. Never creates an account."""
        validate_device_id(device_id)
        account = await self._find_account(device_id)
        pool_used = await self._find_pool_used()

        pool_remaining = max(self.free_pool_limit - pool_used, 0)
        used_today = account is not None and free_granted_since(
            account.last_free_date, _utc_today()
        )

        return CreditSnapshot(
            paid_credits=account.paid_credits if account else 0,
            free_available_today=not used_today and pool_remaining > 0,
            free_pool_remaining=pool_remaining,
            unit_price_minor=settings.unit_price_minor,
            currency=settings.currency,
        )

    # ========================================================================
    # Writes
    # ========================================================================

    async def consume_one(self, device_id: str) -> ConsumptionResult:
        """
        Atomically spend one free grant or one paid credit.

        Raises:
            NoCreditsError: No free grant today and no paid credit; nothing mutated
            ConcurrencyError: Retries exhausted
        """
        validate_device_id(device_id)
        try:
            result = await self._run_with_retry(
                "consume_one", device_id, lambda: self._consume_once(device_id)
            )
        except NoCreditsError:
            metrics.record_consumption(None)
            logger.info("consume_denied", device_id=device_id)
            raise

        metrics.record_consumption(result.mode.value)
        logger.info(
            "credit_consumed",
            device_id=device_id,
            mode=result.mode.value,
            paid_credits_after=result.paid_credits_after,
        )
        return result

    async def credit_purchase(self, intent: PurchaseIntent) -> CreditSnapshot:
        """
        Apply a verified purchase exactly once.

        A transaction that was already recorded returns the current
        snapshot without changing any balance.
        """
        return await self._run_with_retry(
            "credit_purchase", intent.device_id, lambda: self._credit_purchase_once(intent)
        )

    # ========================================================================
    # Transaction bodies
    # ========================================================================

    async def _consume_once(self, device_id: str) -> ConsumptionResult:
        today = _utc_today()
        account = await self._lock_account(device_id)

        # The pool row is only locked when a free grant is actually possible
        needs_pool = not free_granted_since(account.last_free_date, today) and not (
            self.quota_policy == "paid_first" and account.paid_credits > 0
        )
        pool: FreePool | None = None
        if needs_pool:
            pool = await self._lock_pool()

        free_eligible = pool is not None and pool.used_free_count < self.free_pool_limit
        mode = decide_mode(
            self.quota_policy,
            paid_credits=account.paid_credits,
            free_eligible=free_eligible,
        )
        if mode is None:
            raise NoCreditsError(device_id, account.paid_credits)

        expected_paid = account.paid_credits
        expected_pool: int | None = None
        if mode == CreditMode.FREE:
            assert pool is not None
            account.last_free_date = today
            account.free_credits_used = account.free_credits_used + 1
            pool.used_free_count = pool.used_free_count + 1
            expected_pool = pool.used_free_count
        else:
            account.paid_credits = account.paid_credits - 1
            account.paid_credits_used = account.paid_credits_used + 1
            expected_paid = account.paid_credits

        await self.session.flush()

        verified_account = await self._read_back_account(device_id)
        if verified_account is None:
            raise WriteVerificationError(f"Account {device_id} disappeared after update")
        if verified_account.paid_credits != expected_paid:
            raise DataIntegrityError(
                f"Paid credits mismatch: expected {expected_paid}, "
                f"got {verified_account.paid_credits}"
            )
        if mode == CreditMode.FREE:
            if verified_account.last_free_date != today:
                raise DataIntegrityError(
                    f"Free grant date mismatch: expected {today}, "
                    f"got {verified_account.last_free_date}"
                )
            verified_pool = await self._read_back_pool()
            if verified_pool is None:
                raise WriteVerificationError("Free pool disappeared after update")
            if verified_pool.used_free_count != expected_pool:
                raise DataIntegrityError(
                    f"Free pool mismatch: expected {expected_pool}, "
                    f"got {verified_pool.used_free_count}"
                )
            if verified_pool.used_free_count > self.free_pool_limit:
                raise DataIntegrityError(
                    f"Free pool over limit: {verified_pool.used_free_count} > "
                    f"{self.free_pool_limit}"
                )

        await self.session.commit()
        metrics.db_write_verifications_total.labels(success="True").inc()

        return ConsumptionResult(
            device_id=device_id,
            mode=mode,
            paid_credits_after=expected_paid,
        )

    async def _credit_purchase_once(self, intent: PurchaseIntent) -> CreditSnapshot:
        existing = await self._find_payment(intent.transaction_id)
        if existing is not None:
            await self.session.rollback()
            self._log_duplicate(intent, existing.source.value)
            return await self.get_snapshot(intent.device_id)

        account = await self._lock_account(intent.device_id)

        record = PaymentRecord(
            transaction_id=intent.transaction_id,
            device_id=intent.device_id,
            quantity=intent.quantity,
            amount_received_minor=intent.received_amount_minor,
            currency=intent.currency.lower(),
            source=intent.source,
        )
        self.session.add(record)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            if _sqlstate(exc) not in (UNIQUE_VIOLATION, None):
                raise
            # A concurrent reconciliation inserted the same transaction first
            await self.session.rollback()
            self._log_duplicate(intent, "concurrent")
            return await self.get_snapshot(intent.device_id)

        expected_paid = account.paid_credits + intent.quantity
        account.paid_credits = expected_paid
        account.paid_credits_purchased = account.paid_credits_purchased + intent.quantity
        await self.session.flush()

        verified_record = await self._find_payment(intent.transaction_id)
        if verified_record is None:
            raise WriteVerificationError(
                f"Payment {intent.transaction_id} not found after insert"
            )
        verified_account = await self._read_back_account(intent.device_id)
        if verified_account is None:
            raise WriteVerificationError(f"Account {intent.device_id} disappeared after update")
        if verified_account.paid_credits != expected_paid:
            raise DataIntegrityError(
                f"Paid credits mismatch: expected {expected_paid}, "
                f"got {verified_account.paid_credits}"
            )

        await self.session.commit()
        metrics.db_write_verifications_total.labels(success="True").inc()
        metrics.record_purchase(intent.source.value, duplicate=False, quantity=intent.quantity)
        logger.info(
            "purchase_credited",
            device_id=intent.device_id,
            transaction_id=intent.transaction_id,
            quantity=intent.quantity,
            source=intent.source.value,
            paid_credits_after=expected_paid,
        )
        return await self.get_snapshot(intent.device_id)

    def _log_duplicate(self, intent: PurchaseIntent, recorded_by: str) -> None:
        metrics.record_purchase(intent.source.value, duplicate=True, quantity=intent.quantity)
        logger.info(
            "purchase_already_credited",
            device_id=intent.device_id,
            transaction_id=intent.transaction_id,
            source=intent.source.value,
            recorded_by=recorded_by,
        )

    async def _run_with_retry(
        self,
        operation: str,
        device_id: str,
        body: Callable[[], Awaitable[T]],
    ) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await body()
            except BillingError:
                await self.session.rollback()
                raise
            except DBAPIError as exc:
                await self.session.rollback()
                if not _is_retryable(exc):
                    raise
                metrics.ledger_retries_total.labels(operation=operation).inc()
                logger.warning(
                    "ledger_transaction_conflict",
                    operation=operation,
                    device_id=device_id,
                    attempt=attempt,
                    sqlstate=_sqlstate(exc),
                )
                if attempt < self.max_attempts:
                    delay = self.retry_base_delay * (2 ** (attempt - 1))
                    await asyncio.sleep(delay * random.uniform(0.5, 1.5))

        metrics.record_error("ConcurrencyError", operation)
        raise ConcurrencyError(f"{operation}:{device_id}", self.max_attempts)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_account(self, device_id: str) -> DeviceAccount | None:
        stmt = select(DeviceAccount).where(DeviceAccount.device_id == device_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_pool_used(self) -> int:
        stmt = select(FreePool.used_free_count).where(FreePool.id == FREE_POOL_ID)
        result = await self.session.execute(stmt)
        used = result.scalar_one_or_none()
        return used or 0

    async def _find_payment(self, transaction_id: str) -> PaymentRecord | None:
        stmt = select(PaymentRecord).where(PaymentRecord.transaction_id == transaction_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_account(self, device_id: str) -> DeviceAccount:
        """Create the account if missing, then lock it (SELECT FOR UPDATE)."""
        await self.session.execute(
            pg_insert(DeviceAccount)
            .values(device_id=device_id)
            .on_conflict_do_nothing(index_elements=[DeviceAccount.device_id])
        )
        stmt = (
            select(DeviceAccount)
            .where(DeviceAccount.device_id == device_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        account = result.scalar_one_or_none()
        if account is None:
            raise WriteVerificationError(f"Account {device_id} not found after upsert")
        return account

    async def _lock_pool(self) -> FreePool:
        """Create the singleton pool row if missing, then lock it."""
        await self.session.execute(
            pg_insert(FreePool)
            .values(id=FREE_POOL_ID, used_free_count=0)
            .on_conflict_do_nothing(index_elements=[FreePool.id])
        )
        stmt = (
            select(FreePool)
            .where(FreePool.id == FREE_POOL_ID)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        pool = result.scalar_one_or_none()
        if pool is None:
            raise WriteVerificationError("Free pool not found after upsert")
        return pool

    async def _read_back_account(self, device_id: str) -> DeviceAccount | None:
        stmt = (
            select(DeviceAccount)
            .where(DeviceAccount.device_id == device_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _read_back_pool(self) -> FreePool | None:
        stmt = (
            select(FreePool)
            .where(FreePool.id == FREE_POOL_ID)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
