"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, date, datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    String,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.models.api import CreditMode, ReconciliationSource

FREE_POOL_ID = 1


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class DeviceAccount(Base):
    """
    ORM model for device_accounts table.

    One row per client device. Created implicitly by the first
    credit-affecting operation and never deleted.
    """

    __tablename__ = "device_accounts"

    # Primary Key - client generated, not verified
    device_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Remaining purchased balance
    paid_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Cumulative history (monotonic)
    paid_credits_purchased: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    paid_credits_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    free_credits_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # UTC calendar date of the last free grant
    last_free_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("paid_credits >= 0", name="ck_device_paid_credits_non_negative"),
        CheckConstraint(
            "paid_credits_purchased >= 0", name="ck_device_paid_purchased_non_negative"
        ),
        CheckConstraint("paid_credits_used >= 0", name="ck_device_paid_used_non_negative"),
        CheckConstraint("free_credits_used >= 0", name="ck_device_free_used_non_negative"),
        Index("idx_device_accounts_updated_at", "updated_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<DeviceAccount(device_id={self.device_id}, paid_credits={self.paid_credits}, "
            f"last_free_date={self.last_free_date})>"
        )


class FreePool(Base):
    """
    ORM model for free_pool table.

    Singleton row counting free conversations granted across all devices.
    """

    __tablename__ = "free_pool"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=FREE_POOL_ID)
    used_free_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("id = 1", name="ck_free_pool_singleton"),
        CheckConstraint("used_free_count >= 0", name="ck_free_pool_used_non_negative"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<FreePool(used_free_count={self.used_free_count})>"


class PaymentRecord(Base):
    """
    ORM model for payment_records table.

    One immutable row per processor transaction. The primary key is the
    idempotency guard: a second insert for the same transaction fails.
    """

    __tablename__ = "payment_records"

    transaction_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    device_id: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_received_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    source: Mapped[ReconciliationSource] = mapped_column(
        SQLEnum(
            ReconciliationSource,
            name="reconciliation_source",
            native_enum=False,
            length=32,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_payment_quantity_positive"),
        CheckConstraint("amount_received_minor > 0", name="ck_payment_amount_positive"),
        Index("idx_payment_records_device_id", "device_id"),
        Index("idx_payment_records_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PaymentRecord(transaction_id={self.transaction_id}, device_id={self.device_id}, "
            f"quantity={self.quantity}, source={self.source})>"
        )


class ConversationSession(Base):
    """
    ORM model for conversation_sessions table.

    Proof that a credit was already charged for a conversation.
    Tokens are stored as SHA-256 hashes, never raw.
    """

    __tablename__ = "conversation_sessions"

    token_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    device_id: Mapped[str] = mapped_column(String(255), nullable=False)
    mode: Mapped[CreditMode] = mapped_column(
        SQLEnum(
            CreditMode,
            name="credit_mode",
            native_enum=False,
            length=10,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("expires_at > created_at", name="ck_session_expiry_after_creation"),
        Index("idx_conversation_sessions_expires_at", "expires_at"),
        Index("idx_conversation_sessions_device_id", "device_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<ConversationSession(device_id={self.device_id}, mode={self.mode}, "
            f"expires_at={self.expires_at})>"
        )
