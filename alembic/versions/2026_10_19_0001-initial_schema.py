"""initial schema

Revision ID: 2026_10_19_0001
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the credit ledger and conversation session tables:
- device_accounts: per-device paid balance and last free grant date
- free_pool: singleton counter of free conversations granted
- payment_records: one row per processor transaction (idempotency guard)
- conversation_sessions: hashed tokens proving a conversation was paid for
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_19_0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "device_accounts",
        sa.Column("device_id", sa.String(length=255), nullable=False),
        sa.Column("paid_credits", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("paid_credits_purchased", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("paid_credits_used", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("free_credits_used", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("last_free_date", sa.Date(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("device_id"),
        sa.CheckConstraint("paid_credits >= 0", name="ck_device_paid_credits_non_negative"),
        sa.CheckConstraint(
            "paid_credits_purchased >= 0", name="ck_device_paid_purchased_non_negative"
        ),
        sa.CheckConstraint("paid_credits_used >= 0", name="ck_device_paid_used_non_negative"),
        sa.CheckConstraint("free_credits_used >= 0", name="ck_device_free_used_non_negative"),
    )
    op.create_index("idx_device_accounts_updated_at", "device_accounts", ["updated_at"])

    op.create_table(
        "free_pool",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("used_free_count", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("id = 1", name="ck_free_pool_singleton"),
        sa.CheckConstraint("used_free_count >= 0", name="ck_free_pool_used_non_negative"),
    )
    # Seed the singleton so the first free grant only has to lock it
    op.execute("INSERT INTO free_pool (id, used_free_count) VALUES (1, 0)")

    op.create_table(
        "payment_records",
        sa.Column("transaction_id", sa.String(length=255), nullable=False),
        sa.Column("device_id", sa.String(length=255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("amount_received_minor", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("source", sa.String(length=32), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("transaction_id"),
        sa.CheckConstraint("quantity > 0", name="ck_payment_quantity_positive"),
        sa.CheckConstraint("amount_received_minor > 0", name="ck_payment_amount_positive"),
    )
    op.create_index("idx_payment_records_device_id", "payment_records", ["device_id"])
    op.create_index("idx_payment_records_created_at", "payment_records", ["created_at"])

    op.create_table(
        "conversation_sessions",
        sa.Column("token_hash", sa.String(length=64), nullable=False),
        sa.Column("device_id", sa.String(length=255), nullable=False),
        sa.Column("mode", sa.String(length=10), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("token_hash"),
        sa.CheckConstraint("expires_at > created_at", name="ck_session_expiry_after_creation"),
    )
    op.create_index(
        "idx_conversation_sessions_expires_at", "conversation_sessions", ["expires_at"]
    )
    op.create_index("idx_conversation_sessions_device_id", "conversation_sessions", ["device_id"])


def downgrade() -> None:
    op.drop_index("idx_conversation_sessions_device_id", table_name="conversation_sessions")
    op.drop_index("idx_conversation_sessions_expires_at", table_name="conversation_sessions")
    op.drop_table("conversation_sessions")

    op.drop_index("idx_payment_records_created_at", table_name="payment_records")
    op.drop_index("idx_payment_records_device_id", table_name="payment_records")
    op.drop_table("payment_records")

    op.drop_table("free_pool")

    op.drop_index("idx_device_accounts_updated_at", table_name="device_accounts")
    op.drop_table("device_accounts")
