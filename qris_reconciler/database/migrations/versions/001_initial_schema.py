"""Initial reconciliation schema

Revision ID: 001
Revises:
Create Date: 2026-01-12 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade database schema."""
    # Create user_gateways table
    op.create_table(
        "user_gateways",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("bot_id", sa.BigInteger(), nullable=True),
        sa.Column("gateway_code", sa.String(length=50), nullable=False),
        sa.Column("credentials", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_user_gateways_user_id"), "user_gateways", ["user_id"])
    op.create_index(op.f("ix_user_gateways_bot_id"), "user_gateways", ["bot_id"])
    op.create_index(
        "idx_user_gateways_user_code", "user_gateways", ["user_id", "gateway_code", "is_active"]
    )

    # Create bots table
    op.create_table(
        "bots",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("active_gateway_id", sa.BigInteger(), nullable=True),
        sa.Column("pg_api_key", sa.String(length=255), nullable=True),
        sa.Column("settings", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.ForeignKeyConstraint(["active_gateway_id"], ["user_gateways.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_bots_user_id"), "bots", ["user_id"])

    # Create transactions table
    op.create_table(
        "transactions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("order_id", sa.String(length=100), nullable=False),
        sa.Column("bot_id", sa.BigInteger(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("payment_gateway", sa.String(length=50), nullable=False),
        sa.Column("gateway_family", sa.String(length=50), nullable=False),
        sa.Column("payment_ref", sa.String(length=255), nullable=True),
        sa.Column("external_mutation_id", sa.String(length=255), nullable=True),
        sa.Column("qr_string", sa.Text(), nullable=True),
        sa.Column("telegram_user_id", sa.String(length=64), nullable=True),
        sa.Column("telegram_username", sa.String(length=255), nullable=True),
        sa.Column("product_name", sa.String(length=255), nullable=True),
        sa.Column("variant", sa.String(length=255), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("price", sa.BigInteger(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("callback_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("callback_response", sa.String(length=255), nullable=True),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.CheckConstraint("amount > 0", name="positive_amount"),
        sa.CheckConstraint(
            "status IN ('pending', 'success', 'expired', 'failed', 'cancelled')",
            name="valid_status",
        ),
        sa.ForeignKeyConstraint(["bot_id"], ["bots.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id"),
        sa.UniqueConstraint(
            "gateway_family", "external_mutation_id", name="uq_transactions_family_mutation"
        ),
    )
    op.create_index(op.f("ix_transactions_bot_id"), "transactions", ["bot_id"])
    op.create_index(op.f("ix_transactions_status"), "transactions", ["status"])
    op.create_index(op.f("ix_transactions_payment_ref"), "transactions", ["payment_ref"])
    op.create_index(op.f("ix_transactions_created_at"), "transactions", ["created_at"])
    op.create_index(
        "idx_transactions_gateway_status",
        "transactions",
        ["payment_gateway", "status", "created_at"],
    )
    op.create_index(
        "idx_transactions_callback_retry", "transactions", ["status", "callback_sent_at"]
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table("transactions")
    op.drop_table("bots")
    op.drop_table("user_gateways")
