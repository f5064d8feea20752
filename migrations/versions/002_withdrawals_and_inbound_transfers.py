"""Withdrawal records, inbound transfer log and the refunded ledger action.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("ALTER TYPE ledgeraction ADD VALUE IF NOT EXISTS 'refunded'")

    op.create_table(
        "withdrawals",
        sa.Column("withdrawal_id", sa.Uuid(), primary_key=True),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("recipient", sa.String(42), nullable=False),
        sa.Column("amount", sa.String(78), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "completed", "failed", "unconfirmed", name="withdrawalstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("tx_hash", sa.String(66), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_withdrawals_address", "withdrawals", ["address"])

    op.create_table(
        "inbound_transfers",
        sa.Column("transfer_id", sa.Uuid(), primary_key=True),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("sender", sa.String(42), nullable=False),
        sa.Column("amount", sa.String(78), nullable=False),
        sa.Column(
            "status",
            sa.Enum("received", "applied", "credited", name="transferstatus"),
            nullable=False,
            server_default="received",
        ),
        sa.Column("request_id", sa.String(66), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("tx_hash", "log_index", name="uq_inbound_transfers_tx_log"),
    )
    op.create_index("ix_inbound_transfers_tx_hash", "inbound_transfers", ["tx_hash"])


def downgrade() -> None:
    # Postgres cannot drop a single enum value; 'refunded' stays on ledgeraction.
    op.drop_table("inbound_transfers")
    op.drop_table("withdrawals")
    op.execute("DROP TYPE IF EXISTS transferstatus")
    op.execute("DROP TYPE IF EXISTS withdrawalstatus")
