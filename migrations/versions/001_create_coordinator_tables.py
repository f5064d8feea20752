"""Create agreement, request, report, ledger and event tables.

Revision ID: 001
Revises:
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


revision = "001"
down_revision = None

aggregator_kind = sa.Enum("pass_through", "mean", name="aggregatorkind")
request_status = sa.Enum("open", "fulfilled", name="requeststatus")
callback_status = sa.Enum("pending", "delivered", "failed", name="callbackstatus")
ledger_action = sa.Enum(
    "deposited", "escrowed", "released", "distributed", "earned", "withdrawn",
    name="ledgeraction",
)


def upgrade() -> None:
    op.create_table(
        "service_agreements",
        sa.Column("agreement_id", sa.String(66), primary_key=True),
        sa.Column("payment", sa.String(78), nullable=False),
        sa.Column("expiration", sa.String(78), nullable=False),
        sa.Column("end_at", sa.BigInteger(), nullable=False),
        sa.Column("oracles", sa.JSON(), nullable=False),
        sa.Column("request_digest", sa.String(66), nullable=False),
        sa.Column("aggregator", aggregator_kind, nullable=False),
        sa.Column("oracle_signatures", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "oracle_requests",
        sa.Column("request_id", sa.String(66), primary_key=True),
        sa.Column("sequence", sa.Integer(), nullable=False, unique=True),
        sa.Column(
            "agreement_id",
            sa.String(66),
            sa.ForeignKey("service_agreements.agreement_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("requester", sa.String(42), nullable=False),
        sa.Column("callback_address", sa.String(42), nullable=False),
        sa.Column("callback_selector", sa.String(10), nullable=False),
        sa.Column("payment", sa.String(78), nullable=False),
        sa.Column("nonce", sa.String(78), nullable=False),
        sa.Column("data_version", sa.String(78), nullable=False),
        sa.Column("data", sa.Text(), nullable=False),
        sa.Column("status", request_status, nullable=False, server_default="open"),
        sa.Column("final_value", sa.String(78), nullable=True),
        sa.Column("callback_status", callback_status, nullable=False, server_default="pending"),
        sa.Column("callback_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("fulfilled_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_oracle_requests_agreement_id", "oracle_requests", ["agreement_id"])

    op.create_table(
        "oracle_reports",
        sa.Column("report_id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "request_id",
            sa.String(66),
            sa.ForeignKey("oracle_requests.request_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("node", sa.String(42), nullable=False),
        sa.Column("value", sa.String(78), nullable=False),
        sa.Column("received_order", sa.Integer(), nullable=False),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("request_id", "node", name="uq_oracle_reports_request_node"),
        sa.UniqueConstraint("request_id", "received_order", name="uq_oracle_reports_request_order"),
    )
    op.create_index("ix_oracle_reports_request_id", "oracle_reports", ["request_id"])

    op.create_table(
        "ledger_accounts",
        sa.Column("address", sa.String(42), primary_key=True),
        sa.Column("escrowed", sa.String(78), nullable=False, server_default="0"),
        sa.Column("withdrawable", sa.String(78), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "ledger_entries",
        sa.Column("entry_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("action", ledger_action, nullable=False),
        sa.Column("amount", sa.String(78), nullable=False),
        sa.Column("request_id", sa.String(66), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("metadata", sa.JSON(), nullable=True),
    )
    op.create_index("ix_ledger_entries_address", "ledger_entries", ["address"])

    op.create_table(
        "coordinator_events",
        sa.Column("event_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("agreement_id", sa.String(66), nullable=True),
        sa.Column("request_id", sa.String(66), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_coordinator_events_event_type", "coordinator_events", ["event_type"])
    op.create_index("ix_coordinator_events_agreement_id", "coordinator_events", ["agreement_id"])
    op.create_index("ix_coordinator_events_request_id", "coordinator_events", ["request_id"])


def downgrade() -> None:
    op.drop_table("coordinator_events")
    op.drop_table("ledger_entries")
    op.drop_table("ledger_accounts")
    op.drop_table("oracle_reports")
    op.drop_table("oracle_requests")
    op.drop_table("service_agreements")
    for enum_type in (ledger_action, callback_status, request_status, aggregator_kind):
        enum_type.drop(op.get_bind(), checkfirst=True)
