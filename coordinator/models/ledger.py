"""Settlement ledger balances and audit log models."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, DateTime, Enum, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from coordinator.database import Base
from coordinator.models.types import Uint256


class LedgerAction(enum.Enum):
    DEPOSITED = "deposited"
    ESCROWED = "escrowed"
    RELEASED = "released"
    DISTRIBUTED = "distributed"
    EARNED = "earned"
    WITHDRAWN = "withdrawn"
    REFUNDED = "refunded"


class LedgerAccount(Base):
    __tablename__ = "ledger_accounts"

    address: Mapped[str] = mapped_column(String(42), primary_key=True)
    escrowed: Mapped[int] = mapped_column(Uint256, nullable=False, default=0)
    withdrawable: Mapped[int] = mapped_column(Uint256, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


class LedgerEntry(Base):
    """Append-only audit log. Never update or delete rows."""
    __tablename__ = "ledger_entries"

    entry_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    action: Mapped[LedgerAction] = mapped_column(
        Enum(LedgerAction, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    amount: Mapped[int] = mapped_column(Uint256, nullable=False)
    request_id: Mapped[str | None] = mapped_column(String(66), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)


class WithdrawalStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    # Broadcast (or possibly broadcast) without a receipt; stays debited.
    UNCONFIRMED = "unconfirmed"


class Withdrawal(Base):
    """One withdrawal. The balance is debited when the row is created."""
    __tablename__ = "withdrawals"

    withdrawal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    recipient: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[int] = mapped_column(Uint256, nullable=False)
    status: Mapped[WithdrawalStatus] = mapped_column(
        Enum(WithdrawalStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=WithdrawalStatus.PENDING,
    )
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
