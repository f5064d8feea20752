"""Inbound token transfers picked up from the token ledger."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from coordinator.database import Base
from coordinator.models.types import Uint256


class TransferStatus(enum.Enum):
    RECEIVED = "received"
    APPLIED = "applied"
    # The instruction was rejected; the amount went to the sender's withdrawable balance.
    CREDITED = "credited"


class InboundTransferRecord(Base):
    """One ``Transfer`` log into the coordinator. Unique per (tx_hash, log_index)."""
    __tablename__ = "inbound_transfers"
    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_inbound_transfers_tx_log"),
    )

    transfer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False, index=True)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    sender: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[int] = mapped_column(Uint256, nullable=False)
    status: Mapped[TransferStatus] = mapped_column(
        Enum(TransferStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=TransferStatus.RECEIVED,
    )
    request_id: Mapped[str | None] = mapped_column(String(66), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
