"""Oracle request and report SQLAlchemy models."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from coordinator.database import Base
from coordinator.models.types import Uint256


class RequestStatus(enum.Enum):
    OPEN = "open"
    FULFILLED = "fulfilled"


class CallbackStatus(enum.Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class OracleRequest(Base):
    __tablename__ = "oracle_requests"

    request_id: Mapped[str] = mapped_column(String(66), primary_key=True)
    # Per-coordinator counter the request id is derived from.
    sequence: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    agreement_id: Mapped[str] = mapped_column(
        String(66), ForeignKey("service_agreements.agreement_id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    requester: Mapped[str] = mapped_column(String(42), nullable=False)
    callback_address: Mapped[str] = mapped_column(String(42), nullable=False)
    callback_selector: Mapped[str] = mapped_column(String(10), nullable=False)
    payment: Mapped[int] = mapped_column(Uint256, nullable=False)
    nonce: Mapped[int] = mapped_column(Uint256, nullable=False, default=0)
    data_version: Mapped[int] = mapped_column(Uint256, nullable=False, default=1)
    data: Mapped[str] = mapped_column(Text, nullable=False, default="0x")
    status: Mapped[RequestStatus] = mapped_column(
        Enum(RequestStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=RequestStatus.OPEN,
    )
    final_value: Mapped[int | None] = mapped_column(Uint256, nullable=True)
    callback_status: Mapped[CallbackStatus] = mapped_column(
        Enum(CallbackStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=CallbackStatus.PENDING,
    )
    callback_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    fulfilled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class OracleReport(Base):
    """One accepted report. Rejected submissions never produce a row."""
    __tablename__ = "oracle_reports"
    __table_args__ = (
        UniqueConstraint("request_id", "node", name="uq_oracle_reports_request_node"),
        UniqueConstraint("request_id", "received_order", name="uq_oracle_reports_request_order"),
    )

    report_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    request_id: Mapped[str] = mapped_column(
        String(66), ForeignKey("oracle_requests.request_id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    node: Mapped[str] = mapped_column(String(42), nullable=False)
    value: Mapped[int] = mapped_column(Uint256, nullable=False)
    # 1-based rank among accepted reports for the request.
    received_order: Mapped[int] = mapped_column(Integer, nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
