"""Service agreement SQLAlchemy model."""

import enum
from datetime import UTC, datetime

from sqlalchemy import JSON, BigInteger, DateTime, Enum, String
from sqlalchemy.orm import Mapped, mapped_column

from coordinator.database import Base
from coordinator.models.types import Uint256


class AggregatorKind(enum.Enum):
    PASS_THROUGH = "pass_through"
    MEAN = "mean"


class ServiceAgreement(Base):
    """Immutable once stored. ``agreement_id`` is the keccak hash of the other terms."""
    __tablename__ = "service_agreements"

    agreement_id: Mapped[str] = mapped_column(String(66), primary_key=True)
    payment: Mapped[int] = mapped_column(Uint256, nullable=False)
    expiration: Mapped[int] = mapped_column(Uint256, nullable=False)
    end_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    oracles: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    request_digest: Mapped[str] = mapped_column(String(66), nullable=False)
    aggregator: Mapped[AggregatorKind] = mapped_column(
        Enum(AggregatorKind, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    oracle_signatures: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
