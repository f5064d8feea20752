"""Coordinator event log model."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, DateTime, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from coordinator.database import Base


class CoordinatorEvent(Base):
    """Notifications emitted by coordinator operations, written in the same transaction."""
    __tablename__ = "coordinator_events"

    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    agreement_id: Mapped[str | None] = mapped_column(String(66), nullable=True, index=True)
    request_id: Mapped[str | None] = mapped_column(String(66), nullable=True, index=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
