"""Pydantic v2 schemas for inbound transfer notifications."""

import re
import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from coordinator.schemas.types import Uint256Value


class TransferNotifyRequest(BaseModel):
    tx_hash: str = Field(..., min_length=64, max_length=66)

    @field_validator("tx_hash")
    @classmethod
    def validate_tx_hash(cls, v: str) -> str:
        if not v.startswith("0x"):
            v = f"0x{v}"
        if not re.match(r"^0x[0-9a-fA-F]{64}$", v):
            raise ValueError("Invalid transaction hash (expected 64 hex chars, optional 0x prefix)")
        return v.lower()


class InboundTransferResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transfer_id: uuid.UUID
    tx_hash: str
    log_index: int
    sender: str
    amount: Uint256Value
    status: str
    request_id: str | None
    error_message: str | None
    received_at: datetime
    processed_at: datetime | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return v.value if hasattr(v, "value") else str(v)


class TransferNotifyResponse(BaseModel):
    transfers: list[InboundTransferResponse]
