"""Pydantic v2 schemas for settlement balances and withdrawals."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, field_validator

from coordinator.schemas.types import Address, Uint256Value


class BalanceResponse(BaseModel):
    address: str
    escrowed: Uint256Value
    withdrawable: Uint256Value


class WithdrawRequest(BaseModel):
    amount: Uint256Value
    recipient: Address | None = None

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: int) -> int:
        if v == 0:
            raise ValueError("Withdrawal amount must be positive")
        return v


class WithdrawalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    withdrawal_id: uuid.UUID
    address: str
    recipient: str
    amount: Uint256Value
    status: str
    tx_hash: str | None
    error_message: str | None
    requested_at: datetime
    processed_at: datetime | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return v.value if hasattr(v, "value") else str(v)


class WithdrawalListResponse(BaseModel):
    withdrawals: list[WithdrawalResponse]
