"""Pydantic v2 schemas for oracle requests and node reports."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, field_validator

from coordinator.schemas.types import Uint256Value


def _enum_value(v: object) -> str:
    return v.value if hasattr(v, "value") else str(v)


class ReportCreate(BaseModel):
    value: Uint256Value


class ReportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    report_id: uuid.UUID
    request_id: str
    node: str
    value: Uint256Value
    received_order: int
    submitted_at: datetime


class RequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    request_id: str
    agreement_id: str
    requester: str
    callback_address: str
    callback_selector: str
    payment: Uint256Value
    nonce: Uint256Value
    data_version: Uint256Value
    data: str
    status: str
    final_value: Uint256Value | None
    callback_status: str
    callback_error: str | None
    created_at: datetime
    fulfilled_at: datetime | None

    @field_validator("status", "callback_status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return _enum_value(v)


class RequestDetailResponse(RequestResponse):
    reports: list[ReportResponse] = []


class PayoutResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    node: str
    rank: int
    amount: Uint256Value


class FulfillmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    request_id: str
    node: str
    received_order: int
    complete: bool
    final_value: Uint256Value | None = None
    payouts: list[PayoutResponse] = []
    callback_delivered: bool | None = None
