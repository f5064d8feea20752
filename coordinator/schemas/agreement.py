"""Pydantic v2 schemas for service agreements."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from coordinator.models.agreement import AggregatorKind
from coordinator.schemas.types import Address, Bytes32Hex, Uint256Value


class AgreementTerms(BaseModel):
    """The content an agreement id is computed from."""
    payment: Uint256Value
    expiration: Uint256Value
    end_at: int = Field(..., ge=0, le=2**63 - 1, description="Unix timestamp after which the agreement lapses")
    oracles: list[Address] = Field(..., min_length=1)
    request_digest: Bytes32Hex
    aggregator: AggregatorKind = AggregatorKind.MEAN

    @field_validator("oracles")
    @classmethod
    def validate_unique_oracles(cls, v: list[str]) -> list[str]:
        if len(set(v)) != len(v):
            raise ValueError("Oracles must be unique")
        return v


class AgreementCreate(AgreementTerms):
    """Terms plus one signature per oracle, in the same order as ``oracles``."""
    oracle_signatures: list[str] = Field(..., min_length=1)


class AgreementIdResponse(BaseModel):
    agreement_id: str


class AgreementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    agreement_id: str
    payment: Uint256Value
    expiration: Uint256Value
    end_at: int
    oracles: list[str]
    request_digest: str
    aggregator: str
    oracle_signatures: list[str]
    created_at: datetime

    @field_validator("aggregator", mode="before")
    @classmethod
    def serialize_aggregator(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)
