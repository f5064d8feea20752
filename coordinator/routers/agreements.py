"""Service agreement endpoints: id computation, registration, lookup."""

from fastapi import APIRouter, Depends

from coordinator.schemas.agreement import (
    AgreementCreate,
    AgreementIdResponse,
    AgreementResponse,
    AgreementTerms,
)
from coordinator.services.coordinator import Coordinator, get_coordinator

router = APIRouter(prefix="/agreements", tags=["agreements"])


@router.post("/id", response_model=AgreementIdResponse)
async def compute_agreement_id(
    data: AgreementTerms,
    coordinator: Coordinator = Depends(get_coordinator),
) -> AgreementIdResponse:
    """Compute the id oracles must sign for the given terms. Stores nothing."""
    return AgreementIdResponse(agreement_id=coordinator.get_id(data))


@router.post("", response_model=AgreementResponse, status_code=201)
async def initiate_agreement(
    data: AgreementCreate,
    coordinator: Coordinator = Depends(get_coordinator),
) -> AgreementResponse:
    """Register an agreement signed by every listed oracle."""
    agreement = await coordinator.initiate_service_agreement(data)
    return AgreementResponse.model_validate(agreement)


@router.get("/{agreement_id}", response_model=AgreementResponse)
async def get_agreement(
    agreement_id: str,
    coordinator: Coordinator = Depends(get_coordinator),
) -> AgreementResponse:
    agreement = await coordinator.service_agreement(agreement_id)
    return AgreementResponse.model_validate(agreement)
