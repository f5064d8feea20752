"""Inbound transfer notification endpoint for the on-chain token ledger."""

from fastapi import APIRouter, Depends

from coordinator.schemas.transfer import (
    InboundTransferResponse,
    TransferNotifyRequest,
    TransferNotifyResponse,
)
from coordinator.services.coordinator import Coordinator, get_coordinator

router = APIRouter(prefix="/transfers", tags=["transfers"])


@router.post("/notify", response_model=TransferNotifyResponse, status_code=201)
async def notify_transfer(
    data: TransferNotifyRequest,
    coordinator: Coordinator = Depends(get_coordinator),
) -> TransferNotifyResponse:
    """Tell the coordinator about a mined transfer-with-data to its address.

    The transaction receipt is read back from the chain, so the caller needs
    no credentials. Repeating a notification is harmless.
    """
    records = await coordinator.notify_transfer(data.tx_hash)
    return TransferNotifyResponse(
        transfers=[InboundTransferResponse.model_validate(r) for r in records],
    )
