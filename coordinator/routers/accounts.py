"""Settlement account endpoints: balances and withdrawals."""

from fastapi import APIRouter, Depends, HTTPException
from web3 import Web3

from coordinator.auth.middleware import AuthenticatedNode, verify_request
from coordinator.schemas.ledger import (
    BalanceResponse,
    WithdrawalListResponse,
    WithdrawalResponse,
    WithdrawRequest,
)
from coordinator.services.coordinator import Coordinator, get_coordinator

router = APIRouter(prefix="/accounts/{address}", tags=["accounts"])


def _checksum(address: str) -> str:
    if not Web3.is_address(address):
        raise HTTPException(status_code=422, detail=f"Invalid address: {address}")
    return Web3.to_checksum_address(address)


def _assert_own_account(auth: AuthenticatedNode, address: str) -> None:
    if auth.address != address:
        raise HTTPException(status_code=403, detail="Can only withdraw from own account")


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    address: str,
    coordinator: Coordinator = Depends(get_coordinator),
) -> BalanceResponse:
    address = _checksum(address)
    return BalanceResponse(
        address=address,
        escrowed=await coordinator.escrowed_tokens(address),
        withdrawable=await coordinator.withdrawable_tokens(address),
    )


@router.post("/withdraw", response_model=WithdrawalResponse, status_code=201)
async def withdraw(
    address: str,
    data: WithdrawRequest,
    auth: AuthenticatedNode = Depends(verify_request),
    coordinator: Coordinator = Depends(get_coordinator),
) -> WithdrawalResponse:
    """Withdraw from the caller's own withdrawable balance. The amount is deducted immediately."""
    address = _checksum(address)
    _assert_own_account(auth, address)
    withdrawal = await coordinator.withdraw(address, data.amount, data.recipient)
    return WithdrawalResponse.model_validate(withdrawal)


@router.get("/withdrawals", response_model=WithdrawalListResponse)
async def list_withdrawals(
    address: str,
    coordinator: Coordinator = Depends(get_coordinator),
) -> WithdrawalListResponse:
    address = _checksum(address)
    withdrawals = await coordinator.withdrawals(address)
    return WithdrawalListResponse(
        withdrawals=[WithdrawalResponse.model_validate(w) for w in withdrawals],
    )
