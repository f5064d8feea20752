"""Tests for inbound transfers reported through the notify endpoint."""

import secrets
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient
from web3 import Web3

from coordinator.errors import NoInboundTransfer, TransactionNotFound
from coordinator.models.transfer import TransferStatus
from coordinator.services.coordinator import Coordinator
from coordinator.services.events import REQUEST_OPENED, TRANSFER_RECEIVED
from coordinator.services.token import InboundTransfer, InMemoryTokenLedger
from coordinator.utils.abi import encode_deposit_funds, encode_oracle_request, function_selector
from coordinator.utils.crypto import generate_keypair
from tests.conftest import CONSUMER_ADDRESS, FULFILL_SIGNATURE, ONE_TOKEN, create_agreement


class MinedTokenLedger(InMemoryTokenLedger):
    """In-memory ledger whose transfers-with-data land in mined transactions
    instead of calling the receiver directly."""

    def __init__(self) -> None:
        super().__init__()
        self.mined: dict[str, list[tuple[str, InboundTransfer]]] = {}

    def mine(self, sender: str, to: str, amount: int, data: bytes, log_index: int = 0) -> str:
        sender = Web3.to_checksum_address(sender)
        to = Web3.to_checksum_address(to)
        self.mint(sender, amount)
        self._move(sender, to, amount)
        tx_hash = "0x" + secrets.token_hex(32)
        self.mined[tx_hash] = [(to, InboundTransfer(tx_hash, log_index, sender, amount, data))]
        return tx_hash

    async def inbound_transfers(self, tx_hash: str, to: str) -> list[InboundTransfer]:
        if tx_hash.lower() not in self.mined:
            raise TransactionNotFound(f"Transaction {tx_hash} not found on chain")
        to = Web3.to_checksum_address(to)
        return [t for recipient, t in self.mined[tx_hash.lower()] if recipient == to]


@pytest.fixture
def token() -> MinedTokenLedger:
    return MinedTokenLedger()


def _request_payload(agreement_id: str, nonce: int = 1) -> bytes:
    selector = "0x" + function_selector(FULFILL_SIGNATURE).hex()
    return encode_oracle_request(agreement_id, CONSUMER_ADDRESS, selector, nonce)


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_notify_opens_request(coordinator: Coordinator, token: MinedTokenLedger) -> None:
    agreement, _ = await create_agreement(coordinator)
    _, requester = generate_keypair()
    tx_hash = token.mine(requester, coordinator.address, ONE_TOKEN, _request_payload(agreement.agreement_id))

    [record] = await coordinator.notify_transfer(tx_hash)

    assert record.status == TransferStatus.APPLIED
    assert record.sender == requester
    assert record.amount == ONE_TOKEN
    request = await coordinator.request(record.request_id)
    assert request.requester == requester
    assert await coordinator.escrowed_tokens(requester) == ONE_TOKEN
    [event] = await coordinator.events(TRANSFER_RECEIVED)
    assert event.payload["status"] == "applied"
    assert event.request_id == record.request_id


@pytest.mark.asyncio
async def test_notify_is_idempotent(coordinator: Coordinator, token: MinedTokenLedger) -> None:
    agreement, _ = await create_agreement(coordinator)
    _, requester = generate_keypair()
    tx_hash = token.mine(requester, coordinator.address, ONE_TOKEN, _request_payload(agreement.agreement_id))

    [first] = await coordinator.notify_transfer(tx_hash)
    [second] = await coordinator.notify_transfer(tx_hash.upper().replace("0X", "0x"))

    assert second.transfer_id == first.transfer_id
    assert len(await coordinator.events(REQUEST_OPENED)) == 1
    assert len(await coordinator.events(TRANSFER_RECEIVED)) == 1
    assert await coordinator.escrowed_tokens(requester) == ONE_TOKEN


@pytest.mark.asyncio
async def test_notify_deposit(coordinator: Coordinator, token: MinedTokenLedger) -> None:
    _, sender = generate_keypair()
    _, beneficiary = generate_keypair()
    tx_hash = token.mine(sender, coordinator.address, 50, encode_deposit_funds(beneficiary, 1))

    [record] = await coordinator.notify_transfer(tx_hash)

    assert record.status == TransferStatus.APPLIED
    assert record.request_id is None
    # The sender the token ledger reports is credited, not the embedded one.
    assert await coordinator.withdrawable_tokens(sender) == 50
    assert await coordinator.withdrawable_tokens(beneficiary) == 0


@pytest.mark.asyncio
async def test_rejected_instruction_is_credited_to_sender(
    coordinator: Coordinator, token: MinedTokenLedger,
) -> None:
    _, sender = generate_keypair()
    tx_hash = token.mine(sender, coordinator.address, 70, b"\xde\xad\xbe\xef")

    [record] = await coordinator.notify_transfer(tx_hash)

    assert record.status == TransferStatus.CREDITED
    assert "selector" in record.error_message
    assert await coordinator.withdrawable_tokens(sender) == 70
    assert await coordinator.total_liabilities() == await token.balance_of(coordinator.address)


@pytest.mark.asyncio
async def test_request_for_unknown_agreement_is_credited(
    coordinator: Coordinator, token: MinedTokenLedger,
) -> None:
    _, requester = generate_keypair()
    tx_hash = token.mine(requester, coordinator.address, ONE_TOKEN, _request_payload("0x" + "99" * 32))

    [record] = await coordinator.notify_transfer(tx_hash)

    assert record.status == TransferStatus.CREDITED
    assert await coordinator.events(REQUEST_OPENED) == []
    assert await coordinator.withdrawable_tokens(requester) == ONE_TOKEN
    assert await coordinator.escrowed_tokens(requester) == 0


@pytest.mark.asyncio
async def test_unexpected_failure_leaves_transfer_unclaimed(
    coordinator: Coordinator, token: MinedTokenLedger,
) -> None:
    _, sender = generate_keypair()
    tx_hash = token.mine(sender, coordinator.address, 5, encode_deposit_funds(sender, 5))

    with patch.object(coordinator, "deposit_funds", AsyncMock(side_effect=RuntimeError("db down"))):
        with pytest.raises(RuntimeError, match="db down"):
            await coordinator.notify_transfer(tx_hash)
    assert await coordinator.withdrawable_tokens(sender) == 0

    [record] = await coordinator.notify_transfer(tx_hash)
    assert record.status == TransferStatus.APPLIED
    assert await coordinator.withdrawable_tokens(sender) == 5


@pytest.mark.asyncio
async def test_notify_unknown_transaction(coordinator: Coordinator) -> None:
    with pytest.raises(TransactionNotFound):
        await coordinator.notify_transfer("0x" + "00" * 32)


@pytest.mark.asyncio
async def test_notify_transaction_to_someone_else(coordinator: Coordinator, token: MinedTokenLedger) -> None:
    _, sender = generate_keypair()
    _, other = generate_keypair()
    tx_hash = token.mine(sender, other, 5, b"")
    with pytest.raises(NoInboundTransfer):
        await coordinator.notify_transfer(tx_hash)


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_notify_endpoint(client: AsyncClient, coordinator: Coordinator, token: MinedTokenLedger) -> None:
    agreement, _ = await create_agreement(coordinator)
    _, requester = generate_keypair()
    tx_hash = token.mine(requester, coordinator.address, ONE_TOKEN, _request_payload(agreement.agreement_id))

    resp = await client.post("/transfers/notify", json={"tx_hash": tx_hash.removeprefix("0x")})

    assert resp.status_code == 201
    [transfer] = resp.json()["transfers"]
    assert transfer["tx_hash"] == tx_hash
    assert transfer["status"] == "applied"
    assert transfer["amount"] == str(ONE_TOKEN)
    assert transfer["request_id"] is not None


@pytest.mark.asyncio
async def test_notify_endpoint_unknown_transaction(client: AsyncClient) -> None:
    resp = await client.post("/transfers/notify", json={"tx_hash": "0x" + "00" * 32})
    assert resp.status_code == 404
    assert resp.json()["category"] == "not_found"


@pytest.mark.asyncio
async def test_notify_endpoint_invalid_hash(client: AsyncClient) -> None:
    resp = await client.post("/transfers/notify", json={"tx_hash": "0x" + "zz" * 32})
    assert resp.status_code == 422
