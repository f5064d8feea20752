"""Value-transfer ledger adapters.

The coordinator never holds tokens itself; it asks an external ledger to move
them. Two implementations:

- ``InMemoryTokenLedger`` for local development and tests.
- ``Web3TokenLedger`` for an ERC-677 token contract (``transfer``,
  ``transferAndCall``, ``balanceOf`` and the ``Transfer`` event).

Outgoing transfers fail in one of two ways. ``TokenTransferError`` means the
ledger definitely did not move the funds. ``TransferUnconfirmed`` means a
transaction may be on its way and the caller must not assume either outcome.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Protocol

from web3 import Web3

from coordinator.config import settings
from coordinator.errors import TransactionNotFound, TransactionReverted

logger = logging.getLogger(__name__)

# Minimal ERC-677 ABI: ERC-20 transfer/balanceOf plus transferAndCall and the
# four-field Transfer event it emits.
ERC677_ABI = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"},
            {"indexed": False, "name": "data", "type": "bytes"},
        ],
        "name": "Transfer",
        "type": "event",
    },
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"},
            {"name": "data", "type": "bytes"},
        ],
        "name": "transferAndCall",
        "outputs": [{"name": "success", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]


class TokenTransferError(Exception):
    """The token ledger refused a transfer. No funds moved."""


class TransferUnconfirmed(Exception):
    """A transfer may have been broadcast but its outcome is unknown."""

    def __init__(self, tx_hash: str | None, message: str) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


@dataclass(frozen=True)
class InboundTransfer:
    """A transfer-with-data into the coordinator, as recorded on the token ledger."""
    tx_hash: str
    log_index: int
    sender: str
    amount: int
    data: bytes


class TokenReceiver(Protocol):
    async def on_token_transfer(self, token: str, sender: str, amount: int, data: bytes) -> object: ...


class TokenLedger:
    address: str

    async def transfer(self, sender: str, to: str, amount: int) -> str | None:
        """Move ``amount`` and return the transaction hash, if the ledger has one."""
        raise NotImplementedError

    async def transfer_with_data(self, sender: str, to: str, amount: int, data: bytes) -> str | None:
        raise NotImplementedError

    async def balance_of(self, account: str) -> int:
        raise NotImplementedError

    async def inbound_transfers(self, tx_hash: str, to: str) -> list[InboundTransfer]:
        """Transfers-with-data to ``to`` contained in a mined transaction."""
        raise NotImplementedError


class InMemoryTokenLedger(TokenLedger):
    """Dictionary-backed ledger with ERC-677 receiver callbacks.

    ``transfer_with_data`` moves the funds first and then notifies the receiver
    registered for ``to``; if the receiver raises, the transfer is reverted and
    the exception propagates to the sender.
    """

    def __init__(self, address: str | None = None) -> None:
        self.address = Web3.to_checksum_address(address or settings.token_address)
        self._balances: dict[str, int] = defaultdict(int)
        self._receivers: dict[str, TokenReceiver] = {}

    def mint(self, account: str, amount: int) -> None:
        self._balances[Web3.to_checksum_address(account)] += amount

    def register_receiver(self, address: str, receiver: TokenReceiver) -> None:
        self._receivers[Web3.to_checksum_address(address)] = receiver

    def _move(self, sender: str, to: str, amount: int) -> None:
        if amount < 0:
            raise TokenTransferError("Negative transfer amount")
        if self._balances[sender] < amount:
            raise TokenTransferError(f"Insufficient token balance: {self._balances[sender]} < {amount}")
        self._balances[sender] -= amount
        self._balances[to] += amount

    async def transfer(self, sender: str, to: str, amount: int) -> str | None:
        self._move(Web3.to_checksum_address(sender), Web3.to_checksum_address(to), amount)
        return None

    async def transfer_with_data(self, sender: str, to: str, amount: int, data: bytes) -> str | None:
        sender = Web3.to_checksum_address(sender)
        to = Web3.to_checksum_address(to)
        self._move(sender, to, amount)
        receiver = self._receivers.get(to)
        if receiver is None:
            return None
        try:
            await receiver.on_token_transfer(self.address, sender, amount, data)
        except BaseException:
            self._move(to, sender, amount)
            raise
        return None

    async def balance_of(self, account: str) -> int:
        return self._balances[Web3.to_checksum_address(account)]

    async def inbound_transfers(self, tx_hash: str, to: str) -> list[InboundTransfer]:
        # Receivers are notified synchronously; there are no transactions to look up.
        raise TransactionNotFound(f"Transaction {tx_hash} not found on the in-memory ledger")


class Web3TokenLedger(TokenLedger):
    """ERC-677 token contract accessed over JSON-RPC.

    Outgoing transfers are signed with ``settings.coordinator_private_key`` and
    can only originate from that key's account.
    """

    def __init__(self, rpc_url: str | None = None, address: str | None = None) -> None:
        from eth_account import Account
        from web3 import AsyncHTTPProvider, AsyncWeb3

        if not settings.coordinator_private_key:
            raise TokenTransferError("Coordinator signing key not configured")

        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url or settings.blockchain_rpc_url))
        self.address = Web3.to_checksum_address(address or settings.token_address)
        self.account = Account.from_key(settings.coordinator_private_key)
        self.contract = self.w3.eth.contract(address=self.address, abi=ERC677_ABI)

    async def _send(self, sender: str, function) -> str:  # type: ignore[no-untyped-def]
        from web3.exceptions import Web3RPCError

        if Web3.to_checksum_address(sender) != self.account.address:
            raise TokenTransferError(f"Cannot sign transfers for {sender}")

        try:
            nonce = await self.w3.eth.get_transaction_count(self.account.address)
            tx = await function.build_transaction({
                "from": self.account.address,
                "nonce": nonce,
                "chainId": settings.chain_id,
                "gas": settings.token_gas_limit,
                "maxFeePerGas": await self.w3.eth.gas_price * 2,
                "maxPriorityFeePerGas": await self.w3.eth.max_priority_fee,
            })
            signed = self.account.sign_transaction(tx)
        except Exception as e:
            raise TokenTransferError(f"Could not prepare transaction: {e}") from e

        expected_hash = Web3.to_hex(signed.hash)
        try:
            tx_hash = Web3.to_hex(await self.w3.eth.send_raw_transaction(signed.raw_transaction))
        except Web3RPCError as e:
            # The node answered and refused the transaction.
            raise TokenTransferError(f"Transaction {expected_hash} rejected: {e}") from e
        except Exception as e:
            raise TransferUnconfirmed(expected_hash, f"Broadcast of {expected_hash} failed: {e}") from e

        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=settings.token_receipt_timeout_seconds,
            )
        except Exception as e:
            raise TransferUnconfirmed(tx_hash, f"No receipt for {tx_hash}: {e}") from e

        if receipt.status == 0:
            raise TokenTransferError(f"Transaction {tx_hash} reverted on chain")
        logger.info("Token transaction %s mined in block %s", tx_hash, receipt.blockNumber)
        return tx_hash

    async def transfer(self, sender: str, to: str, amount: int) -> str | None:
        return await self._send(
            sender, self.contract.functions.transfer(Web3.to_checksum_address(to), amount),
        )

    async def transfer_with_data(self, sender: str, to: str, amount: int, data: bytes) -> str | None:
        return await self._send(
            sender,
            self.contract.functions.transferAndCall(Web3.to_checksum_address(to), amount, data),
        )

    async def balance_of(self, account: str) -> int:
        return await self.contract.functions.balanceOf(Web3.to_checksum_address(account)).call()

    async def inbound_transfers(self, tx_hash: str, to: str) -> list[InboundTransfer]:
        """Decode this token's ``Transfer(from, to, value, data)`` logs addressed to ``to``."""
        from web3.logs import DISCARD

        try:
            receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
        except Exception as e:
            raise TransactionNotFound(f"Transaction {tx_hash} not found on chain") from e

        if receipt.status == 0:
            raise TransactionReverted(f"Transaction {tx_hash} reverted on chain")

        to = Web3.to_checksum_address(to)
        transfers = []
        for event in self.contract.events.Transfer().process_receipt(receipt, errors=DISCARD):
            if Web3.to_checksum_address(event.address) != self.address:
                continue
            if Web3.to_checksum_address(event.args["to"]) != to:
                continue
            transfers.append(InboundTransfer(
                tx_hash=tx_hash.lower(),
                log_index=event.logIndex,
                sender=Web3.to_checksum_address(event.args["from"]),
                amount=event.args["value"],
                data=bytes(event.args["data"]),
            ))
        return transfers
