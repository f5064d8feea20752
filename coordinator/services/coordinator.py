"""Coordinator: the single entry point that ties the services together.

Each public operation opens its own session from ``session_factory`` and
either commits all of its writes or none of them. Fulfillment of a given
request is serialized in-process with a per-request ``asyncio.Lock`` on top
of the database row lock; the consumer callback is dispatched only after the
fulfillment transaction has committed and the lock has been released, so a
re-entrant consumer cannot deadlock or observe half-applied state.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from web3 import Web3

from coordinator.config import settings
from coordinator.errors import CoordinatorError, NoInboundTransfer, UnauthorizedCaller
from coordinator.models.agreement import ServiceAgreement
from coordinator.models.event import CoordinatorEvent
from coordinator.models.ledger import LedgerAccount, Withdrawal
from coordinator.models.request import OracleReport, OracleRequest
from coordinator.models.transfer import InboundTransferRecord
from coordinator.schemas.agreement import AgreementCreate, AgreementTerms
from coordinator.services import agreement as agreement_service
from coordinator.services import events as event_service
from coordinator.services import ledger
from coordinator.services import request as request_service
from coordinator.services import transfer as transfer_service
from coordinator.services.callbacks import CallbackDispatcher
from coordinator.services.request import FulfillmentOutcome
from coordinator.services.token import TokenLedger
from coordinator.utils.abi import DepositFundsInstruction, decode_instruction

logger = logging.getLogger(__name__)


class KeyedLock:
    """One ``asyncio.Lock`` per key, dropped once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class Coordinator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        token: TokenLedger,
        dispatcher: CallbackDispatcher,
        address: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.token = token
        self.dispatcher = dispatcher
        self.address = Web3.to_checksum_address(address or settings.coordinator_address)
        self._request_locks = KeyedLock()

    # --- Agreements ---

    def get_id(self, terms: AgreementTerms) -> str:
        return agreement_service.agreement_id_for(terms)

    async def initiate_service_agreement(
        self, data: AgreementCreate, now: int | None = None
    ) -> ServiceAgreement:
        async with self._session_factory() as db:
            return await agreement_service.register_agreement(db, data, now=now)

    async def service_agreement(self, agreement_id: str) -> ServiceAgreement:
        async with self._session_factory() as db:
            return await agreement_service.get_agreement(db, agreement_id)

    # --- Token ledger entry points ---

    async def on_token_transfer(
        self, token: str, sender: str, amount: int, data: bytes
    ) -> OracleRequest | LedgerAccount:
        """Receiver hook invoked by the token ledger after ``amount`` arrived.

        The instruction's embedded sender and amount are ignored in favour of
        the ones the token ledger vouches for. Raising here makes the token
        ledger revert the transfer.
        """
        if Web3.to_checksum_address(token) != self.token.address:
            raise UnauthorizedCaller("Must use the token ledger")

        instruction = decode_instruction(data)
        if isinstance(instruction, DepositFundsInstruction):
            return await self.deposit_funds(sender, amount)

        return await self.oracle_request(
            token,
            sender,
            amount,
            agreement_id=instruction.agreement_id,
            callback_address=instruction.callback_address,
            callback_selector=instruction.callback_selector,
            nonce=instruction.nonce,
            data_version=instruction.data_version,
            data=instruction.data,
        )

    async def oracle_request(
        self,
        caller: str,
        sender: str,
        amount: int,
        *,
        agreement_id: str,
        callback_address: str,
        callback_selector: str,
        nonce: int = 0,
        data_version: int = 1,
        data: bytes = b"",
    ) -> OracleRequest:
        if Web3.to_checksum_address(caller) != self.token.address:
            raise UnauthorizedCaller("Must use the token ledger")
        async with self._session_factory() as db:
            return await request_service.open_request(
                db,
                agreement_id=agreement_id,
                requester=Web3.to_checksum_address(sender),
                payment=amount,
                callback_address=callback_address,
                callback_selector=callback_selector,
                token_address=self.token.address,
                nonce=nonce,
                data_version=data_version,
                data=data,
            )

    async def deposit_funds(self, sender: str, amount: int) -> LedgerAccount:
        async with self._session_factory() as db:
            return await ledger.deposit_funds(db, Web3.to_checksum_address(sender), amount)

    async def notify_transfer(self, tx_hash: str) -> list[InboundTransferRecord]:
        """Apply the transfers-with-data to this coordinator found in a mined transaction.

        Each transfer log is handled once; notifying the same transaction again
        returns the stored records. A transfer whose instruction is rejected is
        credited to the sender's withdrawable balance instead.
        """
        transfers = await self.token.inbound_transfers(tx_hash, self.address)
        if not transfers:
            raise NoInboundTransfer(f"Transaction {tx_hash} carries no transfer to {self.address}")

        records = []
        for transfer in transfers:
            async with self._session_factory() as db:
                record = await transfer_service.claim_transfer(db, transfer)
                if record is None:
                    records.append(
                        await transfer_service.get_transfer(db, transfer.tx_hash, transfer.log_index)
                    )
                    continue

            try:
                result = await self.on_token_transfer(
                    self.token.address, transfer.sender, transfer.amount, transfer.data,
                )
            except CoordinatorError as e:
                async with self._session_factory() as db:
                    records.append(await transfer_service.credit_sender(db, record.transfer_id, e.detail))
                continue
            except Exception:
                async with self._session_factory() as db:
                    await transfer_service.release_claim(db, record.transfer_id)
                raise

            request_id = result.request_id if isinstance(result, OracleRequest) else None
            async with self._session_factory() as db:
                records.append(await transfer_service.mark_applied(db, record.transfer_id, request_id))

        logger.info("Notified of %s: %d transfer(s)", tx_hash, len(records))
        return records

    # --- Fulfillment ---

    async def fulfill_oracle_request(self, request_id: str, node: str, value: int) -> FulfillmentOutcome:
        request_id = request_id.lower()
        async with self._request_locks.hold(request_id):
            async with self._session_factory() as db:
                outcome = await request_service.submit_report(db, request_id, node, value)

        if outcome.complete:
            async with self._session_factory() as db:
                await request_service.deliver_callback(db, self.dispatcher, outcome)
        return outcome

    # --- Balances ---

    async def withdraw(self, account: str, amount: int, recipient: str | None = None) -> Withdrawal:
        account = Web3.to_checksum_address(account)
        if recipient is not None:
            recipient = Web3.to_checksum_address(recipient)
        async with self._session_factory() as db:
            return await ledger.withdraw(db, self.token, account, amount, recipient, source=self.address)

    async def withdrawals(self, account: str) -> list[Withdrawal]:
        async with self._session_factory() as db:
            return await ledger.list_withdrawals(db, Web3.to_checksum_address(account))

    async def withdrawable_tokens(self, account: str) -> int:
        async with self._session_factory() as db:
            _, withdrawable = await ledger.get_balances(db, Web3.to_checksum_address(account))
        return withdrawable

    balance_of = withdrawable_tokens

    async def escrowed_tokens(self, account: str) -> int:
        async with self._session_factory() as db:
            escrowed, _ = await ledger.get_balances(db, Web3.to_checksum_address(account))
        return escrowed

    async def total_liabilities(self) -> int:
        async with self._session_factory() as db:
            return await ledger.total_liabilities(db)

    # --- Reads ---

    async def request(self, request_id: str) -> OracleRequest:
        async with self._session_factory() as db:
            return await request_service.get_request(db, request_id)

    async def reports(self, request_id: str) -> list[OracleReport]:
        async with self._session_factory() as db:
            return await request_service.list_reports(db, request_id)

    async def events(
        self, event_type: str | None = None, request_id: str | None = None
    ) -> list[CoordinatorEvent]:
        async with self._session_factory() as db:
            return await event_service.list_events(db, event_type=event_type, request_id=request_id)


def build_coordinator() -> Coordinator:
    """Wire a coordinator from settings: token backend and callback endpoints."""
    from coordinator.database import async_session_factory
    from coordinator.services.callbacks import HttpCallbackDispatcher
    from coordinator.services.token import InMemoryTokenLedger, Web3TokenLedger

    if settings.token_backend == "web3":
        token: TokenLedger = Web3TokenLedger()
    else:
        token = InMemoryTokenLedger()
    dispatcher = HttpCallbackDispatcher(settings.callback_endpoints)
    coordinator = Coordinator(async_session_factory, token, dispatcher)
    if isinstance(token, InMemoryTokenLedger):
        token.register_receiver(coordinator.address, coordinator)
    logger.info(
        "Coordinator %s using %s token ledger at %s",
        coordinator.address, settings.token_backend, token.address,
    )
    return coordinator


def get_coordinator(request: Request) -> Coordinator:
    return request.app.state.coordinator
