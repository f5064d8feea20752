"""Settlement ledger: escrowed and withdrawable balances with row-level locking.

Building blocks (``deposit``, ``escrow``, ``release``, ``distribute``) only
flush; the operation that calls them owns the transaction and commits once,
so a failure anywhere leaves every balance untouched. ``withdraw`` is a full
operation: it commits the debit before calling the token ledger and records
the outcome on a ``Withdrawal`` row.
"""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.config import settings
from coordinator.errors import (
    InsufficientBalance,
    PaymentSplitError,
    TransferFailed,
)
from coordinator.models.ledger import (
    LedgerAccount,
    LedgerAction,
    LedgerEntry,
    Withdrawal,
    WithdrawalStatus,
)
from coordinator.services.events import (
    FUNDS_DEPOSITED,
    FUNDS_WITHDRAWN,
    WITHDRAWAL_FAILED,
    record_event,
)
from coordinator.services.token import TokenLedger, TokenTransferError, TransferUnconfirmed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Payout:
    node: str
    rank: int
    amount: int


def _log_entry(
    db: AsyncSession,
    address: str,
    action: LedgerAction,
    amount: int,
    request_id: str | None = None,
    metadata: dict | None = None,
) -> None:
    """Append to the immutable audit log."""
    db.add(LedgerEntry(
        address=address,
        action=action,
        amount=amount,
        request_id=request_id,
        metadata_=metadata,
    ))


async def _lock_account(db: AsyncSession, address: str) -> LedgerAccount:
    """SELECT FOR UPDATE the balance row, creating an empty one on first use."""
    result = await db.execute(
        select(LedgerAccount).where(LedgerAccount.address == address).with_for_update()
    )
    account = result.scalar_one_or_none()
    if account is None:
        account = LedgerAccount(address=address, escrowed=0, withdrawable=0)
        db.add(account)
        await db.flush()
    return account


async def _lock_accounts(db: AsyncSession, addresses: Sequence[str]) -> dict[str, LedgerAccount]:
    """Lock several balance rows, always in sorted address order."""
    return {address: await _lock_account(db, address) for address in sorted(set(addresses))}


async def get_balances(db: AsyncSession, address: str) -> tuple[int, int]:
    """Return (escrowed, withdrawable). Unknown accounts have zero balances."""
    result = await db.execute(select(LedgerAccount).where(LedgerAccount.address == address))
    account = result.scalar_one_or_none()
    if account is None:
        return 0, 0
    return account.escrowed, account.withdrawable


async def total_liabilities(db: AsyncSession) -> int:
    """Sum of every escrowed and withdrawable balance."""
    result = await db.execute(select(LedgerAccount.escrowed, LedgerAccount.withdrawable))
    return sum(escrowed + withdrawable for escrowed, withdrawable in result.all())


async def list_entries(db: AsyncSession, address: str) -> list[LedgerEntry]:
    result = await db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.address == address)
        .order_by(LedgerEntry.timestamp)
        .limit(100)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Balance building blocks
# ---------------------------------------------------------------------------


async def deposit(
    db: AsyncSession, address: str, amount: int, request_id: str | None = None
) -> LedgerAccount:
    """Credit funds that have already arrived on the token ledger."""
    account = await _lock_account(db, address)
    account.withdrawable = account.withdrawable + amount
    _log_entry(db, address, LedgerAction.DEPOSITED, amount, request_id)
    await db.flush()
    return account


async def escrow(
    db: AsyncSession, address: str, amount: int, request_id: str | None = None
) -> LedgerAccount:
    """Move funds from withdrawable to escrowed."""
    account = await _lock_account(db, address)
    if account.withdrawable < amount:
        raise InsufficientBalance(
            f"Insufficient withdrawable balance to escrow: {account.withdrawable} < {amount}"
        )
    account.withdrawable = account.withdrawable - amount
    account.escrowed = account.escrowed + amount
    _log_entry(db, address, LedgerAction.ESCROWED, amount, request_id)
    await db.flush()
    return account


async def release(
    db: AsyncSession, address: str, amount: int, request_id: str | None = None
) -> LedgerAccount:
    """Move funds from escrowed back to withdrawable."""
    account = await _lock_account(db, address)
    if account.escrowed < amount:
        raise InsufficientBalance(
            f"Insufficient escrowed balance to release: {account.escrowed} < {amount}"
        )
    account.escrowed = account.escrowed - amount
    account.withdrawable = account.withdrawable + amount
    _log_entry(db, address, LedgerAction.RELEASED, amount, request_id)
    await db.flush()
    return account


def split_payment(total: int, n: int) -> list[int]:
    """Order-weighted shares for ``n`` reporting nodes.

    The node at rank ``r`` (1-based) gets ``total * (2 * (n - r) + 1) // n**2``.
    Weights sum to ``n**2`` so the shares never exceed ``total``; whatever
    integer division leaves over is returned to the caller as ``total - sum``.
    """
    if n < 1:
        raise PaymentSplitError("Cannot split a payment between zero nodes")
    parts = n * n
    shares = [total * (2 * (n - rank) + 1) // parts for rank in range(1, n + 1)]
    if sum(shares) > total:
        raise PaymentSplitError(f"Shares {sum(shares)} exceed payment {total}")
    if total >= parts and any(share == 0 for share in shares):
        raise PaymentSplitError(f"Zero share for a reporting node out of payment {total}")
    return shares


async def distribute(
    db: AsyncSession,
    request_id: str,
    payer: str,
    total_payment: int,
    nodes: Sequence[str],
) -> list[Payout]:
    """Pay reporting nodes out of the payer's escrow. ``nodes`` is in rank order.

    The split remainder stays in the payer's escrowed balance. Every involved
    row is locked in address order before any balance changes, so two
    distributions over overlapping accounts cannot deadlock.
    """
    shares = split_payment(total_payment, len(nodes))
    paid = sum(shares)

    accounts = await _lock_accounts(db, [payer, *nodes])
    payer_account = accounts[payer]
    if payer_account.escrowed < paid:
        raise InsufficientBalance(
            f"Escrow for {payer} cannot cover request {request_id}: {payer_account.escrowed} < {paid}"
        )
    payer_account.escrowed = payer_account.escrowed - paid
    _log_entry(
        db, payer, LedgerAction.DISTRIBUTED, paid, request_id,
        {"total_payment": str(total_payment), "remainder": str(total_payment - paid)},
    )

    payouts = []
    for rank, (node, share) in enumerate(zip(nodes, shares), start=1):
        account = accounts[node]
        account.withdrawable = account.withdrawable + share
        _log_entry(db, node, LedgerAction.EARNED, share, request_id, {"rank": rank})
        payouts.append(Payout(node=node, rank=rank, amount=share))

    await db.flush()
    return payouts


# ---------------------------------------------------------------------------
# Withdrawal
# ---------------------------------------------------------------------------


async def withdraw(
    db: AsyncSession,
    token: TokenLedger,
    address: str,
    amount: int,
    recipient: str | None = None,
    source: str | None = None,
) -> Withdrawal:
    """Debit ``address`` and transfer ``amount`` from ``source`` (default: the
    coordinator account) to ``recipient`` (default: ``address`` itself).

    The debit and a PENDING withdrawal are committed before the token ledger is
    called, so the balance row is not held locked during the transfer and a
    concurrent withdrawal already sees the reduced balance. The debit is
    refunded only when the token ledger reports a definite failure. A timeout
    or a transaction without a receipt leaves the withdrawal UNCONFIRMED and
    the balance debited.
    """
    recipient = recipient or address
    source = source or settings.coordinator_address

    account = await _lock_account(db, address)
    if account.withdrawable < amount:
        raise InsufficientBalance(
            f"Insufficient withdrawable balance: {account.withdrawable} < {amount}"
        )

    # Deduct before calling out; this is what keeps withdrawals within the balance.
    account.withdrawable = account.withdrawable - amount
    withdrawal = Withdrawal(
        address=address,
        recipient=recipient,
        amount=amount,
        status=WithdrawalStatus.PENDING,
    )
    db.add(withdrawal)
    await db.flush()
    _log_entry(
        db, address, LedgerAction.WITHDRAWN, amount,
        metadata={"recipient": recipient, "withdrawal_id": str(withdrawal.withdrawal_id)},
    )
    await db.commit()

    logger.info(
        "Withdrawal %s created: account=%s amount=%s recipient=%s",
        withdrawal.withdrawal_id, address, amount, recipient,
    )

    try:
        tx_hash = await asyncio.wait_for(
            token.transfer(source, recipient, amount),
            timeout=settings.token_call_timeout_seconds,
        )
    except TokenTransferError as e:
        await _refund(db, withdrawal, str(e))
        raise TransferFailed(f"Token transfer failed: {e}")
    except (TransferUnconfirmed, TimeoutError) as e:
        withdrawal.status = WithdrawalStatus.UNCONFIRMED
        withdrawal.tx_hash = getattr(e, "tx_hash", None)
        withdrawal.error_message = str(e)[:1000] or "Timed out waiting for the token ledger"
        withdrawal.processed_at = datetime.now(UTC)
        await db.commit()
        logger.warning(
            "Withdrawal %s unconfirmed (tx=%s); balance stays debited: %s",
            withdrawal.withdrawal_id, withdrawal.tx_hash, withdrawal.error_message,
        )
        return withdrawal

    withdrawal.status = WithdrawalStatus.COMPLETED
    withdrawal.tx_hash = tx_hash
    withdrawal.processed_at = datetime.now(UTC)
    record_event(
        db, FUNDS_WITHDRAWN,
        account=address, recipient=recipient, amount=amount, tx_hash=tx_hash,
    )
    await db.commit()

    logger.info("Withdrawal %s completed: tx=%s amount=%s", withdrawal.withdrawal_id, tx_hash, amount)
    return withdrawal


async def _refund(db: AsyncSession, withdrawal: Withdrawal, reason: str) -> None:
    """Return a failed withdrawal's amount to the withdrawable balance."""
    account = await _lock_account(db, withdrawal.address)
    account.withdrawable = account.withdrawable + withdrawal.amount
    withdrawal.status = WithdrawalStatus.FAILED
    withdrawal.error_message = reason[:1000]
    withdrawal.processed_at = datetime.now(UTC)
    _log_entry(
        db, withdrawal.address, LedgerAction.REFUNDED, withdrawal.amount,
        metadata={"withdrawal_id": str(withdrawal.withdrawal_id)},
    )
    record_event(
        db, WITHDRAWAL_FAILED,
        account=withdrawal.address, amount=withdrawal.amount, reason=withdrawal.error_message,
    )
    await db.commit()

    logger.error(
        "Withdrawal %s failed and was refunded %s to %s: %s",
        withdrawal.withdrawal_id, withdrawal.amount, withdrawal.address, reason,
    )


async def list_withdrawals(db: AsyncSession, address: str) -> list[Withdrawal]:
    result = await db.execute(
        select(Withdrawal)
        .where(Withdrawal.address == address)
        .order_by(Withdrawal.requested_at.desc())
        .limit(100)
    )
    return list(result.scalars().all())


async def deposit_funds(db: AsyncSession, address: str, amount: int) -> LedgerAccount:
    """Credit a direct deposit to ``address``'s withdrawable balance."""
    account = await deposit(db, address, amount)
    record_event(db, FUNDS_DEPOSITED, account=address, amount=amount)
    await db.commit()
    await db.refresh(account)

    logger.info("Deposit: account=%s amount=%s", address, amount)
    return account
