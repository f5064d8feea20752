"""Bookkeeping for inbound transfers reported through the notify endpoint.

A transfer is claimed by inserting its row; the unique (tx_hash, log_index)
constraint makes a second notification for the same log a no-op. The
instruction itself is applied by the coordinator between ``claim_transfer``
and one of ``mark_applied`` / ``credit_sender``.
"""

import logging
import uuid
from datetime import UTC, datetime

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.models.transfer import InboundTransferRecord, TransferStatus
from coordinator.services import ledger
from coordinator.services.events import FUNDS_DEPOSITED, TRANSFER_RECEIVED, record_event
from coordinator.services.token import InboundTransfer

logger = logging.getLogger(__name__)


async def claim_transfer(db: AsyncSession, transfer: InboundTransfer) -> InboundTransferRecord | None:
    """Insert the RECEIVED row. Returns None if this log was already claimed."""
    record = InboundTransferRecord(
        tx_hash=transfer.tx_hash.lower(),
        log_index=transfer.log_index,
        sender=transfer.sender,
        amount=transfer.amount,
        status=TransferStatus.RECEIVED,
    )
    db.add(record)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("Transfer %s#%s already processed", transfer.tx_hash, transfer.log_index)
        return None
    return record


async def release_claim(db: AsyncSession, transfer_id: uuid.UUID) -> None:
    """Drop a RECEIVED row so a later notification can process the log again."""
    await db.execute(
        delete(InboundTransferRecord).where(
            InboundTransferRecord.transfer_id == transfer_id,
            InboundTransferRecord.status == TransferStatus.RECEIVED,
        )
    )
    await db.commit()


async def _finish(
    db: AsyncSession, transfer_id: uuid.UUID, status: TransferStatus, **fields: object
) -> InboundTransferRecord:
    result = await db.execute(
        select(InboundTransferRecord).where(InboundTransferRecord.transfer_id == transfer_id)
    )
    record = result.scalar_one()
    record.status = status
    record.processed_at = datetime.now(UTC)
    for name, value in fields.items():
        setattr(record, name, value)
    record_event(
        db, TRANSFER_RECEIVED,
        request_id=record.request_id,
        tx_hash=record.tx_hash, log_index=record.log_index,
        sender=record.sender, amount=record.amount, status=status.value,
    )
    return record


async def mark_applied(
    db: AsyncSession, transfer_id: uuid.UUID, request_id: str | None = None
) -> InboundTransferRecord:
    record = await _finish(db, transfer_id, TransferStatus.APPLIED, request_id=request_id)
    await db.commit()
    return record


async def credit_sender(db: AsyncSession, transfer_id: uuid.UUID, reason: str) -> InboundTransferRecord:
    """Credit a transfer whose instruction was rejected to its sender's withdrawable balance.

    The tokens are already held by the coordinator, so they cannot be bounced
    back the way an in-process transfer-with-data reverts.
    """
    record = await _finish(db, transfer_id, TransferStatus.CREDITED, error_message=reason[:1000])
    await ledger.deposit(db, record.sender, record.amount)
    record_event(db, FUNDS_DEPOSITED, account=record.sender, amount=record.amount)
    await db.commit()

    logger.warning(
        "Transfer %s#%s rejected, credited %s to %s: %s",
        record.tx_hash, record.log_index, record.amount, record.sender, reason,
    )
    return record


async def get_transfer(db: AsyncSession, tx_hash: str, log_index: int) -> InboundTransferRecord | None:
    result = await db.execute(
        select(InboundTransferRecord).where(
            InboundTransferRecord.tx_hash == tx_hash.lower(),
            InboundTransferRecord.log_index == log_index,
        )
    )
    return result.scalar_one_or_none()
