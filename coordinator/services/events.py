"""Coordinator event recording.

Events are appended to the caller's transaction so they are committed exactly
when the state change they describe is committed.
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.models.event import CoordinatorEvent

logger = logging.getLogger(__name__)

AGREEMENT_INITIATED = "agreement.initiated"
REQUEST_OPENED = "request.opened"
REPORT_ACCEPTED = "report.accepted"
REQUEST_FULFILLED = "request.fulfilled"
FUNDS_DEPOSITED = "funds.deposited"
FUNDS_WITHDRAWN = "funds.withdrawn"
WITHDRAWAL_FAILED = "withdrawal.failed"
TRANSFER_RECEIVED = "transfer.received"


def record_event(
    db: AsyncSession,
    event_type: str,
    *,
    agreement_id: str | None = None,
    request_id: str | None = None,
    **details: object,
) -> CoordinatorEvent:
    """Add an event to the session. Integer details are stored as decimal strings."""
    payload = {k: str(v) if isinstance(v, int) and not isinstance(v, bool) else v for k, v in details.items()}
    event = CoordinatorEvent(
        event_type=event_type,
        agreement_id=agreement_id,
        request_id=request_id,
        payload=payload,
    )
    db.add(event)
    logger.debug("Event %s agreement=%s request=%s", event_type, agreement_id, request_id)
    return event


async def list_events(
    db: AsyncSession,
    *,
    event_type: str | None = None,
    request_id: str | None = None,
) -> list[CoordinatorEvent]:
    query = select(CoordinatorEvent)
    if event_type is not None:
        query = query.where(CoordinatorEvent.event_type == event_type)
    if request_id is not None:
        query = query.where(CoordinatorEvent.request_id == request_id)
    result = await db.execute(query.order_by(CoordinatorEvent.created_at))
    return list(result.scalars().all())
