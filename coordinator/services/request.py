"""Request lifecycle: open, collect reports, finalize, notify the consumer.

State machine: OPEN -> FULFILLED (terminal). A request accepts reports only
while OPEN. Finalization (status, final value, payouts, event) commits in the
same transaction as the report that completed it; the consumer callback runs
afterwards so a failing or re-entrant consumer can only ever observe a
fulfilled request.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from eth_abi import encode
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from web3 import Web3

from coordinator.config import settings
from coordinator.errors import (
    DuplicateReport,
    ForbiddenCallback,
    InvalidValue,
    InsufficientPayment,
    ReportRejected,
    RequestClosed,
    SequenceExhausted,
    UnauthorizedNode,
    UnknownAgreement,
    UnknownRequest,
)
from coordinator.models.agreement import ServiceAgreement
from coordinator.models.types import UINT256_MAX
from coordinator.models.request import CallbackStatus, OracleReport, OracleRequest, RequestStatus
from coordinator.services import ledger
from coordinator.services.aggregation import Report, build_strategy
from coordinator.services.callbacks import CallbackDispatcher, CallbackResult, ConsumerCallback
from coordinator.services.events import (
    REPORT_ACCEPTED,
    REQUEST_FULFILLED,
    REQUEST_OPENED,
    record_event,
)
from coordinator.utils.crypto import keccak

logger = logging.getLogger(__name__)


@dataclass
class FulfillmentOutcome:
    request_id: str
    node: str
    received_order: int
    complete: bool
    final_value: int | None = None
    callback: ConsumerCallback | None = None
    payouts: list[ledger.Payout] = field(default_factory=list)
    callback_result: CallbackResult | None = None


def compute_request_id(agreement_id: str, sequence: int) -> str:
    encoded = encode(["bytes32", "uint256"], [bytes.fromhex(agreement_id.removeprefix("0x")), sequence])
    return Web3.to_hex(keccak(encoded))


async def _next_sequence(db: AsyncSession) -> int:
    result = await db.execute(select(func.coalesce(func.max(OracleRequest.sequence), 0)))
    return result.scalar() + 1


async def open_request(
    db: AsyncSession,
    *,
    agreement_id: str,
    requester: str,
    payment: int,
    callback_address: str,
    callback_selector: str,
    token_address: str,
    nonce: int = 0,
    data_version: int = 1,
    data: bytes = b"",
) -> OracleRequest:
    """Open a request funded with ``payment``, the amount actually transferred.

    The payment is credited to the requester and escrowed in the same
    transaction that creates the request. Sequence numbers are allocated as
    max + 1 and protected by a unique constraint; a request that loses the
    race to a concurrent one is rolled back and retried with the next number.
    """
    agreement = await db.get(ServiceAgreement, agreement_id.lower())
    if agreement is None:
        raise UnknownAgreement(f"Agreement {agreement_id} is not registered")
    if payment < agreement.payment:
        raise InsufficientPayment(f"Insufficient payment: {payment} < {agreement.payment}")
    if Web3.to_checksum_address(callback_address) == Web3.to_checksum_address(token_address):
        raise ForbiddenCallback("Callbacks to the token ledger are not allowed")

    # Plain values only from here on: a rollback expires every loaded instance.
    fields = {
        "agreement_id": agreement.agreement_id,
        "requester": requester,
        "callback_address": Web3.to_checksum_address(callback_address),
        "callback_selector": callback_selector.lower(),
        "payment": payment,
        "nonce": nonce,
        "data_version": data_version,
        "data": Web3.to_hex(data),
    }
    for attempt in range(1, settings.request_sequence_attempts + 1):
        try:
            request = await _insert_request(db, **fields)
            break
        except IntegrityError:
            await db.rollback()
            logger.warning(
                "Request sequence collision for agreement %s (attempt %d/%d)",
                fields["agreement_id"], attempt, settings.request_sequence_attempts,
            )
    else:
        raise SequenceExhausted(
            f"Could not allocate a request sequence after {settings.request_sequence_attempts} attempts"
        )

    await db.refresh(request)
    logger.info(
        "Request %s opened: agreement=%s sequence=%s requester=%s payment=%s",
        request.request_id, request.agreement_id, request.sequence, requester, payment,
    )
    return request


async def _insert_request(
    db: AsyncSession,
    *,
    agreement_id: str,
    requester: str,
    payment: int,
    **fields: object,
) -> OracleRequest:
    sequence = await _next_sequence(db)
    request_id = compute_request_id(agreement_id, sequence)

    await ledger.deposit(db, requester, payment, request_id)
    await ledger.escrow(db, requester, payment, request_id)

    request = OracleRequest(
        request_id=request_id,
        sequence=sequence,
        agreement_id=agreement_id,
        requester=requester,
        payment=payment,
        status=RequestStatus.OPEN,
        **fields,
    )
    db.add(request)
    record_event(
        db, REQUEST_OPENED,
        agreement_id=agreement_id,
        request_id=request_id,
        requester=requester,
        payment=payment,
        callback_address=request.callback_address,
        callback_selector=request.callback_selector,
    )
    await db.commit()
    return request


async def get_request(db: AsyncSession, request_id: str) -> OracleRequest:
    result = await db.execute(
        select(OracleRequest).where(OracleRequest.request_id == request_id.lower())
    )
    request = result.scalar_one_or_none()
    if request is None:
        raise UnknownRequest(f"Request {request_id} not found")
    return request


async def list_reports(db: AsyncSession, request_id: str) -> list[OracleReport]:
    result = await db.execute(
        select(OracleReport)
        .where(OracleReport.request_id == request_id.lower())
        .order_by(OracleReport.received_order)
    )
    return list(result.scalars().all())


async def submit_report(
    db: AsyncSession, request_id: str, node: str, value: int
) -> FulfillmentOutcome:
    """Accept one node's report and finalize the request if aggregation completes.

    Validation and state checks all run before the session is modified; the
    caller rolls back if payment distribution fails.
    """
    if not 0 <= value <= UINT256_MAX:
        raise InvalidValue(f"Report value out of uint256 range: {value}")

    result = await db.execute(
        select(OracleRequest)
        .where(OracleRequest.request_id == request_id.lower())
        .with_for_update()
    )
    request = result.scalar_one_or_none()
    if request is None:
        raise UnknownRequest(f"Request {request_id} not found")
    if request.status != RequestStatus.OPEN:
        raise RequestClosed(f"Request {request_id} is already {request.status.value}")

    agreement = await db.get(ServiceAgreement, request.agreement_id)
    node = Web3.to_checksum_address(node)
    if node not in agreement.oracles:
        raise UnauthorizedNode(f"{node} is not an oracle of agreement {agreement.agreement_id}")

    prior = [
        Report(node=r.node, value=r.value, received_order=r.received_order)
        for r in await list_reports(db, request.request_id)
    ]
    if any(r.node == node for r in prior):
        raise DuplicateReport(f"oracle already reported: {node}")

    strategy = build_strategy(agreement.aggregator, agreement.oracles)
    new = Report(node=node, value=value, received_order=len(prior) + 1)
    if not strategy.admit(prior, new):
        raise ReportRejected(f"Report from {node} not admitted by {agreement.aggregator.value} aggregation")

    db.add(OracleReport(
        request_id=request.request_id,
        node=node,
        value=value,
        received_order=new.received_order,
    ))
    record_event(
        db, REPORT_ACCEPTED,
        agreement_id=agreement.agreement_id,
        request_id=request.request_id,
        node=node,
        received_order=new.received_order,
    )

    reports = [*prior, new]
    aggregate = strategy.finalize(reports)
    outcome = FulfillmentOutcome(
        request_id=request.request_id,
        node=node,
        received_order=new.received_order,
        complete=aggregate.complete,
    )

    if aggregate.complete:
        request.status = RequestStatus.FULFILLED
        request.final_value = aggregate.value
        request.fulfilled_at = datetime.now(UTC)
        outcome.final_value = aggregate.value
        outcome.callback = ConsumerCallback(request.callback_address, request.callback_selector)
        outcome.payouts = await ledger.distribute(
            db, request.request_id, request.requester, request.payment,
            [r.node for r in reports],
        )
        record_event(
            db, REQUEST_FULFILLED,
            agreement_id=agreement.agreement_id,
            request_id=request.request_id,
            value=aggregate.value,
        )

    await db.commit()

    if aggregate.complete:
        logger.info(
            "Request %s fulfilled with %d reports: value=%s",
            request.request_id, len(reports), aggregate.value,
        )
    else:
        logger.info(
            "Request %s accepted report %d/%d from %s",
            request.request_id, new.received_order, len(agreement.oracles), node,
        )
    return outcome


async def deliver_callback(
    db: AsyncSession, dispatcher: CallbackDispatcher, outcome: FulfillmentOutcome
) -> CallbackResult:
    """Hand the final value to the consumer and record how that went.

    Runs after the fulfillment commit. Consumer failures are recorded on the
    request, never raised.
    """
    result = await dispatcher.dispatch(outcome.callback, outcome.request_id, outcome.final_value)
    outcome.callback_result = result

    request = await get_request(db, outcome.request_id)
    request.callback_status = CallbackStatus.DELIVERED if result.delivered else CallbackStatus.FAILED
    request.callback_error = result.error
    await db.commit()
    return result
