"""Agreement registry: content-addressed ids, oracle signature checks, storage."""

import logging
import time
from collections.abc import Sequence

from eth_abi import encode
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from web3 import Web3

from coordinator.config import settings
from coordinator.errors import (
    AgreementNotFound,
    AlreadyExists,
    ExpiredAgreement,
    InvalidSignature,
    MalformedAgreement,
)
from coordinator.models.agreement import AggregatorKind, ServiceAgreement
from coordinator.schemas.agreement import AgreementCreate, AgreementTerms
from coordinator.services.aggregation import build_strategy
from coordinator.services.events import AGREEMENT_INITIATED, record_event
from coordinator.utils.crypto import keccak, recover_signer

logger = logging.getLogger(__name__)

_ID_TYPES = ["uint256", "uint256", "uint256", "address[]", "bytes32", "string"]


def compute_agreement_id(
    payment: int,
    expiration: int,
    end_at: int,
    oracles: Sequence[str],
    request_digest: str,
    aggregator: AggregatorKind,
) -> str:
    """keccak256 over the ABI encoding of the agreement terms, 0x-prefixed.

    Oracle order is part of the content: signature ``i`` is checked against
    oracle ``i``.
    """
    encoded = encode(
        _ID_TYPES,
        [
            payment,
            expiration,
            end_at,
            [Web3.to_checksum_address(o) for o in oracles],
            bytes.fromhex(request_digest.removeprefix("0x")),
            aggregator.value,
        ],
    )
    return Web3.to_hex(keccak(encoded))


def agreement_id_for(terms: AgreementTerms) -> str:
    return compute_agreement_id(
        terms.payment, terms.expiration, terms.end_at,
        terms.oracles, terms.request_digest, terms.aggregator,
    )


def _check_structure(data: AgreementCreate) -> None:
    if len(set(data.oracles)) != len(data.oracles):
        raise MalformedAgreement("Oracles must be unique")
    if len(data.oracles) > settings.max_oracles_per_agreement:
        raise MalformedAgreement(
            f"At most {settings.max_oracles_per_agreement} oracles per agreement"
        )
    if len(data.oracle_signatures) != len(data.oracles):
        raise MalformedAgreement(
            f"Expected {len(data.oracles)} oracle signatures, got {len(data.oracle_signatures)}"
        )
    build_strategy(data.aggregator, data.oracles)


def _check_signatures(agreement_id: str, oracles: Sequence[str], signatures: Sequence[str]) -> None:
    digest = bytes.fromhex(agreement_id.removeprefix("0x"))
    for index, (oracle, signature) in enumerate(zip(oracles, signatures)):
        signer = recover_signer(digest, signature)
        if signer is None or signer.lower() != oracle.lower():
            raise InvalidSignature(f"Invalid signature for oracle {index} ({oracle})")


def _same_content(stored: ServiceAgreement, data: AgreementCreate) -> bool:
    return (
        stored.payment == data.payment
        and stored.expiration == data.expiration
        and stored.end_at == data.end_at
        and stored.oracles == list(data.oracles)
        and stored.request_digest == data.request_digest
        and stored.aggregator == data.aggregator
    )


async def register_agreement(
    db: AsyncSession, data: AgreementCreate, now: int | None = None
) -> ServiceAgreement:
    """Validate and store a signed agreement. Idempotent for identical content.

    All checks run before anything is added to the session, so a rejected
    agreement leaves no trace.
    """
    _check_structure(data)
    agreement_id = agreement_id_for(data)
    _check_signatures(agreement_id, data.oracles, data.oracle_signatures)

    current = int(time.time()) if now is None else now
    if data.end_at <= current:
        raise ExpiredAgreement(f"Agreement end_at {data.end_at} is not after {current}")

    existing = await db.get(ServiceAgreement, agreement_id)
    if existing is not None:
        if _same_content(existing, data):
            return existing
        raise AlreadyExists(f"Agreement {agreement_id} already exists with different content")

    agreement = ServiceAgreement(
        agreement_id=agreement_id,
        payment=data.payment,
        expiration=data.expiration,
        end_at=data.end_at,
        oracles=list(data.oracles),
        request_digest=data.request_digest,
        aggregator=data.aggregator,
        oracle_signatures=list(data.oracle_signatures),
    )
    db.add(agreement)
    record_event(
        db, AGREEMENT_INITIATED,
        agreement_id=agreement_id,
        request_digest=data.request_digest,
        aggregator=data.aggregator.value,
    )
    await db.commit()
    await db.refresh(agreement)

    logger.info(
        "Agreement %s registered: oracles=%d aggregator=%s payment=%s",
        agreement_id, len(agreement.oracles), agreement.aggregator.value, agreement.payment,
    )
    return agreement


async def get_agreement(db: AsyncSession, agreement_id: str) -> ServiceAgreement:
    result = await db.execute(
        select(ServiceAgreement).where(ServiceAgreement.agreement_id == agreement_id.lower())
    )
    agreement = result.scalar_one_or_none()
    if agreement is None:
        raise AgreementNotFound(f"Agreement {agreement_id} not found")
    return agreement
