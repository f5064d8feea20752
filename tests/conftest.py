"""Test configuration and fixtures.

Each test gets its own SQLite database file under ``tmp_path`` with the full
schema created from the models, an in-memory token ledger and an in-process
consumer dispatcher wired into a fresh ``Coordinator``.
"""

import json
import time
from collections.abc import AsyncGenerator
from datetime import UTC, datetime

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient, Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from web3 import Web3

from coordinator.config import settings
from coordinator.database import Base
from coordinator.main import app
from coordinator.models.agreement import AggregatorKind, ServiceAgreement
from coordinator.models.request import OracleRequest
from coordinator.redis import get_redis
from coordinator.schemas.agreement import AgreementCreate, AgreementTerms
from coordinator.services.agreement import agreement_id_for
from coordinator.services.callbacks import LocalCallbackDispatcher
from coordinator.services.coordinator import Coordinator, get_coordinator
from coordinator.services.token import InMemoryTokenLedger
from coordinator.utils.abi import encode_oracle_request, function_selector
from coordinator.utils.crypto import generate_keypair, generate_nonce, sign_digest, sign_request

# Models must be imported so create_all sees every table.
import coordinator.models.event  # noqa: F401
import coordinator.models.ledger  # noqa: F401
import coordinator.models.transfer  # noqa: F401

ONE_TOKEN = 10**18
REQUEST_DIGEST = "0x" + "ab" * 32
CONSUMER_ADDRESS = Web3.to_checksum_address("0x00000000000000000000000000000000000c0de1")
FULFILL_SIGNATURE = "fulfill(bytes32,uint256)"


class FakeRedis:
    """Just enough of ``redis.asyncio.Redis`` for nonce replay checks."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def aclose(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Per-test fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:  # type: ignore[no-untyped-def]
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'coordinator.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def token() -> InMemoryTokenLedger:
    return InMemoryTokenLedger()


@pytest.fixture
def dispatcher() -> LocalCallbackDispatcher:
    return LocalCallbackDispatcher(timeout_seconds=0.5)


@pytest.fixture
def coordinator(
    session_factory: async_sessionmaker[AsyncSession],
    token: InMemoryTokenLedger,
    dispatcher: LocalCallbackDispatcher,
) -> Coordinator:
    coordinator = Coordinator(session_factory, token, dispatcher)
    token.register_receiver(coordinator.address, coordinator)
    return coordinator


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture
async def client(coordinator: Coordinator, fake_redis: FakeRedis) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client bound to the per-test coordinator and fake Redis."""

    async def override_get_redis() -> AsyncGenerator[FakeRedis, None]:
        yield fake_redis

    app.dependency_overrides[get_coordinator] = lambda: coordinator
    app.dependency_overrides[get_redis] = override_get_redis

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_oracles(n: int) -> list[tuple[str, str]]:
    """Generate ``n`` oracle keypairs as (private_key_hex, address)."""
    return [generate_keypair() for _ in range(n)]


def make_terms(
    oracles: list[str],
    payment: int = ONE_TOKEN,
    aggregator: AggregatorKind = AggregatorKind.MEAN,
    end_at: int | None = None,
    expiration: int = 300,
) -> AgreementTerms:
    return AgreementTerms(
        payment=payment,
        expiration=expiration,
        end_at=int(time.time()) + 86_400 if end_at is None else end_at,
        oracles=oracles,
        request_digest=REQUEST_DIGEST,
        aggregator=aggregator,
    )


def sign_terms(terms: AgreementTerms, private_keys: list[str]) -> AgreementCreate:
    """Have every oracle sign the agreement id of ``terms``."""
    digest = bytes.fromhex(agreement_id_for(terms).removeprefix("0x"))
    return AgreementCreate(
        **terms.model_dump(),
        oracle_signatures=[sign_digest(priv, digest) for priv in private_keys],
    )


def make_agreement_data(
    n: int = 3,
    aggregator: AggregatorKind = AggregatorKind.MEAN,
    **overrides: object,
) -> tuple[AgreementCreate, list[tuple[str, str]]]:
    oracles = make_oracles(n)
    terms = make_terms([addr for _, addr in oracles], aggregator=aggregator, **overrides)  # type: ignore[arg-type]
    return sign_terms(terms, [priv for priv, _ in oracles]), oracles


async def create_agreement(
    coordinator: Coordinator,
    n: int = 3,
    aggregator: AggregatorKind = AggregatorKind.MEAN,
    **overrides: object,
) -> tuple[ServiceAgreement, list[tuple[str, str]]]:
    data, oracles = make_agreement_data(n, aggregator, **overrides)
    agreement = await coordinator.initiate_service_agreement(data)
    return agreement, oracles


async def request_through_token(
    coordinator: Coordinator,
    token: InMemoryTokenLedger,
    agreement_id: str,
    requester: str | None = None,
    amount: int = ONE_TOKEN,
    callback_address: str = CONSUMER_ADDRESS,
    callback_selector: str | None = None,
    nonce: int = 1,
) -> OracleRequest:
    """Mint tokens for ``requester`` and open a request via transfer-with-data."""
    if requester is None:
        _, requester = generate_keypair()
    if callback_selector is None:
        callback_selector = "0x" + function_selector(FULFILL_SIGNATURE).hex()
    token.mint(requester, amount)
    payload = encode_oracle_request(agreement_id, callback_address, callback_selector, nonce)
    await token.transfer_with_data(requester, coordinator.address, amount, payload)

    async with coordinator._session_factory() as db:
        result = await db.execute(
            select(OracleRequest).order_by(OracleRequest.sequence.desc()).limit(1)
        )
        return result.scalar_one()


def make_auth_headers(
    address: str,
    private_key_hex: str,
    method: str,
    path: str,
    body: bytes | dict | list | None = None,
    timestamp: str | None = None,
) -> dict[str, str]:
    """Build NodeSig auth headers for a request."""
    if body is None:
        body_bytes = b""
    elif isinstance(body, bytes):
        body_bytes = body
    else:
        body_bytes = encode_body(body)

    timestamp = timestamp or datetime.now(UTC).isoformat()
    signature = sign_request(private_key_hex, timestamp, method, path, body_bytes)
    return {
        "Authorization": f"NodeSig {address}:{signature}",
        "X-Timestamp": timestamp,
        "X-Nonce": generate_nonce(),
    }


def encode_body(body: dict | list) -> bytes:
    return json.dumps(body, separators=(",", ":")).encode()


async def signed_post(
    client: AsyncClient, address: str, private_key_hex: str, path: str, body: dict
) -> Response:
    """POST ``body`` with exactly the bytes that were signed."""
    content = encode_body(body)
    headers = make_auth_headers(address, private_key_hex, "POST", path, content)
    headers["Content-Type"] = "application/json"
    return await client.post(path, content=content, headers=headers)
