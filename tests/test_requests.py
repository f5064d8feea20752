"""Tests for request endpoints and the request lifecycle service."""

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.errors import UnknownRequest
from coordinator.models.request import CallbackStatus
from coordinator.services import request as request_service
from coordinator.services.callbacks import LocalCallbackDispatcher
from coordinator.services.coordinator import Coordinator
from coordinator.services.token import InMemoryTokenLedger
from coordinator.utils.crypto import generate_keypair
from tests.conftest import (
    CONSUMER_ADDRESS,
    FULFILL_SIGNATURE,
    create_agreement,
    request_through_token,
    signed_post,
)


def test_request_id_depends_on_sequence() -> None:
    agreement_id = "0x" + "11" * 32
    first = request_service.compute_request_id(agreement_id, 1)
    assert first != request_service.compute_request_id(agreement_id, 2)
    assert first == request_service.compute_request_id(agreement_id.upper().replace("0X", "0x"), 1)
    assert len(first) == 66


@pytest.mark.asyncio
async def test_get_request_unknown(db_session: AsyncSession) -> None:
    with pytest.raises(UnknownRequest):
        await request_service.get_request(db_session, "0x" + "00" * 32)


@pytest.mark.asyncio
async def test_get_request_endpoint(
    client: AsyncClient, coordinator: Coordinator, token: InMemoryTokenLedger,
) -> None:
    agreement, _ = await create_agreement(coordinator, 2)
    request = await request_through_token(coordinator, token, agreement.agreement_id)

    resp = await client.get(f"/requests/{request.request_id}")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "open"
    assert body["callback_status"] == "pending"
    assert body["agreement_id"] == agreement.agreement_id
    assert body["payment"] == str(request.payment)
    assert body["final_value"] is None
    assert body["reports"] == []


@pytest.mark.asyncio
async def test_get_unknown_request_endpoint(client: AsyncClient) -> None:
    resp = await client.get("/requests/0x" + "00" * 32)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_nodes_report_over_http(
    client: AsyncClient,
    coordinator: Coordinator,
    token: InMemoryTokenLedger,
    dispatcher: LocalCallbackDispatcher,
) -> None:
    answers: list[int] = []

    async def fulfill(request_id: str, value: int) -> None:
        answers.append(value)

    dispatcher.register(CONSUMER_ADDRESS, FULFILL_SIGNATURE, fulfill)
    agreement, oracles = await create_agreement(coordinator, 3)
    request = await request_through_token(coordinator, token, agreement.agreement_id)
    path = f"/requests/{request.request_id}/reports"

    responses = []
    for (priv, address), value in zip(oracles, ["16", "17", "0x12"]):
        responses.append(await signed_post(client, address, priv, path, {"value": value}))

    assert [r.status_code for r in responses] == [201, 201, 201]
    assert [r.json()["complete"] for r in responses] == [False, False, True]
    final = responses[-1].json()
    assert final["final_value"] == "17"
    assert final["callback_delivered"] is True
    assert [p["amount"] for p in final["payouts"]] == [
        "555555555555555555", "333333333333333333", "111111111111111111",
    ]
    assert answers == [17]

    resp = await client.get(f"/requests/{request.request_id}")
    body = resp.json()
    assert body["status"] == "fulfilled"
    assert body["callback_status"] == CallbackStatus.DELIVERED.value
    assert [r["node"] for r in body["reports"]] == [address for _, address in oracles]
    assert [r["value"] for r in body["reports"]] == ["16", "17", "18"]


@pytest.mark.asyncio
async def test_duplicate_report_over_http(
    client: AsyncClient, coordinator: Coordinator, token: InMemoryTokenLedger,
) -> None:
    agreement, oracles = await create_agreement(coordinator, 2)
    request = await request_through_token(coordinator, token, agreement.agreement_id)
    priv, address = oracles[0]
    path = f"/requests/{request.request_id}/reports"

    assert (await signed_post(client, address, priv, path, {"value": "1"})).status_code == 201
    resp = await signed_post(client, address, priv, path, {"value": "2"})
    assert resp.status_code == 409
    assert "oracle already reported" in resp.json()["detail"]
    assert resp.json()["category"] == "state_conflict"


@pytest.mark.asyncio
async def test_stranger_report_over_http(
    client: AsyncClient, coordinator: Coordinator, token: InMemoryTokenLedger,
) -> None:
    agreement, _ = await create_agreement(coordinator, 2)
    request = await request_through_token(coordinator, token, agreement.agreement_id)
    priv, address = generate_keypair()
    resp = await signed_post(client, address, priv, f"/requests/{request.request_id}/reports", {"value": "1"})
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_report_value_out_of_range(
    client: AsyncClient, coordinator: Coordinator, token: InMemoryTokenLedger,
) -> None:
    agreement, oracles = await create_agreement(coordinator, 1)
    request = await request_through_token(coordinator, token, agreement.agreement_id)
    priv, address = oracles[0]
    resp = await signed_post(
        client, address, priv, f"/requests/{request.request_id}/reports", {"value": str(2**256)},
    )
    assert resp.status_code == 422
    assert (await coordinator.reports(request.request_id)) == []


@pytest.mark.asyncio
async def test_report_requires_auth(
    client: AsyncClient, coordinator: Coordinator, token: InMemoryTokenLedger,
) -> None:
    agreement, _ = await create_agreement(coordinator, 1)
    request = await request_through_token(coordinator, token, agreement.agreement_id)
    resp = await client.post(f"/requests/{request.request_id}/reports", json={"value": "1"})
    assert resp.status_code == 403
