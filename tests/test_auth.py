"""Tests for NodeSig authentication: signatures, timestamps, nonces."""

from datetime import UTC, datetime, timedelta

import pytest
from httpx import AsyncClient

from coordinator.utils.crypto import generate_keypair, generate_nonce, sign_request
from tests.conftest import encode_body, make_auth_headers

PATH_TEMPLATE = "/accounts/{address}/withdraw"


def _withdraw_path(address: str) -> str:
    return PATH_TEMPLATE.format(address=address)


@pytest.mark.asyncio
async def test_missing_auth_headers(client: AsyncClient) -> None:
    _, address = generate_keypair()
    resp = await client.post(_withdraw_path(address), json={"amount": "1"})
    assert resp.status_code == 403
    assert "Missing authentication" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_wrong_auth_scheme(client: AsyncClient) -> None:
    _, address = generate_keypair()
    resp = await client.post(
        _withdraw_path(address),
        json={"amount": "1"},
        headers={"Authorization": "Bearer faketoken", "X-Timestamp": datetime.now(UTC).isoformat()},
    )
    assert resp.status_code == 403
    assert "Invalid authorization scheme" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_malformed_auth_header(client: AsyncClient) -> None:
    _, address = generate_keypair()
    for credentials in ("NodeSig noseparator", "NodeSig 0x1234:0xabcd"):
        resp = await client.post(
            _withdraw_path(address),
            json={"amount": "1"},
            headers={"Authorization": credentials, "X-Timestamp": datetime.now(UTC).isoformat()},
        )
        assert resp.status_code == 403
        assert "Malformed" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_expired_timestamp(client: AsyncClient) -> None:
    priv, address = generate_keypair()
    path = _withdraw_path(address)
    body = encode_body({"amount": "1"})
    old = (datetime.now(UTC) - timedelta(seconds=120)).isoformat()
    headers = make_auth_headers(address, priv, "POST", path, body, timestamp=old)
    resp = await client.post(path, content=body, headers=headers)
    assert resp.status_code == 403
    assert "expired" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_nonce_replay_rejected(client: AsyncClient) -> None:
    priv, address = generate_keypair()
    path = f"/accounts/{address}/withdraw"
    body = encode_body({"amount": "1"})
    headers = make_auth_headers(address, priv, "POST", path, body)
    headers["Content-Type"] = "application/json"

    first = await client.post(path, content=body, headers=headers)
    # Authenticated; fails on the empty balance instead.
    assert first.status_code == 422
    second = await client.post(path, content=body, headers=headers)
    assert second.status_code == 403
    assert "Nonce already used" in second.json()["detail"]


@pytest.mark.asyncio
async def test_signature_from_other_key(client: AsyncClient) -> None:
    _, address = generate_keypair()
    other_priv, _ = generate_keypair()
    path = _withdraw_path(address)
    body = encode_body({"amount": "1"})
    ts = datetime.now(UTC).isoformat()
    signature = sign_request(other_priv, ts, "POST", path, body)
    resp = await client.post(
        path,
        content=body,
        headers={
            "Authorization": f"NodeSig {address}:{signature}",
            "X-Timestamp": ts,
            "X-Nonce": generate_nonce(),
            "Content-Type": "application/json",
        },
    )
    assert resp.status_code == 403
    assert "Invalid signature" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_tampered_body(client: AsyncClient) -> None:
    priv, address = generate_keypair()
    path = _withdraw_path(address)
    headers = make_auth_headers(address, priv, "POST", path, {"amount": "1"})
    headers["Content-Type"] = "application/json"
    resp = await client.post(path, content=encode_body({"amount": "2"}), headers=headers)
    assert resp.status_code == 403
    assert "Invalid signature" in resp.json()["detail"]
