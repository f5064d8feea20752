"""secp256k1 request signature verification dependency for FastAPI."""

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, Request
from web3 import Web3

from coordinator.config import settings
from coordinator.redis import get_redis
from coordinator.utils.crypto import is_timestamp_valid, verify_request_signature


class AuthenticatedNode:
    """Container for the verified caller address."""

    def __init__(self, address: str) -> None:
        self.address = address


async def verify_request(
    request: Request,
    redis: aioredis.Redis = Depends(get_redis),
) -> AuthenticatedNode:
    """Verify the NodeSig signature on an incoming request."""
    auth_header = request.headers.get("Authorization")
    timestamp = request.headers.get("X-Timestamp")
    nonce = request.headers.get("X-Nonce")

    if not auth_header or not timestamp:
        raise HTTPException(status_code=403, detail="Missing authentication headers")

    # Authorization: NodeSig <address>:<signature>
    if not auth_header.startswith("NodeSig "):
        raise HTTPException(status_code=403, detail="Invalid authorization scheme")

    try:
        address, signature = auth_header[8:].split(":", 1)
    except ValueError:
        raise HTTPException(status_code=403, detail="Malformed authorization header")
    if not Web3.is_address(address):
        raise HTTPException(status_code=403, detail="Malformed authorization header")
    address = Web3.to_checksum_address(address)

    if not is_timestamp_valid(timestamp, settings.signature_max_age_seconds):
        raise HTTPException(status_code=403, detail="Request timestamp expired")

    # Replay protection
    if nonce:
        nonce_key = f"nonce:{address}:{nonce}"
        first_use = await redis.set(nonce_key, "1", nx=True, ex=settings.nonce_ttl_seconds)
        if not first_use:
            raise HTTPException(status_code=403, detail="Nonce already used")

    body = await request.body()
    if not verify_request_signature(
        address, signature, timestamp, request.method.upper(), request.url.path, body
    ):
        raise HTTPException(status_code=403, detail="Invalid signature")

    return AuthenticatedNode(address=address)
