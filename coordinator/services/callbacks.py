"""Consumer callback delivery.

A fulfilled request is reported to the consumer named in the request: an
address plus a 4-byte function selector. Consumers are untrusted. Delivery is
bounded by ``settings.callback_timeout_seconds`` and every failure (exception,
timeout, unknown consumer) is captured in a ``CallbackResult`` instead of
propagating to the coordinator.
"""

import asyncio
import hashlib
import hmac
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

import httpx
from web3 import Web3

from coordinator.config import settings
from coordinator.utils.abi import function_selector

logger = logging.getLogger(__name__)

ConsumerHandler = Callable[[str, int], Awaitable[None]]


class CallbackError(Exception):
    """The consumer could not be reached or rejected the callback."""


@dataclass(frozen=True)
class ConsumerCallback:
    address: str
    selector: str


@dataclass(frozen=True)
class CallbackResult:
    delivered: bool
    error: str | None = None


def sign_callback_payload(secret: str, timestamp: str, body: str) -> str:
    """Generate HMAC-SHA256 signature for a callback body."""
    message = f"{timestamp}.{body}"
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def build_callback_payload(callback: ConsumerCallback, request_id: str, value: int) -> dict:
    return {
        "request_id": request_id,
        "selector": callback.selector,
        "value": str(value),
        "value_hex": Web3.to_hex(value.to_bytes(32, "big")),
        "timestamp": datetime.now(UTC).isoformat(),
    }


class CallbackDispatcher:
    """Base dispatcher: subclasses implement ``invoke``; ``dispatch`` isolates failures."""

    def __init__(self, timeout_seconds: float | None = None) -> None:
        self.timeout_seconds = (
            settings.callback_timeout_seconds if timeout_seconds is None else timeout_seconds
        )

    async def invoke(self, callback: ConsumerCallback, request_id: str, value: int) -> None:
        raise NotImplementedError

    async def dispatch(self, callback: ConsumerCallback, request_id: str, value: int) -> CallbackResult:
        try:
            await asyncio.wait_for(self.invoke(callback, request_id, value), timeout=self.timeout_seconds)
        except TimeoutError:
            logger.warning(
                "Callback to %s for request %s timed out after %ss",
                callback.address, request_id, self.timeout_seconds,
            )
            return CallbackResult(delivered=False, error="timeout")
        except Exception as e:
            logger.warning("Callback to %s for request %s failed: %s", callback.address, request_id, e)
            return CallbackResult(delivered=False, error=str(e)[:1000] or type(e).__name__)
        return CallbackResult(delivered=True)


class LocalCallbackDispatcher(CallbackDispatcher):
    """In-process consumers registered by address and function signature."""

    def __init__(self, timeout_seconds: float | None = None) -> None:
        super().__init__(timeout_seconds)
        self._consumers: dict[str, dict[str, ConsumerHandler]] = {}

    def register(self, address: str, signature: str, handler: ConsumerHandler) -> str:
        """Register ``handler`` for ``signature`` on ``address``. Returns the selector."""
        selector = Web3.to_hex(function_selector(signature))
        self._consumers.setdefault(Web3.to_checksum_address(address), {})[selector] = handler
        return selector

    def remove(self, address: str) -> None:
        """Forget every handler on ``address``, as if the consumer had been destroyed."""
        self._consumers.pop(Web3.to_checksum_address(address), None)

    async def invoke(self, callback: ConsumerCallback, request_id: str, value: int) -> None:
        handlers = self._consumers.get(Web3.to_checksum_address(callback.address))
        if handlers is None:
            raise CallbackError(f"No consumer at {callback.address}")
        handler = handlers.get(callback.selector.lower())
        if handler is None:
            raise CallbackError(f"Consumer {callback.address} has no function {callback.selector}")
        await handler(request_id, value)


class HttpCallbackDispatcher(CallbackDispatcher):
    """POSTs the answer to the HTTP endpoint registered for the consumer address."""

    def __init__(
        self,
        endpoints: Mapping[str, str],
        secret: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(timeout_seconds)
        self.endpoints = {Web3.to_checksum_address(a): url for a, url in endpoints.items()}
        self.secret = secret or settings.callback_signing_secret
        self.transport = transport

    async def invoke(self, callback: ConsumerCallback, request_id: str, value: int) -> None:
        url = self.endpoints.get(Web3.to_checksum_address(callback.address))
        if url is None:
            raise CallbackError(f"No endpoint registered for {callback.address}")

        payload = build_callback_payload(callback, request_id, value)
        body = json.dumps(payload, separators=(",", ":"))
        headers = {
            "Content-Type": "application/json",
            "X-Coordinator-Signature": sign_callback_payload(self.secret, payload["timestamp"], body),
        }
        async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout_seconds) as client:
            resp = await client.post(url, content=body, headers=headers)
        if resp.status_code >= 400:
            raise CallbackError(f"Consumer endpoint returned {resp.status_code}")
