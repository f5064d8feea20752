"""Encoding of the instructions attached to token transfers.

A transfer into the coordinator carries one of two ABI-encoded calls:

    oracleRequest(address,uint256,bytes32,address,bytes4,uint256,uint256,bytes)
    depositFunds(address,uint256)

The leading ``address,uint256`` pair is whatever the sender claims; the
coordinator always overwrites it with the authenticated sender and the amount
actually transferred before acting on the instruction.
"""

from dataclasses import dataclass

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from coordinator.errors import MalformedInstruction

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

ORACLE_REQUEST_SIGNATURE = "oracleRequest(address,uint256,bytes32,address,bytes4,uint256,uint256,bytes)"
DEPOSIT_FUNDS_SIGNATURE = "depositFunds(address,uint256)"

_ORACLE_REQUEST_TYPES = ["address", "uint256", "bytes32", "address", "bytes4", "uint256", "uint256", "bytes"]
_DEPOSIT_FUNDS_TYPES = ["address", "uint256"]


def function_selector(signature: str) -> bytes:
    """First four bytes of keccak256 of a function signature."""
    return bytes(Web3.keccak(text=signature))[:4]


ORACLE_REQUEST_SELECTOR = function_selector(ORACLE_REQUEST_SIGNATURE)
DEPOSIT_FUNDS_SELECTOR = function_selector(DEPOSIT_FUNDS_SIGNATURE)


@dataclass(frozen=True)
class OracleRequestInstruction:
    sender: str
    amount: int
    agreement_id: str
    callback_address: str
    callback_selector: str
    nonce: int
    data_version: int
    data: bytes


@dataclass(frozen=True)
class DepositFundsInstruction:
    account: str
    amount: int


def _hex_to_bytes(value: str | bytes, size: int | None = None) -> bytes:
    raw = bytes(value) if isinstance(value, bytes) else bytes.fromhex(value.removeprefix("0x"))
    if size is not None and len(raw) != size:
        raise ValueError(f"Expected {size} bytes, received {len(raw)}")
    return raw


def encode_oracle_request(
    agreement_id: str,
    callback_address: str,
    callback_selector: str | bytes,
    nonce: int,
    data: bytes = b"",
    *,
    data_version: int = 1,
    sender: str = ZERO_ADDRESS,
    amount: int = 0,
) -> bytes:
    args = encode(
        _ORACLE_REQUEST_TYPES,
        [
            Web3.to_checksum_address(sender),
            amount,
            _hex_to_bytes(agreement_id, 32),
            Web3.to_checksum_address(callback_address),
            _hex_to_bytes(callback_selector, 4),
            nonce,
            data_version,
            data,
        ],
    )
    return ORACLE_REQUEST_SELECTOR + args


def encode_deposit_funds(account: str, amount: int) -> bytes:
    return DEPOSIT_FUNDS_SELECTOR + encode(_DEPOSIT_FUNDS_TYPES, [Web3.to_checksum_address(account), amount])


def decode_instruction(data: bytes) -> OracleRequestInstruction | DepositFundsInstruction:
    """Decode a transfer instruction. Raises MalformedInstruction if it cannot be parsed."""
    selector, payload = bytes(data[:4]), bytes(data[4:])
    try:
        if selector == ORACLE_REQUEST_SELECTOR:
            (sender, amount, agreement_id, callback_address, callback_selector,
             nonce, data_version, extra) = decode(_ORACLE_REQUEST_TYPES, payload)
            return OracleRequestInstruction(
                sender=Web3.to_checksum_address(sender),
                amount=amount,
                agreement_id=Web3.to_hex(agreement_id),
                callback_address=Web3.to_checksum_address(callback_address),
                callback_selector=Web3.to_hex(callback_selector),
                nonce=nonce,
                data_version=data_version,
                data=extra,
            )
        if selector == DEPOSIT_FUNDS_SELECTOR:
            account, amount = decode(_DEPOSIT_FUNDS_TYPES, payload)
            return DepositFundsInstruction(account=Web3.to_checksum_address(account), amount=amount)
    except DecodingError as e:
        raise MalformedInstruction(f"Malformed transfer instruction: {e}")
    raise MalformedInstruction(f"Unsupported transfer instruction selector {Web3.to_hex(selector)}")
