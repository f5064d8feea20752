"""Shared pydantic field types."""

from typing import Annotated

from pydantic import AfterValidator, BeforeValidator, PlainSerializer
from web3 import Web3

from coordinator.models.types import UINT256_MAX


def parse_uint256(v: object) -> int:
    """Accept ints, decimal strings and 0x-prefixed hex strings."""
    if isinstance(v, bool):
        raise ValueError("Booleans are not uint256 values")
    if isinstance(v, str):
        v = v.strip()
        v = int(v, 16) if v.lower().startswith("0x") else int(v)
    if not isinstance(v, int):
        raise ValueError("Expected an integer, decimal string or 0x-hex string")
    if not 0 <= v <= UINT256_MAX:
        raise ValueError("Value out of uint256 range")
    return v


def parse_address(v: str) -> str:
    if not Web3.is_address(v):
        raise ValueError(f"Invalid address: {v}")
    return Web3.to_checksum_address(v)


def _hex_of_length(size: int):  # type: ignore[no-untyped-def]
    def check(v: str) -> str:
        raw = v.lower().removeprefix("0x")
        if len(raw) != size * 2:
            raise ValueError(f"Expected {size} bytes of hex")
        bytes.fromhex(raw)
        return "0x" + raw
    return check


# Serialized as a decimal string so JSON clients never lose precision.
Uint256Value = Annotated[
    int,
    BeforeValidator(parse_uint256),
    PlainSerializer(lambda v: str(v), return_type=str, when_used="json"),
]
Address = Annotated[str, AfterValidator(parse_address)]
Bytes32Hex = Annotated[str, AfterValidator(_hex_of_length(32))]
Bytes4Hex = Annotated[str, AfterValidator(_hex_of_length(4))]
