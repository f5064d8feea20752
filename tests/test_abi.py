"""Tests for transfer instruction encoding and decoding."""

import pytest
from web3 import Web3

from coordinator.errors import MalformedInstruction
from coordinator.utils.abi import (
    DEPOSIT_FUNDS_SELECTOR,
    ORACLE_REQUEST_SELECTOR,
    DepositFundsInstruction,
    OracleRequestInstruction,
    decode_instruction,
    encode_deposit_funds,
    encode_oracle_request,
    function_selector,
)

AGREEMENT_ID = "0x" + "11" * 32
CALLBACK = Web3.to_checksum_address("0x00000000000000000000000000000000000c0de1")


def test_oracle_request_selector() -> None:
    assert ORACLE_REQUEST_SELECTOR.hex() == "40429946"


def test_function_selector_length() -> None:
    assert len(function_selector("depositFunds(address,uint256)")) == 4
    assert DEPOSIT_FUNDS_SELECTOR != ORACLE_REQUEST_SELECTOR


def test_decode_oracle_request() -> None:
    data = encode_oracle_request(
        AGREEMENT_ID, CALLBACK, "0x12345678", 7, b"payload",
        data_version=2, sender=CALLBACK, amount=99,
    )
    instruction = decode_instruction(data)
    assert isinstance(instruction, OracleRequestInstruction)
    assert instruction.agreement_id == AGREEMENT_ID
    assert instruction.callback_address == CALLBACK
    assert instruction.callback_selector == "0x12345678"
    assert instruction.nonce == 7
    assert instruction.data_version == 2
    assert instruction.data == b"payload"
    assert instruction.sender == CALLBACK
    assert instruction.amount == 99


def test_decode_deposit_funds() -> None:
    instruction = decode_instruction(encode_deposit_funds(CALLBACK, 5))
    assert instruction == DepositFundsInstruction(account=CALLBACK, amount=5)


def test_bare_selector_rejected() -> None:
    with pytest.raises(MalformedInstruction):
        decode_instruction(ORACLE_REQUEST_SELECTOR)


def test_truncated_payload_rejected() -> None:
    data = encode_oracle_request(AGREEMENT_ID, CALLBACK, "0x12345678", 1)
    with pytest.raises(MalformedInstruction):
        decode_instruction(data[:40])


def test_unknown_selector_rejected() -> None:
    with pytest.raises(MalformedInstruction, match="Unsupported"):
        decode_instruction(bytes.fromhex("deadbeef") + b"\x00" * 64)


def test_empty_data_rejected() -> None:
    with pytest.raises(MalformedInstruction):
        decode_instruction(b"")


def test_encode_rejects_short_agreement_id() -> None:
    with pytest.raises(ValueError):
        encode_oracle_request("0x1234", CALLBACK, "0x12345678", 1)
