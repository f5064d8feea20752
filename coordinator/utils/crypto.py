"""secp256k1 signing and recovery utilities using eth_account.

Oracle nodes are identified by their checksummed Ethereum address. The same
keys sign service agreement ids (EIP-191 personal sign over the raw 32-byte
digest) and authenticate HTTP requests.
"""

import hashlib
import secrets
from datetime import UTC, datetime

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3


def keccak(data: bytes) -> bytes:
    return bytes(Web3.keccak(primitive=data))


def to_checksum(address: str) -> str:
    """Normalise an address to its EIP-55 form. Raises ValueError if malformed."""
    if not Web3.is_address(address):
        raise ValueError(f"Invalid address: {address!r}")
    return Web3.to_checksum_address(address)


def generate_keypair() -> tuple[str, str]:
    """Generate a secp256k1 keypair. Returns (private_key_hex, address)."""
    account = Account.create()
    return Web3.to_hex(account.key), account.address


def sign_digest(private_key_hex: str, digest: bytes) -> str:
    """Personal-sign a 32-byte digest and return the 0x-prefixed signature."""
    signed = Account.sign_message(encode_defunct(primitive=digest), private_key=private_key_hex)
    return Web3.to_hex(signed.signature)


def recover_signer(digest: bytes, signature: str) -> str | None:
    """Recover the address that personal-signed ``digest``. None if unrecoverable."""
    try:
        return Account.recover_message(encode_defunct(primitive=digest), signature=signature)
    except Exception:
        return None


def build_signature_message(
    timestamp: str,
    method: str,
    path: str,
    body: bytes,
) -> bytes:
    """Build the message to sign: timestamp\\nmethod\\npath\\nsha256(body)."""
    body_hash = hashlib.sha256(body).hexdigest()
    message = f"{timestamp}\n{method}\n{path}\n{body_hash}"
    return message.encode()


def sign_request(
    private_key_hex: str,
    timestamp: str,
    method: str,
    path: str,
    body: bytes,
) -> str:
    """Sign an HTTP request and return the hex-encoded signature."""
    message = build_signature_message(timestamp, method, path, body)
    signed = Account.sign_message(encode_defunct(primitive=message), private_key=private_key_hex)
    return Web3.to_hex(signed.signature)


def verify_request_signature(
    address: str,
    signature_hex: str,
    timestamp: str,
    method: str,
    path: str,
    body: bytes,
) -> bool:
    """Check that ``address`` signed the request. Returns True if valid, False otherwise."""
    message = build_signature_message(timestamp, method, path, body)
    try:
        recovered = Account.recover_message(encode_defunct(primitive=message), signature=signature_hex)
    except Exception:
        return False
    return recovered.lower() == address.lower()


def generate_nonce() -> str:
    """Generate a cryptographically secure nonce."""
    return secrets.token_hex(16)


def is_timestamp_valid(timestamp: str, max_age_seconds: int = 30) -> bool:
    """Check if a timestamp is within the allowed window."""
    try:
        ts = datetime.fromisoformat(timestamp)
        if ts.tzinfo is None:
            return False
        now = datetime.now(UTC)
        delta = abs((now - ts).total_seconds())
        return delta <= max_age_seconds
    except (ValueError, TypeError):
        return False
