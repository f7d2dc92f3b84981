import hashlib
import logging
import re

from eth_account import Account
from eth_account.messages import encode_defunct

from content_identity.errors import SignatureVerificationError

logger = logging.getLogger(__name__)

CONTENT_HASH_PATTERN = re.compile(r"^0x[0-9a-f]{64}$")
ETH_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")

_PKH_PATTERN = re.compile(r"^did:pkh:eip155:\d+:(0x[0-9a-fA-F]{40})$")
_ETHR_PATTERN = re.compile(r"^did:ethr:(?:[\w-]+:)?(0x[0-9a-fA-F]{40})$")


def content_hash(data: bytes) -> str:
    """Return the 0x-prefixed lowercase SHA-256 of raw content bytes."""
    return "0x" + hashlib.sha256(data).hexdigest()


def normalize_content_hash(hash_str: str) -> str:
    """Normalize hash: lowercase, ensure 0x prefix."""
    normalized = hash_str.lower().strip()
    if not normalized.startswith("0x"):
        normalized = "0x" + normalized
    if not CONTENT_HASH_PATTERN.match(normalized):
        raise ValueError(f"Invalid hash format (expected 64 hex characters): {hash_str}")
    return normalized


def hash_to_bytes32(hash_str: str) -> bytes:
    return bytes.fromhex(normalize_content_hash(hash_str)[2:])


def mask(value: str, keep: int = 6) -> str:
    """Shorten an identifier or credential for log output.

    Only a short prefix survives, followed by a SHA-256 fingerprint so two
    log lines can still be correlated. Values shorter than twice ``keep``
    keep no prefix at all.
    """
    if not value:
        return "<empty>"
    fingerprint = hashlib.sha256(value.encode("utf-8")).hexdigest()[:8]
    prefix = value[:keep] if len(value) > 2 * keep else ""
    return f"{prefix}...#{fingerprint}"


def sign_message(message: bytes, private_key: str) -> str:
    """EIP-191 personal-message signature, hex encoded with 0x prefix."""
    signed = Account.sign_message(encode_defunct(primitive=message), private_key=private_key)
    return "0x" + bytes(signed.signature).hex()


def recover_signer(message: bytes, signature: str) -> str:
    """Recover the checksummed address that produced ``signature`` over ``message``."""
    try:
        return Account.recover_message(encode_defunct(primitive=message), signature=signature)
    except Exception as e:
        logger.warning(f"Signature recovery failed: {e}")
        raise SignatureVerificationError(f"Unrecoverable signature: {e}") from e


def address_for_key(private_key: str) -> str:
    return Account.from_key(private_key).address


def identity_for_address(address: str, chain_id: int) -> str:
    if not ETH_ADDRESS_PATTERN.match(address):
        raise ValueError(f"Invalid address: {address}")
    return f"did:pkh:eip155:{chain_id}:{address}"


def controller_address(identity: str) -> str:
    """Derive the controlling account address from a DID-shaped identity."""
    for pattern in (_PKH_PATTERN, _ETHR_PATTERN):
        match = pattern.match(identity)
        if match:
            return match.group(1)
    raise SignatureVerificationError(
        f"Cannot derive a controller key from identity method of '{identity}'"
    )


def same_address(a: str, b: str) -> bool:
    return a.lower() == b.lower()
