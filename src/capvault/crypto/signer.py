"""Ed25519 signing and verification of capabilities and messages.

Capabilities are signed over SHA-256(canonical payload). Public keys and
signatures travel as lowercase hex.

Secret keys are accepted as raw bytes or as a hex / base64 string:

- 32 bytes: the ed25519 seed
- 64 bytes: seed followed by public key; only the seed half is used
- anything else: hashed with SHA-256 down to a seed (legacy keys), only when
  legacy key hashing is enabled
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import re
from typing import Any, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from ..core import defaults
from ..errors import SignatureInvalidError, ValidationError, security_logger
from .canonical import capability_digest, extract_payload

logger = logging.getLogger(__name__)

SecretKey = Union[bytes, bytearray, str]

SEED_LENGTH = 32
KEYPAIR_LENGTH = 64
PUBLIC_KEY_LENGTH = 32
SIGNATURE_LENGTH = 64

_HEX_RE = re.compile(r"^(?:0x)?((?:[0-9a-fA-F]{2})+)$")


def _decode_secret(secret: SecretKey) -> bytes:
    if isinstance(secret, (bytes, bytearray)):
        return bytes(secret)
    if not isinstance(secret, str):
        raise SignatureInvalidError(f"Unsupported key type: {type(secret).__name__}")

    text = secret.strip()
    match = _HEX_RE.match(text)
    if match:
        return bytes.fromhex(match.group(1))
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise SignatureInvalidError("Secret key is neither hex nor base64") from e


def derive_signing_key(secret: SecretKey, allow_legacy: bool | None = None) -> Ed25519PrivateKey:
    """Build an ed25519 private key from seed, keypair or legacy key material.

    Args:
        secret: Key bytes, or a hex / base64 encoded string
        allow_legacy: Override for hashing non-standard lengths
            (defaults to ``defaults.LEGACY_KEY_HASHING``)

    Raises:
        SignatureInvalidError: If the key cannot be decoded or has an
            unsupported length
    """
    raw = _decode_secret(secret)
    if not raw:
        raise SignatureInvalidError("Secret key is empty")

    if len(raw) == SEED_LENGTH:
        seed = raw
    elif len(raw) == KEYPAIR_LENGTH:
        seed = raw[:SEED_LENGTH]
    else:
        if allow_legacy is None:
            allow_legacy = defaults.LEGACY_KEY_HASHING
        if not allow_legacy:
            raise SignatureInvalidError(
                f"Secret key must be {SEED_LENGTH} or {KEYPAIR_LENGTH} bytes, got {len(raw)}"
            )
        logger.warning(
            f"Deriving signing key from non-standard {len(raw)}-byte secret via SHA-256"
        )
        seed = hashlib.sha256(raw).digest()

    return Ed25519PrivateKey.from_private_bytes(seed)


def public_key_hex(secret: SecretKey) -> str:
    """Hex public key for a secret key."""
    return derive_signing_key(secret).public_key().public_bytes_raw().hex()


def capability_id(signature: str) -> str:
    """Stable capability id derived from its signature."""
    return f"cap-{signature[:16]}"


def sign_capability(payload: dict[str, Any], secret: SecretKey) -> dict[str, Any]:
    """Sign a capability payload.

    Returns:
        The signed fields (methods sorted) plus ``issuerPublicKey`` and
        ``signature``.

    Raises:
        SignatureInvalidError: On malformed payloads or key material; never
            returns an unsigned result
    """
    try:
        fields = extract_payload(payload)
        digest = capability_digest(fields)
    except ValidationError as e:
        raise SignatureInvalidError(f"Cannot sign malformed capability: {e}") from e

    private_key = derive_signing_key(secret)
    signature = private_key.sign(digest)

    signed = dict(fields)
    signed["issuerPublicKey"] = private_key.public_key().public_bytes_raw().hex()
    signed["signature"] = signature.hex()
    return signed


def _load_public_key(value: Any) -> Ed25519PublicKey:
    if not isinstance(value, str):
        raise ValueError("public key must be a hex string")
    raw = bytes.fromhex(value)
    if len(raw) != PUBLIC_KEY_LENGTH:
        raise ValueError(f"public key must be {PUBLIC_KEY_LENGTH} bytes")
    return Ed25519PublicKey.from_public_bytes(raw)


def _load_signature(value: Any) -> bytes:
    if not isinstance(value, str):
        raise ValueError("signature must be a hex string")
    raw = bytes.fromhex(value)
    if len(raw) != SIGNATURE_LENGTH:
        raise ValueError(f"signature must be {SIGNATURE_LENGTH} bytes")
    return raw


def verify_capability(signed: dict[str, Any]) -> bool:
    """Verify a signed capability against its embedded public key.

    The embedded methods must already be in canonical (sorted, unique)
    order; anything that would not round-trip to the same canonical bytes
    is rejected.
    """
    try:
        fields = extract_payload(signed)
        if list(signed["methods"]) != fields["methods"]:
            return False
        digest = capability_digest(fields)
        public_key = _load_public_key(signed.get("issuerPublicKey"))
        signature = _load_signature(signed.get("signature"))
    except (ValidationError, ValueError, TypeError):
        return False

    try:
        public_key.verify(signature, digest)
    except InvalidSignature:
        return False
    return True


def assert_valid_capability(signed: dict[str, Any]) -> None:
    """Raise SignatureInvalidError unless the capability verifies."""
    if not verify_capability(signed):
        security_logger.warning(
            f"Capability signature invalid: origin={signed.get('appOrigin')!r} "
            f"issuer={str(signed.get('issuerPublicKey'))[:16]}"
        )
        raise SignatureInvalidError("Capability signature is invalid")


def sign_message(message: str, secret: SecretKey) -> dict[str, str]:
    """Sign an arbitrary UTF-8 message with ed25519."""
    if not isinstance(message, str):
        raise SignatureInvalidError("Message must be a string")
    private_key = derive_signing_key(secret)
    signature = private_key.sign(message.encode("utf-8"))
    return {
        "message": message,
        "signature": signature.hex(),
        "publicKey": private_key.public_key().public_bytes_raw().hex(),
    }


def verify_message(message: str, signature: str, public_key: str) -> bool:
    """Verify a message signature produced by sign_message."""
    try:
        key = _load_public_key(public_key)
        sig = _load_signature(signature)
        key.verify(sig, message.encode("utf-8"))
    except (InvalidSignature, ValueError, TypeError, AttributeError):
        return False
    return True

