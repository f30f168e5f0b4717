"""Canonical encoding and ed25519 signing for capabilities."""

from .canonical import (
    SIGNED_FIELDS,
    VALID_SCOPES,
    canonicalize,
    canonicalize_capability,
    capability_digest,
    extract_payload,
)
from .signer import (
    assert_valid_capability,
    capability_id,
    derive_signing_key,
    public_key_hex,
    sign_capability,
    sign_message,
    verify_capability,
    verify_message,
)

__all__ = [
    "SIGNED_FIELDS",
    "VALID_SCOPES",
    "assert_valid_capability",
    "canonicalize",
    "canonicalize_capability",
    "capability_digest",
    "capability_id",
    "derive_signing_key",
    "extract_payload",
    "public_key_hex",
    "sign_capability",
    "sign_message",
    "verify_capability",
    "verify_message",
]
