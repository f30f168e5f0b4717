"""Canonical JSON encoding of capability payloads.

The canonical form is what gets hashed and signed, so it has to be
byte-identical for semantically identical payloads:

- object keys sorted lexicographically
- ``methods`` sorted (and de-duplicated, it is a set)
- no field may be absent or null
- compact separators, UTF-8 without ASCII escaping
"""

from __future__ import annotations

import hashlib
import json
import math
from typing import Any

from ..errors import ValidationError

# Fields covered by the capability signature. Storage adds id/state/lastNonce.
SIGNED_FIELDS: tuple[str, ...] = (
    "appOrigin",
    "branchId",
    "circle",
    "encrypted",
    "epoch",
    "expiresAt",
    "issuedAt",
    "methods",
    "nonceBase",
    "scope",
    "version",
)

VALID_SCOPES = frozenset({"read", "write", "compute"})

_INT_FIELDS = ("version", "epoch", "issuedAt", "expiresAt", "nonceBase")
_STR_FIELDS = ("circle", "appOrigin", "branchId")


def _normalize(value: Any, path: str) -> Any:
    if value is None:
        raise ValidationError(f"Field {path or '<root>'} is missing a value")
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValidationError(f"Field {path} is not a finite number")
        return int(value) if value.is_integer() else value
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValidationError(f"Non-string key in {path or '<root>'}: {key!r}")
            out[key] = _normalize(item, f"{path}.{key}" if path else key)
        return out
    if isinstance(value, (set, frozenset)):
        return sorted(_normalize(item, f"{path}[]") for item in value)
    if isinstance(value, (list, tuple)):
        return [_normalize(item, f"{path}[{i}]") for i, item in enumerate(value)]
    raise ValidationError(f"Field {path} has unsupported type {type(value).__name__}")


def canonicalize(value: Any) -> bytes:
    """Encode any JSON-like value in canonical form."""
    normalized = _normalize(value, "")
    return json.dumps(
        normalized,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def canonical_methods(methods: Any) -> list[str]:
    """Sorted, de-duplicated method list."""
    if isinstance(methods, str) or not isinstance(methods, (list, tuple, set, frozenset)):
        raise ValidationError("methods must be a list of strings")
    if not methods:
        raise ValidationError("methods must not be empty")
    for method in methods:
        if not isinstance(method, str) or not method:
            raise ValidationError(f"Invalid method name: {method!r}")
    return sorted(set(methods))


def extract_payload(data: dict[str, Any]) -> dict[str, Any]:
    """Pull the signed fields out of a (possibly richer) capability dict.

    Raises:
        ValidationError: If a signed field is missing or has the wrong type
    """
    missing = [name for name in SIGNED_FIELDS if data.get(name) is None]
    if missing:
        raise ValidationError(f"Capability is missing fields: {', '.join(missing)}")

    payload = {name: data[name] for name in SIGNED_FIELDS}

    for name in _INT_FIELDS:
        if isinstance(payload[name], bool) or not isinstance(payload[name], int):
            raise ValidationError(f"{name} must be an integer")
    for name in _STR_FIELDS:
        if not isinstance(payload[name], str) or not payload[name]:
            raise ValidationError(f"{name} must be a non-empty string")
    if not isinstance(payload["encrypted"], bool):
        raise ValidationError("encrypted must be a boolean")
    if payload["scope"] not in VALID_SCOPES:
        raise ValidationError(f"Invalid scope: {payload['scope']!r}")
    if payload["expiresAt"] <= payload["issuedAt"]:
        raise ValidationError("expiresAt must be after issuedAt")
    if payload["nonceBase"] < 0:
        raise ValidationError("nonceBase must not be negative")

    payload["methods"] = canonical_methods(payload["methods"])
    return payload


def canonicalize_capability(data: dict[str, Any]) -> bytes:
    """Canonical bytes of a capability's signed fields."""
    return canonicalize(extract_payload(data))


def capability_digest(data: dict[str, Any]) -> bytes:
    """SHA-256 of the canonical capability encoding."""
    return hashlib.sha256(canonicalize_capability(data)).digest()
