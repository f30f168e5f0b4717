"""Password hashing and secret wrapping for the credential vault.

- PBKDF2-HMAC-SHA256 for both the verification hash and the session key,
  each with its own salt
- AES-256-GCM for wallet secrets, serialized as ``base64(iv || ciphertext)``
"""

from __future__ import annotations

import base64
import binascii
import hmac
import os
import re
from dataclasses import dataclass, field
from typing import List, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..core import defaults
from ..errors import StorageError

KeyBytes = Union[bytes, bytearray]

_COMMON_PATTERNS = (
    re.compile(r"^123456"),
    re.compile(r"^password", re.IGNORECASE),
    re.compile(r"^qwerty", re.IGNORECASE),
    re.compile(r"^abc123", re.IGNORECASE),
    re.compile(r"(.)\1{3,}"),
)


def generate_salt(length: int = defaults.SALT_LENGTH) -> bytes:
    return os.urandom(length)


def _pbkdf2(password: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=defaults.KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def hash_password(password: str, salt: bytes, iterations: int = defaults.PBKDF2_ITERATIONS) -> bytes:
    """Derive the verification hash for a password."""
    return _pbkdf2(password, salt, iterations)


def verify_password(
    password: str,
    stored_hash: bytes,
    salt: bytes,
    iterations: int = defaults.PBKDF2_ITERATIONS,
) -> bool:
    """Constant-time comparison of a password against its stored hash."""
    return hmac.compare_digest(_pbkdf2(password, salt, iterations), stored_hash)


def derive_session_key(
    password: str,
    salt: bytes,
    iterations: int = defaults.PBKDF2_ITERATIONS,
) -> bytearray:
    """Derive the symmetric session key.

    Returned as a bytearray so the holder can zero it in place on lock.
    """
    return bytearray(_pbkdf2(password, salt, iterations))


def encrypt_secret(plaintext: bytes, key: KeyBytes) -> str:
    """Encrypt with AES-256-GCM, returning base64(iv || ciphertext)."""
    iv = os.urandom(defaults.IV_LENGTH)
    ciphertext = AESGCM(bytes(key)).encrypt(iv, plaintext, None)
    return base64.b64encode(iv + ciphertext).decode("ascii")


def decrypt_secret(token: str, key: KeyBytes) -> bytes:
    """Decrypt a value produced by encrypt_secret.

    Raises:
        StorageError: If the token is malformed or authentication fails
    """
    try:
        combined = base64.b64decode(token, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise StorageError("Encrypted data is not valid base64") from e

    # iv + at least the GCM tag
    if len(combined) < defaults.IV_LENGTH + 16:
        raise StorageError("Encrypted data is too short")

    iv, ciphertext = combined[: defaults.IV_LENGTH], combined[defaults.IV_LENGTH :]
    try:
        return AESGCM(bytes(key)).decrypt(iv, ciphertext, None)
    except InvalidTag as e:
        raise StorageError("Failed to decrypt data") from e


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def unb64(text: str) -> bytes:
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise StorageError("Stored vault artifact is corrupted") from e


@dataclass
class PasswordStrength:
    """Result of a password strength check."""

    valid: bool
    score: int
    feedback: List[str] = field(default_factory=list)


def validate_password_strength(password: str) -> PasswordStrength:
    """Score a password from 0 to 7; valid needs length >= 8 and score >= 4."""
    feedback: List[str] = []
    score = 0

    if len(password) < defaults.MIN_PASSWORD_LENGTH:
        feedback.append(f"Password must be at least {defaults.MIN_PASSWORD_LENGTH} characters")
    else:
        score += 1
        if len(password) >= 12:
            score += 1
        if len(password) >= 16:
            score += 1

    if re.search(r"[a-z]", password):
        score += 1
    else:
        feedback.append("Add lowercase letters")
    if re.search(r"[A-Z]", password):
        score += 1
    else:
        feedback.append("Add uppercase letters")
    if re.search(r"[0-9]", password):
        score += 1
    else:
        feedback.append("Add numbers")
    if re.search(r"[^a-zA-Z0-9]", password):
        score += 1
    else:
        feedback.append("Add special characters")

    common = [p for p in _COMMON_PATTERNS if p.search(password)]
    if common:
        score = max(0, score - 2 * len(common))
        feedback.append("Avoid common patterns")

    return PasswordStrength(
        valid=len(password) >= defaults.MIN_PASSWORD_LENGTH and score >= defaults.MIN_PASSWORD_SCORE,
        score=min(score, 7),
        feedback=feedback,
    )
