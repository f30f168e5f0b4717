"""Centralized configurable defaults for capvault.

All tunable parameters in one place. Values marked with an environment
variable can be overridden at import time.
"""

from __future__ import annotations

import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Password hashing / key wrapping
PBKDF2_ITERATIONS = int(os.environ.get("CAPVAULT_PBKDF2_ITERATIONS", "310000"))
SALT_LENGTH = 32
KEY_LENGTH = 32  # AES-256
IV_LENGTH = 12  # AES-GCM nonce
MIN_PASSWORD_LENGTH = 8
MIN_PASSWORD_SCORE = 4

# Unlock rate limiting
MAX_UNLOCK_ATTEMPTS = int(os.environ.get("CAPVAULT_MAX_UNLOCK_ATTEMPTS", "5"))
LOCKOUT_MS = int(os.environ.get("CAPVAULT_LOCKOUT_MS", str(5 * 60 * 1000)))
MAX_LOCKOUT_MS = 60 * 60 * 1000

# Auto-lock
AUTO_LOCK_MS = int(os.environ.get("CAPVAULT_AUTO_LOCK_MS", str(15 * 60 * 1000)))
AUTO_LOCK_CHECK_INTERVAL_S = 30.0

# Request broker
CONNECTION_TIMEOUT_S = float(os.environ.get("CAPVAULT_CONNECTION_TIMEOUT_S", "60"))
APPROVAL_TIMEOUT_S = float(os.environ.get("CAPVAULT_APPROVAL_TIMEOUT_S", "300"))
DEFAULT_NETWORK = "mainnet"
DEFAULT_BRANCH_ID = "main"

# Capabilities
CAPABILITY_VERSION = 2
DEFAULT_TTL_SECONDS = 3600
MAX_TTL_SECONDS = 86400  # 24 * 60 * 60
MAX_CAPABILITIES_PER_ORIGIN = 100

# Keys that are neither 32 nor 64 bytes get hashed down to a seed.
LEGACY_KEY_HASHING = _env_bool("CAPVAULT_LEGACY_KEY_HASHING", True)

# Balance lookups
RPC_URL = os.environ.get("CAPVAULT_RPC_URL", "https://octra.network")
RPC_TIMEOUT_S = 10.0
