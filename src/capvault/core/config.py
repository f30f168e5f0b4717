"""Configuration objects for the vault and the request broker."""

from __future__ import annotations

from dataclasses import dataclass

from . import defaults


@dataclass
class VaultConfig:
    """Configuration for CredentialVault and its unlock rate limiter."""

    pbkdf2_iterations: int = defaults.PBKDF2_ITERATIONS
    salt_length: int = defaults.SALT_LENGTH
    max_attempts: int = defaults.MAX_UNLOCK_ATTEMPTS
    lockout_ms: int = defaults.LOCKOUT_MS
    max_lockout_ms: int = defaults.MAX_LOCKOUT_MS
    auto_lock_ms: int = defaults.AUTO_LOCK_MS
    auto_lock_check_interval_s: float = defaults.AUTO_LOCK_CHECK_INTERVAL_S
    enforce_password_strength: bool = True

    def __post_init__(self) -> None:
        if self.pbkdf2_iterations < 1:
            raise ValueError("pbkdf2_iterations must be positive")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be positive")
        if self.lockout_ms > self.max_lockout_ms:
            self.max_lockout_ms = self.lockout_ms


@dataclass
class BrokerConfig:
    """Configuration for RequestBroker timeouts and capability limits."""

    connection_timeout_s: float = defaults.CONNECTION_TIMEOUT_S
    approval_timeout_s: float = defaults.APPROVAL_TIMEOUT_S
    default_ttl_seconds: int = defaults.DEFAULT_TTL_SECONDS
    max_ttl_seconds: int = defaults.MAX_TTL_SECONDS
    max_capabilities_per_origin: int = defaults.MAX_CAPABILITIES_PER_ORIGIN
    capability_version: int = defaults.CAPABILITY_VERSION
    default_network: str = defaults.DEFAULT_NETWORK
    default_branch_id: str = defaults.DEFAULT_BRANCH_ID
