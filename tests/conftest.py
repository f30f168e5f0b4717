"""Shared fixtures for capvault tests."""

from __future__ import annotations

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from capvault.core.config import BrokerConfig, VaultConfig
from capvault.crypto.signer import sign_capability
from capvault.registry.kv import InMemoryStore
from capvault.registry.models import Capability
from capvault.vault.models import Wallet

START_MS = 1_700_000_000_000
STRONG_PASSWORD = "Str0ng!Passphrase"
ORIGIN = "https://x.test"
CIRCLE = "octra-main"


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def make_wallet(seed_byte: int, address: str) -> Wallet:
    seed = bytes([seed_byte]) * 32
    public_key = Ed25519PrivateKey.from_private_bytes(seed).public_key().public_bytes_raw().hex()
    return Wallet(address=address, private_key=seed.hex(), public_key=public_key)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def vault_config():
    """Vault config with a cheap KDF so tests stay fast."""
    return VaultConfig(pbkdf2_iterations=1000, lockout_ms=5 * 60 * 1000, auto_lock_ms=15 * 60 * 1000)


@pytest.fixture
def broker_config():
    return BrokerConfig(connection_timeout_s=1.0, approval_timeout_s=1.0)


@pytest.fixture
def wallet():
    return make_wallet(7, "octWalletA")


@pytest.fixture
def second_wallet():
    return make_wallet(9, "octWalletB")


@pytest.fixture
def capability_payload():
    """A complete, unsigned capability payload."""
    return {
        "version": 2,
        "circle": CIRCLE,
        "methods": ["get_quote", "get_balance"],
        "scope": "read",
        "encrypted": False,
        "appOrigin": ORIGIN,
        "branchId": "main",
        "epoch": 0,
        "issuedAt": START_MS,
        "expiresAt": START_MS + 900_000,
        "nonceBase": 0,
    }


@pytest.fixture
def make_capability(capability_payload, wallet):
    """Factory for signed, storable capabilities."""

    def factory(**overrides) -> Capability:
        payload = dict(capability_payload)
        payload.update(overrides)
        signed = sign_capability(payload, wallet.private_key)
        return Capability.from_dict(signed)

    return factory
