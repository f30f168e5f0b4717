"""Wallet models held by the credential vault."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..errors import ValidationError


@dataclass
class Wallet:
    """A decrypted wallet. Only ever held in volatile memory.

    Attributes:
        address: Wallet address (unique key)
        private_key: Signing key, hex or base64 encoded
        public_key: Hex public key, if known
        mnemonic: Seed phrase for generated wallets
        type: "generated" or "imported"
    """

    address: str
    private_key: str = field(repr=False)
    public_key: Optional[str] = None
    mnemonic: Optional[str] = field(default=None, repr=False)
    type: str = "generated"

    def __post_init__(self) -> None:
        if not self.address:
            raise ValidationError("Wallet address is required")
        if not self.private_key:
            raise ValidationError("Wallet private key is required")

    def to_secret_bytes(self) -> bytes:
        """Serialized secret that gets wrapped into an EncryptedWalletRecord."""
        return json.dumps(
            {
                "address": self.address,
                "privateKey": self.private_key,
                "publicKey": self.public_key,
                "mnemonic": self.mnemonic,
                "type": self.type,
            },
            separators=(",", ":"),
        ).encode("utf-8")

    @classmethod
    def from_secret_bytes(cls, data: bytes) -> "Wallet":
        raw = json.loads(data.decode("utf-8"))
        return cls(
            address=raw["address"],
            private_key=raw["privateKey"],
            public_key=raw.get("publicKey"),
            mnemonic=raw.get("mnemonic"),
            type=raw.get("type", "generated"),
        )

    def public_info(self) -> Dict[str, Any]:
        """Wallet fields safe to hand to UI contexts."""
        return {
            "address": self.address,
            "publicKey": self.public_key,
            "type": self.type,
        }


@dataclass
class EncryptedWalletRecord:
    """Persisted wallet secret wrapped under the session key."""

    address: str
    ciphertext: str
    created_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "ciphertext": self.ciphertext,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptedWalletRecord":
        return cls(
            address=data["address"],
            ciphertext=data["ciphertext"],
            created_at=int(data.get("createdAt", 0)),
        )
