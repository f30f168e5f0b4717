"""Connection and capability records kept in the registry."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..crypto.canonical import SIGNED_FIELDS, canonical_methods
from ..crypto.signer import capability_id


class CapabilityState(str, Enum):
    """Lifecycle state of a stored capability."""

    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


@dataclass
class Connection:
    """An approved link between a dApp origin and a wallet.

    One connection per origin. Reconnecting with the same circle reuses it,
    a different circle replaces it.
    """

    circle: str
    app_origin: str
    wallet_public_key: str
    app_name: str = ""
    evm_address: Optional[str] = None
    network: str = "mainnet"
    branch_id: str = "main"
    connected_at: int = 0
    session_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "circle": self.circle,
            "appOrigin": self.app_origin,
            "appName": self.app_name,
            "walletPublicKey": self.wallet_public_key,
            "evmAddress": self.evm_address,
            "network": self.network,
            "branchId": self.branch_id,
            "connectedAt": self.connected_at,
            "sessionId": self.session_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Connection":
        return cls(
            circle=data["circle"],
            app_origin=data["appOrigin"],
            wallet_public_key=data["walletPublicKey"],
            app_name=data.get("appName", ""),
            evm_address=data.get("evmAddress"),
            network=data.get("network", "mainnet"),
            branch_id=data.get("branchId", "main"),
            connected_at=int(data.get("connectedAt", 0)),
            session_id=data.get("sessionId", ""),
        )


@dataclass
class Capability:
    """A signed, scoped, time-bound grant of methods to one origin.

    Attributes:
        version: Capability format version
        circle: Audience the grant is bound to
        methods: Granted method names, always sorted
        scope: "read", "write" or "compute"
        encrypted: Whether invocations must be encrypted
        app_origin: Origin the grant was issued to
        branch_id: Application branch
        epoch: Key epoch of the issuer
        issued_at: Issue time (ms)
        expires_at: Expiry time (ms, mandatory)
        nonce_base: Starting nonce; invocations must exceed last_nonce
        issuer_public_key: Hex ed25519 public key of the signer
        signature: Hex ed25519 signature over the canonical payload
        id: ``cap-`` + signature prefix
        state: Stored lifecycle state
        last_nonce: Highest accepted invocation nonce (never decreases)
    """

    version: int
    circle: str
    methods: List[str]
    scope: str
    encrypted: bool
    app_origin: str
    branch_id: str
    epoch: int
    issued_at: int
    expires_at: int
    nonce_base: int
    issuer_public_key: str
    signature: str
    id: str = ""
    state: CapabilityState = CapabilityState.ACTIVE
    last_nonce: int = field(default=-1)

    def __post_init__(self) -> None:
        self.methods = canonical_methods(self.methods)
        self.state = CapabilityState(self.state)
        if not self.id:
            self.id = capability_id(self.signature)
        if self.last_nonce < self.nonce_base:
            self.last_nonce = self.nonce_base

    def payload(self) -> Dict[str, Any]:
        """The signed fields, in wire (camelCase) naming."""
        return {
            "version": self.version,
            "circle": self.circle,
            "methods": list(self.methods),
            "scope": self.scope,
            "encrypted": self.encrypted,
            "appOrigin": self.app_origin,
            "branchId": self.branch_id,
            "epoch": self.epoch,
            "issuedAt": self.issued_at,
            "expiresAt": self.expires_at,
            "nonceBase": self.nonce_base,
        }

    def signed_dict(self) -> Dict[str, Any]:
        data = self.payload()
        data["issuerPublicKey"] = self.issuer_public_key
        data["signature"] = self.signature
        return data

    def to_dict(self) -> Dict[str, Any]:
        """Storage format: signed fields plus id, state and lastNonce."""
        data = self.signed_dict()
        data["id"] = self.id
        data["state"] = self.state.value
        data["lastNonce"] = self.last_nonce
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Capability":
        missing = [name for name in SIGNED_FIELDS if name not in data]
        if missing:
            raise KeyError(f"Capability record missing {missing}")
        return cls(
            version=data["version"],
            circle=data["circle"],
            methods=data["methods"],
            scope=data["scope"],
            encrypted=data["encrypted"],
            app_origin=data["appOrigin"],
            branch_id=data["branchId"],
            epoch=data["epoch"],
            issued_at=data["issuedAt"],
            expires_at=data["expiresAt"],
            nonce_base=data["nonceBase"],
            issuer_public_key=data["issuerPublicKey"],
            signature=data["signature"],
            id=data.get("id", ""),
            state=data.get("state", CapabilityState.ACTIVE.value),
            last_nonce=data.get("lastNonce", data["nonceBase"]),
        )

    def is_expired(self, now: int) -> bool:
        return self.expires_at <= now

    def effective_state(self, now: int) -> CapabilityState:
        if self.state == CapabilityState.REVOKED:
            return CapabilityState.REVOKED
        if self.is_expired(now):
            return CapabilityState.EXPIRED
        return self.state

    def allows(self, method: str) -> bool:
        return method in self.methods

    def to_public_dict(self, now: int) -> Dict[str, Any]:
        """Representation returned to the requesting dApp."""
        data = self.to_dict()
        data["state"] = self.effective_state(now).value
        return data
