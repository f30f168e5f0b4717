"""Request broker between untrusted dApp requesters and the wallet.

Each request kind runs its own state machine::

    IDLE -> PENDING -> (approved | rejected | timed out) -> IDLE

Requests that need the user are parked in the PendingRegistry until a UI
context calls ``resolve``. Everything that touches keys or capability
nonces runs under the FIFO SigningLock, so an invocation's nonce check and
its ``lastNonce`` update cannot interleave with another signing operation.
"""

from __future__ import annotations

import inspect
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from ..core.clock import Clock, now_ms
from ..core.config import BrokerConfig
from ..crypto.canonical import VALID_SCOPES, canonical_methods
from ..crypto.signer import assert_valid_capability, verify_message
from ..errors import (
    CapabilityExpiredError,
    CapabilityNotFoundError,
    CapVaultError,
    MethodNotAllowedError,
    NonceViolationError,
    NotConnectedError,
    OriginMismatchError,
    RequestSupersededError,
    RequestTimeoutError,
    SignatureInvalidError,
    UserRejectedError,
    ValidationError,
    is_security_error,
    security_logger,
)
from ..registry.models import Capability, CapabilityState, Connection
from ..registry.store import RegistryStore
from ..vault.vault import CredentialVault
from .messages import (
    BrokerRequest,
    Decision,
    PendingKind,
    RequestType,
    make_error_response,
    make_response,
    parse_decision,
    parse_request,
)
from .methods import InvocationContext, MethodExecutor, WalletMethodExecutor, requires_approval
from .pending import PendingRegistry, PendingRequest
from .signing import SigningLock

logger = logging.getLogger(__name__)

UiNotifier = Callable[[PendingRequest], Union[None, Awaitable[None]]]

QUIET_ERRORS = (UserRejectedError, RequestTimeoutError, RequestSupersededError)


@dataclass
class BrokerState:
    """Mutable broker state: the signing lock and the pending futures."""

    pending: PendingRegistry
    signing_lock: SigningLock = field(default_factory=SigningLock)


# =============================================================================
# VALIDATION HELPERS
# =============================================================================


def _require_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{key} is required")
    return value


def _optional_int(data: Dict[str, Any], key: str, default: int, minimum: int = 0) -> int:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{key} must be an integer")
    if value < minimum:
        raise ValidationError(f"{key} must be at least {minimum}")
    return value


def _new_session_id(now: int) -> str:
    return f"session-{now}-{secrets.token_hex(4)}"


# =============================================================================
# BROKER
# =============================================================================


class RequestBroker:
    """Mediates connection, capability, invoke and sign-message requests.

    Example:
        >>> broker = RequestBroker(vault, registry)
        >>> response = await broker.handle(message, sender_origin="https://x.test")
        >>> # meanwhile, from the UI:
        >>> await broker.resolve({"type": "CONNECTION_RESULT", "appOrigin": "https://x.test",
        ...                       "approved": True, "walletPublicKey": address})
    """

    def __init__(
        self,
        vault: CredentialVault,
        registry: RegistryStore,
        executor: Optional[MethodExecutor] = None,
        config: Optional[BrokerConfig] = None,
        clock: Clock = now_ms,
        notify_ui: Optional[UiNotifier] = None,
    ) -> None:
        self.vault = vault
        self.registry = registry
        self.executor = executor or WalletMethodExecutor()
        self.config = config or BrokerConfig()
        self.clock = clock
        self.notify_ui = notify_ui
        self.state = BrokerState(pending=PendingRegistry(registry.store, clock))

        self._handlers: Dict[RequestType, Callable[[BrokerRequest, str], Awaitable[Any]]] = {
            RequestType.CONNECTION: self._handle_connection,
            RequestType.CAPABILITY: self._handle_capability,
            RequestType.INVOKE: self._handle_invoke,
            RequestType.SIGN_MESSAGE: self._handle_sign_message,
            RequestType.DISCONNECT: self._handle_disconnect,
            RequestType.LIST_CAPABILITIES: self._handle_list_capabilities,
            RequestType.RENEW_CAPABILITY: self._handle_renew_capability,
            RequestType.REVOKE_CAPABILITY: self._handle_revoke_capability,
        }
        missing = set(RequestType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for request types: {sorted(m.value for m in missing)}")

    @property
    def pending(self) -> PendingRegistry:
        return self.state.pending

    @property
    def signing_lock(self) -> SigningLock:
        return self.state.signing_lock

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def handle(self, message: Any, sender_origin: str) -> Dict[str, Any]:
        """Process one requester message and build its response.

        ``sender_origin`` must come from the transport (the verified origin
        of the sending page), never from the message body.
        """
        raw_type = message.get("type") if isinstance(message, dict) else None
        request_id = message.get("requestId") if isinstance(message, dict) else None

        try:
            self._check_origin(message, sender_origin)
            request = parse_request(message)
            result = await self._handlers[request.type](request, sender_origin)
            return make_response(request, result)
        except CapVaultError as e:
            self._log_failure(raw_type, sender_origin, e)
            return make_error_response(raw_type, request_id, e)
        except Exception:
            logger.exception(f"Unexpected error handling {raw_type} from {sender_origin}")
            return make_error_response(raw_type, request_id, CapVaultError("Internal error"))

    async def resolve(self, decision: Union[Decision, Dict[str, Any]]) -> bool:
        """Deliver a user decision from a UI context.

        Returns:
            True if it matched a live pending request, False if stale
        """
        if not isinstance(decision, Decision):
            decision = parse_decision(decision)

        if decision.approved:
            return await self.pending.resolve(
                decision.kind,
                decision.app_origin,
                result=decision,
                correlation_id=decision.correlation_id,
            )
        reason = decision.payload.get("error") or "User rejected the request"
        return await self.pending.resolve(
            decision.kind,
            decision.app_origin,
            error=UserRejectedError(str(reason)),
            correlation_id=decision.correlation_id,
        )

    async def shutdown(self) -> None:
        """Fail all pending requests and clear their store records."""
        await self.pending.shutdown()
        logger.info("Request broker shut down")

    # -------------------------------------------------------------------------
    # Shared steps
    # -------------------------------------------------------------------------

    def _check_origin(self, message: Any, sender_origin: str) -> None:
        if not isinstance(sender_origin, str) or not sender_origin:
            raise ValidationError("Sender origin is required")
        if not isinstance(message, dict):
            return
        data = message.get("data")
        if not isinstance(data, dict):
            return
        claimed = data.get("appOrigin")
        if claimed is not None and claimed != sender_origin:
            security_logger.warning(
                f"Origin mismatch: claimed={claimed!r} sender={sender_origin!r} "
                f"type={message.get('type')!r}"
            )
            raise OriginMismatchError("Origin mismatch")

    def _log_failure(self, raw_type: Any, origin: str, error: CapVaultError) -> None:
        if is_security_error(error):
            security_logger.warning(
                f"{type(error).__name__} on {raw_type} from {origin}: {error}"
            )
        elif isinstance(error, QUIET_ERRORS):
            logger.info(f"{raw_type} from {origin} closed: {error}")
        else:
            logger.warning(f"{raw_type} from {origin} failed: {type(error).__name__}: {error}")

    async def _notify(self, pending: PendingRequest) -> None:
        if self.notify_ui is None:
            return
        try:
            outcome = self.notify_ui(pending)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning(f"UI notification failed for pending {pending.kind.value}: {e}")

    async def _await_decision(
        self,
        kind: PendingKind,
        origin: str,
        payload: Dict[str, Any],
        timeout: float,
    ) -> Decision:
        pending = await self.pending.open(kind, origin, payload)
        await self._notify(pending)
        return await self.pending.wait(pending, timeout)

    async def _require_connection(self, origin: str) -> Connection:
        connection = await self.registry.get_connection(origin)
        if connection is None:
            raise NotConnectedError("Not connected to wallet")
        return connection

    def _ttl_ms(self, data: Dict[str, Any], default_seconds: int) -> int:
        ttl = _optional_int(data, "ttlSeconds", default_seconds, minimum=1)
        if ttl > self.config.max_ttl_seconds:
            raise ValidationError(
                f"ttlSeconds {ttl} exceeds maximum of {self.config.max_ttl_seconds}"
            )
        return ttl * 1000

    def _accept_signed(
        self,
        signed: Any,
        origin: str,
        expected: Dict[str, Any],
        issuer: str,
        now: int,
    ) -> Dict[str, Any]:
        """Check a capability signed outside the broker against the grant.

        It must verify, come from the wallet the grant is for, and stay
        within the requested scope and the maximum lifetime.
        """
        if not isinstance(signed, dict):
            raise SignatureInvalidError("signedCapability must be an object")
        assert_valid_capability(signed)
        if str(signed["issuerPublicKey"]).lower() != issuer.lower():
            security_logger.warning(
                f"Signed capability for {origin!r} issued by "
                f"{str(signed['issuerPublicKey'])[:16]}, expected {issuer[:16]}"
            )
            raise SignatureInvalidError("Capability was not issued by the selected wallet")
        if signed["appOrigin"] != origin:
            security_logger.warning(
                f"Signed capability bound to {signed['appOrigin']!r}, requested by {origin!r}"
            )
            raise OriginMismatchError("Capability origin does not match requester")
        if signed["circle"] != expected["circle"] or signed["scope"] != expected["scope"]:
            raise ValidationError("Signed capability does not match the requested grant")
        if not set(signed["methods"]) <= set(expected["methods"]):
            raise ValidationError("Signed capability grants methods that were not requested")
        if signed["nonceBase"] < expected["nonceBase"]:
            raise ValidationError("Signed capability nonceBase is too low")
        if signed["expiresAt"] - signed["issuedAt"] > self.config.max_ttl_seconds * 1000:
            raise ValidationError(
                f"Signed capability lifetime exceeds maximum of {self.config.max_ttl_seconds}s"
            )
        if signed["expiresAt"] <= now:
            raise CapabilityExpiredError("Signed capability is already expired")
        return signed

    async def _sign_grant(
        self,
        origin: str,
        grant: Dict[str, Any],
        decision: Decision,
        connection: Connection,
        now: int,
    ) -> Capability:
        """Produce the signed capability for an approved grant. Caller holds the lock."""
        address = decision.payload.get("walletAddress") or connection.wallet_public_key
        if "signedCapability" in decision.payload:
            signed = self._accept_signed(
                decision.payload["signedCapability"],
                origin,
                grant,
                self.vault.public_key(address),
                now,
            )
        else:
            payload = dict(grant)
            payload["issuedAt"] = now
            payload["expiresAt"] = now + grant["ttlMs"]
            del payload["ttlMs"]
            signed = self.vault.sign_capability(payload, address)

        record = dict(signed)
        record["state"] = CapabilityState.ACTIVE.value
        record["lastNonce"] = signed["nonceBase"]
        return Capability.from_dict(record)

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    def _connection_result(self, connection: Connection) -> Dict[str, Any]:
        return {
            "circle": connection.circle,
            "sessionId": connection.session_id,
            "walletPublicKey": connection.wallet_public_key,
            "evmAddress": connection.evm_address,
            "network": connection.network,
            "branchId": connection.branch_id,
        }

    async def _handle_connection(self, request: BrokerRequest, origin: str) -> Dict[str, Any]:
        data = request.data
        circle = _require_str(data, "circle")

        existing = await self.registry.get_connection(origin)
        if existing is not None and existing.circle == circle:
            logger.info(f"Reusing connection for {origin} (circle={circle})")
            return self._connection_result(existing)

        app_name = data.get("appName") or origin
        decision = await self._await_decision(
            PendingKind.CONNECTION,
            origin,
            {
                "circle": circle,
                "appName": app_name,
                "appIcon": data.get("appIcon"),
                "replacesCircle": existing.circle if existing else None,
            },
            self.config.connection_timeout_s,
        )

        wallet_key = decision.payload.get("walletPublicKey") or decision.payload.get("address")
        if not wallet_key:
            wallet_key = self.vault.get_wallet().address

        now = self.clock()
        connection = Connection(
            circle=circle,
            app_origin=origin,
            app_name=app_name,
            wallet_public_key=wallet_key,
            evm_address=decision.payload.get("evmAddress"),
            network=decision.payload.get("network") or self.config.default_network,
            branch_id=data.get("branchId") or self.config.default_branch_id,
            connected_at=now,
            session_id=_new_session_id(now),
        )
        if existing is not None:
            # Grants issued for the previous circle do not carry over.
            await self.registry.replace_connection(connection)
        else:
            await self.registry.save_connection(connection)
        return self._connection_result(connection)

    # -------------------------------------------------------------------------
    # Capability issuance
    # -------------------------------------------------------------------------

    async def _handle_capability(self, request: BrokerRequest, origin: str) -> Dict[str, Any]:
        data = request.data
        connection = await self._require_connection(origin)

        circle = data.get("circle") or connection.circle
        if circle != connection.circle:
            raise ValidationError(f"Circle {circle!r} does not match the connection")
        scope = data.get("scope") or "read"
        if scope not in VALID_SCOPES:
            raise ValidationError(f"Invalid scope: {scope!r}")
        encrypted = data.get("encrypted", False)
        if not isinstance(encrypted, bool):
            raise ValidationError("encrypted must be a boolean")

        grant = {
            "version": self.config.capability_version,
            "circle": circle,
            "methods": canonical_methods(data.get("methods")),
            "scope": scope,
            "encrypted": encrypted,
            "appOrigin": origin,
            "branchId": data.get("branchId") or connection.branch_id,
            "epoch": _optional_int(data, "epoch", 0),
            "nonceBase": _optional_int(data, "nonceBase", 0),
            "ttlMs": self._ttl_ms(data, self.config.default_ttl_seconds),
        }

        decision = await self._await_decision(
            PendingKind.CAPABILITY,
            origin,
            {"action": "issue", **grant, "appName": connection.app_name},
            self.config.approval_timeout_s,
        )

        async with self.signing_lock:
            now = self.clock()
            capability = await self._sign_grant(origin, grant, decision, connection, now)
            await self.registry.add_capability(
                capability, now=now, max_per_origin=self.config.max_capabilities_per_origin
            )
        return capability.to_public_dict(now)

    # -------------------------------------------------------------------------
    # Invocation
    # -------------------------------------------------------------------------

    def _check_invocable(self, capability: Capability, origin: str, method: str, now: int) -> None:
        if capability.app_origin != origin:
            security_logger.warning(
                f"Capability {capability.id} bound to {capability.app_origin!r} "
                f"invoked by {origin!r}"
            )
            raise OriginMismatchError("Capability origin mismatch")
        if capability.state == CapabilityState.REVOKED:
            raise CapabilityNotFoundError(f"Capability not found: {capability.id}")
        if capability.is_expired(now):
            raise CapabilityExpiredError(f"Capability {capability.id} expired")
        if not capability.allows(method):
            raise MethodNotAllowedError(f"Method {method} not allowed by capability")

    async def _run_invocation(
        self,
        origin: str,
        capability_id: str,
        method: str,
        params: Dict[str, Any],
        nonce: int,
        connection: Connection,
        provided: Optional[Dict[str, Any]] = None,
    ) -> Any:
        async with self.signing_lock:
            current = await self.registry.find_capability(origin, capability_id)
            if current is None:
                raise CapabilityNotFoundError(f"Capability not found: {capability_id}")
            self._check_invocable(current, origin, method, self.clock())
            advanced = await self.registry.advance_nonce(origin, capability_id, nonce)

            if provided is not None and "data" in provided:
                return provided["data"]
            context = InvocationContext(
                origin=origin,
                capability=advanced,
                connection=connection,
                nonce=nonce,
            )
            return await self.executor.execute(method, params, context)

    async def _handle_invoke(self, request: BrokerRequest, origin: str) -> Dict[str, Any]:
        data = request.data
        capability_id = _require_str(data, "capabilityId")
        method = _require_str(data, "method")
        params = data.get("params") or {}
        if not isinstance(params, dict):
            raise ValidationError("params must be an object")
        nonce = data.get("nonce")
        if isinstance(nonce, bool) or not isinstance(nonce, int):
            raise ValidationError("nonce must be an integer")

        capability = await self.registry.find_capability_by_id(capability_id)
        if capability is None:
            raise CapabilityNotFoundError(f"Capability not found: {capability_id}")
        self._check_invocable(capability, origin, method, self.clock())
        if nonce <= capability.last_nonce:
            raise NonceViolationError(f"Nonce {nonce} must be greater than {capability.last_nonce}")
        connection = await self._require_connection(origin)

        provided = None
        if requires_approval(method):
            decision = await self._await_decision(
                PendingKind.INVOKE,
                origin,
                {
                    "capabilityId": capability_id,
                    "method": method,
                    "params": params,
                    "nonce": nonce,
                    "scope": capability.scope,
                },
                self.config.approval_timeout_s,
            )
            provided = decision.payload
        else:
            logger.debug(f"Auto-executing {method} for {origin}")

        result = await self._run_invocation(
            origin, capability_id, method, params, nonce, connection, provided
        )
        return {"capabilityId": capability_id, "method": method, "nonce": nonce, "data": result}

    # -------------------------------------------------------------------------
    # Message signing
    # -------------------------------------------------------------------------

    async def _handle_sign_message(self, request: BrokerRequest, origin: str) -> Dict[str, Any]:
        message = request.data.get("message")
        if not isinstance(message, str):
            raise ValidationError("message must be a string")
        connection = await self._require_connection(origin)

        decision = await self._await_decision(
            PendingKind.SIGN_MESSAGE,
            origin,
            {"message": message, "appName": connection.app_name},
            self.config.approval_timeout_s,
        )

        async with self.signing_lock:
            supplied = decision.payload.get("signature")
            if supplied is not None:
                public_key = decision.payload.get("publicKey") or connection.wallet_public_key
                if not verify_message(message, supplied, public_key):
                    raise SignatureInvalidError("Supplied message signature does not verify")
                return {"message": message, "signature": supplied, "publicKey": public_key}
            address = decision.payload.get("walletAddress") or connection.wallet_public_key
            return self.vault.sign_message(message, address)

    # -------------------------------------------------------------------------
    # Disconnect / list / revoke / renew
    # -------------------------------------------------------------------------

    async def _handle_disconnect(self, request: BrokerRequest, origin: str) -> Dict[str, Any]:
        async with self.signing_lock:
            existed = await self.registry.remove_connection(origin)
        cancelled = await self.pending.fail_origin(origin, NotConnectedError, "Disconnected")
        logger.info(
            f"Disconnected {origin} (existed={existed}, cancelled {cancelled} pending)"
        )
        return {"disconnected": True}

    async def _handle_list_capabilities(self, request: BrokerRequest, origin: str) -> Dict[str, Any]:
        now = self.clock()
        capabilities = await self.registry.active_capabilities(origin, now)
        return {"capabilities": [cap.to_public_dict(now) for cap in capabilities]}

    async def _handle_revoke_capability(self, request: BrokerRequest, origin: str) -> Dict[str, Any]:
        capability_id = _require_str(request.data, "capabilityId")
        async with self.signing_lock:
            revoked = await self.registry.revoke_capability(origin, capability_id)
        return {"revoked": True, "capabilityId": revoked.id, "state": revoked.state.value}

    async def _handle_renew_capability(self, request: BrokerRequest, origin: str) -> Dict[str, Any]:
        data = request.data
        capability_id = _require_str(data, "capabilityId")
        connection = await self._require_connection(origin)
        existing = await self.registry.find_capability(origin, capability_id)
        if existing is None:
            raise CapabilityNotFoundError(f"Capability not found: {capability_id}")

        previous_ttl_s = max((existing.expires_at - existing.issued_at) // 1000, 1)
        ttl_ms = self._ttl_ms(data, min(previous_ttl_s, self.config.max_ttl_seconds))

        decision = await self._await_decision(
            PendingKind.CAPABILITY,
            origin,
            {
                "action": "renew",
                "capabilityId": capability_id,
                "methods": existing.methods,
                "scope": existing.scope,
                "ttlMs": ttl_ms,
                "appName": connection.app_name,
            },
            self.config.approval_timeout_s,
        )

        async with self.signing_lock:
            current = await self.registry.find_capability(origin, capability_id)
            if current is None:
                raise CapabilityNotFoundError(f"Capability not found: {capability_id}")
            grant = current.payload()
            del grant["issuedAt"], grant["expiresAt"]
            grant["nonceBase"] = current.last_nonce
            grant["ttlMs"] = ttl_ms

            now = self.clock()
            renewed = await self._sign_grant(origin, grant, decision, connection, now)
            await self.registry.replace_capability(origin, capability_id, renewed)
        logger.info(f"Renewed capability {capability_id} as {renewed.id} for {origin}")
        return renewed.to_public_dict(now)
