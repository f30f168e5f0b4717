"""Tests for the RequestBroker request lifecycles."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from capvault.broker.broker import RequestBroker
from capvault.broker.messages import PendingKind
from capvault.broker.methods import WalletMethodExecutor
from capvault.core.config import BrokerConfig
from capvault.crypto.signer import sign_capability, verify_capability, verify_message
from capvault.registry.store import RegistryStore
from capvault.vault.vault import CredentialVault

PASSWORD = "Str0ng!Passphrase"
ORIGIN = "https://x.test"
OTHER = "https://y.test"
CIRCLE = "octra-main"

RESULT_TYPES = {
    PendingKind.CONNECTION: "CONNECTION_RESULT",
    PendingKind.CAPABILITY: "CAPABILITY_RESULT",
    PendingKind.INVOKE: "INVOKE_RESULT",
    PendingKind.SIGN_MESSAGE: "SIGN_MESSAGE_RESULT",
}


# =============================================================================
# Fixtures and helpers
# =============================================================================


@pytest.fixture
def balance_provider():
    provider = MagicMock()
    provider.get_balances = AsyncMock(
        return_value={"octBalance": 100.0, "ethBalance": 0.5, "usdcBalance": 10.0}
    )
    return provider


@pytest.fixture
def executor(balance_provider):
    return WalletMethodExecutor(balance_provider=balance_provider)


@pytest.fixture
def vault(store, vault_config, clock):
    return CredentialVault(store, vault_config, clock=clock)


@pytest.fixture
def registry(store):
    return RegistryStore(store, source="background")


@pytest.fixture
def broker(vault, registry, executor, broker_config, clock):
    return RequestBroker(vault, registry, executor=executor, config=broker_config, clock=clock)


async def wait_for_pending(broker, kind, origin=ORIGIN, not_this=None):
    for _ in range(500):
        pending = broker.pending.get(kind, origin)
        if pending is not None and pending is not not_this:
            return pending
        await asyncio.sleep(0)
    raise AssertionError(f"no pending {kind.value} request for {origin}")


async def decide(broker, kind, approved=True, origin=ORIGIN, **payload):
    await wait_for_pending(broker, kind, origin)
    return await broker.resolve(
        {"type": RESULT_TYPES[kind], "appOrigin": origin, "approved": approved, **payload}
    )


async def with_decision(broker, message, kind, approved=True, origin=ORIGIN, **payload):
    response, _ = await asyncio.gather(
        broker.handle(message, origin),
        decide(broker, kind, approved, origin, **payload),
    )
    return response


def connection_request(circle=CIRCLE):
    return {"type": "CONNECTION_REQUEST", "requestId": "req-1", "data": {"circle": circle, "appName": "X"}}


def capability_request(methods=("get_balance",), scope="read", ttl=900, **extra):
    data = {"methods": list(methods), "scope": scope, "ttlSeconds": ttl, **extra}
    return {"type": "CAPABILITY_REQUEST", "requestId": "req-2", "data": data}


def invoke_request(capability_id, method, nonce, params=None):
    return {
        "type": "INVOKE_REQUEST",
        "requestId": "req-3",
        "data": {"capabilityId": capability_id, "method": method, "nonce": nonce, "params": params or {}},
    }


async def connect(broker, wallet, origin=ORIGIN, circle=CIRCLE):
    response = await with_decision(
        broker, connection_request(circle), PendingKind.CONNECTION, origin=origin,
        walletPublicKey=wallet.address,
    )
    assert response["success"], response
    return response["result"]


async def grant(broker, origin=ORIGIN, **kwargs):
    response = await with_decision(
        broker, capability_request(**kwargs), PendingKind.CAPABILITY, origin=origin
    )
    assert response["success"], response
    return response["result"]


async def ready(vault, wallet):
    await vault.setup(PASSWORD, wallet)


# =============================================================================
# End to end
# =============================================================================


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_connect_grant_invoke_replay(self, broker, vault, registry, wallet, clock):
        await ready(vault, wallet)

        result = await connect(broker, wallet)
        assert result["circle"] == CIRCLE
        assert result["sessionId"].startswith(f"session-{clock.now}-")
        connection = await registry.get_connection(ORIGIN)
        assert connection.circle == CIRCLE
        assert connection.wallet_public_key == wallet.address

        capability = await grant(broker, methods=["get_balance"], scope="read", ttl=900)
        assert capability["expiresAt"] == clock.now + 900_000
        assert capability["lastNonce"] == capability["nonceBase"] == 0
        assert capability["state"] == "ACTIVE"
        assert capability["issuerPublicKey"] == wallet.public_key
        assert verify_capability(capability)

        response = await broker.handle(invoke_request(capability["id"], "get_balance", 1), ORIGIN)
        assert response["success"], response
        assert response["type"] == "INVOKE_RESPONSE"
        assert response["result"]["data"]["octBalance"] == 100.0
        assert response["result"]["data"]["octAddress"] == wallet.address
        assert broker.pending.list() == []

        replay = await broker.handle(invoke_request(capability["id"], "get_balance", 1), ORIGIN)
        assert replay["success"] is False
        assert replay["code"] == "NONCE_VIOLATION"
        assert replay["error"] == "Request not permitted"


# =============================================================================
# Protocol
# =============================================================================


class TestProtocol:
    @pytest.mark.asyncio
    async def test_origin_mismatch_rejected_first(self, broker, caplog):
        message = {
            "type": "CONNECTION_REQUEST",
            "data": {"appOrigin": "https://evil.test", "circle": CIRCLE},
        }
        with caplog.at_level("WARNING", logger="capvault.security"):
            response = await broker.handle(message, ORIGIN)

        assert response["code"] == "ORIGIN_MISMATCH"
        assert response["error"] == "Request not permitted"
        assert broker.pending.list() == []
        assert "https://evil.test" in caplog.text

    @pytest.mark.asyncio
    async def test_origin_mismatch_beats_unknown_type(self, broker):
        response = await broker.handle({"type": "BOGUS", "data": {"appOrigin": OTHER}}, ORIGIN)
        assert response["code"] == "ORIGIN_MISMATCH"

    @pytest.mark.asyncio
    async def test_matching_claimed_origin_passes(self, broker):
        message = capability_request(appOrigin=ORIGIN)
        response = await broker.handle(message, ORIGIN)
        assert response["code"] == "NOT_CONNECTED"

    @pytest.mark.asyncio
    async def test_unknown_request_type(self, broker):
        response = await broker.handle({"type": "FOO_REQUEST", "requestId": "7"}, ORIGIN)
        assert response == {
            "type": "FOO_RESPONSE",
            "requestId": "7",
            "success": False,
            "error": "Unknown request type: 'FOO_REQUEST'",
            "code": "UNKNOWN_REQUEST_TYPE",
        }

    @pytest.mark.asyncio
    async def test_malformed_message(self, broker):
        response = await broker.handle(["not", "a", "dict"], ORIGIN)
        assert response["type"] == "ERROR_RESPONSE"
        assert response["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_sender_origin_required(self, broker):
        response = await broker.handle(connection_request(), "")
        assert response["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_unexpected_error_is_generic(self, broker):
        broker.registry.get_connection = AsyncMock(side_effect=RuntimeError("disk on fire"))
        response = await broker.handle(connection_request(), ORIGIN)
        assert response["code"] == "INTERNAL_ERROR"
        assert "disk" not in response["error"]

    @pytest.mark.asyncio
    async def test_stale_decision_ignored(self, broker):
        assert await broker.resolve(
            {"type": "CONNECTION_RESULT", "appOrigin": ORIGIN, "approved": True}
        ) is False


# =============================================================================
# Connection
# =============================================================================


class TestConnection:
    @pytest.mark.asyncio
    async def test_same_circle_fast_path(self, broker, vault, wallet):
        await ready(vault, wallet)
        first = await connect(broker, wallet)

        second = await broker.handle(connection_request(), ORIGIN)
        assert second["success"]
        assert second["result"]["sessionId"] == first["sessionId"]
        assert broker.pending.list() == []

    @pytest.mark.asyncio
    async def test_new_circle_replaces_connection(self, broker, vault, registry, wallet):
        await ready(vault, wallet)
        await connect(broker, wallet)
        await grant(broker)

        registry.replace_connection = AsyncMock(wraps=registry.replace_connection)
        result = await connect(broker, wallet, circle="octra-test")
        assert result["circle"] == "octra-test"
        assert (await registry.get_connection(ORIGIN)).circle == "octra-test"
        assert await registry.list_capabilities(ORIGIN) == []
        registry.replace_connection.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rejected(self, broker, registry, store):
        response = await with_decision(
            broker, connection_request(), PendingKind.CONNECTION, approved=False
        )
        assert response["code"] == "USER_REJECTED"
        assert await registry.get_connection(ORIGIN) is None
        assert await store.get("pendingConnectionRequest") is None

    @pytest.mark.asyncio
    async def test_timeout(self, vault, registry, executor, clock, store):
        broker = RequestBroker(
            vault, registry, executor=executor,
            config=BrokerConfig(connection_timeout_s=0.01), clock=clock,
        )
        response = await broker.handle(connection_request(), ORIGIN)
        assert response["code"] == "TIMEOUT"
        assert await store.get("pendingConnectionRequest") is None
        assert await broker.resolve(
            {"type": "CONNECTION_RESULT", "appOrigin": ORIGIN, "approved": True}
        ) is False

    @pytest.mark.asyncio
    async def test_default_wallet_when_none_selected(self, broker, vault, registry, wallet):
        await ready(vault, wallet)
        response = await with_decision(broker, connection_request(), PendingKind.CONNECTION)
        assert response["result"]["walletPublicKey"] == wallet.address

    @pytest.mark.asyncio
    async def test_locked_vault_without_selection(self, broker):
        response = await with_decision(broker, connection_request(), PendingKind.CONNECTION)
        assert response["code"] == "VAULT_LOCKED"

    @pytest.mark.asyncio
    async def test_second_request_supersedes_first(self, broker, vault, wallet):
        await ready(vault, wallet)
        first_task = asyncio.create_task(broker.handle(connection_request(), ORIGIN))
        first_pending = await wait_for_pending(broker, PendingKind.CONNECTION)
        second_task = asyncio.create_task(broker.handle(connection_request(), ORIGIN))
        await wait_for_pending(broker, PendingKind.CONNECTION, not_this=first_pending)

        await broker.resolve({
            "type": "CONNECTION_RESULT", "appOrigin": ORIGIN, "approved": True,
            "walletPublicKey": wallet.address,
        })
        first, second = await asyncio.gather(first_task, second_task)
        assert first["code"] == "SUPERSEDED"
        assert second["success"]

    @pytest.mark.asyncio
    async def test_ui_notified(self, vault, registry, executor, broker_config, clock, wallet):
        notify = MagicMock(side_effect=RuntimeError("popup closed"))
        broker = RequestBroker(
            vault, registry, executor=executor, config=broker_config, clock=clock, notify_ui=notify
        )
        await ready(vault, wallet)
        await connect(broker, wallet)
        pending = notify.call_args.args[0]
        assert pending.kind == PendingKind.CONNECTION
        assert pending.payload["circle"] == CIRCLE


# =============================================================================
# Capability issuance
# =============================================================================


class TestCapabilityRequest:
    @pytest.mark.asyncio
    async def test_requires_connection(self, broker):
        response = await broker.handle(capability_request(), ORIGIN)
        assert response["code"] == "NOT_CONNECTED"
        assert response["error"] == "Not connected to wallet"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"ttl": 86_401},
            {"ttl": 0},
            {"scope": "admin"},
            {"methods": []},
            {"circle": "someone-else"},
        ],
    )
    async def test_invalid_requests(self, broker, vault, wallet, overrides):
        await ready(vault, wallet)
        await connect(broker, wallet)
        response = await broker.handle(capability_request(**overrides), ORIGIN)
        assert response["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_nonce_base_carried(self, broker, vault, wallet):
        await ready(vault, wallet)
        await connect(broker, wallet)
        capability = await grant(broker, nonceBase=41)
        assert capability["nonceBase"] == 41
        assert capability["lastNonce"] == 41

    @pytest.mark.asyncio
    async def test_locked_vault_at_approval(self, broker, vault, registry, wallet):
        await ready(vault, wallet)
        await connect(broker, wallet)
        await vault.lock()
        response = await with_decision(broker, capability_request(), PendingKind.CAPABILITY)
        assert response["code"] == "VAULT_LOCKED"
        assert await registry.list_capabilities(ORIGIN) == []

    @pytest.mark.asyncio
    async def test_ui_signed_capability_accepted(self, broker, vault, registry, wallet, clock, capability_payload):
        await ready(vault, wallet)
        await connect(broker, wallet)
        signed = sign_capability(
            dict(capability_payload, methods=["get_balance"], issuedAt=clock.now, expiresAt=clock.now + 1000),
            wallet.private_key,
        )
        response = await with_decision(
            broker, capability_request(), PendingKind.CAPABILITY, signedCapability=signed
        )
        assert response["success"], response
        assert response["result"]["signature"] == signed["signature"]
        assert len(await registry.list_capabilities(ORIGIN)) == 1

    @pytest.mark.asyncio
    async def test_ui_signed_capability_tampered(self, broker, vault, wallet, clock, capability_payload):
        await ready(vault, wallet)
        await connect(broker, wallet)
        signed = sign_capability(
            dict(capability_payload, methods=["get_balance"], issuedAt=clock.now, expiresAt=clock.now + 1000),
            wallet.private_key,
        )
        signed["expiresAt"] += 10_000_000
        response = await with_decision(
            broker, capability_request(), PendingKind.CAPABILITY, signedCapability=signed
        )
        assert response["code"] == "SIGNATURE_INVALID"

    @pytest.mark.asyncio
    async def test_ui_signed_capability_for_other_origin(self, broker, vault, wallet, clock, capability_payload):
        await ready(vault, wallet)
        await connect(broker, wallet)
        signed = sign_capability(
            dict(capability_payload, appOrigin=OTHER, methods=["get_balance"],
                 issuedAt=clock.now, expiresAt=clock.now + 1000),
            wallet.private_key,
        )
        response = await with_decision(
            broker, capability_request(), PendingKind.CAPABILITY, signedCapability=signed
        )
        assert response["code"] == "ORIGIN_MISMATCH"

    @pytest.mark.asyncio
    async def test_ui_signed_capability_from_other_key(
        self, broker, vault, registry, wallet, second_wallet, clock, capability_payload
    ):
        await ready(vault, wallet)
        await connect(broker, wallet)
        signed = sign_capability(
            dict(capability_payload, methods=["get_balance"], issuedAt=clock.now, expiresAt=clock.now + 1000),
            second_wallet.private_key,
        )
        response = await with_decision(
            broker, capability_request(), PendingKind.CAPABILITY, signedCapability=signed
        )
        assert response["code"] == "SIGNATURE_INVALID"
        assert await registry.list_capabilities(ORIGIN) == []

    @pytest.mark.asyncio
    async def test_ui_signed_capability_lifetime_capped(
        self, broker, vault, registry, wallet, clock, capability_payload
    ):
        await ready(vault, wallet)
        await connect(broker, wallet)
        lifetime_ms = (broker.config.max_ttl_seconds + 1) * 1000
        signed = sign_capability(
            dict(capability_payload, methods=["get_balance"], issuedAt=clock.now, expiresAt=clock.now + lifetime_ms),
            wallet.private_key,
        )
        response = await with_decision(
            broker, capability_request(), PendingKind.CAPABILITY, signedCapability=signed
        )
        assert response["code"] == "VALIDATION_ERROR"
        assert await registry.list_capabilities(ORIGIN) == []


# =============================================================================
# Invocation
# =============================================================================


class TestInvoke:
    async def _setup(self, broker, vault, wallet, **grant_kwargs):
        await ready(vault, wallet)
        await connect(broker, wallet)
        return await grant(broker, **grant_kwargs)

    @pytest.mark.asyncio
    async def test_unknown_capability(self, broker, vault, wallet):
        await self._setup(broker, vault, wallet)
        response = await broker.handle(invoke_request("cap-missing", "get_balance", 1), ORIGIN)
        assert response["code"] == "CAPABILITY_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_other_origin_cannot_use_capability(self, broker, vault, wallet):
        capability = await self._setup(broker, vault, wallet)
        await connect(broker, wallet, origin=OTHER)
        response = await broker.handle(invoke_request(capability["id"], "get_balance", 1), OTHER)
        assert response["code"] == "ORIGIN_MISMATCH"

    @pytest.mark.asyncio
    async def test_expired(self, broker, vault, wallet, clock):
        capability = await self._setup(broker, vault, wallet)
        clock.advance(900_000)
        response = await broker.handle(invoke_request(capability["id"], "get_balance", 1), ORIGIN)
        assert response["code"] == "CAPABILITY_EXPIRED"

    @pytest.mark.asyncio
    async def test_expiry_checked_before_method(self, broker, vault, wallet, clock):
        capability = await self._setup(broker, vault, wallet)
        clock.advance(900_000)
        response = await broker.handle(invoke_request(capability["id"], "send_transaction", 1), ORIGIN)
        assert response["code"] == "CAPABILITY_EXPIRED"

    @pytest.mark.asyncio
    async def test_method_not_allowed(self, broker, vault, wallet):
        capability = await self._setup(broker, vault, wallet)
        response = await broker.handle(invoke_request(capability["id"], "get_quote", 1), ORIGIN)
        assert response["code"] == "METHOD_NOT_ALLOWED"

    @pytest.mark.asyncio
    async def test_nonce_must_increase(self, broker, vault, wallet, caplog):
        capability = await self._setup(broker, vault, wallet)
        assert (await broker.handle(invoke_request(capability["id"], "get_balance", 5), ORIGIN))["success"]

        with caplog.at_level("WARNING", logger="capvault.security"):
            for stale in (0, 3, 5):
                response = await broker.handle(invoke_request(capability["id"], "get_balance", stale), ORIGIN)
                assert response["code"] == "NONCE_VIOLATION"
        assert "NonceViolationError" in caplog.text

        assert (await broker.handle(invoke_request(capability["id"], "get_balance", 6), ORIGIN))["success"]

    @pytest.mark.asyncio
    async def test_nonce_must_be_integer(self, broker, vault, wallet):
        capability = await self._setup(broker, vault, wallet)
        response = await broker.handle(invoke_request(capability["id"], "get_balance", "1"), ORIGIN)
        assert response["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_concurrent_duplicates(self, broker, vault, wallet, balance_provider, registry):
        capability = await self._setup(broker, vault, wallet)

        async def slow_balances(address, evm_address):
            await asyncio.sleep(0.01)
            return {"octBalance": 1.0, "ethBalance": 0.0, "usdcBalance": 0.0}

        balance_provider.get_balances = AsyncMock(side_effect=slow_balances)
        message = invoke_request(capability["id"], "get_balance", 1)
        responses = await asyncio.gather(*(broker.handle(message, ORIGIN) for _ in range(3)))

        assert sum(1 for r in responses if r["success"]) == 1
        assert sorted(r.get("code", "") for r in responses) == ["", "NONCE_VIOLATION", "NONCE_VIOLATION"]
        assert (await registry.find_capability(ORIGIN, capability["id"])).last_nonce == 1

    @pytest.mark.asyncio
    async def test_fund_transfer_requires_approval(self, broker, vault, wallet, registry):
        capability = await self._setup(broker, vault, wallet, methods=["send_transaction"], scope="write")
        response = await with_decision(
            broker,
            invoke_request(capability["id"], "send_transaction", 1, {"to": "octB", "amount": 1}),
            PendingKind.INVOKE,
            data={"txHash": "0xabc"},
        )
        assert response["success"], response
        assert response["result"]["data"] == {"txHash": "0xabc"}
        assert (await registry.find_capability(ORIGIN, capability["id"])).last_nonce == 1

    @pytest.mark.asyncio
    async def test_rejected_invoke_keeps_nonce(self, broker, vault, wallet, registry):
        capability = await self._setup(broker, vault, wallet, methods=["send_transaction"], scope="write")
        response = await with_decision(
            broker,
            invoke_request(capability["id"], "send_transaction", 1),
            PendingKind.INVOKE,
            approved=False,
        )
        assert response["code"] == "USER_REJECTED"
        assert (await registry.find_capability(ORIGIN, capability["id"])).last_nonce == 0

    @pytest.mark.asyncio
    async def test_approved_invoke_runs_executor(self, broker, vault, wallet, executor):
        executor.register("create_intent", AsyncMock(return_value={"intentId": "i-1"}))
        capability = await self._setup(broker, vault, wallet, methods=["create_intent"], scope="write")
        response = await with_decision(
            broker, invoke_request(capability["id"], "create_intent", 1), PendingKind.INVOKE
        )
        assert response["result"]["data"] == {"intentId": "i-1"}

    @pytest.mark.asyncio
    async def test_revoked_while_waiting(self, broker, vault, wallet):
        capability = await self._setup(broker, vault, wallet, methods=["send_transaction"], scope="write")
        task = asyncio.create_task(
            broker.handle(invoke_request(capability["id"], "send_transaction", 1), ORIGIN)
        )
        await wait_for_pending(broker, PendingKind.INVOKE)
        revoke = await broker.handle(
            {"type": "REVOKE_CAPABILITY_REQUEST", "data": {"capabilityId": capability["id"]}}, ORIGIN
        )
        assert revoke["success"]

        await broker.resolve({"type": "INVOKE_RESULT", "appOrigin": ORIGIN, "approved": True})
        response = await task
        assert response["code"] == "CAPABILITY_NOT_FOUND"


# =============================================================================
# Message signing
# =============================================================================


class TestSignMessage:
    @pytest.mark.asyncio
    async def test_sign_message(self, broker, vault, wallet):
        await ready(vault, wallet)
        await connect(broker, wallet)
        response = await with_decision(
            broker,
            {"type": "SIGN_MESSAGE_REQUEST", "data": {"message": "login nonce 7"}},
            PendingKind.SIGN_MESSAGE,
        )
        result = response["result"]
        assert result["publicKey"] == wallet.public_key
        assert verify_message("login nonce 7", result["signature"], wallet.public_key)

    @pytest.mark.asyncio
    async def test_requires_connection(self, broker):
        response = await broker.handle(
            {"type": "SIGN_MESSAGE_REQUEST", "data": {"message": "hi"}}, ORIGIN
        )
        assert response["code"] == "NOT_CONNECTED"

    @pytest.mark.asyncio
    async def test_message_must_be_string(self, broker, vault, wallet):
        await ready(vault, wallet)
        await connect(broker, wallet)
        response = await broker.handle(
            {"type": "SIGN_MESSAGE_REQUEST", "data": {"message": 42}}, ORIGIN
        )
        assert response["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_ui_signature_must_verify(self, broker, vault, wallet):
        await ready(vault, wallet)
        await connect(broker, wallet)
        response = await with_decision(
            broker,
            {"type": "SIGN_MESSAGE_REQUEST", "data": {"message": "hi"}},
            PendingKind.SIGN_MESSAGE,
            signature="00" * 64,
            publicKey=wallet.public_key,
        )
        assert response["code"] == "SIGNATURE_INVALID"


# =============================================================================
# Disconnect / list / revoke / renew
# =============================================================================


class TestManagement:
    @pytest.mark.asyncio
    async def test_disconnect_cascades_and_cancels_pending(self, broker, vault, registry, wallet):
        await ready(vault, wallet)
        await connect(broker, wallet)
        await grant(broker)

        waiting = asyncio.create_task(broker.handle(capability_request(), ORIGIN))
        await wait_for_pending(broker, PendingKind.CAPABILITY)

        response = await broker.handle({"type": "DISCONNECT_REQUEST"}, ORIGIN)
        assert response["result"] == {"disconnected": True}
        assert (await waiting)["code"] == "NOT_CONNECTED"
        assert await registry.get_connection(ORIGIN) is None
        assert await registry.list_capabilities(ORIGIN) == []

    @pytest.mark.asyncio
    async def test_list_excludes_expired(self, broker, vault, wallet, clock):
        await ready(vault, wallet)
        await connect(broker, wallet)
        short = await grant(broker, ttl=60)
        long = await grant(broker, ttl=3600)

        clock.advance(60_000)
        response = await broker.handle({"type": "LIST_CAPABILITIES_REQUEST"}, ORIGIN)
        assert [c["id"] for c in response["result"]["capabilities"]] == [long["id"]]
        assert short["id"] != long["id"]

    @pytest.mark.asyncio
    async def test_revoke(self, broker, vault, wallet):
        await ready(vault, wallet)
        await connect(broker, wallet)
        capability = await grant(broker)
        revoke = {"type": "REVOKE_CAPABILITY_REQUEST", "data": {"capabilityId": capability["id"]}}

        response = await broker.handle(revoke, ORIGIN)
        assert response["result"]["state"] == "REVOKED"
        invoke = await broker.handle(invoke_request(capability["id"], "get_balance", 1), ORIGIN)
        assert invoke["code"] == "CAPABILITY_NOT_FOUND"
        assert (await broker.handle(revoke, ORIGIN))["code"] == "CAPABILITY_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_renew_continues_nonce_sequence(self, broker, vault, registry, wallet, clock):
        await ready(vault, wallet)
        await connect(broker, wallet)
        capability = await grant(broker, ttl=900)
        for nonce in (1, 2):
            assert (await broker.handle(invoke_request(capability["id"], "get_balance", nonce), ORIGIN))["success"]

        clock.advance(100_000)
        response = await with_decision(
            broker,
            {"type": "RENEW_CAPABILITY_REQUEST", "data": {"capabilityId": capability["id"]}},
            PendingKind.CAPABILITY,
        )
        renewed = response["result"]
        assert renewed["id"] != capability["id"]
        assert renewed["nonceBase"] == 2
        assert renewed["lastNonce"] == 2
        assert renewed["expiresAt"] == clock.now + 900_000
        assert renewed["methods"] == capability["methods"]
        assert verify_capability(renewed)
        assert await registry.find_capability(ORIGIN, capability["id"]) is None

        replay = await broker.handle(invoke_request(renewed["id"], "get_balance", 2), ORIGIN)
        assert replay["code"] == "NONCE_VIOLATION"
        assert (await broker.handle(invoke_request(renewed["id"], "get_balance", 3), ORIGIN))["success"]

    @pytest.mark.asyncio
    async def test_renew_unknown(self, broker, vault, wallet):
        await ready(vault, wallet)
        await connect(broker, wallet)
        response = await broker.handle(
            {"type": "RENEW_CAPABILITY_REQUEST", "data": {"capabilityId": "cap-nope"}}, ORIGIN
        )
        assert response["code"] == "CAPABILITY_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_shutdown_fails_pending(self, broker):
        task = asyncio.create_task(broker.handle(connection_request(), ORIGIN))
        await wait_for_pending(broker, PendingKind.CONNECTION)
        await broker.shutdown()
        assert (await task)["code"] == "TIMEOUT"
