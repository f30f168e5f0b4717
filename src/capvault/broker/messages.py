"""Broker wire protocol.

Requester -> broker: ``{type: "<KIND>_REQUEST", requestId, data}``
Broker -> requester: ``{type: "<KIND>_RESPONSE", requestId, success, result | error, code}``
UI -> broker: ``{type: "<KIND>_RESULT", appOrigin, approved, ...}``
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from ..errors import (
    CapVaultError,
    UnknownRequestTypeError,
    ValidationError,
    public_message,
)


class RequestType(str, Enum):
    """Closed set of requester message types."""

    CONNECTION = "CONNECTION_REQUEST"
    CAPABILITY = "CAPABILITY_REQUEST"
    INVOKE = "INVOKE_REQUEST"
    SIGN_MESSAGE = "SIGN_MESSAGE_REQUEST"
    DISCONNECT = "DISCONNECT_REQUEST"
    LIST_CAPABILITIES = "LIST_CAPABILITIES_REQUEST"
    RENEW_CAPABILITY = "RENEW_CAPABILITY_REQUEST"
    REVOKE_CAPABILITY = "REVOKE_CAPABILITY_REQUEST"

    @property
    def response_type(self) -> str:
        return self.value[: -len("_REQUEST")] + "_RESPONSE"


class PendingKind(str, Enum):
    """Request kinds that wait for a user decision."""

    CONNECTION = "connection"
    CAPABILITY = "capability"
    INVOKE = "invoke"
    SIGN_MESSAGE = "sign_message"

    @property
    def store_key(self) -> str:
        return PENDING_STORE_KEYS[self]


PENDING_STORE_KEYS: Dict[PendingKind, str] = {
    PendingKind.CONNECTION: "pendingConnectionRequest",
    PendingKind.CAPABILITY: "pendingCapabilityRequest",
    PendingKind.INVOKE: "pendingInvokeRequest",
    PendingKind.SIGN_MESSAGE: "pendingSignMessageRequest",
}

DECISION_TYPES: Dict[str, PendingKind] = {
    "CONNECTION_RESULT": PendingKind.CONNECTION,
    "CAPABILITY_RESULT": PendingKind.CAPABILITY,
    "INVOKE_RESULT": PendingKind.INVOKE,
    "SIGN_MESSAGE_RESULT": PendingKind.SIGN_MESSAGE,
}


@dataclass
class BrokerRequest:
    """A parsed requester message."""

    type: RequestType
    data: Dict[str, Any] = field(default_factory=dict)
    request_id: Optional[str] = None

    @property
    def claimed_origin(self) -> Optional[str]:
        return self.data.get("appOrigin")


@dataclass
class Decision:
    """A user's verdict on a pending request, sent by a UI context."""

    kind: PendingKind
    app_origin: str
    approved: bool
    payload: Dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[int] = None


def parse_request(raw: Any) -> BrokerRequest:
    """Parse a requester message.

    Raises:
        UnknownRequestTypeError: If ``type`` is not a known request kind
        ValidationError: If the envelope is malformed
    """
    if not isinstance(raw, dict):
        raise ValidationError("Message must be an object")
    message_type = raw.get("type")
    try:
        request_type = RequestType(message_type)
    except ValueError:
        raise UnknownRequestTypeError(f"Unknown request type: {message_type!r}") from None

    data = raw.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("data must be an object")

    request_id = raw.get("requestId")
    return BrokerRequest(
        type=request_type,
        data=data,
        request_id=str(request_id) if request_id is not None else None,
    )


def parse_decision(raw: Any) -> Decision:
    """Parse a UI decision message."""
    if not isinstance(raw, dict):
        raise ValidationError("Decision must be an object")
    kind = DECISION_TYPES.get(raw.get("type"))
    if kind is None:
        raise UnknownRequestTypeError(f"Unknown decision type: {raw.get('type')!r}")

    app_origin = raw.get("appOrigin")
    if not isinstance(app_origin, str) or not app_origin:
        raise ValidationError("Decision is missing appOrigin")

    payload = {
        key: value for key, value in raw.items()
        if key not in ("type", "appOrigin", "approved", "correlationId")
    }
    correlation_id = raw.get("correlationId")
    return Decision(
        kind=kind,
        app_origin=app_origin,
        approved=bool(raw.get("approved")),
        payload=payload,
        correlation_id=int(correlation_id) if correlation_id is not None else None,
    )


def response_type_for(raw_type: Any) -> str:
    if isinstance(raw_type, RequestType):
        return raw_type.response_type
    if isinstance(raw_type, str) and raw_type.endswith("_REQUEST"):
        return raw_type[: -len("_REQUEST")] + "_RESPONSE"
    return "ERROR_RESPONSE"


def make_response(request: BrokerRequest, result: Any) -> Dict[str, Any]:
    return {
        "type": request.type.response_type,
        "requestId": request.request_id,
        "success": True,
        "result": result,
    }


def make_error_response(
    raw_type: Any,
    request_id: Optional[str],
    error: CapVaultError,
) -> Dict[str, Any]:
    return {
        "type": response_type_for(raw_type),
        "requestId": request_id,
        "success": False,
        "error": public_message(error),
        "code": error.code,
    }
