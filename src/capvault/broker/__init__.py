"""Request broker: dApp request lifecycle, pending decisions, signing lock."""

from .broker import BrokerState, RequestBroker
from .messages import (
    BrokerRequest,
    Decision,
    PendingKind,
    RequestType,
    parse_decision,
    parse_request,
)
from .methods import (
    AUTO_EXECUTE_METHODS,
    FUND_TRANSFER_METHODS,
    InvocationContext,
    MethodExecutor,
    RpcBalanceProvider,
    WalletMethodExecutor,
    requires_approval,
)
from .pending import PendingRegistry, PendingRequest
from .signing import SigningLock

__all__ = [
    "AUTO_EXECUTE_METHODS",
    "BrokerRequest",
    "BrokerState",
    "Decision",
    "FUND_TRANSFER_METHODS",
    "InvocationContext",
    "MethodExecutor",
    "PendingKind",
    "PendingRegistry",
    "PendingRequest",
    "RequestBroker",
    "RequestType",
    "RpcBalanceProvider",
    "SigningLock",
    "WalletMethodExecutor",
    "parse_decision",
    "parse_request",
    "requires_approval",
]
