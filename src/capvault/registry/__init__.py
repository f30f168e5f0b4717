"""Connection and capability registries over a shared key-value store."""

from .kv import InMemoryStore, KeyValueStore, StoreChange
from .models import Capability, CapabilityState, Connection
from .store import CAPABILITIES_KEY, CONNECTIONS_KEY, RegistryStore

__all__ = [
    "CAPABILITIES_KEY",
    "CONNECTIONS_KEY",
    "Capability",
    "CapabilityState",
    "Connection",
    "InMemoryStore",
    "KeyValueStore",
    "RegistryStore",
    "StoreChange",
]
