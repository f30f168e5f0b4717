"""Cross-context session synchronization.

Execution contexts (background, popup, expanded view) share nothing but the
key-value store. The synchronizer turns raw store changes into typed events
and fans them out to every attached context, which reconciles its own state
from them instead of trusting what it cached before.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .broker.messages import PENDING_STORE_KEYS
from .registry.kv import KeyValueStore, StoreChange
from .registry.store import REGISTRY_KEYS
from .vault.vault import LOCK_FLAG_KEY, VAULT_KEYS, CredentialVault

logger = logging.getLogger(__name__)

PENDING_KEYS = tuple(PENDING_STORE_KEYS.values())


class SyncEventKind(str, Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    REGISTRY_CHANGED = "registry_changed"
    PENDING_CHANGED = "pending_changed"
    VAULT_CHANGED = "vault_changed"


@dataclass
class SyncEvent:
    """A typed change delivered to attached contexts."""

    kind: SyncEventKind
    keys: List[str] = field(default_factory=list)
    values: Dict[str, Any] = field(default_factory=dict)
    source: Optional[str] = None


ContextListener = Callable[[SyncEvent], None]


def classify(change: StoreChange) -> List[SyncEvent]:
    """Map one store batch to the events it implies, in a fixed order."""
    events: List[SyncEvent] = []

    def event(kind: SyncEventKind, keys: tuple) -> None:
        touched = [key for key in keys if key in change.changes]
        if touched:
            events.append(
                SyncEvent(
                    kind=kind,
                    keys=touched,
                    values={key: change.new_value(key) for key in touched},
                    source=change.source,
                )
            )

    if change.touches(LOCK_FLAG_KEY):
        locked = change.new_value(LOCK_FLAG_KEY)
        kind = SyncEventKind.UNLOCKED if locked is False else SyncEventKind.LOCKED
        event(kind, (LOCK_FLAG_KEY,))
    event(SyncEventKind.VAULT_CHANGED, VAULT_KEYS)
    event(SyncEventKind.REGISTRY_CHANGED, REGISTRY_KEYS)
    event(SyncEventKind.PENDING_CHANGED, PENDING_KEYS)
    return events


class SessionSynchronizer:
    """Fans store changes out to attached execution contexts."""

    def __init__(self, store: KeyValueStore, vault: Optional[CredentialVault] = None) -> None:
        self.store = store
        self.vault = vault
        self._contexts: Dict[str, ContextListener] = {}
        self._unsubscribe: Optional[Callable[[], None]] = store.subscribe(self._on_change)

    @property
    def contexts(self) -> List[str]:
        return list(self._contexts)

    def attach(self, name: str, listener: ContextListener) -> Callable[[], None]:
        """Attach a context; returns a callable that detaches it."""
        if name in self._contexts:
            logger.info(f"Context {name} re-attached, replacing its listener")
        self._contexts[name] = listener

        def detach() -> None:
            if self._contexts.get(name) is listener:
                del self._contexts[name]

        return detach

    async def snapshot(self) -> Dict[str, Any]:
        """Current shared state for a context that just attached."""
        locked = await self.store.get(LOCK_FLAG_KEY)
        state: Dict[str, Any] = {"locked": locked is not False}
        for key in REGISTRY_KEYS + PENDING_KEYS:
            state[key] = await self.store.get(key)
        return state

    def _on_change(self, change: StoreChange) -> None:
        for sync_event in classify(change):
            for name, listener in list(self._contexts.items()):
                try:
                    listener(sync_event)
                except Exception:
                    logger.exception(f"Context {name} failed to handle {sync_event.kind.value}")

    async def all_contexts_closed(self) -> None:
        """Host signal that every UI window closed: lock the vault."""
        self._contexts.clear()
        if self.vault is not None:
            await self.vault.on_all_contexts_closed()

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._contexts.clear()
