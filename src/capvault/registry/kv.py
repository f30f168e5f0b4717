"""Shared key-value store with a change feed.

Every execution context (background, popup, expanded view) sees the same
store. Contexts never own the canonical copy; they cache reads and
reconcile on the change events delivered through ``subscribe``.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class StoreChange:
    """One atomic batch of changes: key -> (old value, new value).

    A new value of None means the key was removed.
    """

    changes: Dict[str, Tuple[Any, Any]] = field(default_factory=dict)
    source: Optional[str] = None

    @property
    def keys(self) -> List[str]:
        return list(self.changes)

    def new_value(self, key: str) -> Any:
        return self.changes[key][1]

    def touches(self, *keys: str) -> bool:
        return any(key in self.changes for key in keys)


ChangeListener = Callable[[StoreChange], None]
Unsubscribe = Callable[[], None]


class KeyValueStore:
    """Abstract interface for the shared persistent store.

    Implementations can use different backends:
    - In-memory (for testing and single-process hosts)
    - Browser extension storage bridged over IPC
    - File or database backed
    """

    async def get(self, key: str, default: Any = None) -> Any:
        """Read a value (a deep copy; callers may mutate it)."""
        raise NotImplementedError

    async def set(self, key: str, value: Any) -> None:
        """Write a single key."""
        await self.apply({key: value})

    async def remove(self, key: str) -> None:
        """Delete a single key. Missing keys are ignored."""
        await self.apply({key: None})

    async def apply(self, changes: Dict[str, Any], source: Optional[str] = None) -> None:
        """Atomically write several keys; None deletes the key.

        Readers observe either none or all of the batch, and subscribers get
        exactly one StoreChange for it.
        """
        raise NotImplementedError

    def subscribe(self, listener: ChangeListener) -> Unsubscribe:
        """Register a change listener; returns a callable that unsubscribes."""
        raise NotImplementedError


class InMemoryStore(KeyValueStore):
    """In-memory store shared by reference between contexts."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = copy.deepcopy(initial) if initial else {}
        self._listeners: List[ChangeListener] = []

    async def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    async def apply(self, changes: Dict[str, Any], source: Optional[str] = None) -> None:
        batch: Dict[str, Tuple[Any, Any]] = {}
        for key, value in changes.items():
            old = self._data.get(key)
            if value is None:
                if key not in self._data:
                    continue
                del self._data[key]
                batch[key] = (old, None)
            else:
                new = copy.deepcopy(value)
                self._data[key] = new
                batch[key] = (copy.deepcopy(old), copy.deepcopy(new))

        if batch:
            self._notify(StoreChange(changes=batch, source=source))

    def subscribe(self, listener: ChangeListener) -> Unsubscribe:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def keys(self) -> List[str]:
        return list(self._data)

    def _notify(self, change: StoreChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception(f"Store listener failed for keys {change.keys}")
