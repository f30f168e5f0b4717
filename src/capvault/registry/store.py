"""Registry of connections and capabilities over the shared store.

Layout in the shared store:

- ``connectedDApps``: list of connection dicts, one per origin
- ``capabilities``: origin -> list of capability dicts

Each RegistryStore keeps a read-through cache that is dropped for any key
the change feed reports, so the shared store stays the source of truth.
Disconnect writes both keys in one batch.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Dict, List, Optional

from ..errors import (
    CapabilityNotFoundError,
    NonceViolationError,
    StorageError,
    ValidationError,
    security_logger,
)
from .kv import KeyValueStore, StoreChange
from .models import Capability, CapabilityState, Connection

logger = logging.getLogger(__name__)

CONNECTIONS_KEY = "connectedDApps"
CAPABILITIES_KEY = "capabilities"

REGISTRY_KEYS = (CONNECTIONS_KEY, CAPABILITIES_KEY)


class RegistryStore:
    """CRUD over connections and capabilities, keyed by origin."""

    def __init__(self, store: KeyValueStore, source: Optional[str] = None) -> None:
        self.store = store
        self.source = source
        self._cache: Dict[str, Any] = {}
        self._lock = asyncio.Lock()
        self._unsubscribe = store.subscribe(self._on_change)

    def close(self) -> None:
        self._unsubscribe()
        self._cache.clear()

    # -------------------------------------------------------------------------
    # Cache
    # -------------------------------------------------------------------------

    def _on_change(self, change: StoreChange) -> None:
        for key in change.keys:
            self._cache.pop(key, None)

    async def _read(self, key: str, default: Any, fresh: bool = False) -> Any:
        if fresh or key not in self._cache:
            try:
                value = await self.store.get(key, default)
            except Exception as e:
                raise StorageError(f"Failed to read {key}: {e}") from e
            self._cache[key] = value
        return copy.deepcopy(self._cache[key])

    async def _write(self, changes: Dict[str, Any]) -> None:
        for key in changes:
            self._cache.pop(key, None)
        try:
            await self.store.apply(changes, source=self.source)
        except Exception as e:
            raise StorageError(f"Failed to write {', '.join(changes)}: {e}") from e

    async def _connections(self, fresh: bool = False) -> List[Dict[str, Any]]:
        return await self._read(CONNECTIONS_KEY, [], fresh)

    async def _capabilities(self, fresh: bool = False) -> Dict[str, List[Dict[str, Any]]]:
        return await self._read(CAPABILITIES_KEY, {}, fresh)

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    async def get_connection(self, origin: str) -> Optional[Connection]:
        for item in await self._connections():
            if item.get("appOrigin") == origin:
                return Connection.from_dict(item)
        return None

    async def list_connections(self) -> List[Connection]:
        return [Connection.from_dict(item) for item in await self._connections()]

    async def save_connection(self, connection: Connection) -> None:
        """Insert or replace the connection for its origin."""
        async with self._lock:
            items = [
                item for item in await self._connections(fresh=True)
                if item.get("appOrigin") != connection.app_origin
            ]
            items.append(connection.to_dict())
            await self._write({CONNECTIONS_KEY: items})
        logger.info(f"Saved connection for {connection.app_origin} (circle={connection.circle})")

    async def remove_connection(self, origin: str) -> bool:
        """Remove an origin's connection and all its capabilities in one batch.

        Returns:
            True if a connection or capabilities existed for the origin
        """
        async with self._lock:
            connections = await self._connections(fresh=True)
            capabilities = await self._capabilities(fresh=True)

            remaining = [item for item in connections if item.get("appOrigin") != origin]
            existed = len(remaining) != len(connections) or origin in capabilities
            if not existed:
                return False

            capabilities.pop(origin, None)
            await self._write({CONNECTIONS_KEY: remaining, CAPABILITIES_KEY: capabilities})
        logger.info(f"Removed connection and capabilities for {origin}")
        return True

    async def replace_connection(self, connection: Connection) -> bool:
        """Swap in a new connection for its origin, dropping the old grants.

        The new connection and the removal of the origin's capabilities are
        written in one batch, so no reader sees the origin unconnected.

        Returns:
            True if capabilities of the previous connection were dropped
        """
        origin = connection.app_origin
        async with self._lock:
            connections = await self._connections(fresh=True)
            capabilities = await self._capabilities(fresh=True)

            items = [item for item in connections if item.get("appOrigin") != origin]
            items.append(connection.to_dict())
            dropped = capabilities.pop(origin, None) is not None
            await self._write({CONNECTIONS_KEY: items, CAPABILITIES_KEY: capabilities})
        logger.info(
            f"Replaced connection for {origin} (circle={connection.circle}, "
            f"dropped grants={dropped})"
        )
        return dropped

    # -------------------------------------------------------------------------
    # Capabilities
    # -------------------------------------------------------------------------

    async def list_capabilities(self, origin: str) -> List[Capability]:
        """All stored capabilities for an origin, including expired ones."""
        capabilities = await self._capabilities()
        return [Capability.from_dict(item) for item in capabilities.get(origin, [])]

    async def active_capabilities(self, origin: str, now: int) -> List[Capability]:
        """Capabilities for an origin that are ACTIVE and not yet expired."""
        return [
            cap for cap in await self.list_capabilities(origin)
            if cap.effective_state(now) == CapabilityState.ACTIVE
        ]

    async def find_capability(self, origin: str, capability_id: str) -> Optional[Capability]:
        for cap in await self.list_capabilities(origin):
            if cap.id == capability_id:
                return cap
        return None

    async def find_capability_by_id(self, capability_id: str) -> Optional[Capability]:
        """Look a capability up across all origins."""
        for items in (await self._capabilities()).values():
            for item in items:
                if item.get("id") == capability_id:
                    return Capability.from_dict(item)
        return None

    async def add_capability(
        self,
        capability: Capability,
        now: Optional[int] = None,
        max_per_origin: Optional[int] = None,
    ) -> None:
        """Append a capability to its origin's list.

        When ``max_per_origin`` is reached, expired entries (relative to
        ``now``) are dropped first; if the list is still full the capability
        is rejected.
        """
        origin = capability.app_origin
        async with self._lock:
            capabilities = await self._capabilities(fresh=True)
            items = capabilities.get(origin, [])
            if any(item.get("id") == capability.id for item in items):
                raise ValidationError(f"Capability {capability.id} already registered")

            if max_per_origin is not None and len(items) >= max_per_origin:
                if now is not None:
                    items = [item for item in items if item.get("expiresAt", 0) > now]
                if len(items) >= max_per_origin:
                    raise ValidationError(
                        f"Too many capabilities for {origin} (max {max_per_origin})"
                    )

            items.append(capability.to_dict())
            capabilities[origin] = items
            await self._write({CAPABILITIES_KEY: capabilities})
        logger.info(
            f"Registered capability {capability.id} for {origin} "
            f"methods={capability.methods} expires_at={capability.expires_at}"
        )

    async def revoke_capability(self, origin: str, capability_id: str) -> Capability:
        """Remove a capability; returns it marked REVOKED."""
        async with self._lock:
            capabilities = await self._capabilities(fresh=True)
            items = capabilities.get(origin, [])
            match = next((item for item in items if item.get("id") == capability_id), None)
            if match is None:
                raise CapabilityNotFoundError(f"Capability not found: {capability_id}")

            capabilities[origin] = [item for item in items if item.get("id") != capability_id]
            if not capabilities[origin]:
                del capabilities[origin]
            await self._write({CAPABILITIES_KEY: capabilities})

        revoked = Capability.from_dict(match)
        revoked.state = CapabilityState.REVOKED
        logger.info(f"Revoked capability {capability_id} for {origin}")
        return revoked

    async def replace_capability(self, origin: str, old_id: str, capability: Capability) -> None:
        """Swap one capability for another in a single write (renewal)."""
        async with self._lock:
            capabilities = await self._capabilities(fresh=True)
            items = capabilities.get(origin, [])
            if not any(item.get("id") == old_id for item in items):
                raise CapabilityNotFoundError(f"Capability not found: {old_id}")

            items = [item for item in items if item.get("id") != old_id]
            items.append(capability.to_dict())
            capabilities[origin] = items
            await self._write({CAPABILITIES_KEY: capabilities})
        logger.info(f"Replaced capability {old_id} with {capability.id} for {origin}")

    async def advance_nonce(self, origin: str, capability_id: str, nonce: int) -> Capability:
        """Check ``nonce > lastNonce`` and record it, as one step.

        Raises:
            CapabilityNotFoundError: If the capability is gone
            NonceViolationError: If the nonce is not strictly greater
        """
        async with self._lock:
            capabilities = await self._capabilities(fresh=True)
            items = capabilities.get(origin, [])
            for item in items:
                if item.get("id") == capability_id:
                    break
            else:
                raise CapabilityNotFoundError(f"Capability not found: {capability_id}")

            last_nonce = item.get("lastNonce", item.get("nonceBase", 0))
            if nonce <= last_nonce:
                security_logger.warning(
                    f"Nonce replay rejected: origin={origin} capability={capability_id} "
                    f"nonce={nonce} last_nonce={last_nonce}"
                )
                raise NonceViolationError(
                    f"Nonce {nonce} must be greater than {last_nonce}"
                )

            item["lastNonce"] = nonce
            await self._write({CAPABILITIES_KEY: capabilities})
        return Capability.from_dict(item)

    async def purge_expired(self, now: int) -> int:
        """Drop expired capabilities for every origin. Returns count removed."""
        async with self._lock:
            capabilities = await self._capabilities(fresh=True)
            removed = 0
            kept: Dict[str, List[Dict[str, Any]]] = {}
            for origin, items in capabilities.items():
                alive = [item for item in items if item.get("expiresAt", 0) > now]
                removed += len(items) - len(alive)
                if alive:
                    kept[origin] = alive
            if removed:
                await self._write({CAPABILITIES_KEY: kept})
        if removed:
            logger.info(f"Purged {removed} expired capabilities")
        return removed
