"""Pending requests waiting on a user decision.

Each pending request is an asyncio future registered under
``(kind, origin)``. At most one exists per pair: registering another fails
the previous one with RequestSupersededError. Resolution and timeout both
remove the registration, and whichever happens first wins; a late decision
finds nothing to match and is dropped.

A record of each pending request is mirrored to the shared store so UI
contexts can render it.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..core.clock import Clock, now_ms
from ..errors import (
    CapVaultError,
    RequestSupersededError,
    RequestTimeoutError,
    StorageError,
)
from ..registry.kv import KeyValueStore
from .messages import PendingKind

logger = logging.getLogger(__name__)

PendingKey = Tuple[PendingKind, str]


@dataclass
class PendingRequest:
    """A parked request awaiting a user decision."""

    kind: PendingKind
    origin: str
    correlation_id: int
    created_at: int
    payload: Dict[str, Any] = field(default_factory=dict)
    future: asyncio.Future = field(default=None, repr=False, compare=False)

    @property
    def key(self) -> PendingKey:
        return (self.kind, self.origin)

    def to_record(self) -> Dict[str, Any]:
        """Form written to the shared store for UI contexts."""
        return {
            "kind": self.kind.value,
            "appOrigin": self.origin,
            "correlationId": self.correlation_id,
            "createdAt": self.created_at,
            "data": self.payload,
        }


class PendingRegistry:
    """Futures for pending requests, keyed by (kind, origin)."""

    def __init__(self, store: KeyValueStore, clock: Clock = now_ms) -> None:
        self.store = store
        self.clock = clock
        self._pending: Dict[PendingKey, PendingRequest] = {}
        self._ids = itertools.count(1)
        self._io_lock = asyncio.Lock()

    def get(self, kind: PendingKind, origin: str) -> Optional[PendingRequest]:
        return self._pending.get((kind, origin))

    def list(self) -> List[PendingRequest]:
        return list(self._pending.values())

    def __len__(self) -> int:
        return len(self._pending)

    # -------------------------------------------------------------------------
    # Persistence of pending records
    # -------------------------------------------------------------------------

    async def _persist(self, pending: PendingRequest) -> None:
        async with self._io_lock:
            records = await self.store.get(pending.kind.store_key) or {}
            records[pending.origin] = pending.to_record()
            await self.store.set(pending.kind.store_key, records)

    async def _unpersist(self, pending: PendingRequest) -> None:
        try:
            async with self._io_lock:
                records = await self.store.get(pending.kind.store_key) or {}
                record = records.get(pending.origin)
                if record is None or record.get("correlationId") != pending.correlation_id:
                    return
                del records[pending.origin]
                await self.store.set(pending.kind.store_key, records or None)
        except Exception as e:
            logger.warning(
                f"Failed to clear pending {pending.kind.value} record for {pending.origin}: {e}"
            )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def open(self, kind: PendingKind, origin: str, payload: Dict[str, Any]) -> PendingRequest:
        """Register a pending request, superseding any prior one for the pair."""
        previous = self._pending.pop((kind, origin), None)
        if previous is not None and not previous.future.done():
            logger.info(
                f"Pending {kind.value} #{previous.correlation_id} for {origin} "
                f"superseded"
            )
            previous.future.set_exception(
                RequestSupersededError("Superseded by a newer request")
            )

        pending = PendingRequest(
            kind=kind,
            origin=origin,
            correlation_id=next(self._ids),
            created_at=self.clock(),
            payload=payload,
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending[pending.key] = pending

        try:
            await self._persist(pending)
        except Exception as e:
            self._discard(pending)
            pending.future.cancel()
            raise StorageError(f"Failed to record pending {kind.value} request: {e}") from e

        logger.info(f"Pending {kind.value} #{pending.correlation_id} opened for {origin}")
        return pending

    def _discard(self, pending: PendingRequest) -> bool:
        if self._pending.get(pending.key) is pending:
            del self._pending[pending.key]
            return True
        return False

    async def wait(self, pending: PendingRequest, timeout: float) -> Any:
        """Wait for the decision, failing with RequestTimeoutError after ``timeout``."""
        try:
            return await asyncio.wait_for(asyncio.shield(pending.future), timeout)
        except asyncio.TimeoutError:
            if self._discard(pending):
                pending.future.cancel()
                await self._unpersist(pending)
                logger.info(
                    f"Pending {pending.kind.value} #{pending.correlation_id} "
                    f"for {pending.origin} timed out after {timeout}s"
                )
                raise RequestTimeoutError(f"{pending.kind.value} request timed out") from None
            # Decided right at the deadline.
            return pending.future.result()
        except asyncio.CancelledError:
            if self._discard(pending):
                pending.future.cancel()
                await self._unpersist(pending)
            raise

    async def resolve(
        self,
        kind: PendingKind,
        origin: str,
        result: Any = None,
        error: Optional[CapVaultError] = None,
        correlation_id: Optional[int] = None,
    ) -> bool:
        """Deliver a decision. Returns False for stale or unmatched decisions."""
        pending = self._pending.get((kind, origin))
        if pending is None:
            logger.info(f"Ignoring {kind.value} decision for {origin}: nothing pending")
            return False
        if correlation_id is not None and correlation_id != pending.correlation_id:
            logger.info(
                f"Ignoring stale {kind.value} decision #{correlation_id} for {origin} "
                f"(current #{pending.correlation_id})"
            )
            return False

        self._discard(pending)
        if not pending.future.done():
            if error is not None:
                pending.future.set_exception(error)
            else:
                pending.future.set_result(result)
        await self._unpersist(pending)
        return True

    async def shutdown(self) -> None:
        """Fail every pending request and clear their records."""
        pending_requests = list(self._pending.values())
        self._pending.clear()
        for pending in pending_requests:
            if not pending.future.done():
                pending.future.set_exception(RequestTimeoutError("Broker shutting down"))
            await self._unpersist(pending)

    async def fail_origin(self, origin: str, error_type: type[CapVaultError], message: str) -> int:
        """Fail every pending request of one origin (used on disconnect)."""
        matching = [p for p in self._pending.values() if p.origin == origin]
        for pending in matching:
            self._discard(pending)
            if not pending.future.done():
                pending.future.set_exception(error_type(message))
            await self._unpersist(pending)
        return len(matching)
