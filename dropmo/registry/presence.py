"""
Presence Registry

Design Decision: Membership Updates
===================================

Options Considered:
1. Send deltas (joined/left) on each change
   - Less bandwidth
   - Clients drift out of sync if a delta is lost
2. Send the full identifier set on each change

Decision: Full set, every time
- presence-update always carries the complete membership
- A client's view is simply replaced, never patched
- Membership lists are small; bandwidth is not a concern

Concurrency:
- One asyncio.Lock guards the map AND each broadcast pass, so a broadcast
  never observes a half-applied register/deregister
- Within a pass, delivery fans out concurrently; every delivery is
  independent and best-effort (a dead connection is logged and skipped,
  and its transport-level disconnect later deregisters it)
- Each delivery is bounded by send_timeout, so a connection that stops
  reading cannot hold the lock for everyone else

Connection handles are opaque to the registry; the only requirement is an
awaitable send_json(data) method (a FastAPI WebSocket satisfies it).
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

PRESENCE_UPDATE = "presence-update"

# Seconds one connection may take to accept a message
DEFAULT_SEND_TIMEOUT = 5.0


def presence_update(peers: List[str]) -> Dict[str, Any]:
    """Build a presence-update message."""
    return {'type': PRESENCE_UPDATE, 'peers': peers}


@dataclass
class PresenceRecord:
    """Record that an identifier is currently reachable."""
    identifier: str
    handle: Any
    registered_at: float = field(default_factory=time.time)


class PresenceRegistry:
    """
    Process-wide map of endpoint identifier -> connection handle.

    - register(identifier, handle): upsert, last writer wins, broadcast
    - deregister(handle): remove the handle's record, broadcast
    - snapshot(): current identifiers

    The registry does not filter a connection's own identifier out of what
    it sends; excluding self is up to the client.
    """

    def __init__(self, send_timeout: float = DEFAULT_SEND_TIMEOUT):
        self.send_timeout = send_timeout

        # Insertion ordered: snapshots list peers in registration order
        self._records: Dict[str, PresenceRecord] = {}
        self._lock = asyncio.Lock()

        # Statistics
        self.broadcast_count = 0
        self.failed_deliveries = 0

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, identifier: str) -> bool:
        return identifier in self._records

    async def register(self, identifier: str, handle: Any) -> PresenceRecord:
        """
        Insert or replace the record for an identifier and broadcast.

        A handle holds at most one identifier: registering it under a new
        identifier drops the old one.
        """
        if not identifier:
            raise ValueError("Identifier must be a non-empty string")

        async with self._lock:
            previous = self._identifier_for(handle)
            if previous is not None and previous != identifier:
                del self._records[previous]
                logger.info(f"Connection re-registered: {previous} -> {identifier}")

            existing = self._records.get(identifier)
            if existing is not None and existing.handle is not handle:
                logger.info(f"Replacing connection for peer {identifier}")

            record = PresenceRecord(identifier=identifier, handle=handle)
            self._records[identifier] = record
            logger.info(f"Registered peer {identifier} ({len(self._records)} online)")

            await self._broadcast_locked()

        return record

    async def deregister(self, handle: Any) -> Optional[str]:
        """
        Remove the record owned by a handle and broadcast.

        No-op (and no broadcast) if the handle never registered, or lost its
        identifier to a later registration.

        Returns:
            The identifier removed, or None
        """
        async with self._lock:
            identifier = self._identifier_for(handle)
            if identifier is None:
                logger.debug("Deregister for unregistered connection ignored")
                return None

            del self._records[identifier]
            logger.info(f"Deregistered peer {identifier} ({len(self._records)} online)")

            await self._broadcast_locked()

        return identifier

    def snapshot(self) -> List[str]:
        """Get the identifiers currently registered."""
        return list(self._records)

    def get_record(self, identifier: str) -> Optional[PresenceRecord]:
        return self._records.get(identifier)

    def lookup(self, identifier: str) -> Optional[Any]:
        """Get the connection handle registered for an identifier."""
        record = self._records.get(identifier)
        return record.handle if record else None

    def identifier_for(self, handle: Any) -> Optional[str]:
        """Get the identifier a handle is registered under."""
        return self._identifier_for(handle)

    async def broadcast(self):
        """Push the current snapshot to every registered connection."""
        async with self._lock:
            await self._broadcast_locked()

    async def send_snapshot(self, handle: Any) -> bool:
        """Send the current snapshot to a single connection."""
        return await self._deliver(handle, presence_update(self.snapshot()))

    async def _broadcast_locked(self):
        peers = self.snapshot()
        message = presence_update(peers)
        handles = [record.handle for record in self._records.values()]
        self.broadcast_count += 1

        logger.debug(f"Broadcasting active peers to {len(handles)} connections: {peers}")
        await asyncio.gather(*(self._deliver(handle, message) for handle in handles))

    async def _deliver(self, handle: Any, message: Dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(handle.send_json(message), timeout=self.send_timeout)
            return True
        except asyncio.TimeoutError:
            self.failed_deliveries += 1
            identifier = self._identifier_for(handle) or 'unregistered'
            logger.warning(f"Delivery of {message.get('type')} to {identifier} timed out "
                           f"after {self.send_timeout:g}s")
            return False
        except Exception as e:
            self.failed_deliveries += 1
            identifier = self._identifier_for(handle) or 'unregistered'
            logger.warning(f"Failed to deliver {message.get('type')} to {identifier}: {e}")
            return False

    def _identifier_for(self, handle: Any) -> Optional[str]:
        for identifier, record in self._records.items():
            if record.handle is handle:
                return identifier
        return None

    def get_stats(self) -> dict:
        """Get registry statistics."""
        return {
            'online_peers': len(self._records),
            'broadcasts': self.broadcast_count,
            'failed_deliveries': self.failed_deliveries,
        }
