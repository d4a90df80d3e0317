"""
In-Process Channels

A pair of linked channels backed by asyncio queues. Delivery is ordered and
reliable, and a close is queued behind any data already in flight, the same
guarantee a TCP FIN gives. Used for tests and single-process demos.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from .base import Channel, ChannelConnector

logger = logging.getLogger(__name__)

# Queued behind in-flight data when the remote end closes
_CLOSE = object()

Acceptor = Callable[[Channel], Awaitable[None]]


class MemoryChannel(Channel):
    """One end of an in-process channel pair."""

    def __init__(self, peer_id: str = ''):
        super().__init__(peer_id)
        self._remote: Optional['MemoryChannel'] = None
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._pump_task: Optional[asyncio.Task] = None

    @classmethod
    def pair(cls, local_id: str, remote_id: str) -> Tuple['MemoryChannel', 'MemoryChannel']:
        """
        Create two linked ends.

        Returns:
            (local, remote) where local.peer_id is remote_id and vice versa
        """
        local = cls(peer_id=remote_id)
        remote = cls(peer_id=local_id)
        local._remote = remote
        remote._remote = local
        return local, remote

    async def open(self):
        """Open this end, then the remote end if it is still waiting."""
        if self._open:
            return
        if self._closed:
            raise ConnectionError("Channel already closed")

        self._open = True
        self._pump_task = asyncio.create_task(self._pump())
        await self._emit_open()

        remote = self._remote
        if remote is not None and not remote.is_open and not remote.is_closed:
            await remote.open()

    async def send(self, message: Any):
        if not self._open:
            raise ConnectionError(f"Channel to {self.peer_id} is not open")

        remote = self._remote
        if remote is None or remote.is_closed:
            raise ConnectionError(f"Channel to {self.peer_id} was closed by the remote end")

        if isinstance(message, dict):
            message = dict(message)
        await remote._inbox.put(message)
        # Let the receiving end run between sends
        await asyncio.sleep(0)

    async def close(self):
        if self._closed:
            return

        self._open = False
        self._closed = True

        remote = self._remote
        if remote is not None and not remote.is_closed:
            if remote.is_open:
                remote._inbox.put_nowait(_CLOSE)
            else:
                await remote.close()

        if self._pump_task is not None and self._pump_task is not asyncio.current_task():
            self._pump_task.cancel()

        logger.debug(f"Memory channel to {self.peer_id} closed")
        await self._emit_close()

    async def fail(self, error: Exception):
        """Simulate a transport error: report it, then close."""
        await self._emit_error(error)
        await self.close()

    async def _pump(self):
        while not self._closed:
            message = await self._inbox.get()
            if message is _CLOSE:
                await self.close()
                return
            await self._emit_data(message)


class MemoryNetwork:
    """
    In-process switchboard mapping identifiers to acceptors.

    Each listening identifier gets the remote end of every channel opened
    to it, before that channel opens.
    """

    channel_class = MemoryChannel

    def __init__(self):
        self._acceptors: Dict[str, Acceptor] = {}

    def listen(self, identifier: str, acceptor: Acceptor):
        self._acceptors[identifier] = acceptor

    def unlisten(self, identifier: str):
        self._acceptors.pop(identifier, None)

    def connector(self, local_id: str) -> 'MemoryConnector':
        return MemoryConnector(self, local_id)

    async def connect(self, source: str, target: str) -> MemoryChannel:
        acceptor = self._acceptors.get(target)
        if acceptor is None:
            raise ConnectionError(f"No peer listening as {target}")

        local, remote = self.channel_class.pair(source, target)
        await acceptor(remote)
        return local


class MemoryConnector(ChannelConnector):
    """Opens in-process channels on behalf of one identifier."""

    def __init__(self, network: MemoryNetwork, local_id: str):
        self.network = network
        self.local_id = local_id

    async def open(self, target: str) -> Channel:
        return await self.network.connect(self.local_id, target)
