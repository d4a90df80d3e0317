"""
Point-to-Point Channel Contract

Transfer sessions run over a channel supplied by an outside collaborator.
The only thing a session assumes is this narrow interface:

    open()            establish the channel (no-op if already open)
    send(message)     raw bytes (payload) or a dict record (control)
    close()           tear down; fires on_close exactly once
    is_open           current state
    on_open / on_data / on_close / on_error   async callback registration

Precondition: ORDERED, RELIABLE delivery
========================================
Chunks carry no sequence numbers. Their position in the file is their
arrival order, so every implementation must deliver messages in the order
they were sent, without loss or duplication, and must deliver a close only
after all data sent before it. Layering the protocol over a lossy or
unordered transport requires adding explicit sequence numbers first.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, List

logger = logging.getLogger(__name__)

OpenCallback = Callable[[], Awaitable[None]]
DataCallback = Callable[[Any], Awaitable[None]]
CloseCallback = Callable[[], Awaitable[None]]
ErrorCallback = Callable[[Exception], Awaitable[None]]


class Channel(ABC):
    """
    Base class for ordered, reliable point-to-point channels.

    Subclasses implement open/send/close and call the _emit_* helpers.
    """

    ordered_reliable = True

    def __init__(self, peer_id: str = ''):
        self.peer_id = peer_id
        self._open = False
        self._closed = False

        self._open_callbacks: List[OpenCallback] = []
        self._data_callbacks: List[DataCallback] = []
        self._close_callbacks: List[CloseCallback] = []
        self._error_callbacks: List[ErrorCallback] = []

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def is_closed(self) -> bool:
        return self._closed

    def on_open(self, callback: OpenCallback):
        """Register a callback fired when the channel opens."""
        self._open_callbacks.append(callback)

    def on_data(self, callback: DataCallback):
        """Register a callback fired for each received message."""
        self._data_callbacks.append(callback)

    def on_close(self, callback: CloseCallback):
        """Register a callback fired once when the channel closes."""
        self._close_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback):
        """Register a callback fired on transport errors."""
        self._error_callbacks.append(callback)

    @abstractmethod
    async def open(self):
        """Establish the channel."""

    @abstractmethod
    async def send(self, message: Any):
        """Send a raw payload chunk or a control record."""

    @abstractmethod
    async def close(self):
        """Close the channel."""

    async def _emit_open(self):
        for callback in list(self._open_callbacks):
            await self._run_callback(callback)

    async def _emit_data(self, message: Any):
        for callback in list(self._data_callbacks):
            await self._run_callback(callback, message)

    async def _emit_close(self):
        for callback in list(self._close_callbacks):
            await self._run_callback(callback)

    async def _emit_error(self, error: Exception):
        for callback in list(self._error_callbacks):
            await self._run_callback(callback, error)

    async def _run_callback(self, callback, *args):
        try:
            await callback(*args)
        except Exception as e:
            logger.error(f"Callback error on channel to {self.peer_id or 'peer'}: {e}",
                         exc_info=True)

    def __repr__(self) -> str:
        state = 'open' if self._open else ('closed' if self._closed else 'new')
        return f"<{type(self).__name__} peer={self.peer_id!r} {state}>"


class ChannelConnector(ABC):
    """Opens channels to peers by endpoint identifier."""

    @abstractmethod
    async def open(self, target: str) -> Channel:
        """
        Create a channel to the target identifier.

        The returned channel is not yet open: attach handlers first,
        then call channel.open().
        """
