"""
Rendezvous Client

Keeps one WebSocket open to the rendezvous service: registers this peer's
identifier, tracks the presence set it broadcasts, and carries signal
relays used to broker direct channels.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets

from ..registry import PRESENCE_UPDATE

logger = logging.getLogger(__name__)

PresenceCallback = Callable[[List[str]], None]
SignalCallback = Callable[[Optional[str], Dict[str, Any]], Awaitable[None]]


class SignalingClient:
    """
    Client side of the rendezvous protocol.

    Presence callbacks receive the full peer set (self included) on every
    update; filtering out self is left to the caller.
    """

    def __init__(self, url: str, identifier: str):
        self.url = url
        self.identifier = identifier

        self._ws = None
        self._listen_task: Optional[asyncio.Task] = None
        self._peers: List[str] = []
        self._presence_callbacks: List[PresenceCallback] = []
        self._signal_callbacks: List[SignalCallback] = []
        self._presence_event = asyncio.Event()
        self._running = False

    @property
    def peers(self) -> List[str]:
        """Last presence set received."""
        return list(self._peers)

    @property
    def is_connected(self) -> bool:
        return self._running

    def on_presence(self, callback: PresenceCallback):
        """Register a callback for presence updates."""
        self._presence_callbacks.append(callback)

    def on_signal(self, callback: SignalCallback):
        """Register a callback for relayed signals."""
        self._signal_callbacks.append(callback)

    async def connect(self, timeout: float = 10.0):
        """Open the WebSocket to the rendezvous service."""
        if self._running:
            return

        try:
            self._ws = await asyncio.wait_for(websockets.connect(self.url), timeout=timeout)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise ConnectionError(
                f"Could not reach rendezvous service at {self.url}: {e or 'timed out'}"
            ) from e

        self._running = True
        self._listen_task = asyncio.create_task(self._listen())
        logger.info(f"Connected to rendezvous service at {self.url}")

    async def close(self):
        """Close the connection (the service deregisters us)."""
        self._running = False

        if self._ws is not None:
            await self._ws.close()
            self._ws = None

        if self._listen_task:
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
            self._listen_task = None

        logger.info("Disconnected from rendezvous service")

    async def register(self):
        """Register our identifier."""
        await self._send({'type': 'register', 'identifier': self.identifier})
        logger.info(f"Registered as {self.identifier}")

    async def query(self):
        """Ask for the current peer set; the answer arrives as a presence update."""
        await self._send({'type': 'query'})

    async def wait_for_presence(self, timeout: float = 5.0) -> List[str]:
        """Wait for the next presence update."""
        self._presence_event.clear()
        await asyncio.wait_for(self._presence_event.wait(), timeout=timeout)
        return self.peers

    async def send_signal(self, target: str, payload: Dict[str, Any]):
        """Relay a small record to another peer through the service."""
        await self._send({'type': 'signal', 'target': target, 'payload': payload})

    async def _send(self, message: Dict[str, Any]):
        if self._ws is None or not self._running:
            raise ConnectionError("Not connected to rendezvous service")
        try:
            await self._ws.send(json.dumps(message))
        except websockets.exceptions.ConnectionClosed as e:
            raise ConnectionError(f"Rendezvous connection closed: {e}") from e

    async def _listen(self):
        """Receive and process service messages."""
        try:
            async for raw in self._ws:
                await self._handle_message(raw)
        except websockets.exceptions.ConnectionClosed as e:
            if self._running:
                logger.warning(f"Rendezvous connection lost: {e}")
        finally:
            self._running = False

    async def _handle_message(self, raw):
        try:
            message = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            logger.warning("Ignoring undecodable message from rendezvous service")
            return

        msg_type = message.get('type')

        if msg_type == PRESENCE_UPDATE:
            self._peers = list(message.get('peers') or [])
            logger.debug(f"Presence update: {self._peers}")
            self._presence_event.set()
            for callback in self._presence_callbacks:
                try:
                    callback(self.peers)
                except Exception as e:
                    logger.error(f"Callback error: {e}")

        elif msg_type == 'signal':
            source = message.get('source')
            payload = message.get('payload') or {}
            for callback in self._signal_callbacks:
                try:
                    await callback(source, payload)
                except Exception as e:
                    logger.error(f"Signal handler error: {e}")

        elif msg_type == 'error':
            logger.warning(f"Rendezvous service error: {message.get('detail')}")

        else:
            logger.debug(f"Ignoring message of type {msg_type!r}")
