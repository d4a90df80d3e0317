"""
TCP Channel

Design Decision: Framing
========================

Options Considered:
1. Newline-delimited JSON for everything
   - Simple, but payload bytes must be base64-encoded (+33%)
2. Length prefix + JSON header + data on every message
   - Works, but wraps raw chunks in a structure they do not need
3. Length prefix + one kind byte + body

Decision: Length-prefixed frames with a kind byte
- Payload chunks travel as-is (kind 0)
- Control records are JSON (kind 1)
- TCP supplies the ordered, reliable delivery the transfer protocol needs

Frame Format:
```
+----------------+-----------+----------------------------+
| Length (4B)    | Kind (1B) | Body (Length - 1 bytes)    |
+----------------+-----------+----------------------------+
```
"""

import asyncio
import json
import logging
import struct
from enum import IntEnum
from typing import Any, Awaitable, Callable, Optional, Set, Tuple

from .base import Channel

logger = logging.getLogger(__name__)

# Sanity bound, well above the largest chunk
MAX_FRAME_SIZE = 1024 * 1024


class FrameKind(IntEnum):
    """What a frame body holds."""
    PAYLOAD = 0
    RECORD = 1


def encode_frame(message: Any) -> bytes:
    """Serialize a raw chunk or a control record into one frame."""
    if isinstance(message, (bytes, bytearray, memoryview)):
        kind = FrameKind.PAYLOAD
        body = bytes(message)
    elif isinstance(message, dict):
        kind = FrameKind.RECORD
        body = json.dumps(message).encode('utf-8')
    else:
        raise TypeError(f"Cannot frame message of type {type(message).__name__}")

    if len(body) + 1 > MAX_FRAME_SIZE:
        raise ValueError(f"Frame too large: {len(body) + 1}")

    return struct.pack('>IB', len(body) + 1, kind) + body


async def read_frame(reader: asyncio.StreamReader) -> Optional[Any]:
    """
    Read one frame from a stream.

    Returns:
        bytes for payload frames, dict for records, None on clean EOF

    Raises:
        ValueError: on oversized, unknown or undecodable frames
    """
    try:
        header = await reader.readexactly(5)
    except asyncio.IncompleteReadError as e:
        if e.partial:
            raise ValueError("Connection closed inside a frame header")
        return None

    length, kind = struct.unpack('>IB', header)
    if length < 1 or length > MAX_FRAME_SIZE:
        raise ValueError(f"Invalid frame length: {length}")

    try:
        body = await reader.readexactly(length - 1)
    except asyncio.IncompleteReadError:
        raise ValueError("Connection closed inside a frame body")

    if kind == FrameKind.PAYLOAD:
        return body
    if kind == FrameKind.RECORD:
        try:
            record = json.loads(body.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValueError(f"Undecodable record frame: {e}")
        if not isinstance(record, dict):
            raise ValueError("Record frame is not an object")
        return record

    raise ValueError(f"Unknown frame kind: {kind}")


class TcpChannel(Channel):
    """
    Channel over one TCP connection.

    Outbound channels are created with a host/port and connect on open();
    inbound channels wrap an accepted stream pair.
    """

    def __init__(self, peer_id: str = '', host: Optional[str] = None,
                 port: Optional[int] = None, connect_timeout: float = 10.0):
        super().__init__(peer_id)
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._closed_event = asyncio.Event()
        # Serialize frame writes
        self._lock = asyncio.Lock()

    @classmethod
    def from_streams(cls, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                     peer_id: str = '') -> 'TcpChannel':
        """Wrap an already-connected stream pair."""
        channel = cls(peer_id=peer_id)
        channel._reader = reader
        channel._writer = writer
        if not peer_id:
            address = channel.remote_address
            if address:
                channel.peer_id = f"{address[0]}:{address[1]}"
        return channel

    @property
    def remote_address(self) -> Optional[Tuple[str, int]]:
        """Get remote peer address."""
        if self._writer is None:
            return None
        peername = self._writer.get_extra_info('peername')
        return tuple(peername[:2]) if peername else None

    async def open(self):
        if self._open:
            return
        if self._closed:
            raise ConnectionError("Channel already closed")

        if self._writer is None:
            try:
                self._reader, self._writer = await asyncio.wait_for(
                    asyncio.open_connection(self.host, self.port),
                    timeout=self.connect_timeout
                )
            except (OSError, asyncio.TimeoutError) as e:
                raise ConnectionError(
                    f"Failed to connect to {self.host}:{self.port}: {e or 'timed out'}"
                ) from e

        self._open = True
        logger.debug(f"Channel to {self.peer_id} open")
        await self._emit_open()

        if self._open:
            self._read_task = asyncio.create_task(self._read_loop())

    async def send(self, message: Any):
        if not self._open:
            raise ConnectionError(f"Channel to {self.peer_id} is not open")

        frame = encode_frame(message)
        async with self._lock:
            self._writer.write(frame)
            await self._writer.drain()

    async def close(self):
        if self._closed:
            return

        self._open = False
        self._closed = True

        if self._read_task is not None and self._read_task is not asyncio.current_task():
            self._read_task.cancel()

        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except OSError as e:
                logger.debug(f"Error while closing channel to {self.peer_id}: {e}")

        logger.debug(f"Channel to {self.peer_id} closed")
        self._closed_event.set()
        await self._emit_close()

    async def wait_closed(self):
        """Wait until the channel has closed."""
        await self._closed_event.wait()

    async def _read_loop(self):
        try:
            while self._open:
                message = await read_frame(self._reader)
                if message is None:
                    logger.debug(f"Channel to {self.peer_id}: remote closed")
                    break
                await self._emit_data(message)
        except (ValueError, OSError) as e:
            logger.warning(f"Channel to {self.peer_id} failed: {e}")
            await self._emit_error(e)

        await self.close()


# Called with each accepted (not yet open) channel
ChannelAcceptor = Callable[[TcpChannel], Awaitable[None]]


class ChannelServer:
    """
    TCP server accepting inbound point-to-point channels.

    Each accepted connection becomes a TcpChannel, handed to the acceptor
    before it opens so handlers can be attached first.
    """

    def __init__(self, acceptor: ChannelAcceptor, host: str = '0.0.0.0',
                 port: int = 8469):
        self.acceptor = acceptor
        self.host = host
        self.port = port
        self.server: Optional[asyncio.AbstractServer] = None
        self._channels: Set[TcpChannel] = set()
        self._running = False

        # Statistics
        self.channels_accepted = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Start the channel server."""
        self.server = await asyncio.start_server(
            self._handle_connection,
            self.host,
            self.port
        )
        self._running = True

        addr = self.server.sockets[0].getsockname()
        # Port 0 binds an ephemeral port
        self.port = addr[1]
        logger.info(f"Channel server listening on {addr[0]}:{addr[1]}")

    async def stop(self):
        """Stop the channel server and close open channels."""
        self._running = False

        for channel in list(self._channels):
            await channel.close()

        if self.server:
            self.server.close()
            await self.server.wait_closed()
            self.server = None
            logger.info("Channel server stopped")

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter):
        """Handle an incoming connection."""
        channel = TcpChannel.from_streams(reader, writer)
        self._channels.add(channel)
        self.channels_accepted += 1
        logger.debug(f"New channel from {channel.peer_id}")

        try:
            await self.acceptor(channel)
            await channel.open()
            await channel.wait_closed()
        except Exception as e:
            logger.error(f"Error handling channel from {channel.peer_id}: {e}")
        finally:
            await channel.close()
            self._channels.discard(channel)

    def get_stats(self) -> dict:
        """Get channel server statistics."""
        return {
            'port': self.port,
            'running': self._running,
            'channels_accepted': self.channels_accepted,
            'open_channels': len(self._channels),
        }
