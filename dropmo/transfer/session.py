"""
Transfer Session

Design Decision: Session Model
==============================

Options Considered:
1. Callbacks closing over loose local variables
   - Compact, but illegal transitions corrupt state silently
2. One coroutine per side reading messages in a loop
   - Linear to read, but open/close/error events arrive out of band
3. Explicit state machine with a single dispatch function

Decision: Explicit state machine
- Phase is an enum value owned by the session instance
- Every inbound message goes through one dispatch function
- Illegal messages become ProtocolViolationError -> FAILED, never ignored
- Channel close or error drives any unfinished session to FAILED

Phases:
```
receiver: IDLE -> AWAITING_READY -> STREAMING_METADATA -> STREAMING_CHUNKS -> COMPLETE
sender:   IDLE -> AWAITING_ACK -> STREAMING_METADATA -> STREAMING_CHUNKS -> COMPLETE
either:   any -> FAILED
```

Handshake:
```
receiver                       sender
   | <----- channel open -----> |
   | -- ready ----------------> |   sender waits for this, not for open
   | <--------------- ready-ack |
   | <---------------- metadata |
   | <------------- chunk x N   |
```

Concurrency: a session is single-writer. Its state is only mutated from
the owning channel's callbacks and, for the sender, the one transmission
task it starts; all of them run on the same event loop. Sessions share no
state with each other.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Union

from ..channel.base import Channel
from .chunker import MAX_CHUNK_SIZE, ByteSource, iter_chunks, reassemble
from .errors import (
    ChannelFailedError, ProtocolViolationError, ReadyTimeoutError,
    SizeMismatchError, TransferError
)
from .messages import (
    Message, Ready, ReadyAck, TransferMetadata, WireMessage, decode, encode
)

logger = logging.getLogger(__name__)


class TransferRole(Enum):
    """Which end of the channel a session runs on."""
    SENDER = "sender"
    RECEIVER = "receiver"


class TransferPhase(Enum):
    """Transfer session phases."""
    IDLE = "idle"
    AWAITING_READY = "awaiting_ready"
    AWAITING_ACK = "awaiting_ack"
    STREAMING_METADATA = "streaming_metadata"
    STREAMING_CHUNKS = "streaming_chunks"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferPhase.COMPLETE, TransferPhase.FAILED)


@dataclass
class TransferProgress:
    """Progress snapshot reported after every chunk."""
    role: TransferRole
    peer_id: str
    file_name: str
    bytes_transferred: int
    total_size: int

    @property
    def progress(self) -> float:
        """Progress as 0.0 to 1.0."""
        if self.total_size == 0:
            return 1.0
        return min(self.bytes_transferred / self.total_size, 1.0)

    @property
    def progress_percent(self) -> float:
        """Progress as percentage."""
        return self.progress * 100

    def to_dict(self) -> dict:
        return {
            'role': self.role.value,
            'peer_id': self.peer_id,
            'file_name': self.file_name,
            'bytes_transferred': self.bytes_transferred,
            'total_size': self.total_size,
            'progress_percent': self.progress_percent,
        }


@dataclass
class TransferResult:
    """Outcome of one session."""
    peer_id: str
    role: TransferRole
    phase: TransferPhase
    bytes_transferred: int
    metadata: Optional[TransferMetadata] = None
    payload: Optional[bytes] = None
    error: Optional[TransferError] = None

    @property
    def succeeded(self) -> bool:
        return self.phase == TransferPhase.COMPLETE

    def to_dict(self) -> dict:
        return {
            'peer_id': self.peer_id,
            'role': self.role.value,
            'phase': self.phase.value,
            'bytes_transferred': self.bytes_transferred,
            'metadata': self.metadata.to_dict() if self.metadata else None,
            'error': str(self.error) if self.error else None,
        }


# Presentation callbacks
ProgressCallback = Callable[[TransferProgress], None]
CompleteCallback = Callable[[str, str, bytes], None]  # (file_name, mime_type, payload)
ErrorCallback = Callable[[TransferError], None]


class TransferSession:
    """
    Base class for one end of a transfer over one channel.

    Subclasses implement dispatch() and _handle_open().
    """

    role: TransferRole

    def __init__(self, channel: Channel,
                 on_progress: Optional[ProgressCallback] = None,
                 on_error: Optional[ErrorCallback] = None):
        self.channel = channel
        self.phase = TransferPhase.IDLE
        self.metadata: Optional[TransferMetadata] = None
        self.bytes_transferred = 0
        self.error: Optional[TransferError] = None
        self.failed_in: Optional[TransferPhase] = None

        self._on_progress = on_progress
        self._on_error = on_error
        self._done: Optional[asyncio.Future] = None

    @property
    def peer_id(self) -> str:
        return self.channel.peer_id

    @property
    def is_finished(self) -> bool:
        return self.phase.is_terminal

    async def attach(self):
        """
        Subscribe to the channel's events.

        If the channel is already open, the open handler runs immediately.
        """
        self.channel.on_open(self._handle_open)
        self.channel.on_data(self.handle)
        self.channel.on_close(self._handle_close)
        self.channel.on_error(self._handle_channel_error)

        if self.channel.is_open:
            await self._handle_open()
        elif self.channel.is_closed:
            await self._handle_close()

    async def handle(self, raw: WireMessage):
        """Single entry point for every inbound message."""
        if self.phase.is_terminal:
            logger.debug(f"Ignoring message from {self.peer_id} after {self.phase.value}")
            return

        try:
            message = decode(raw)
            await self.dispatch(message)
        except TransferError as e:
            await self.fail(e)

    async def dispatch(self, message: Message):
        raise NotImplementedError

    async def _handle_open(self):
        raise NotImplementedError

    async def fail(self, error: TransferError):
        """Move to FAILED, report, and close the channel."""
        if self.phase.is_terminal:
            return

        if isinstance(error, ProtocolViolationError) and error.phase is None:
            error.phase = self.phase.value

        self.error = error
        self.failed_in = self.phase
        self._transition(TransferPhase.FAILED)
        logger.error(f"Transfer ({self.role.value}) with {self.peer_id} failed "
                     f"in {self.failed_in.value}: {error}")

        self._notify(self._on_error, error)
        self._resolve()

        if not self.channel.is_closed:
            await self.channel.close()

    async def wait(self) -> TransferResult:
        """Wait for the session to finish."""
        await self._future()
        return self.result()

    def result(self) -> TransferResult:
        return TransferResult(
            peer_id=self.peer_id,
            role=self.role,
            phase=self.phase,
            bytes_transferred=self.bytes_transferred,
            metadata=self.metadata,
            error=self.error,
        )

    def progress(self) -> TransferProgress:
        return TransferProgress(
            role=self.role,
            peer_id=self.peer_id,
            file_name=self.metadata.file_name if self.metadata else '',
            bytes_transferred=self.bytes_transferred,
            total_size=self.metadata.total_size if self.metadata else 0,
        )

    def _complete(self):
        self._transition(TransferPhase.COMPLETE)
        self._resolve()

    def _transition(self, phase: TransferPhase):
        logger.debug(f"Session ({self.role.value}) with {self.peer_id}: "
                     f"{self.phase.value} -> {phase.value}")
        self.phase = phase

    def _violation(self, what: str) -> ProtocolViolationError:
        return ProtocolViolationError(f"Unexpected {what}", phase=self.phase.value)

    def _report_progress(self):
        self._notify(self._on_progress, self.progress())

    def _notify(self, callback, *args):
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Callback error: {e}", exc_info=True)

    def _future(self) -> asyncio.Future:
        if self._done is None:
            self._done = asyncio.get_running_loop().create_future()
            if self.phase.is_terminal:
                self._done.set_result(None)
        return self._done

    def _resolve(self):
        future = self._future()
        if not future.done():
            future.set_result(None)

    async def _handle_close(self):
        if not self.phase.is_terminal:
            await self.fail(ChannelFailedError(
                "Channel closed before transfer completed",
                peer_id=self.peer_id,
                bytes_transferred=self.bytes_transferred,
            ))

    async def _handle_channel_error(self, error: Exception):
        if not self.phase.is_terminal:
            await self.fail(ChannelFailedError(
                f"Channel error: {error}",
                peer_id=self.peer_id,
                bytes_transferred=self.bytes_transferred,
            ))

    def __repr__(self) -> str:
        return (f"<{type(self).__name__} peer={self.peer_id!r} "
                f"phase={self.phase.value} bytes={self.bytes_transferred}>")


class ReceiverSession(TransferSession):
    """
    Receiving end: signals ready, takes metadata, buffers chunks and
    surfaces the assembled payload once the declared size is reached.
    """

    role = TransferRole.RECEIVER

    def __init__(self, channel: Channel,
                 on_progress: Optional[ProgressCallback] = None,
                 on_complete: Optional[CompleteCallback] = None,
                 on_error: Optional[ErrorCallback] = None):
        super().__init__(channel, on_progress=on_progress, on_error=on_error)
        self._on_complete = on_complete
        self._chunks: List[bytes] = []
        self._ready_sent = False
        self.payload: Optional[bytes] = None

    async def _handle_open(self):
        # Exactly one ready per channel, however late open fires
        if self._ready_sent or self.phase.is_terminal:
            return

        self._ready_sent = True
        self._transition(TransferPhase.AWAITING_READY)
        try:
            await self.channel.send(encode(Ready()))
        except ConnectionError as e:
            await self.fail(ChannelFailedError(
                f"Failed to send ready: {e}", peer_id=self.peer_id
            ))

    async def dispatch(self, message: Message):
        if self.phase == TransferPhase.IDLE:
            # Data beat the open event
            await self._handle_open()
            if self.phase.is_terminal:
                return

        if isinstance(message, bytes):
            await self._receive_chunk(message)
        elif isinstance(message, ReadyAck):
            self._receive_ack()
        elif isinstance(message, TransferMetadata):
            await self._receive_metadata(message)
        else:
            raise self._violation(f"{type(message).__name__} from sender")

    def _receive_ack(self):
        if self.phase == TransferPhase.AWAITING_READY:
            self._transition(TransferPhase.STREAMING_METADATA)
        else:
            logger.debug(f"Redundant ready-ack from {self.peer_id}")

    async def _receive_metadata(self, metadata: TransferMetadata):
        if self.phase != TransferPhase.STREAMING_METADATA:
            raise self._violation("metadata")

        self.metadata = metadata
        self._chunks = []
        self.bytes_transferred = 0
        self._transition(TransferPhase.STREAMING_CHUNKS)
        logger.info(f"Receiving {metadata.file_name} ({metadata.total_size:,} bytes) "
                    f"from {self.peer_id}")

        self._report_progress()
        if metadata.total_size == 0:
            await self._assemble()

    async def _receive_chunk(self, chunk: bytes):
        if self.phase != TransferPhase.STREAMING_CHUNKS:
            raise self._violation("payload chunk")

        total_size = self.metadata.total_size
        received = self.bytes_transferred + len(chunk)
        if received > total_size:
            raise SizeMismatchError(expected=total_size, actual=received)

        self._chunks.append(chunk)
        self.bytes_transferred = received
        logger.debug(f"Chunk from {self.peer_id}: {len(chunk)} bytes "
                     f"({received:,}/{total_size:,})")

        self._report_progress()
        if self.bytes_transferred >= total_size:
            await self._assemble()

    async def _assemble(self):
        payload = reassemble(self._chunks, self.metadata.total_size)
        self._chunks = []
        self.payload = payload
        self._complete()

        logger.info(f"Received {self.metadata.file_name} from {self.peer_id} "
                    f"({len(payload):,} bytes)")
        self._notify(self._on_complete, self.metadata.file_name,
                     self.metadata.mime_type, payload)

    def result(self) -> TransferResult:
        result = super().result()
        result.payload = self.payload
        return result


class SenderSession(TransferSession):
    """
    Sending end: waits for the receiver's ready, acknowledges it, then
    streams metadata and chunks one at a time.
    """

    role = TransferRole.SENDER

    def __init__(self, channel: Channel, source: Union[ByteSource, Path],
                 metadata: TransferMetadata,
                 chunk_size: int = MAX_CHUNK_SIZE,
                 ready_timeout: Optional[float] = None,
                 on_progress: Optional[ProgressCallback] = None,
                 on_error: Optional[ErrorCallback] = None):
        super().__init__(channel, on_progress=on_progress, on_error=on_error)
        if not 0 < chunk_size <= MAX_CHUNK_SIZE:
            raise ValueError(f"Chunk size must be between 1 and {MAX_CHUNK_SIZE}, "
                             f"got {chunk_size}")

        self.source = source
        self.metadata = metadata
        self.chunk_size = chunk_size
        self.ready_timeout = ready_timeout

        self._ack_sent = False
        self._transmit_task: Optional[asyncio.Task] = None
        self._ready_watch: Optional[asyncio.Task] = None

    async def _handle_open(self):
        # Sending waits for ready: the receiver may not be attached yet
        if self.phase != TransferPhase.IDLE:
            return

        self._transition(TransferPhase.AWAITING_ACK)
        if self.ready_timeout and self.ready_timeout > 0:
            self._ready_watch = asyncio.create_task(self._watch_ready())

    async def dispatch(self, message: Message):
        if not isinstance(message, Ready):
            name = 'payload chunk' if isinstance(message, bytes) else type(message).__name__
            raise self._violation(f"{name} from receiver")

        if self._ack_sent:
            logger.debug(f"Duplicate ready from {self.peer_id}")
            return

        if self.phase == TransferPhase.IDLE:
            self._transition(TransferPhase.AWAITING_ACK)

        self._ack_sent = True
        self._cancel_ready_watch()

        try:
            await self.channel.send(encode(ReadyAck()))
        except ConnectionError as e:
            await self.fail(ChannelFailedError(
                f"Failed to send ready-ack: {e}", peer_id=self.peer_id
            ))
            return

        self._transmit_task = asyncio.create_task(self._transmit())

    async def fail(self, error: TransferError):
        self._cancel_ready_watch()
        await super().fail(error)

    async def _transmit(self):
        """Send metadata, then each chunk as soon as the previous one is handed off."""
        try:
            self._transition(TransferPhase.STREAMING_METADATA)
            await self.channel.send(encode(self.metadata))

            self._transition(TransferPhase.STREAMING_CHUNKS)
            logger.info(f"Sending {self.metadata.file_name} "
                        f"({self.metadata.total_size:,} bytes) to {self.peer_id}")
            self._report_progress()

            async for chunk in iter_chunks(self.source, self.chunk_size):
                if self.phase.is_terminal:
                    return
                await self.channel.send(chunk)
                self.bytes_transferred += len(chunk)
                self._report_progress()

            if self.phase.is_terminal:
                return

            if self.bytes_transferred != self.metadata.total_size:
                raise SizeMismatchError(expected=self.metadata.total_size,
                                        actual=self.bytes_transferred)

            self._complete()
            logger.info(f"Sent {self.metadata.file_name} to {self.peer_id}")

        except TransferError as e:
            await self.fail(e)
        except ConnectionError as e:
            await self.fail(ChannelFailedError(
                f"Send failed: {e}",
                peer_id=self.peer_id,
                bytes_transferred=self.bytes_transferred,
            ))
        except OSError as e:
            await self.fail(TransferError(f"Failed to read source: {e}"))
        except Exception as e:
            logger.error(f"Unexpected error sending to {self.peer_id}: {e}", exc_info=True)
            await self.fail(TransferError(str(e)))

    async def _watch_ready(self):
        await asyncio.sleep(self.ready_timeout)
        if not self._ack_sent and not self.phase.is_terminal:
            await self.fail(ReadyTimeoutError(
                f"No ready signal within {self.ready_timeout:g}s",
                peer_id=self.peer_id,
            ))

    def _cancel_ready_watch(self):
        watch = self._ready_watch
        if watch is not None and watch is not asyncio.current_task():
            watch.cancel()
        self._ready_watch = None
