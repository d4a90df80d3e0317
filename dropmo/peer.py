"""
Peer Node - Main Controller

Orchestrates one peer:
- Rendezvous client for presence and channel brokering
- Channel server accepting direct channels from other peers
- Receiver sessions for inbound transfers, stored to the download dir
- Sender sessions (one per recipient) for outbound transfers
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set

import aiofiles

from .channel.tcp import ChannelServer, TcpChannel
from .signaling import SignalingClient, SignalingConnector
from .transfer import (
    MAX_CHUNK_SIZE, ReceiverSession, TransferMetadata, TransferResult,
    describe_file, send_to_many
)
from .transfer.session import ProgressCallback

logger = logging.getLogger(__name__)


def generate_identifier() -> str:
    """Generate a random peer identifier."""
    return f"peer-{uuid.uuid4().hex[:8]}"


@dataclass
class PeerConfig:
    """Configuration for a peer node."""
    # Identity
    identifier: Optional[str] = None  # Generated if not provided

    # Rendezvous
    signaling_url: str = 'ws://localhost:3000/ws'

    # Direct channels
    host: str = '0.0.0.0'
    channel_port: int = 8469
    advertise_host: str = '127.0.0.1'

    # Storage
    download_dir: Path = field(default_factory=lambda: Path('./downloads'))

    # Transfer
    chunk_size: int = MAX_CHUNK_SIZE
    channel_open_timeout: float = 10.0
    ready_timeout: float = 30.0


@dataclass
class ReceivedFile:
    """A completed inbound transfer, stored on disk."""
    peer_id: str
    file_name: str
    mime_type: str
    size: int
    path: Path


FileCallback = Callable[[ReceivedFile], None]
PeerChangeCallback = Callable[[List[str]], None]


class PeerNode:
    """
    A complete dropmo peer.

    - start() / stop()
    - send(file_path, targets): drop a file on one or more peers
    - get_peers(): other peers currently online
    - on_file_received(callback): completed inbound transfers
    """

    def __init__(self, config: PeerConfig = None):
        """
        Initialize a peer node.

        Args:
            config: Peer configuration (uses defaults if not provided)
        """
        self.config = config or PeerConfig()
        self.identifier = self.config.identifier or generate_identifier()

        self.download_dir = Path(self.config.download_dir)

        self.signaling = SignalingClient(self.config.signaling_url, self.identifier)
        self.channel_server = ChannelServer(
            self._accept_channel,
            host=self.config.host,
            port=self.config.channel_port,
        )
        self.connector: Optional[SignalingConnector] = None

        self._sessions: Set[ReceiverSession] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._file_callbacks: List[FileCallback] = []
        self._progress_callbacks: List[ProgressCallback] = []
        self._running = False

        # Statistics
        self.files_received = 0
        self.bytes_received = 0
        self.files_sent = 0
        self.bytes_sent = 0
        self.failed_transfers = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def on_file_received(self, callback: FileCallback):
        """Register a callback for completed inbound transfers."""
        self._file_callbacks.append(callback)

    def on_receive_progress(self, callback: ProgressCallback):
        """Register a callback for inbound transfer progress."""
        self._progress_callbacks.append(callback)

    def on_peer_change(self, callback: PeerChangeCallback):
        """Register a callback for presence changes (self excluded)."""
        self.signaling.on_presence(lambda peers: callback(self._without_self(peers)))

    async def start(self):
        """
        Start the peer.

        1. Channel server for inbound channels
        2. Rendezvous connection and registration
        """
        if self._running:
            return

        logger.info(f"Starting peer {self.identifier}...")
        self.download_dir.mkdir(parents=True, exist_ok=True)

        await self.channel_server.start()
        self.connector = SignalingConnector(
            self.signaling,
            advertise_host=self.config.advertise_host,
            advertise_port=self.channel_server.port,
            open_timeout=self.config.channel_open_timeout,
        )

        try:
            await self.signaling.connect(timeout=self.config.channel_open_timeout)
            await self.signaling.register()
        except ConnectionError:
            await self.channel_server.stop()
            raise

        self._running = True
        logger.info(f"Peer started")
        logger.info(f"  Identifier: {self.identifier}")
        logger.info(f"  Channel Port: {self.channel_server.port}")
        logger.info(f"  Download Dir: {self.download_dir}")

    async def stop(self):
        """Stop the peer."""
        if not self._running:
            return

        logger.info("Stopping peer...")
        self._running = False

        await self.signaling.close()
        await self.channel_server.stop()

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        logger.info("Peer stopped")

    # === Transfers ===

    async def send(self, file_path: Path, targets: Iterable[str],
                   progress_callback: ProgressCallback = None) -> Dict[str, TransferResult]:
        """
        Send a file to one or more peers.

        Each target gets its own channel and session; a failure for one
        target never affects the others.

        Returns:
            Mapping of target -> TransferResult
        """
        if not self._running:
            raise RuntimeError("Peer is not running")

        file_path = Path(file_path)
        metadata = describe_file(file_path)

        results = await send_to_many(
            self.connector,
            targets,
            file_path,
            metadata,
            chunk_size=self.config.chunk_size,
            ready_timeout=self.config.ready_timeout or None,
            progress_callback=progress_callback,
        )

        for result in results.values():
            if result.succeeded:
                self.files_sent += 1
                self.bytes_sent += result.bytes_transferred
            else:
                self.failed_transfers += 1

        return results

    async def _accept_channel(self, channel: TcpChannel):
        """Attach a receiver session to an inbound channel before it opens."""
        session = ReceiverSession(channel, on_progress=self._notify_progress)
        await session.attach()
        self._sessions.add(session)

        task = asyncio.create_task(self._finish_inbound(session))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _finish_inbound(self, session: ReceiverSession):
        try:
            result = await session.wait()
        finally:
            self._sessions.discard(session)

        if not result.succeeded:
            self.failed_transfers += 1
            return

        path = await self._store(result.metadata, result.payload)
        received = ReceivedFile(
            peer_id=result.peer_id,
            file_name=result.metadata.file_name,
            mime_type=result.metadata.mime_type,
            size=len(result.payload),
            path=path,
        )
        self.files_received += 1
        self.bytes_received += received.size
        logger.info(f"Saved {received.file_name} to {path}")

        for callback in self._file_callbacks:
            try:
                callback(received)
            except Exception as e:
                logger.error(f"Callback error: {e}")

    async def _store(self, metadata: TransferMetadata, payload: bytes) -> Path:
        """Write a received payload into the download dir under a free name."""
        name = self._safe_name(metadata.file_name)
        counter = 0
        while True:
            path = self._numbered_path(name, counter)
            try:
                # 'x' claims the name atomically; a concurrent store moves on
                async with aiofiles.open(path, 'xb') as f:
                    await f.write(payload)
                return path
            except FileExistsError:
                counter += 1

    @staticmethod
    def _safe_name(file_name: str) -> str:
        # Only the final component: never write outside download_dir
        name = Path(file_name.replace('\\', '/')).name
        if name in ('', '.', '..'):
            name = 'download'
        return name

    def _numbered_path(self, name: str, counter: int) -> Path:
        if counter == 0:
            return self.download_dir / name
        return self.download_dir / f"{Path(name).stem} ({counter}){Path(name).suffix}"

    def _notify_progress(self, progress):
        for callback in self._progress_callbacks:
            try:
                callback(progress)
            except Exception as e:
                logger.error(f"Callback error: {e}")

    # === Network Info ===

    def _without_self(self, peers: List[str]) -> List[str]:
        return [p for p in peers if p != self.identifier]

    def get_peers(self) -> List[str]:
        """Get other peers currently online."""
        return self._without_self(self.signaling.peers)

    async def refresh_peers(self, timeout: float = 5.0) -> List[str]:
        """Ask the rendezvous service for the current peer set."""
        waiter = asyncio.create_task(self.signaling.wait_for_presence(timeout))
        # Let the waiter arm before the reply can arrive
        await asyncio.sleep(0)
        await self.signaling.query()
        await waiter
        return self.get_peers()

    def get_full_stats(self) -> dict:
        """Get complete peer statistics."""
        return {
            'identifier': self.identifier,
            'running': self._running,
            'online_peers': len(self.get_peers()),
            'active_receives': len(self._sessions),
            'files_received': self.files_received,
            'bytes_received': self.bytes_received,
            'files_sent': self.files_sent,
            'bytes_sent': self.bytes_sent,
            'failed_transfers': self.failed_transfers,
            'channel_server': self.channel_server.get_stats(),
        }
