"""
Multi-Recipient Send

One logical send becomes one independent SenderSession per recipient.
Sessions share nothing but the (immutable) source; a failure in one never
cancels or delays the others.
"""

import asyncio
import logging
import mimetypes
from pathlib import Path
from typing import Dict, Iterable, Optional, Union

from ..channel.base import ChannelConnector
from .chunker import MAX_CHUNK_SIZE
from .errors import ChannelFailedError, TransferError
from .messages import TransferMetadata
from .session import (
    ErrorCallback, ProgressCallback, SenderSession, TransferPhase,
    TransferResult, TransferRole
)

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = 'application/octet-stream'

# Shared between sessions, so it must be re-readable: bytes or a file path
SharedSource = Union[bytes, Path]


def guess_mime_type(file_path: Path) -> str:
    """Guess MIME type from file extension."""
    mime_type, _ = mimetypes.guess_type(str(file_path))
    return mime_type or DEFAULT_MIME_TYPE


def describe_file(file_path: Path) -> TransferMetadata:
    """Build transfer metadata for a file on disk."""
    file_path = Path(file_path)
    if not file_path.is_file():
        raise FileNotFoundError(f"File not found: {file_path}")

    return TransferMetadata(
        file_name=file_path.name,
        mime_type=guess_mime_type(file_path),
        total_size=file_path.stat().st_size,
    )


def _failed(target: str, metadata: TransferMetadata, error: TransferError) -> TransferResult:
    return TransferResult(
        peer_id=target,
        role=TransferRole.SENDER,
        phase=TransferPhase.FAILED,
        bytes_transferred=0,
        metadata=metadata,
        error=error,
    )


async def send_to_peer(connector: ChannelConnector, target: str,
                       source: SharedSource, metadata: TransferMetadata,
                       chunk_size: int = MAX_CHUNK_SIZE,
                       ready_timeout: Optional[float] = None,
                       progress_callback: Optional[ProgressCallback] = None,
                       error_callback: Optional[ErrorCallback] = None) -> TransferResult:
    """
    Open a channel to one target and run a sender session over it.

    Returns:
        The session's result; never raises for transfer or channel failures
    """
    try:
        channel = await connector.open(target)
    except (ConnectionError, TransferError, asyncio.TimeoutError) as e:
        logger.error(f"Could not open channel to {target}: {e}")
        error = e if isinstance(e, TransferError) else ChannelFailedError(
            f"Could not open channel: {e}", peer_id=target
        )
        if error_callback:
            error_callback(error)
        return _failed(target, metadata, error)

    session = SenderSession(
        channel,
        source=source,
        metadata=metadata,
        chunk_size=chunk_size,
        ready_timeout=ready_timeout,
        on_progress=progress_callback,
        on_error=error_callback,
    )
    await session.attach()

    try:
        await channel.open()
    except ConnectionError as e:
        await session.fail(ChannelFailedError(f"Could not open channel: {e}", peer_id=target))

    result = await session.wait()
    await channel.close()
    return result


async def send_to_many(connector: ChannelConnector, targets: Iterable[str],
                       source: SharedSource, metadata: TransferMetadata,
                       chunk_size: int = MAX_CHUNK_SIZE,
                       ready_timeout: Optional[float] = None,
                       progress_callback: Optional[ProgressCallback] = None,
                       error_callback: Optional[ErrorCallback] = None) -> Dict[str, TransferResult]:
    """
    Send the same payload to several recipients concurrently.

    Returns:
        Mapping of target identifier -> TransferResult
    """
    # Duplicates would open two sessions to one peer
    targets = list(dict.fromkeys(targets))
    if not targets:
        return {}

    logger.info(f"Sending {metadata.file_name} to {len(targets)} peer(s)")

    outcomes = await asyncio.gather(
        *(
            send_to_peer(
                connector, target, source, metadata,
                chunk_size=chunk_size,
                ready_timeout=ready_timeout,
                progress_callback=progress_callback,
                error_callback=error_callback,
            )
            for target in targets
        ),
        return_exceptions=True,
    )

    results: Dict[str, TransferResult] = {}
    for target, outcome in zip(targets, outcomes):
        if isinstance(outcome, BaseException):
            logger.error(f"Send to {target} raised: {outcome}")
            outcome = _failed(target, metadata, TransferError(str(outcome)))
        results[target] = outcome

    succeeded = sum(1 for r in results.values() if r.succeeded)
    logger.info(f"Send of {metadata.file_name} finished: "
                f"{succeeded}/{len(results)} succeeded")
    return results
