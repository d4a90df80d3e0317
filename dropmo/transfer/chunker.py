"""
Chunk Codec

Design Decision: Chunk Size
===========================

Options Considered:
| Size    | Pros                          | Cons                           |
|---------|-------------------------------|--------------------------------|
| 16KB    | Safe for every data channel   | Many messages per file         |
| 64KB    | Good balance, fits one frame  | -                              |
| 256KB   | Lower overhead                | Large in-flight buffers        |

Decision: 64KB (65,536 bytes) maximum
- One chunk is one message on the channel
- Bounds memory to a single in-flight frame per session
- Final chunk may be shorter; an empty source yields no chunks

Sequencing Strategy: Implicit
- Chunks carry no index; position is arrival order
- Only valid over an ordered, reliable channel (see channel.base)
- Reassembly is plain concatenation, checked against the declared size
"""

from pathlib import Path
from typing import AsyncIterator, BinaryIO, Iterable, Iterator, Optional, Union

import aiofiles

from .errors import SizeMismatchError

# Maximum chunk size: 64KB
MAX_CHUNK_SIZE = 64 * 1024  # 65,536 bytes

ByteSource = Union[bytes, bytearray, memoryview, BinaryIO]


def get_chunk_count(total_size: int, chunk_size: int = MAX_CHUNK_SIZE) -> int:
    """Calculate number of chunks for a payload of given size."""
    return (total_size + chunk_size - 1) // chunk_size


def _check_chunk_size(max_chunk_size: int):
    if max_chunk_size <= 0:
        raise ValueError(f"Chunk size must be positive, got {max_chunk_size}")


def split(source: ByteSource, max_chunk_size: int = MAX_CHUNK_SIZE) -> Iterator[bytes]:
    """
    Split a byte source into chunks.

    The source is either an in-memory buffer or a binary file object. Slices
    are produced lazily: the next slice is only read when the previous one
    has been consumed.

    Yields:
        Byte slices of at most max_chunk_size, in order
    """
    _check_chunk_size(max_chunk_size)

    if hasattr(source, 'read'):
        while True:
            chunk = source.read(max_chunk_size)
            if not chunk:
                break
            yield bytes(chunk)
        return

    view = memoryview(source)
    for offset in range(0, len(view), max_chunk_size):
        yield bytes(view[offset:offset + max_chunk_size])


async def split_file(file_path: Path,
                     max_chunk_size: int = MAX_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """
    Split a file into chunks (async version).

    Yields:
        Byte slices of at most max_chunk_size, in order
    """
    _check_chunk_size(max_chunk_size)

    async with aiofiles.open(file_path, 'rb') as f:
        while True:
            chunk = await f.read(max_chunk_size)
            if not chunk:
                break
            yield chunk


async def iter_chunks(source: Union[ByteSource, Path],
                      max_chunk_size: int = MAX_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """Iterate chunks of either a file path or an in-memory source."""
    if isinstance(source, Path):
        async for chunk in split_file(source, max_chunk_size):
            yield chunk
    else:
        for chunk in split(source, max_chunk_size):
            yield chunk


def reassemble(chunks: Iterable[bytes], total_size: Optional[int] = None) -> bytes:
    """
    Concatenate chunks, in arrival order, into one payload.

    Args:
        chunks: Buffered chunks
        total_size: Declared size from the transfer metadata

    Raises:
        SizeMismatchError: if the result does not match total_size exactly
    """
    payload = b''.join(chunks)

    if total_size is not None and len(payload) != total_size:
        raise SizeMismatchError(expected=total_size, actual=len(payload))

    return payload
