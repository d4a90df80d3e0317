"""
Transfer Module - Chunked File Transfer

Runs the ready/ack handshake, metadata exchange and chunk streaming over an
established point-to-point channel.
"""

from .chunker import MAX_CHUNK_SIZE, split, split_file, reassemble
from .errors import (
    TransferError, ProtocolViolationError, ChannelFailedError,
    ReadyTimeoutError, SizeMismatchError
)
from .messages import Ready, ReadyAck, TransferMetadata
from .session import (
    TransferPhase, TransferRole, TransferProgress, TransferResult,
    SenderSession, ReceiverSession
)
from .fanout import send_to_peer, send_to_many, describe_file

__all__ = [
    'MAX_CHUNK_SIZE',
    'split',
    'split_file',
    'reassemble',
    'TransferError',
    'ProtocolViolationError',
    'ChannelFailedError',
    'ReadyTimeoutError',
    'SizeMismatchError',
    'Ready',
    'ReadyAck',
    'TransferMetadata',
    'TransferPhase',
    'TransferRole',
    'TransferProgress',
    'TransferResult',
    'SenderSession',
    'ReceiverSession',
    'send_to_peer',
    'send_to_many',
    'describe_file',
]
