"""
Transfer Messages

Design Decision: Message Discrimination
=======================================

Control signals and payload chunks share one channel. Options Considered:
1. Wrap every chunk in a record with a type field
   - Uniform, but copies every payload byte into a container
2. Sniff the shape of an untyped payload
   - Fragile: decoding raw bytes as a record is undefined
3. Tagged union: raw bytes are payload, records carry a discriminator

Decision: Tagged union
- Payload chunks travel as raw byte buffers, unwrapped
- Control messages are records with an explicit "type" field
- Decoding checks for a raw byte buffer FIRST, then the discriminator

Wire records:
```
{"type": "ready"}
{"type": "ready-ack"}
{"type": "metadata", "file_name": "x.txt", "mime_type": "text/plain", "total_size": 10}
```
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Dict, Union

from .errors import ProtocolViolationError


class ControlType(Enum):
    """Control message discriminators."""
    READY = "ready"
    READY_ACK = "ready-ack"
    METADATA = "metadata"


@dataclass(frozen=True)
class Ready:
    """Receiver is attached and ready to consume chunks."""
    type: ClassVar[ControlType] = ControlType.READY

    def to_record(self) -> Dict[str, Any]:
        return {'type': self.type.value}


@dataclass(frozen=True)
class ReadyAck:
    """Sender saw the ready signal; metadata follows."""
    type: ClassVar[ControlType] = ControlType.READY_ACK

    def to_record(self) -> Dict[str, Any]:
        return {'type': self.type.value}


@dataclass(frozen=True)
class TransferMetadata:
    """Describes the payload that follows. Sent once per transfer."""
    file_name: str
    mime_type: str
    total_size: int

    type: ClassVar[ControlType] = ControlType.METADATA

    def to_record(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'file_name': self.file_name,
            'mime_type': self.mime_type,
            'total_size': self.total_size,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'file_name': self.file_name,
            'mime_type': self.mime_type,
            'total_size': self.total_size,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'TransferMetadata':
        try:
            file_name = str(record['file_name'])
            mime_type = str(record.get('mime_type') or 'application/octet-stream')
            total_size = record['total_size']
        except KeyError as e:
            raise ProtocolViolationError(f"Metadata missing field {e}")

        if isinstance(total_size, bool) or not isinstance(total_size, int) or total_size < 0:
            raise ProtocolViolationError(f"Invalid total_size in metadata: {total_size!r}")

        return cls(file_name=file_name, mime_type=mime_type, total_size=total_size)


ControlMessage = Union[Ready, ReadyAck, TransferMetadata]
Message = Union[ControlMessage, bytes]

# Wire form handed to / received from a channel
WireMessage = Union[bytes, Dict[str, Any]]


def is_payload(raw: Any) -> bool:
    """True if a wire message is a raw payload chunk."""
    return isinstance(raw, (bytes, bytearray, memoryview))


def encode(message: Message) -> WireMessage:
    """Convert a message to its wire form."""
    if is_payload(message):
        return bytes(message)
    return message.to_record()


def decode(raw: WireMessage) -> Message:
    """
    Convert a wire message back into a typed message.

    Raises:
        ProtocolViolationError: for records without a known discriminator
    """
    # Raw buffers must be recognised before looking for a discriminator
    if is_payload(raw):
        return bytes(raw)

    if not isinstance(raw, dict):
        raise ProtocolViolationError(f"Unrecognised message of type {type(raw).__name__}")

    try:
        msg_type = ControlType(raw.get('type'))
    except ValueError:
        raise ProtocolViolationError(f"Unknown control message type: {raw.get('type')!r}")

    if msg_type == ControlType.READY:
        return Ready()
    if msg_type == ControlType.READY_ACK:
        return ReadyAck()
    return TransferMetadata.from_record(raw)
