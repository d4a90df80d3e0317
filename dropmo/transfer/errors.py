"""Exception classes for the transfer protocol."""

from typing import Optional


class TransferError(Exception):
    """
    Base exception class for all transfer-related errors.
    """
    pass


class ProtocolViolationError(TransferError):
    """
    Raised when a message arrives that is not legal in the session's phase.
    """

    def __init__(self, message: str, phase: Optional[str] = None):
        self.message = message
        self.phase = phase
        super().__init__(message)

    def __str__(self) -> str:
        # phase may be filled in after construction by the failing session
        if self.phase:
            return f"{self.message} (phase: {self.phase})"
        return self.message


class ChannelFailedError(TransferError):
    """
    Raised when the underlying channel errors or closes mid-transfer.
    """

    def __init__(self, message: str, peer_id: str = '', bytes_transferred: int = 0):
        self.peer_id = peer_id
        self.bytes_transferred = bytes_transferred
        super().__init__(
            f"{message} (peer: {peer_id or 'unknown'}, "
            f"bytes transferred: {bytes_transferred:,})"
        )


class ReadyTimeoutError(ChannelFailedError):
    """
    Raised when the receiver never signals readiness within the allowed time.
    """
    pass


class SizeMismatchError(TransferError):
    """
    Raised when the reassembled payload does not match the declared size.
    """

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Reassembled {actual:,} bytes but metadata declared {expected:,}"
        )
