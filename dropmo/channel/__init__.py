"""
Channel Module - Point-to-Point Channels

Ordered, reliable channels the transfer protocol runs over.
"""

from .base import Channel, ChannelConnector
from .memory import MemoryChannel, MemoryNetwork, MemoryConnector
from .tcp import TcpChannel, ChannelServer

__all__ = [
    'Channel',
    'ChannelConnector',
    'MemoryChannel',
    'MemoryNetwork',
    'MemoryConnector',
    'TcpChannel',
    'ChannelServer',
]
