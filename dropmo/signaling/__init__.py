"""
Signaling Module - Rendezvous Client

Presence tracking and channel brokering through the rendezvous service.
"""

from .client import SignalingClient
from .broker import SignalingConnector

__all__ = ['SignalingClient', 'SignalingConnector']
