"""
Registry Module - Peer Presence

Tracks which endpoints are reachable and broadcasts membership changes.
"""

from .presence import PresenceRegistry, PresenceRecord, presence_update, PRESENCE_UPDATE

__all__ = ['PresenceRegistry', 'PresenceRecord', 'presence_update', 'PRESENCE_UPDATE']
