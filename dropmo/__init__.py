"""
dropmo - rendezvous-brokered peer-to-peer file drop.

A lightweight rendezvous service tracks which peers are online; files move
directly between peers over a point-to-point channel using a small chunked
transfer protocol.
"""

__version__ = "1.0.0"
