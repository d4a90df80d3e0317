"""
API Module - Rendezvous Service

Provides the WebSocket signaling endpoint and HTTP presence views.
"""

from .signaling import create_app, run_signaling_server

__all__ = ['create_app', 'run_signaling_server']
