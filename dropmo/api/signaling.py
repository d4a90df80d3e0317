"""
Rendezvous Service

Design Decision: Signaling Transport
====================================

Options Considered:
1. HTTP polling - Simple, but presence changes arrive late
2. Raw TCP with custom framing - Full control, no browser support
3. WebSocket behind FastAPI - Push updates, JSON text frames,
   shares one app with the HTTP views

Decision: FastAPI WebSocket
- Each WebSocket is a registry connection handle (it has send_json)
- Disconnect is detected by the transport and always deregisters
- Plain HTTP views for "who is online" without a socket

Wire Messages (JSON text frames on /ws):
```
client -> server  {"type": "register", "identifier": "alice"}
client -> server  {"type": "query"}
client -> server  {"type": "signal", "target": "bob", "payload": {...}}
server -> client  {"type": "presence-update", "peers": ["alice", "bob"]}
server -> client  {"type": "signal", "source": "alice", "payload": {...}}
server -> client  {"type": "error", "detail": "..."}
```

File payloads never pass through this service; signal relays only carry
the small records peers use to set up a direct channel.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Any, Dict, List, Literal, Optional, Set, Union

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .. import __version__
from ..registry import PresenceRegistry

logger = logging.getLogger(__name__)

# === Pydantic Models ===

class RegisterMessage(BaseModel):
    """Register the connection under an identifier."""
    type: Literal['register']
    identifier: str = Field(min_length=1)


class QueryMessage(BaseModel):
    """Ask for the current peer set."""
    type: Literal['query']


class SignalMessage(BaseModel):
    """Relay a small record to another registered peer."""
    type: Literal['signal']
    target: str = Field(min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)


ClientMessage = Annotated[
    Union[RegisterMessage, QueryMessage, SignalMessage],
    Field(discriminator='type'),
]

_client_messages = TypeAdapter(ClientMessage)


class ServiceInfo(BaseModel):
    """Service status response."""
    name: str
    version: str
    online_peers: int


class PeerList(BaseModel):
    """Currently registered peers."""
    peers: List[str]


class PeerInfo(BaseModel):
    """One registered peer."""
    identifier: str
    registered_at: float


# === API Creation ===

def create_app(registry: Optional[PresenceRegistry] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        registry: PresenceRegistry to serve (a new one if not provided)

    Returns:
        FastAPI application
    """
    registry = registry if registry is not None else PresenceRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown."""
        logger.info("Rendezvous service starting...")
        yield
        logger.info("Rendezvous service stopping...")

    app = FastAPI(
        title="dropmo Rendezvous",
        description="Peer presence and signal relay for direct file drops",
        version=__version__,
        lifespan=lifespan,
    )

    # Peers may connect from any origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.registry = registry

    # === HTTP Endpoints ===

    @app.get("/", response_model=ServiceInfo, tags=["General"])
    async def root():
        """Service root - basic info."""
        return ServiceInfo(
            name="dropmo rendezvous",
            version=__version__,
            online_peers=len(registry),
        )

    @app.get("/peers", response_model=PeerList, tags=["Presence"])
    async def list_peers():
        """List registered peers."""
        return PeerList(peers=registry.snapshot())

    @app.get("/peers/{identifier}", response_model=PeerInfo, tags=["Presence"])
    async def get_peer(identifier: str):
        """Check whether one peer is online."""
        record = registry.get_record(identifier)
        if record is None:
            raise HTTPException(status_code=404, detail=f"Peer not online: {identifier}")

        return PeerInfo(identifier=record.identifier, registered_at=record.registered_at)

    @app.get("/stats", tags=["Presence"])
    async def get_stats():
        """Get registry statistics."""
        return registry.get_stats()

    # === Signaling ===

    # Deregistrations still running after their handler was cancelled
    cleanups: Set[asyncio.Task] = set()

    @app.websocket("/ws")
    async def signaling_socket(websocket: WebSocket):
        """Registry connection: one per peer."""
        await websocket.accept()
        client = _describe(websocket)
        logger.info(f"User connected: {client}")

        try:
            while True:
                frame = await websocket.receive()
                if frame['type'] == 'websocket.disconnect':
                    logger.info(f"User disconnected: {client}")
                    break

                text = frame.get('text')
                if text is None:
                    logger.warning(f"Binary frame from {client} rejected")
                    await _send_error(websocket, "Invalid message: expected a JSON text frame")
                    continue

                await _handle_message(websocket, text)
        except WebSocketDisconnect:
            logger.info(f"User disconnected: {client}")
        finally:
            # Must complete even if the handler is cancelled on teardown
            cleanup = asyncio.ensure_future(registry.deregister(websocket))
            cleanups.add(cleanup)
            cleanup.add_done_callback(cleanups.discard)
            await asyncio.shield(cleanup)

    return app


async def _handle_message(websocket: WebSocket, text: str):
    """Dispatch one client message."""
    registry: PresenceRegistry = websocket.app.state.registry

    try:
        message = _client_messages.validate_json(text)
    except ValidationError as e:
        errors = e.errors()
        detail = errors[0]['msg'] if errors else str(e)
        logger.warning(f"Invalid message from {_describe(websocket)}: {detail}")
        await _send_error(websocket, f"Invalid message: {detail}")
        return

    if isinstance(message, RegisterMessage):
        await registry.register(message.identifier, websocket)

    elif isinstance(message, QueryMessage):
        await registry.send_snapshot(websocket)

    elif isinstance(message, SignalMessage):
        await _relay_signal(registry, websocket, message)


async def _relay_signal(registry: PresenceRegistry, websocket: WebSocket,
                        message: SignalMessage):
    """Forward a signal to its target, tagged with the sender's identifier."""
    target = registry.lookup(message.target)
    if target is None:
        await _send_error(websocket, f"Unknown peer: {message.target}")
        return

    source = registry.identifier_for(websocket)
    try:
        await target.send_json({
            'type': 'signal',
            'source': source,
            'payload': message.payload,
        })
        logger.debug(f"Relayed signal {source} -> {message.target}")
    except Exception as e:
        logger.warning(f"Failed to relay signal to {message.target}: {e}")
        await _send_error(websocket, f"Could not reach peer: {message.target}")


async def _send_error(websocket: WebSocket, detail: str):
    try:
        await websocket.send_json({'type': 'error', 'detail': detail})
    except Exception as e:
        logger.debug(f"Could not send error to {_describe(websocket)}: {e}")


def _describe(websocket: WebSocket) -> str:
    client = websocket.client
    return f"{client.host}:{client.port}" if client else "unknown"


async def run_signaling_server(host: str = "0.0.0.0", port: int = 3000,
                               registry: Optional[PresenceRegistry] = None,
                               log_level: str = "info"):
    """
    Run the rendezvous service.

    Args:
        host: Host to bind to
        port: Port to listen on
        registry: Registry instance to serve
        log_level: uvicorn log level
    """
    import uvicorn

    app = create_app(registry)

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level=log_level.lower(),
    )
    server = uvicorn.Server(config)
    logger.info(f"Rendezvous service listening on {host}:{port}")
    await server.serve()
