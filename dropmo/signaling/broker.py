"""
Channel Brokering

Design Decision: Finding the Target's Address
=============================================

Options Considered:
1. Store network addresses in the presence registry
   - Couples the registry to one channel type
2. Offer/answer exchange over the signal relay
   - Registry stays identifier-only
   - Same shape as WebRTC offer/answer, so the channel type can change

Decision: Offer/answer over the relay
```
alice                 rendezvous                  bob
  | -- signal(offer, id) --> | -- signal(offer) --> |
  | <-- signal(answer) ----- | <-- answer(host,port)|
  | ==================== TCP channel =============> |
```
The answer only tells the caller where to connect; the transfer
protocol proper starts once the channel opens.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional, Tuple

from ..channel.base import Channel, ChannelConnector
from ..channel.tcp import TcpChannel
from ..transfer.errors import ChannelFailedError
from .client import SignalingClient

logger = logging.getLogger(__name__)

OFFER = 'offer'
ANSWER = 'answer'


class SignalingConnector(ChannelConnector):
    """
    Opens TCP channels to peers known only by identifier.

    Also answers offers from other peers with our own channel address.
    """

    def __init__(self, client: SignalingClient, advertise_host: str,
                 advertise_port: int, open_timeout: float = 10.0):
        self.client = client
        self.advertise_host = advertise_host
        self.advertise_port = advertise_port
        self.open_timeout = open_timeout

        # request_id -> (target, future)
        self._pending: Dict[str, Tuple[str, asyncio.Future]] = {}

        self.client.on_signal(self._handle_signal)

    async def open(self, target: str) -> Channel:
        """
        Ask the target where to connect and return an unopened channel.

        Raises:
            ChannelFailedError: if the target does not answer in time
        """
        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (target, future)

        try:
            await self.client.send_signal(target, {'kind': OFFER, 'request_id': request_id})
            host, port = await asyncio.wait_for(future, timeout=self.open_timeout)
        except asyncio.TimeoutError:
            raise ChannelFailedError(
                f"No answer within {self.open_timeout:g}s", peer_id=target
            )
        finally:
            self._pending.pop(request_id, None)

        logger.debug(f"Peer {target} answered with {host}:{port}")
        return TcpChannel(peer_id=target, host=host, port=port,
                          connect_timeout=self.open_timeout)

    async def _handle_signal(self, source: Optional[str], payload: Dict[str, Any]):
        kind = payload.get('kind')

        if kind == OFFER:
            await self._answer(source, payload)
        elif kind == ANSWER:
            self._accept_answer(source, payload)
        else:
            logger.debug(f"Ignoring signal of kind {kind!r} from {source}")

    async def _answer(self, source: Optional[str], payload: Dict[str, Any]):
        if not source:
            logger.warning("Ignoring offer from an unregistered connection")
            return

        logger.debug(f"Answering offer from {source}")
        await self.client.send_signal(source, {
            'kind': ANSWER,
            'request_id': payload.get('request_id'),
            'host': self.advertise_host,
            'port': self.advertise_port,
        })

    def _accept_answer(self, source: Optional[str], payload: Dict[str, Any]):
        pending = self._pending.get(payload.get('request_id'))
        if pending is None:
            logger.debug(f"Ignoring unsolicited answer from {source}")
            return

        target, future = pending
        if source != target:
            logger.warning(f"Answer for {target} arrived from {source}; ignored")
            return

        host = payload.get('host')
        port = payload.get('port')
        if not isinstance(host, str) or not isinstance(port, int):
            logger.warning(f"Malformed answer from {source}: {payload}")
            return

        if not future.done():
            future.set_result((host, port))
