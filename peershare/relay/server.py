"""Relay server implementation for facilitating WebRTC peer connections.

The relay server (or signaling server) is a lightweight server accessible by
all peers (e.g., has a public IP address) that facilitates the establishment
of peer WebRTC connections.
"""
from __future__ import annotations

import dataclasses
import logging
import sys

import websockets.exceptions
from websockets.asyncio.server import ServerConnection

from peershare.exceptions import TargetPeerUnknown
from peershare.relay.manager import Peer
from peershare.relay.manager import PeerRegistry
from peershare.relay.messages import AnswerMessage
from peershare.relay.messages import decode_signaling_message
from peershare.relay.messages import encode_signaling_message
from peershare.relay.messages import IceCandidateMessage
from peershare.relay.messages import OfferMessage
from peershare.relay.messages import PeerIdMessage
from peershare.relay.messages import RoutedMessage
from peershare.relay.messages import SignalingMessage
from peershare.relay.messages import SignalingMessageDecodeError
from peershare.relay.messages import SignalingMessageEncodeError

logger = logging.getLogger(__name__)

_ROUTED_TYPES = (OfferMessage, AnswerMessage, IceCandidateMessage)


class RelayServer:
    """WebRTC signaling relay server.

    The relay server acts as a public third-party that helps two peers
    establish a peer-to-peer connection. Each connection is assigned an
    opaque identifier which other peers use to address offers, answers, and
    ICE candidates to it. The server forwards these messages without
    inspecting their contents, replacing the claimed sender with the
    sender's registered identifier. After the peers are connected they no
    longer need the relay server.

    To learn more about the WebRTC peer connection process, check out
    https://webrtc.org/getting-started/peer-connections.

    The relay server is built on websockets and designed to be
    served using [`serve()`][peershare.relay.run.serve].

    Args:
        registry: Registry of connected peers. A new, empty registry is
            created if not provided.
        max_message_bytes: Optional maximum size of client messages in bytes.
            Clients that send oversized messages will have their connections
            closed. Note that message size is computed using
            [`sys.getsizeof()`][sys.getsizeof] so will also include the
            PyObject overhead.
    """

    def __init__(
        self,
        registry: PeerRegistry | None = None,
        *,
        max_message_bytes: int | None = None,
    ) -> None:
        self._registry = PeerRegistry() if registry is None else registry
        self._max_message_bytes = max_message_bytes

    @property
    def registry(self) -> PeerRegistry:
        """Registry of connected peers."""
        return self._registry

    async def send(self, peer: Peer, message: SignalingMessage) -> None:
        """Send message to a peer.

        Encoding errors and closed connections are logged, not raised.

        Args:
            peer: Peer to send the message to.
            message: Message to encode and send via the websocket connection
                to the peer.
        """
        try:
            message_str = encode_signaling_message(message)
        except SignalingMessageEncodeError as e:
            logger.error(f'Failed to encode message: {e}')
            return

        try:
            await peer.connection.send(message_str)
        except websockets.exceptions.ConnectionClosed:
            logger.error(
                f'Connection to peer {peer.peer_id} closed while attempting '
                'to send message',
            )

    async def on_connect(self, connection: ServerConnection) -> Peer:
        """Register a new connection and tell it its identifier.

        Args:
            connection: Newly opened websocket connection.

        Returns:
            The registered peer.
        """
        peer = self.registry.register(connection)
        logger.info(f'Registered peer: {peer}')
        await self.send(peer, PeerIdMessage(peer_id=peer.peer_id))
        return peer

    async def on_disconnect(self, peer: Peer, expected: bool = True) -> None:
        """Remove a peer whose connection closed.

        Args:
            peer: Peer to remove.
            expected: If the connection was closed intentionally or due to an
                error.
        """
        reason = 'ok' if expected else 'unexpected'
        logger.info(f'Unregistering peer {peer.peer_id} for {reason} reason')
        self.registry.remove(peer)

    async def forward(self, source: Peer, message: RoutedMessage) -> None:
        """Forward a message to the peer it is addressed to.

        The forwarded copy has `target` removed and `source` set to the
        identifier of `source`, regardless of what the sender claimed.
        Messages addressed to unknown peers are dropped. The sender is not
        notified because the target disconnecting mid-handshake is a normal
        race.

        Args:
            source: Peer that sent the message.
            message: Message to forward.
        """
        target = (
            self.registry.get(message.target)
            if isinstance(message.target, str)
            else None
        )
        if target is None:
            error = TargetPeerUnknown(
                f'Peer {source.peer_id} sent {message.message_type.value} '
                f'message to unknown peer {message.target}',
            )
            logger.warning(f'{error}. Dropping message')
            return

        forwarded = dataclasses.replace(
            message,
            target=None,
            source=source.peer_id,
        )
        logger.debug(
            f'Forwarding {message.message_type.value} message from '
            f'{source.peer_id} to {target.peer_id}',
        )
        await self.send(target, forwarded)

    async def on_message(self, peer: Peer, message_str: str | bytes) -> None:
        """Process a raw message received from a peer.

        Messages that cannot be decoded and `id` messages (which only the
        relay may send) are logged and ignored.

        Args:
            peer: Peer that sent the message.
            message_str: Raw websocket frame.
        """
        if isinstance(message_str, bytes):
            logger.warning(
                f'Ignoring binary message from peer {peer.peer_id}',
            )
            return

        try:
            message = decode_signaling_message(message_str)
        except SignalingMessageDecodeError as e:
            logger.warning(
                f'Ignoring message from peer {peer.peer_id} that could not '
                f'be decoded. {e}',
            )
            return

        if isinstance(message, _ROUTED_TYPES):
            await self.forward(peer, message)
        else:
            logger.warning(
                f'Ignoring {message.message_type.value} message from peer '
                f'{peer.peer_id} which can only be sent by the relay',
            )

    async def handler(self, websocket: ServerConnection) -> None:
        """Websocket server connection handler.

        Registers the connection, processes its messages in order, and
        unregisters it when the connection closes. The handler will close
        the connection with code 4003 if the client sends a message larger
        than the allowed size.

        Args:
            websocket: Websocket connection opened by a client.
        """
        peer = await self.on_connect(websocket)
        try:
            while True:
                try:
                    message_str = await websocket.recv()
                except websockets.exceptions.ConnectionClosedOK:
                    await self.on_disconnect(peer, expected=True)
                    break
                except websockets.exceptions.ConnectionClosedError:
                    await self.on_disconnect(peer, expected=False)
                    break

                if (
                    self._max_message_bytes is not None
                    and sys.getsizeof(message_str) > self._max_message_bytes
                ):
                    logger.warning(
                        f'Peer {peer.peer_id} sent message with size '
                        f'{sys.getsizeof(message_str)} bytes which exceeds '
                        f'the max configured size of '
                        f'{self._max_message_bytes} bytes. Connection '
                        'closed with error code 4003',
                    )
                    await websocket.close(
                        4003,
                        reason='Message length exceeds limit.',
                    )
                    await self.on_disconnect(peer, expected=False)
                    break

                await self.on_message(peer, message_str)
        finally:
            # Covers cancellation when the server shuts down
            self.registry.remove(peer)
