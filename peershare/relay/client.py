"""Client interface to a relay server."""
from __future__ import annotations

import asyncio
import logging
import ssl
import sys
from types import TracebackType

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import websockets.exceptions
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect as websockets_connect
from websockets.protocol import State

from peershare.exceptions import PeerShareError
from peershare.relay.messages import decode_signaling_message
from peershare.relay.messages import encode_signaling_message
from peershare.relay.messages import PeerIdMessage
from peershare.relay.messages import SignalingMessage
from peershare.relay.messages import SignalingMessageDecodeError

logger = logging.getLogger(__name__)


class SignalingError(PeerShareError):
    """Exception raised if the client cannot connect to the relay server."""

    pass


class SignalingNotConnectedError(SignalingError):
    """Exception raised if the client is not connected to a relay server."""

    pass


class SignalingClient:
    """Client interface to a relay server.

    The relay server assigns the client an identifier as soon as the
    websocket connection opens. The identifier is available as
    [`peer_id`][peershare.relay.client.SignalingClient.peer_id] after
    [`connect()`][peershare.relay.client.SignalingClient.connect] returns.

    Tip:
        This class can be used as an async context manager!
        ```python
        from peershare.relay.client import SignalingClient

        async with SignalingClient('ws://localhost:3000') as client:
            await client.send(...)
            message = await client.recv()
        ```

    Args:
        address: Address of the relay server. Should start with `ws://` or
            `wss://`.
        ssl_context: Custom SSL context to pass to the websocket connection.
            A TLS context is created with
            [`ssl.create_default_context()`][ssl.create_default_context]
            when connecting to a `wss://` URI and `ssl_context` is not
            provided.
        timeout: Time to wait in seconds on relay server connection and the
            identifier message.
        verify_certificate: Verify the relay server's SSL certificate. Only
            used if `ssl_context` is `None` and connecting to a `wss://` URI.

    Raises:
        ValueError: If address does not start with `ws://` or `wss://`.
    """

    def __init__(
        self,
        address: str,
        *,
        ssl_context: ssl.SSLContext | None = None,
        timeout: float = 10,
        verify_certificate: bool = True,
    ) -> None:
        if not (address.startswith('ws://') or address.startswith('wss://')):
            raise ValueError(
                'Relay server address must start with ws:// or wss://. '
                f'Got {address}.',
            )

        self._address = address
        self._timeout = timeout

        if self._address.startswith('wss://') and ssl_context is None:
            ssl_context = ssl.create_default_context()
            if not verify_certificate:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE
        self._ssl_context = ssl_context

        self._peer_id: str | None = None
        self._websocket: ClientConnection | None = None

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def address(self) -> str:
        """Address of the relay server."""
        return self._address

    @property
    def peer_id(self) -> str:
        """Identifier assigned to this client by the relay server.

        Raises:
            SignalingNotConnectedError: If the client has not connected.
        """
        if self._peer_id is None:
            raise SignalingNotConnectedError(
                'No peer ID has been assigned yet. Try calling connect() '
                'first.',
            )
        return self._peer_id

    @property
    def connected(self) -> bool:
        """Websocket connection to the relay server is open."""
        return (
            self._websocket is not None
            and self._websocket.state is State.OPEN
        )

    @property
    def websocket(self) -> ClientConnection:
        """Websocket connection to the relay server.

        Raises:
            SignalingNotConnectedError: If the websocket connection to the
                relay server is not open.
        """
        if self._websocket is not None and self.connected:
            return self._websocket
        raise SignalingNotConnectedError(
            'Websocket connection to the relay server is not open. '
            'Try calling connect() first.',
        )

    async def connect(self) -> None:
        """Connect to the relay server and wait for an identifier.

        This method is a no-op if a connection is already established.

        Raises:
            SignalingError: If the server could not be reached, closed the
                connection, did not assign an identifier within the timeout,
                or sent something other than an identifier first.
        """
        if self.connected:
            return

        try:
            websocket = await websockets_connect(
                self._address,
                open_timeout=self._timeout,
                ssl=self._ssl_context,
            )
        except (
            OSError,
            ValueError,
            asyncio.TimeoutError,
            websockets.exceptions.InvalidHandshake,
            websockets.exceptions.InvalidURI,
        ) as e:
            raise SignalingError(
                f'Failed to connect to relay server at {self._address}: {e}',
            ) from e

        try:
            message_str = await asyncio.wait_for(
                websocket.recv(),
                self._timeout,
            )
            message = decode_signaling_message(message_str)
        except (
            asyncio.TimeoutError,
            websockets.exceptions.ConnectionClosed,
            SignalingMessageDecodeError,
        ) as e:
            await websocket.close()
            raise SignalingError(
                'Did not receive a peer ID from relay server at '
                f'{self._address}: {e!r}',
            ) from e

        if not isinstance(message, PeerIdMessage):
            await websocket.close()
            raise SignalingError(
                'Relay server replied with unexpected message type: '
                f'{type(message).__name__}.',
            )

        self._websocket = websocket
        self._peer_id = message.peer_id
        logger.info(
            f'Established connection to relay server at {self._address} '
            f'with peer_id={self._peer_id}',
        )

    async def close(self) -> None:
        """Close the connection to the relay server."""
        if self._websocket is not None:
            await self._websocket.close()

    async def recv(self) -> SignalingMessage:
        """Receive the next message.

        Returns:
            The message received from the relay server.

        Raises:
            SignalingNotConnectedError: If the client has not connected.
            SignalingMessageDecodeError: If the message received cannot
                be decoded into the appropriate message type.
            websockets.exceptions.ConnectionClosed: If the connection is or
                becomes closed.
        """
        if self._websocket is None:
            raise SignalingNotConnectedError(
                'Not connected to a relay server. Try calling connect() '
                'first.',
            )
        message_str = await self._websocket.recv()
        return decode_signaling_message(message_str)

    async def send(self, message: SignalingMessage) -> None:
        """Send a message.

        Args:
            message: The message to send to the relay server.

        Raises:
            SignalingNotConnectedError: If not connected.
        """
        await self.websocket.send(encode_signaling_message(message))
