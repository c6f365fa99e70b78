"""WebRTC session negotiation through the signaling relay."""
from __future__ import annotations

import asyncio
import enum
import functools
import logging
import warnings
from typing import Any
from typing import Callable
from typing import Sequence

from aiortc import RTCConfiguration
from aiortc import RTCIceCandidate
from aiortc import RTCIceServer
from aiortc import RTCPeerConnection
from aiortc import RTCSessionDescription
from aiortc.sdp import candidate_from_sdp
from aiortc.sdp import candidate_to_sdp
from cryptography.utils import CryptographyDeprecationWarning

from peershare.exceptions import NegotiationFailure
from peershare.relay.client import SignalingNotConnectedError
from peershare.relay.messages import AnswerMessage
from peershare.relay.messages import IceCandidateMessage
from peershare.relay.messages import OfferMessage
from peershare.relay.messages import SignalingMessage
from peershare.status import Severity
from peershare.status import StatusReporter

warnings.simplefilter('ignore', CryptographyDeprecationWarning)

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_LABEL = 'fileTransfer'
DEFAULT_ICE_SERVERS = ('stun:stun.l.google.com:19302',)

_CANDIDATE_PREFIX = 'candidate:'


class NegotiationState(enum.Enum):
    """State of a negotiation context."""

    IDLE = 'idle'
    OFFERING = 'offering'
    ANSWERING = 'answering'
    CONNECTED = 'connected'
    CLOSED = 'closed'
    FAILED = 'failed'


def create_peer_connection(ice_servers: Sequence[str]) -> RTCPeerConnection:
    """Create a peer connection that discovers candidates via `ice_servers`.

    Args:
        ice_servers: STUN/TURN server URLs. An empty sequence disables
            server assisted candidate discovery (host candidates only).
    """
    configuration = RTCConfiguration(
        iceServers=[RTCIceServer(urls=url) for url in ice_servers],
    )
    return RTCPeerConnection(configuration=configuration)


def description_to_dict(
    description: RTCSessionDescription,
) -> dict[str, str]:
    """Convert a session description to the JSON form browsers use."""
    return {'type': description.type, 'sdp': description.sdp}


def description_from_dict(data: Any) -> RTCSessionDescription:
    """Parse a session description from its JSON form.

    Raises:
        NegotiationFailure: If `data` is not a valid session description.
    """
    if (
        not isinstance(data, dict)
        or not isinstance(data.get('sdp'), str)
        or data.get('type') not in ('offer', 'answer')
    ):
        raise NegotiationFailure(f'Invalid session description: {data!r}')
    return RTCSessionDescription(sdp=data['sdp'], type=data['type'])


def candidate_to_dict(candidate: RTCIceCandidate) -> dict[str, Any]:
    """Convert an ICE candidate to the JSON form browsers use."""
    return {
        'candidate': _CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        'sdpMid': candidate.sdpMid,
        'sdpMLineIndex': candidate.sdpMLineIndex,
    }


def candidate_from_dict(data: Any) -> RTCIceCandidate | None:
    """Parse an ICE candidate from its JSON form.

    Returns:
        The candidate or `None` if `data` signals the end of candidates.

    Raises:
        NegotiationFailure: If `data` is not a valid candidate.
    """
    if data is None:
        return None
    if not isinstance(data, dict) or not isinstance(
        data.get('candidate'),
        str,
    ):
        raise NegotiationFailure(f'Invalid ICE candidate: {data!r}')

    sdp = data['candidate']
    if sdp == '':
        return None
    if sdp.startswith(_CANDIDATE_PREFIX):
        sdp = sdp[len(_CANDIDATE_PREFIX) :]

    # foundation component protocol priority ip port "typ" type
    if len(sdp.split()) < 8:
        raise NegotiationFailure(f'Invalid ICE candidate: {data!r}')
    try:
        candidate = candidate_from_sdp(sdp)
    except (IndexError, ValueError) as e:
        raise NegotiationFailure(f'Invalid ICE candidate: {data!r}') from e
    candidate.sdpMid = data.get('sdpMid')
    candidate.sdpMLineIndex = data.get('sdpMLineIndex')
    return candidate


class SessionNegotiator:
    """Negotiate a WebRTC data channel with one peer at a time.

    Drives an [`RTCPeerConnection`][aiortc.RTCPeerConnection] through the
    offer/answer/candidate exchange, using the relay server (via the
    signaling client) as the message bus.

    The initiator calls
    [`connect()`][peershare.negotiator.SessionNegotiator.connect] with the
    identifier of the peer it wants to reach. Both sides feed every message
    received from the relay server to
    [`handle_message()`][peershare.negotiator.SessionNegotiator.handle_message].
    Once negotiation finishes,
    [`ready()`][peershare.negotiator.SessionNegotiator.ready] returns the open
    data channel and every message received on it is placed on
    [`messages`][peershare.negotiator.SessionNegotiator.messages], followed by
    `None` when the channel closes.

    Example:
        ```python
        async with SignalingClient(address) as signaling:
            negotiator = SessionNegotiator(signaling, LoggingStatusReporter())
            await negotiator.connect('k3j2b8d0q')
            # ... feed signaling.recv() results to handle_message()
            channel = await negotiator.ready(timeout=30)
        ```

    Failures are reported through `reporter` and move the negotiator to the
    `failed` state. They are never raised from `connect()` or
    `handle_message()`.

    Args:
        signaling: Connected signaling client used to send messages to the
            relay server.
        reporter: Status reporter.
        ice_servers: STUN/TURN server URLs used for candidate discovery.
        channel_label: Label of the data channel created by the initiator.
        context_factory: Zero argument callable returning a new peer
            connection. Defaults to
            [`create_peer_connection()`][peershare.negotiator.create_peer_connection]
            with `ice_servers`.
    """

    def __init__(
        self,
        signaling: Any,
        reporter: StatusReporter,
        *,
        ice_servers: Sequence[str] = DEFAULT_ICE_SERVERS,
        channel_label: str = DEFAULT_CHANNEL_LABEL,
        context_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._signaling = signaling
        self._reporter = reporter
        self._channel_label = channel_label
        self._context_factory = (
            functools.partial(create_peer_connection, list(ice_servers))
            if context_factory is None
            else context_factory
        )

        self._state = NegotiationState.IDLE
        self._pc: Any = None
        self._channel: Any = None
        self._peer_id: str | None = None
        self._pending_candidates: list[RTCIceCandidate] = []
        self._channel_ready = self._new_ready_future()
        self._messages: asyncio.Queue[str | bytes | None] = asyncio.Queue()

    @property
    def _log_prefix(self) -> str:
        try:
            local = self._signaling.peer_id
        except SignalingNotConnectedError:
            local = 'pending'
        remote = 'pending' if self._peer_id is None else self._peer_id
        return f'{self.__class__.__name__}[{local} > {remote}]'

    @property
    def state(self) -> NegotiationState:
        """Current negotiation state."""
        return self._state

    @property
    def peer_id(self) -> str | None:
        """Identifier of the peer being negotiated with."""
        return self._peer_id

    @property
    def channel(self) -> Any:
        """Open data channel or `None`."""
        return self._channel

    @property
    def messages(self) -> asyncio.Queue[str | bytes | None]:
        """Queue of messages received on the data channel."""
        return self._messages

    def _new_ready_future(self) -> asyncio.Future[Any]:
        future = asyncio.get_running_loop().create_future()
        # Mark failures as retrieved so unawaited futures do not warn
        future.add_done_callback(
            lambda f: f.cancelled() or f.exception(),
        )
        return future

    def _set_state(self, state: NegotiationState) -> None:
        if state is not self._state:
            logger.debug(
                f'{self._log_prefix}: state {self._state.value} -> '
                f'{state.value}',
            )
            self._state = state

    async def _teardown(self) -> None:
        pc, self._pc = self._pc, None
        self._close_channel()
        self._pending_candidates = []
        if pc is not None:
            await pc.close()

    async def _start(self, peer_id: str, state: NegotiationState) -> Any:
        await self._teardown()
        if self._channel_ready.done():
            self._channel_ready = self._new_ready_future()
        self._peer_id = peer_id
        self._set_state(state)
        self._pc = self._create_context()
        return self._pc

    async def _fail(self, message: str, error: Exception) -> None:
        logger.error(f'{self._log_prefix}: {message}', exc_info=error)
        self._reporter.update_status(message, Severity.ERROR)
        self._set_state(NegotiationState.FAILED)
        if not self._channel_ready.done():
            self._channel_ready.set_exception(NegotiationFailure(message))
        await self._teardown()

    def _create_context(self) -> Any:
        pc = self._context_factory()

        async def on_icecandidate(candidate: RTCIceCandidate | None) -> None:
            if pc is not self._pc or candidate is None:
                return
            assert self._peer_id is not None
            try:
                await self._signaling.send(
                    IceCandidateMessage(
                        candidate=candidate_to_dict(candidate),
                        target=self._peer_id,
                    ),
                )
            except Exception as e:
                await self._fail(f'Failed to send ICE candidate: {e}', e)

        async def on_connectionstatechange() -> None:
            if pc is not self._pc:
                return
            state = pc.connectionState
            logger.info(f'{self._log_prefix}: connection state is {state}')
            if state == 'connected':
                self._set_state(NegotiationState.CONNECTED)
                self._reporter.update_status(
                    'Connected to peer',
                    Severity.SUCCESS,
                )
            elif state == 'failed':
                await self._fail(
                    'Peer connection failed',
                    NegotiationFailure('connection state is failed'),
                )
            elif state == 'closed':
                self._set_state(NegotiationState.CLOSED)
                self._close_channel()

        pc.on('icecandidate', on_icecandidate)
        pc.on('connectionstatechange', on_connectionstatechange)
        return pc

    def _on_datachannel(self, pc: Any, channel: Any) -> None:
        if pc is self._pc:
            self._attach_channel(channel)

    def _attach_channel(self, channel: Any) -> None:
        logger.info(
            f'{self._log_prefix}: attached data channel {channel.label}',
        )
        self._channel = channel

        def on_message(message: str | bytes) -> None:
            if channel is self._channel:
                self._messages.put_nowait(message)

        def on_open() -> None:
            if channel is not self._channel:
                return
            if not self._channel_ready.done():
                self._channel_ready.set_result(channel)
            self._reporter.update_status(
                'Data channel opened',
                Severity.SUCCESS,
            )

        def on_close() -> None:
            if channel is self._channel:
                self._close_channel()

        def on_error(error: Exception) -> None:
            if channel is not self._channel:
                return
            logger.error(f'{self._log_prefix}: data channel error: {error}')
            self._reporter.update_status(
                f'Data channel error: {error}',
                Severity.ERROR,
            )

        channel.on('message', on_message)
        channel.on('close', on_close)
        channel.on('error', on_error)
        if channel.readyState == 'open':
            on_open()
        else:
            channel.on('open', on_open)

    def _close_channel(self) -> None:
        channel, self._channel = self._channel, None
        if channel is None:
            return
        logger.info(f'{self._log_prefix}: data channel closed')
        self._messages.put_nowait(None)
        self._reporter.update_status('Data channel closed')

    async def _apply_remote_description(self, data: Any) -> None:
        await self._pc.setRemoteDescription(description_from_dict(data))
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self._pc.addIceCandidate(candidate)

    async def connect(self, target: str) -> None:
        """Start negotiating a connection with a peer as the initiator.

        Creates a new peer connection (closing any existing one), opens an
        ordered data channel, and sends an offer to `target` via the relay.

        Args:
            target: Identifier of the peer to connect to.
        """
        if not target:
            self._reporter.update_status(
                'Please enter a peer ID',
                Severity.ERROR,
            )
            return

        try:
            pc = await self._start(target, NegotiationState.OFFERING)
            self._attach_channel(
                pc.createDataChannel(self._channel_label, ordered=True),
            )
            await pc.setLocalDescription(await pc.createOffer())
            logger.info(f'{self._log_prefix}: sending offer')
            await self._signaling.send(
                OfferMessage(
                    offer=description_to_dict(pc.localDescription),
                    target=target,
                ),
            )
        except Exception as e:
            await self._fail(f'Failed to create connection: {e}', e)
            return
        self._reporter.update_status('Connecting to peer...')

    async def handle_message(self, message: SignalingMessage) -> None:
        """Handle a message forwarded by the relay server.

        Args:
            message: Message received from the relay server.
        """
        if isinstance(message, OfferMessage):
            await self._handle_offer(message)
        elif isinstance(message, AnswerMessage):
            await self._handle_answer(message)
        elif isinstance(message, IceCandidateMessage):
            await self._handle_candidate(message)
        else:
            logger.debug(
                f'{self._log_prefix}: ignoring '
                f'{message.message_type.value} message',
            )

    async def _handle_offer(self, message: OfferMessage) -> None:
        if message.source is None:
            logger.warning(f'{self._log_prefix}: offer has no sender')
            return

        try:
            pc = await self._start(message.source, NegotiationState.ANSWERING)
            logger.info(f'{self._log_prefix}: received offer')
            pc.on('datachannel', functools.partial(self._on_datachannel, pc))
            await self._apply_remote_description(message.offer)
            await pc.setLocalDescription(await pc.createAnswer())
            logger.info(f'{self._log_prefix}: sending answer')
            await self._signaling.send(
                AnswerMessage(
                    answer=description_to_dict(pc.localDescription),
                    target=message.source,
                ),
            )
        except Exception as e:
            await self._fail(f'Failed to handle offer: {e}', e)
            return
        self._reporter.update_status('Connecting to peer...')

    async def _handle_answer(self, message: AnswerMessage) -> None:
        if (
            self._state is not NegotiationState.OFFERING
            or message.source != self._peer_id
        ):
            logger.warning(
                f'{self._log_prefix}: ignoring unexpected answer from '
                f'{message.source}',
            )
            return

        try:
            logger.info(f'{self._log_prefix}: received answer')
            await self._apply_remote_description(message.answer)
        except Exception as e:
            await self._fail(f'Failed to handle answer: {e}', e)

    async def _handle_candidate(self, message: IceCandidateMessage) -> None:
        if self._pc is None or message.source != self._peer_id:
            logger.warning(
                f'{self._log_prefix}: ignoring ICE candidate from '
                f'{message.source}',
            )
            return

        try:
            candidate = candidate_from_dict(message.candidate)
            if candidate is None:
                return
            if self._pc.remoteDescription is None:
                self._pending_candidates.append(candidate)
            else:
                await self._pc.addIceCandidate(candidate)
        except Exception as e:
            await self._fail(f'Failed to handle ICE candidate: {e}', e)

    async def ready(self, timeout: float | None = None) -> Any:
        """Wait for the data channel to open.

        Args:
            timeout: The maximum time in seconds to wait for the data channel
                to open. If `None`, block until it opens.

        Returns:
            The open data channel.

        Raises:
            NegotiationFailure: If negotiation failed or did not finish
                within the timeout.
        """
        try:
            return await asyncio.wait_for(
                asyncio.shield(self._channel_ready),
                timeout,
            )
        except asyncio.TimeoutError as e:
            raise NegotiationFailure(
                'Timeout waiting for data channel to open in '
                f'{self._log_prefix}.',
            ) from e

    async def close(self) -> None:
        """Close the peer connection. Safe to call at any time."""
        logger.info(f'{self._log_prefix}: closing connection')
        if not self._channel_ready.done():
            self._channel_ready.set_exception(
                NegotiationFailure('Negotiator closed'),
            )
        await self._teardown()
        self._set_state(NegotiationState.CLOSED)
