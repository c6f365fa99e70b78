from __future__ import annotations

import asyncio
import logging

import pytest
import pytest_asyncio
from aiortc import RTCIceCandidate
from aiortc import RTCSessionDescription

from peershare.exceptions import NegotiationFailure
from peershare.negotiator import candidate_from_dict
from peershare.negotiator import candidate_to_dict
from peershare.negotiator import create_peer_connection
from peershare.negotiator import description_from_dict
from peershare.negotiator import description_to_dict
from peershare.negotiator import NegotiationState
from peershare.negotiator import SessionNegotiator
from peershare.relay.client import SignalingClient
from peershare.relay.messages import AnswerMessage
from peershare.relay.messages import IceCandidateMessage
from peershare.relay.messages import OfferMessage
from peershare.relay.messages import PeerIdMessage
from peershare.status import QueueStatusReporter
from peershare.status import Severity
from testing.fakes import FakeChannel
from testing.fakes import FakePeerConnection
from testing.fakes import FakeSignaling
from testing.relay_server import RelayServerInfo

_WAIT_FOR = 0.1
_CANDIDATE = {
    'candidate': 'candidate:1 1 udp 2130706431 192.168.1.5 54321 typ host',
    'sdpMid': '0',
    'sdpMLineIndex': 0,
}
_OFFER = {'type': 'offer', 'sdp': 'remote-offer'}
_ANSWER = {'type': 'answer', 'sdp': 'remote-answer'}


class _Harness:
    def __init__(self) -> None:
        self.signaling = FakeSignaling('p1')
        self.reporter = QueueStatusReporter()
        self.contexts: list[FakePeerConnection] = []
        self.negotiator = SessionNegotiator(
            self.signaling,
            self.reporter,
            context_factory=self._new_context,
        )

    def _new_context(self) -> FakePeerConnection:
        self.contexts.append(FakePeerConnection())
        return self.contexts[-1]

    @property
    def pc(self) -> FakePeerConnection:
        return self.contexts[-1]


@pytest_asyncio.fixture()
async def harness() -> _Harness:
    return _Harness()


def test_description_conversion() -> None:
    description = RTCSessionDescription(sdp='v=0\r\n', type='offer')
    data = description_to_dict(description)
    assert data == {'type': 'offer', 'sdp': 'v=0\r\n'}
    assert description_from_dict(data) == description


@pytest.mark.parametrize(
    'data',
    (None, 'v=0', {'type': 'offer'}, {'type': 'bad', 'sdp': 'v=0'}),
)
def test_description_invalid(data) -> None:
    with pytest.raises(NegotiationFailure):
        description_from_dict(data)


def test_candidate_conversion() -> None:
    candidate = candidate_from_dict(_CANDIDATE)
    assert isinstance(candidate, RTCIceCandidate)
    assert candidate.ip == '192.168.1.5'
    assert candidate.port == 54321
    assert candidate.type == 'host'
    assert candidate.sdpMid == '0'
    assert candidate.sdpMLineIndex == 0
    assert candidate_to_dict(candidate) == _CANDIDATE


def test_candidate_without_prefix() -> None:
    candidate = candidate_from_dict(
        {'candidate': '1 1 udp 2130706431 10.0.0.1 9 typ host'},
    )
    assert candidate is not None
    assert candidate.ip == '10.0.0.1'
    assert candidate.sdpMid is None


def test_candidate_end_of_candidates() -> None:
    assert candidate_from_dict(None) is None
    assert candidate_from_dict({'candidate': ''}) is None


@pytest.mark.parametrize(
    'data',
    ('candidate', {'sdpMid': '0'}, {'candidate': 'candidate:1 1 udp'}),
)
def test_candidate_invalid(data) -> None:
    with pytest.raises(NegotiationFailure):
        candidate_from_dict(data)


@pytest.mark.asyncio()
async def test_create_peer_connection() -> None:
    pc = create_peer_connection(['stun:stun.example.com:3478'])
    assert pc.connectionState == 'new'
    await pc.close()


@pytest.mark.asyncio()
async def test_connect_empty_target(harness: _Harness) -> None:
    await harness.negotiator.connect('')

    assert harness.negotiator.state is NegotiationState.IDLE
    assert harness.signaling.sent == []
    assert harness.contexts == []
    assert harness.reporter.messages(Severity.ERROR) == [
        'Please enter a peer ID',
    ]


@pytest.mark.asyncio()
async def test_initiator_flow(harness: _Harness) -> None:
    negotiator = harness.negotiator
    await negotiator.connect('p2')

    assert negotiator.state is NegotiationState.OFFERING
    assert negotiator.peer_id == 'p2'
    assert harness.signaling.sent == [
        OfferMessage(
            offer={'type': 'offer', 'sdp': 'fake-offer'},
            target='p2',
        ),
    ]
    assert harness.reporter.messages() == ['Connecting to peer...']
    channel = harness.pc.channels[0]
    assert channel.label == 'fileTransfer'
    assert negotiator.channel is channel

    await negotiator.handle_message(AnswerMessage(_ANSWER, source='p2'))
    assert harness.pc.remoteDescription == RTCSessionDescription(
        sdp='remote-answer',
        type='answer',
    )

    channel.open()
    assert await negotiator.ready(_WAIT_FOR) is channel
    await harness.pc.set_connection_state('connected')
    assert negotiator.state is NegotiationState.CONNECTED
    assert harness.reporter.messages(Severity.SUCCESS) == [
        'Data channel opened',
        'Connected to peer',
    ]

    channel.emit('message', 'metadata')
    channel.emit('message', b'chunk')
    channel.close()
    assert negotiator.channel is None
    assert negotiator.messages.get_nowait() == 'metadata'
    assert negotiator.messages.get_nowait() == b'chunk'
    assert negotiator.messages.get_nowait() is None
    assert 'Data channel closed' in harness.reporter.messages()


@pytest.mark.asyncio()
async def test_channel_error_reported(harness: _Harness) -> None:
    await harness.negotiator.connect('p2')
    channel = harness.pc.channels[0]

    channel.emit('error', ConnectionError('transport failed'))

    assert harness.reporter.messages(Severity.ERROR) == [
        'Data channel error: transport failed',
    ]
    assert harness.negotiator.channel is channel


@pytest.mark.asyncio()
async def test_responder_flow(harness: _Harness) -> None:
    negotiator = harness.negotiator
    await negotiator.handle_message(OfferMessage(_OFFER, source='p2'))

    assert negotiator.state is NegotiationState.ANSWERING
    assert negotiator.peer_id == 'p2'
    assert harness.pc.remoteDescription == RTCSessionDescription(
        sdp='remote-offer',
        type='offer',
    )
    assert harness.signaling.sent == [
        AnswerMessage(
            answer={'type': 'answer', 'sdp': 'fake-answer'},
            target='p2',
        ),
    ]

    channel = FakeChannel()
    await harness.pc.emit('datachannel', channel)
    assert await negotiator.ready(_WAIT_FOR) is channel
    assert negotiator.channel is channel


@pytest.mark.asyncio()
async def test_offer_without_sender_ignored(
    harness: _Harness,
    caplog,
) -> None:
    caplog.set_level(logging.WARNING)
    await harness.negotiator.handle_message(OfferMessage(_OFFER))

    assert harness.contexts == []
    assert harness.negotiator.state is NegotiationState.IDLE
    assert any('no sender' in record.message for record in caplog.records)


@pytest.mark.asyncio()
async def test_candidates_buffered_until_remote_description(
    harness: _Harness,
) -> None:
    negotiator = harness.negotiator
    await negotiator.connect('p2')

    await negotiator.handle_message(
        IceCandidateMessage(_CANDIDATE, source='p2'),
    )
    assert harness.pc.candidates == []

    await negotiator.handle_message(AnswerMessage(_ANSWER, source='p2'))
    assert len(harness.pc.candidates) == 1
    assert harness.pc.candidates[0].ip == '192.168.1.5'

    await negotiator.handle_message(
        IceCandidateMessage(_CANDIDATE, source='p2'),
    )
    assert len(harness.pc.candidates) == 2

    # End of candidates is not an error
    await negotiator.handle_message(IceCandidateMessage(None, source='p2'))
    assert len(harness.pc.candidates) == 2
    assert negotiator.state is NegotiationState.OFFERING


@pytest.mark.asyncio()
async def test_messages_from_other_peers_ignored(
    harness: _Harness,
    caplog,
) -> None:
    caplog.set_level(logging.WARNING)
    negotiator = harness.negotiator

    # No context yet
    await negotiator.handle_message(AnswerMessage(_ANSWER, source='p2'))
    await negotiator.handle_message(
        IceCandidateMessage(_CANDIDATE, source='p2'),
    )
    await negotiator.handle_message(PeerIdMessage('p1'))

    await negotiator.connect('p2')
    await negotiator.handle_message(AnswerMessage(_ANSWER, source='p3'))
    await negotiator.handle_message(
        IceCandidateMessage(_CANDIDATE, source='p3'),
    )

    assert harness.pc.remoteDescription is None
    assert harness.pc.candidates == []
    assert negotiator.state is NegotiationState.OFFERING
    assert len(caplog.records) == 4


@pytest.mark.asyncio()
async def test_new_offer_replaces_context(harness: _Harness) -> None:
    negotiator = harness.negotiator
    await negotiator.connect('p2')
    first = harness.pc
    first.channels[0].open()

    await negotiator.handle_message(OfferMessage(_OFFER, source='p3'))

    assert first.closed
    assert harness.pc is not first
    assert negotiator.peer_id == 'p3'
    assert negotiator.state is NegotiationState.ANSWERING
    assert negotiator.channel is None
    assert negotiator.messages.get_nowait() is None

    # Events from the old context no longer affect the negotiator
    await first.set_connection_state('connected')
    assert negotiator.state is NegotiationState.ANSWERING


@pytest.mark.asyncio()
async def test_connect_send_failure(harness: _Harness) -> None:
    harness.signaling.error = ConnectionError('relay gone')

    await harness.negotiator.connect('p2')

    assert harness.negotiator.state is NegotiationState.FAILED
    assert harness.pc.closed
    assert harness.reporter.messages(Severity.ERROR) == [
        'Failed to create connection: relay gone',
    ]
    assert 'Connecting to peer...' not in harness.reporter.messages()
    with pytest.raises(NegotiationFailure, match='relay gone'):
        await harness.negotiator.ready(_WAIT_FOR)


@pytest.mark.asyncio()
async def test_invalid_offer(harness: _Harness) -> None:
    await harness.negotiator.handle_message(
        OfferMessage({'sdp': 'missing type'}, source='p2'),
    )

    assert harness.negotiator.state is NegotiationState.FAILED
    assert harness.pc.closed
    assert harness.signaling.sent == []
    errors = harness.reporter.messages(Severity.ERROR)
    assert len(errors) == 1
    assert errors[0].startswith('Failed to handle offer: ')


@pytest.mark.asyncio()
async def test_invalid_candidate(harness: _Harness) -> None:
    await harness.negotiator.connect('p2')
    await harness.negotiator.handle_message(
        IceCandidateMessage({'candidate': 'garbage'}, source='p2'),
    )

    assert harness.negotiator.state is NegotiationState.FAILED
    errors = harness.reporter.messages(Severity.ERROR)
    assert errors[0].startswith('Failed to handle ICE candidate: ')


@pytest.mark.asyncio()
async def test_connection_failed(harness: _Harness) -> None:
    await harness.negotiator.connect('p2')
    await harness.pc.set_connection_state('failed')

    assert harness.negotiator.state is NegotiationState.FAILED
    assert harness.reporter.messages(Severity.ERROR) == [
        'Peer connection failed',
    ]
    with pytest.raises(NegotiationFailure):
        await harness.negotiator.ready(_WAIT_FOR)


@pytest.mark.asyncio()
async def test_retry_after_failure(harness: _Harness) -> None:
    await harness.negotiator.connect('p2')
    await harness.pc.set_connection_state('failed')

    await harness.negotiator.connect('p2')
    harness.pc.channels[0].open()

    channel = await harness.negotiator.ready(_WAIT_FOR)
    assert channel is harness.pc.channels[0]


@pytest.mark.asyncio()
async def test_ready_timeout(harness: _Harness) -> None:
    await harness.negotiator.connect('p2')
    with pytest.raises(NegotiationFailure, match='Timeout'):
        await harness.negotiator.ready(0.01)
    # The wait can be retried
    harness.pc.channels[0].open()
    assert await harness.negotiator.ready(_WAIT_FOR) is not None


@pytest.mark.asyncio()
async def test_close(harness: _Harness) -> None:
    await harness.negotiator.connect('p2')
    await harness.negotiator.close()

    assert harness.negotiator.state is NegotiationState.CLOSED
    assert harness.pc.closed
    with pytest.raises(NegotiationFailure, match='closed'):
        await harness.negotiator.ready(_WAIT_FOR)

    # Closing again is safe
    await harness.negotiator.close()


@pytest.mark.asyncio()
async def test_negotiate_over_relay(relay_server: RelayServerInfo) -> None:
    async with SignalingClient(
        relay_server.address,
    ) as client1, SignalingClient(relay_server.address) as client2:
        reporter = QueueStatusReporter()
        negotiator1 = SessionNegotiator(client1, reporter, ice_servers=[])
        negotiator2 = SessionNegotiator(client2, reporter, ice_servers=[])

        await negotiator1.connect(client2.peer_id)
        offer = await client2.recv()
        assert isinstance(offer, OfferMessage)
        assert offer.source == client1.peer_id
        await negotiator2.handle_message(offer)
        answer = await client1.recv()
        assert isinstance(answer, AnswerMessage)
        await negotiator1.handle_message(answer)

        channel1 = await negotiator1.ready(10)
        channel2 = await negotiator2.ready(10)
        assert channel1.label == channel2.label == 'fileTransfer'

        channel1.send('hello')
        channel1.send(b'\x00\x01')
        assert await asyncio.wait_for(negotiator2.messages.get(), 5) == (
            'hello'
        )
        assert await asyncio.wait_for(negotiator2.messages.get(), 5) == (
            b'\x00\x01'
        )
        channel2.send('reply')
        assert await asyncio.wait_for(negotiator1.messages.get(), 5) == (
            'reply'
        )

        await negotiator1.close()
        await negotiator2.close()
        assert negotiator1.state is NegotiationState.CLOSED
