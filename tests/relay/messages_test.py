from __future__ import annotations

import json

import pytest

from peershare.relay.messages import AnswerMessage
from peershare.relay.messages import decode_signaling_message
from peershare.relay.messages import encode_signaling_message
from peershare.relay.messages import IceCandidateMessage
from peershare.relay.messages import OfferMessage
from peershare.relay.messages import PeerIdMessage
from peershare.relay.messages import SignalingMessageDecodeError
from peershare.relay.messages import SignalingMessageEncodeError

_OFFER = {'type': 'offer', 'sdp': 'v=0\r\n'}


def test_decode_peer_id() -> None:
    message = decode_signaling_message('{"type": "id", "peerId": "abc123xyz"}')
    assert message == PeerIdMessage(peer_id='abc123xyz')


def test_decode_offer_from_client() -> None:
    message = decode_signaling_message(
        json.dumps({'type': 'offer', 'target': 'p2', 'offer': _OFFER}),
    )
    assert message == OfferMessage(offer=_OFFER, target='p2')


def test_decode_forwarded_candidate() -> None:
    candidate = {'candidate': 'candidate:1 1 udp 1 1.2.3.4 5 typ host'}
    message = decode_signaling_message(
        json.dumps(
            {'type': 'ice-candidate', 'from': 'p1', 'candidate': candidate},
        ),
    )
    assert isinstance(message, IceCandidateMessage)
    assert message.source == 'p1'
    assert message.target is None
    assert message.candidate == candidate


def test_decode_bytes() -> None:
    message = decode_signaling_message(b'{"type": "answer", "answer": null}')
    assert message == AnswerMessage(answer=None)


@pytest.mark.parametrize(
    'raw',
    (
        'not json',
        b'\x80abc',
        '[1, 2, 3]',
        '"offer"',
        '{"target": "p2"}',
        '{"type": "hello"}',
        '{"type": "id"}',
        '{"type": "offer", "offer": {}, "extra": 1}',
        '[' * 100000 + ']' * 100000,
    ),
)
def test_decode_errors(raw: str | bytes) -> None:
    with pytest.raises(SignalingMessageDecodeError):
        decode_signaling_message(raw)


def test_encode_forwarded_offer() -> None:
    message = OfferMessage(offer=_OFFER, source='p1')
    data = json.loads(encode_signaling_message(message))
    assert data == {'type': 'offer', 'offer': _OFFER, 'from': 'p1'}


def test_encode_client_answer() -> None:
    message = AnswerMessage(answer=_OFFER, target='p1')
    data = json.loads(encode_signaling_message(message))
    assert data == {'type': 'answer', 'answer': _OFFER, 'target': 'p1'}


def test_encode_end_of_candidates() -> None:
    message = IceCandidateMessage(candidate=None, target='p2')
    data = json.loads(encode_signaling_message(message))
    assert data == {'type': 'ice-candidate', 'candidate': None, 'target': 'p2'}


def test_encode_peer_id() -> None:
    data = json.loads(encode_signaling_message(PeerIdMessage('k3j2b8d0q')))
    assert data == {'type': 'id', 'peerId': 'k3j2b8d0q'}


def test_encode_decode_preserves_payload() -> None:
    message = OfferMessage(
        offer={'type': 'offer', 'sdp': 'a=unicode:é\r\n', 'n': [1, 2]},
        target='p2',
    )
    assert decode_signaling_message(encode_signaling_message(message)) == (
        message
    )


def test_encode_errors() -> None:
    with pytest.raises(SignalingMessageEncodeError):
        encode_signaling_message(object())  # type: ignore[arg-type]

    with pytest.raises(SignalingMessageEncodeError):
        encode_signaling_message(OfferMessage(offer=object(), target='p2'))
