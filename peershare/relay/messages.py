"""Signaling message types exchanged between peers and the relay server.

Messages are JSON objects with a `type` key. The relay only ever looks at
`type`, `target`, and (on the way out) `from`. Session descriptions and
connectivity candidates are carried through untouched.

```
client -> relay   {"type": "offer", "target": "k3j2...", "offer": {...}}
relay  -> client  {"type": "offer", "from": "a9x0...", "offer": {...}}
```
"""
from __future__ import annotations

import dataclasses
import enum
import json
from typing import Any
from typing import ClassVar
from typing import Union


class SignalingMessageType(enum.Enum):
    """Types of messages supported."""

    id = 'id'
    """Identifier assigned by the relay. Only sent by the relay."""
    offer = 'offer'
    """Session description offer from the initiating peer."""
    answer = 'answer'
    """Session description answer from the responding peer."""
    ice_candidate = 'ice-candidate'
    """Connectivity candidate from either peer."""


@dataclasses.dataclass
class SignalingMessage:
    """Base message."""

    message_type: ClassVar[SignalingMessageType]


@dataclasses.dataclass
class PeerIdMessage(SignalingMessage):
    """Identifier assigned to a newly connected peer.

    Attributes:
        peer_id: Identifier of the receiving peer.
    """

    peer_id: str
    message_type: ClassVar[SignalingMessageType] = SignalingMessageType.id


@dataclasses.dataclass
class OfferMessage(SignalingMessage):
    """Session description offer.

    Attributes:
        offer: Session description. Opaque to the relay.
        target: Identifier of the peer to deliver to. Set by the sender.
        source: Identifier of the peer that sent the message. Set by the
            relay (sent on the wire as `from`).
    """

    offer: Any
    target: str | None = None
    source: str | None = None
    message_type: ClassVar[SignalingMessageType] = SignalingMessageType.offer


@dataclasses.dataclass
class AnswerMessage(SignalingMessage):
    """Session description answer.

    Attributes:
        answer: Session description. Opaque to the relay.
        target: Identifier of the peer to deliver to.
        source: Identifier of the peer that sent the message.
    """

    answer: Any
    target: str | None = None
    source: str | None = None
    message_type: ClassVar[SignalingMessageType] = SignalingMessageType.answer


@dataclasses.dataclass
class IceCandidateMessage(SignalingMessage):
    """Connectivity candidate.

    Attributes:
        candidate: Candidate. Opaque to the relay. May be `None` to signal
            the end of candidates.
        target: Identifier of the peer to deliver to.
        source: Identifier of the peer that sent the message.
    """

    candidate: Any
    target: str | None = None
    source: str | None = None
    message_type: ClassVar[SignalingMessageType] = (
        SignalingMessageType.ice_candidate
    )


RoutedMessage = Union[OfferMessage, AnswerMessage, IceCandidateMessage]
"""Messages that the relay forwards between peers."""

_MESSAGE_CLASSES: dict[SignalingMessageType, type[SignalingMessage]] = {
    SignalingMessageType.id: PeerIdMessage,
    SignalingMessageType.offer: OfferMessage,
    SignalingMessageType.answer: AnswerMessage,
    SignalingMessageType.ice_candidate: IceCandidateMessage,
}

# Python field name -> JSON key where they differ
_FIELD_TO_KEY = {'peer_id': 'peerId', 'source': 'from'}
_KEY_TO_FIELD = {value: key for key, value in _FIELD_TO_KEY.items()}


class SignalingMessageError(Exception):
    """Base exception type for signaling messages."""

    pass


class SignalingMessageDecodeError(SignalingMessageError):
    """Exception raised when a message cannot be decoded."""

    pass


class SignalingMessageEncodeError(SignalingMessageError):
    """Exception raised when a message cannot be encoded."""

    pass


def decode_signaling_message(message: str | bytes) -> SignalingMessage:
    """Decode JSON string into the correct signaling message type.

    Args:
        message: JSON string to decode.

    Returns:
        Parsed message.

    Raises:
        SignalingMessageDecodeError: If the message cannot be decoded.
    """
    try:
        data = json.loads(message)
    except (json.JSONDecodeError, UnicodeDecodeError, RecursionError) as e:
        raise SignalingMessageDecodeError(
            'Failed to load string as JSON.',
        ) from e

    if not isinstance(data, dict):
        raise SignalingMessageDecodeError(
            f'Expected a JSON object but got {type(data).__name__}.',
        )

    try:
        type_name = data.pop('type')
    except KeyError as e:
        raise SignalingMessageDecodeError(
            'Message does not contain a type key.',
        ) from e

    try:
        message_type = SignalingMessageType(type_name)
    except ValueError as e:
        raise SignalingMessageDecodeError(
            f'The message is of an unknown message type: {type_name}.',
        ) from e

    message_class = _MESSAGE_CLASSES[message_type]
    kwargs = {
        _KEY_TO_FIELD.get(key, key): value for key, value in data.items()
    }

    try:
        return message_class(**kwargs)
    except TypeError as e:
        raise SignalingMessageDecodeError(
            f'Failed to convert message to {message_class.__name__}: {e}',
        ) from e


def encode_signaling_message(message: SignalingMessage) -> str:
    """Encode message as JSON string.

    Fields with a value of `None` (e.g., `target` on a forwarded message)
    are omitted.

    Args:
        message: Message to JSON encode.

    Raises:
        SignalingMessageEncodeError: If the message cannot be JSON encoded.
    """
    if not isinstance(message, SignalingMessage):
        raise SignalingMessageEncodeError(
            f'Message is not an instance of {SignalingMessage.__name__}. '
            f'Got {type(message).__name__}.',
        )

    data: dict[str, Any] = {'type': message.message_type.value}
    for field in dataclasses.fields(message):
        value = getattr(message, field.name)
        if value is None and field.name in ('target', 'source'):
            continue
        data[_FIELD_TO_KEY.get(field.name, field.name)] = value

    try:
        return json.dumps(data)
    except (TypeError, ValueError) as e:
        raise SignalingMessageEncodeError('Error encoding message.') from e
