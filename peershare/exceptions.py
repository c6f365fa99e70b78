"""Exception types for signaling, negotiation, and transfer errors.

Most of these are never raised out of a public operation. They are
constructed at the point of failure, logged, and converted into a status
report so a misbehaving peer cannot take down the process.
"""
from __future__ import annotations


class PeerShareError(Exception):
    """Base exception type for peershare errors."""

    pass


class TargetPeerUnknown(PeerShareError):  # noqa: N818
    """Relay could not find the peer a message was addressed to."""

    pass


class NegotiationFailure(PeerShareError):  # noqa: N818
    """Error creating or applying a session description or candidate."""

    pass


class ChannelNotReady(PeerShareError):  # noqa: N818
    """Send attempted without an open data channel or selected file."""

    pass


class ProtocolViolation(PeerShareError):  # noqa: N818
    """Peer sent a data channel message that breaks the transfer protocol."""

    pass


class ConnectionLost(PeerShareError):  # noqa: N818
    """Control or data connection closed while a transfer was in progress."""

    pass
