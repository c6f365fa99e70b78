"""Registry of peers connected to a relay server."""
from __future__ import annotations

import dataclasses
import datetime
import functools
import secrets
import string
from typing import Any
from typing import Callable

PEER_ID_ALPHABET = string.ascii_lowercase + string.digits
DEFAULT_PEER_ID_LENGTH = 9


def _utc_current_time() -> datetime.datetime:
    # dataclasses.field's default_factory requires a zero argument callable
    return datetime.datetime.now(tz=datetime.timezone.utc)


def generate_peer_id(length: int = DEFAULT_PEER_ID_LENGTH) -> str:
    """Generate a random base-36 peer identifier.

    Args:
        length: Number of characters in the identifier.

    Raises:
        ValueError: If `length` is not positive.
    """
    if length < 1:
        raise ValueError(f'Peer ID length must be positive. Got {length}.')
    return ''.join(secrets.choice(PEER_ID_ALPHABET) for _ in range(length))


@dataclasses.dataclass(frozen=True, eq=False)
class Peer:
    """Representation of a peer connected to the relay server.

    Attributes:
        peer_id: Identifier assigned to the peer by the relay.
        connection: Websocket connection to the peer.
        created: Time the peer connected at.
    """

    peer_id: str
    connection: Any
    created: datetime.datetime = dataclasses.field(
        default_factory=_utc_current_time,
    )

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Peer):
            return self.peer_id == other.peer_id
        else:
            return False

    def __hash__(self) -> int:
        return hash(self.peer_id)

    def __repr__(self) -> str:
        created = self.created.strftime('%Y-%m-%d %H:%M:%S %Z')
        address = str(getattr(self.connection, 'remote_address', None))
        return (
            f'{self.__class__.__name__}(peer_id={self.peer_id}, '
            f'address={address}, created={created})'
        )


class PeerRegistry:
    """Mapping of live peer identifiers to their connections.

    The registry is the sole owner of
    [`Peer`][peershare.relay.manager.Peer] instances. Identifiers are unique
    among registered peers: a generated identifier that collides with a live
    one is discarded and regenerated.

    Args:
        id_factory: Zero argument callable returning a new candidate
            identifier. Defaults to
            [`generate_peer_id()`][peershare.relay.manager.generate_peer_id]
            with `id_length` characters.
        id_length: Length of generated identifiers when `id_factory` is not
            provided.
        max_attempts: Maximum number of identifiers to generate when
            registering a peer before giving up.
    """

    def __init__(
        self,
        id_factory: Callable[[], str] | None = None,
        *,
        id_length: int = DEFAULT_PEER_ID_LENGTH,
        max_attempts: int = 100,
    ) -> None:
        self._id_factory = (
            functools.partial(generate_peer_id, id_length)
            if id_factory is None
            else id_factory
        )
        self._max_attempts = max_attempts
        self._peers_by_id: dict[str, Peer] = {}
        self._peers_by_connection: dict[Any, Peer] = {}

    def __len__(self) -> int:
        return len(self._peers_by_id)

    def __contains__(self, peer_id: object) -> bool:
        return peer_id in self._peers_by_id

    def _new_peer_id(self) -> str:
        for _ in range(self._max_attempts):
            peer_id = self._id_factory()
            if peer_id not in self._peers_by_id:
                return peer_id
        raise RuntimeError(
            f'Failed to generate a unique peer ID in {self._max_attempts} '
            f'attempts with {len(self)} registered peers.',
        )

    def register(self, connection: Any) -> Peer:
        """Register a new connection under a fresh identifier.

        Raises:
            RuntimeError: If a unique identifier could not be generated.
        """
        peer = Peer(peer_id=self._new_peer_id(), connection=connection)
        self._peers_by_id[peer.peer_id] = peer
        self._peers_by_connection[connection] = peer
        return peer

    def peers(self) -> list[Peer]:
        """Get a list of all registered peers."""
        return list(self._peers_by_id.values())

    def get(self, peer_id: str) -> Peer | None:
        """Get a peer by its identifier."""
        return self._peers_by_id.get(peer_id, None)

    def get_by_connection(self, connection: Any) -> Peer | None:
        """Get a peer by its websocket connection."""
        return self._peers_by_connection.get(connection, None)

    def remove(self, peer: Peer) -> None:
        """Remove a peer. Removing an unknown peer is a no-op."""
        registered = self._peers_by_id.get(peer.peer_id, None)
        if registered is not None and registered.connection is peer.connection:
            self._peers_by_id.pop(peer.peer_id)
        self._peers_by_connection.pop(peer.connection, None)
