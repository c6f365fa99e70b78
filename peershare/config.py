"""Peer client configuration file parsing."""
from __future__ import annotations

import logging
import pathlib
import sys

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator

from peershare.negotiator import DEFAULT_CHANNEL_LABEL
from peershare.negotiator import DEFAULT_ICE_SERVERS
from peershare.transfer import DEFAULT_CHUNK_SIZE
from peershare.utils.config import load


class PeerConfig(BaseModel):
    """Peer client configuration.

    Attributes:
        relay_address: Address of the relay server. Must start with `ws://`
            or `wss://`.
        ice_servers: STUN/TURN server URLs used to discover connectivity
            candidates. Only affects which candidates are found.
        channel_label: Label of the data channel opened by the initiator.
        chunk_size: Maximum size in bytes of each binary frame sent.
        download_dir: Directory received files are saved to.
        timeout: Seconds to wait on the relay server connection and on
            peer connection establishment.
        log_level: Default logging level for the root logger.
    """

    model_config = ConfigDict(extra='forbid', validate_assignment=True)

    relay_address: str = 'ws://localhost:3000'
    ice_servers: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ICE_SERVERS),
    )
    channel_label: str = DEFAULT_CHANNEL_LABEL
    chunk_size: int = Field(default=DEFAULT_CHUNK_SIZE, gt=0)
    download_dir: str = '.'
    timeout: float = Field(default=30, gt=0)
    log_level: int | str = logging.INFO

    @field_validator('relay_address')
    @classmethod
    def _check_relay_address(cls, value: str) -> str:
        if not (value.startswith('ws://') or value.startswith('wss://')):
            raise ValueError(
                f'Relay address must start with ws:// or wss://. Got {value}.',
            )
        return value

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse an TOML config file.

        Example:
            ```toml title="peer.toml"
            relay_address = "wss://relay.example.com"
            ice_servers = ["stun:stun.l.google.com:19302"]
            download_dir = "~/Downloads"
            ```

            ```python
            from peershare.config import PeerConfig

            config = PeerConfig.from_toml('peer.toml')
            ```
        """
        with open(filepath, 'rb') as f:
            return load(cls, f)
