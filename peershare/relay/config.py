"""Relay server configuration file parsing."""
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

from peershare.relay.manager import DEFAULT_PEER_ID_LENGTH
from peershare.utils.config import load

DEFAULT_RELAY_PORT = 3000


class RelayLoggingConfig(BaseModel):
    """Relay logging configuration.

    Attributes:
        log_dir: Default logging directory.
        default_level: Default logging level for the root logger.
        websockets_level: Log level for the `websockets` logger. Websockets
            logs with much higher frequency so it is suggested to set this
            to `WARNING` or higher.
        current_peer_interval: Optional seconds between logging the
            number of currently connected peers.
        current_peer_limit: Max threshold for enumerating the
            detailed list of connected peers. If `None`, no detailed
            list will be logged.
    """

    model_config = ConfigDict(extra='forbid')

    log_dir: str | None = None
    default_level: int | str = logging.INFO
    websockets_level: int | str = logging.WARNING
    current_peer_interval: int | None = 60
    current_peer_limit: int | None = 32


class RelayServingConfig(BaseModel):
    """Relay serving configuration.

    Attributes:
        host: Network interface the server binds to.
        port: Network port the server binds to.
        peer_id_length: Number of characters in generated peer identifiers.
        certfile: Certificate file (PEM format) use to enable TLS.
        keyfile: Private key file. If not specified, the key will be
            taken from the certfile.
        logging: Logging configuration.
        max_message_bytes: Maximum size in bytes of messages received by
            the relay server.
    """

    model_config = ConfigDict(extra='forbid')

    host: str | None = None
    port: int = DEFAULT_RELAY_PORT
    peer_id_length: int = Field(default=DEFAULT_PEER_ID_LENGTH, ge=4)
    certfile: str | None = None
    keyfile: str | None = None
    logging: RelayLoggingConfig = Field(default_factory=RelayLoggingConfig)
    max_message_bytes: int | None = None

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse an TOML config file.

        Example:
            Minimal config without SSL.
            ```toml title="relay.toml"
            port = 3000

            [logging]
            log_dir = "/path/to/log/dir"
            default_level = "INFO"
            websockets_level = "WARNING"
            current_peer_interval = 60
            current_peer_limit = 32
            ```

            ```python
            from peershare.relay.config import RelayServingConfig

            config = RelayServingConfig.from_toml('relay.toml')
            ```

        Note:
            Omitted values will be set to their defaults.
        """
        with open(filepath, 'rb') as f:
            return load(cls, f)
