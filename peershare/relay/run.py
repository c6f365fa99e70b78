"""CLI and serving functions for running a relay server."""
from __future__ import annotations

import asyncio
import logging
import pprint
import signal
import ssl

import click
from websockets.asyncio.server import serve as websockets_serve

from peershare.relay.config import DEFAULT_RELAY_PORT
from peershare.relay.config import RelayServingConfig
from peershare.relay.manager import PeerRegistry
from peershare.relay.server import RelayServer
from peershare.utils.logs import configure_logging
from peershare.utils.tasks import cancel_and_wait
from peershare.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)


def periodic_peer_logger(
    server: RelayServer,
    interval: float = 60,
    limit: float | None = 60,
    level: int = logging.INFO,
) -> asyncio.Task[None]:
    """Create an asyncio task which logs currently connected peers.

    Args:
        server: Relay server instance to log connected peers of.
        interval: Seconds between logging connected peers.
        limit: Only log detailed peer list if the number of peers is
            less than this number.
        level: Logging level.

    Returns:
        Asyncio task.
    """

    async def _log() -> None:
        while True:
            await asyncio.sleep(interval)
            peers = sorted(
                server.registry.peers(),
                key=lambda peer: peer.created,
            )
            message = f'Connected peers: {len(peers)}'
            if limit is not None and 0 < len(peers) < limit:
                peers_repr = '\n'.join(repr(peer) for peer in peers)
                message = f'{message}\n{peers_repr}'
            logger.log(level, message)

    return spawn_guarded_background_task(
        _log,
        name='relay-server-peer-logger',
    )


async def serve(config: RelayServingConfig) -> None:
    """Run the relay server.

    Initializes a [`RelayServer`][peershare.relay.server.RelayServer]
    and starts a websocket server listening for new connections
    and incoming messages until SIGINT or SIGTERM is received.

    Note:
        This function will not configure any logging. Configuring logging
        according to
        [`RelayServingConfig.logging`][peershare.relay.config.RelayServingConfig]
        is the responsibility of the caller.

    Args:
        config: Serving configuration.
    """
    server = RelayServer(
        PeerRegistry(id_length=config.peer_id_length),
        max_message_bytes=config.max_message_bytes,
    )

    # Set the stop condition when receiving SIGINT (ctrl-C) and SIGTERM.
    loop = asyncio.get_running_loop()
    stop = loop.create_future()
    loop.add_signal_handler(signal.SIGINT, stop.set_result, None)
    loop.add_signal_handler(signal.SIGTERM, stop.set_result, None)

    ssl_context: ssl.SSLContext | None = None
    if config.certfile is not None:
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(config.certfile, keyfile=config.keyfile)

    peer_logger_task: asyncio.Task[None] | None = None
    if config.logging.current_peer_interval is not None:
        level = (
            config.logging.default_level
            if isinstance(config.logging.default_level, int)
            else logging.getLevelName(config.logging.default_level)
        )
        peer_logger_task = periodic_peer_logger(
            server,
            config.logging.current_peer_interval,
            config.logging.current_peer_limit,
            level=level,
        )

    config_repr = pprint.pformat(config, indent=2)
    logger.info(f'Relay serving configuration:\n{config_repr}')

    async with websockets_serve(
        server.handler,
        config.host,
        config.port,
        ssl=ssl_context,
    ):
        logger.info(f'Relay server listening on port {config.port}')
        logger.info('Use ctrl-C to stop')
        await stop

    await cancel_and_wait(peer_logger_task)

    loop.remove_signal_handler(signal.SIGINT)
    loop.remove_signal_handler(signal.SIGTERM)

    logger.info('Relay server shutdown')


@click.command()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--host', metavar='ADDR', help='Interface to bind to.')
@click.option(
    '--port',
    type=int,
    metavar='PORT',
    envvar='PORT',
    help=f'Port to bind to. [env: PORT, default: {DEFAULT_RELAY_PORT}]',
)
@click.option('--log-dir', metavar='PATH', help='Logging directory.')
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
def cli(
    config_path: str | None,
    host: str | None,
    port: int | None,
    log_dir: str | None,
    log_level: str | None,
) -> None:
    """Run a relay server instance.

    The relay server is used by peers to establish peer-to-peer
    WebRTC connections. If no configuration file is provided, a default
    configuration will be created from
    [`RelayServingConfig()`][peershare.relay.config.RelayServingConfig].
    The remaining CLI options will override the options provided in the
    configuration object.
    """
    config = (
        RelayServingConfig()
        if config_path is None
        else RelayServingConfig.from_toml(config_path)
    )

    # Override config with CLI options if given
    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    if log_dir is not None:
        config.logging.log_dir = log_dir
    if log_level is not None:
        config.logging.default_level = logging.getLevelName(
            log_level.upper(),
        )

    configure_logging(
        config.logging.default_level,
        log_dir=config.logging.log_dir,
        filename='server.log',
        websockets_level=config.logging.websockets_level,
    )

    asyncio.run(serve(config))
