"""Peer application tying signaling, negotiation, and transfers together."""
from __future__ import annotations

import asyncio
import logging
import pathlib
import signal
import sys
from types import TracebackType
from typing import Any

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import click
import pydantic
import websockets.exceptions

from peershare.config import PeerConfig
from peershare.exceptions import ChannelNotReady
from peershare.exceptions import NegotiationFailure
from peershare.files import DirectorySaver
from peershare.files import FileSaver
from peershare.negotiator import SessionNegotiator
from peershare.relay.client import SignalingClient
from peershare.relay.client import SignalingError
from peershare.relay.messages import SignalingMessageDecodeError
from peershare.status import LoggingStatusReporter
from peershare.status import Severity
from peershare.status import StatusReporter
from peershare.transfer import FileReceiver
from peershare.transfer import FileSender
from peershare.utils.logs import configure_logging
from peershare.utils.tasks import cancel_and_wait
from peershare.utils.tasks import SafeTaskExitError
from peershare.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)


class PeerClient:
    """One end of a peer-to-peer file transfer.

    Connects to the relay server, answers offers from other peers, and
    saves any file received on the data channel. Files can be sent once a
    channel is open, whichever side initiated it.

    Example:
        ```python
        async with PeerClient(PeerConfig(relay_address=address)) as peer:
            print(peer.peer_id)  # share this with the other peer
            await peer.connect('k3j2b8d0q')
            if await peer.wait_for_channel() is not None:
                await peer.send_file('notes.txt')
        ```

    Args:
        config: Peer configuration.
        reporter: Status reporter. Defaults to logging status events.
        saver: File saver. Defaults to saving files in
            `config.download_dir`.
        signaling: Signaling client. Defaults to a client connecting to
            `config.relay_address`.
    """

    def __init__(
        self,
        config: PeerConfig,
        *,
        reporter: StatusReporter | None = None,
        saver: FileSaver | None = None,
        signaling: SignalingClient | None = None,
    ) -> None:
        self.config = config
        self.reporter = (
            LoggingStatusReporter() if reporter is None else reporter
        )
        self.signaling = (
            SignalingClient(config.relay_address, timeout=config.timeout)
            if signaling is None
            else signaling
        )
        self.receiver = FileReceiver(
            self.reporter,
            DirectorySaver(config.download_dir) if saver is None else saver,
        )

        self._negotiator: SessionNegotiator | None = None
        self._sender: FileSender | None = None
        self._signaling_task: asyncio.Task[None] | None = None
        self._channel_task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def peer_id(self) -> str:
        """Identifier assigned to this peer by the relay server."""
        return self.signaling.peer_id

    @property
    def negotiator(self) -> SessionNegotiator:
        """Session negotiator.

        Raises:
            RuntimeError: If [`start()`][peershare.peer.PeerClient.start]
                has not been called.
        """
        if self._negotiator is None:
            raise RuntimeError(
                'The peer has not been started. Is start() being called?',
            )
        return self._negotiator

    async def start(self) -> None:
        """Connect to the relay server and start handling messages.

        Raises:
            SignalingError: If the relay server cannot be reached.
        """
        await self.signaling.connect()
        self._negotiator = SessionNegotiator(
            self.signaling,
            self.reporter,
            ice_servers=self.config.ice_servers,
            channel_label=self.config.channel_label,
        )
        self._signaling_task = spawn_guarded_background_task(
            self._handle_signaling_messages,
            name='peer-signaling-message-handler',
        )
        self._channel_task = spawn_guarded_background_task(
            self._handle_channel_messages,
            name='peer-channel-message-handler',
        )
        self.reporter.update_status(
            f'Connected to relay server as {self.peer_id}',
            Severity.SUCCESS,
        )

    async def _handle_signaling_messages(self) -> None:
        while True:
            try:
                message = await self.signaling.recv()
            except SignalingMessageDecodeError as e:
                logger.warning(f'Ignoring message from relay server: {e}')
                continue
            except websockets.exceptions.ConnectionClosed as e:
                self.reporter.update_status(
                    'Disconnected from server',
                    Severity.ERROR,
                )
                raise SafeTaskExitError() from e
            await self.negotiator.handle_message(message)

    async def _handle_channel_messages(self) -> None:
        while True:
            message = await self.negotiator.messages.get()
            if message is None:
                self.receiver.abandon()
            else:
                self.receiver.on_channel_message(message)

    async def connect(self, target: str) -> None:
        """Start connecting to another peer.

        Progress and failures are reported as status events. Use
        [`wait_for_channel()`][peershare.peer.PeerClient.wait_for_channel]
        to wait on the result.

        Args:
            target: Identifier of the peer to connect to.
        """
        await self.negotiator.connect(target)

    async def wait_for_channel(self, timeout: float | None = None) -> Any:
        """Wait for a data channel to open.

        Args:
            timeout: Seconds to wait. Defaults to `config.timeout`.

        Returns:
            The open data channel or `None` if negotiation failed.
        """
        timeout = self.config.timeout if timeout is None else timeout
        try:
            return await self.negotiator.ready(timeout)
        except NegotiationFailure as e:
            self.reporter.update_status(str(e), Severity.ERROR)
            return None

    async def send_file(self, path: str | pathlib.Path | None) -> bool:
        """Send a file over the open data channel.

        Returns:
            `True` if the file was sent.
        """
        channel = (
            None if self._negotiator is None else self._negotiator.channel
        )
        if channel is None or channel.readyState != 'open':
            error = ChannelNotReady('No connection to peer')
            logger.warning(f'Cannot send file: {error}')
            self.reporter.update_status(str(error), Severity.ERROR)
            return False

        if self._sender is None or self._sender.channel is not channel:
            self._sender = FileSender(
                channel,
                self.reporter,
                chunk_size=self.config.chunk_size,
            )
        return await self._sender.send_file(path)

    async def close(self) -> None:
        """Flush any pending data and disconnect from the peer and relay."""
        if self._sender is not None:
            await self._sender.drain(self.config.timeout)
        await cancel_and_wait(self._signaling_task)
        await cancel_and_wait(self._channel_task)
        if self._negotiator is not None:
            await self._negotiator.close()
        self.receiver.abandon()
        await self.signaling.close()


async def run_peer(
    config: PeerConfig,
    target: str | None = None,
    path: str | None = None,
) -> int:
    """Run a peer until its work is done or it is interrupted.

    Without a `target` the peer waits for other peers to connect and saves
    the files they send. With a `target` and `path` the peer connects, sends
    the file, and exits.

    Returns:
        Process exit code.
    """
    loop = asyncio.get_running_loop()
    stop = loop.create_future()
    loop.add_signal_handler(signal.SIGINT, stop.set_result, None)
    loop.add_signal_handler(signal.SIGTERM, stop.set_result, None)

    try:
        async with PeerClient(config) as peer:
            logger.info(f'Peer ID: {peer.peer_id}')
            if target is not None:
                await peer.connect(target)
                if await peer.wait_for_channel() is None:
                    return 1
                if path is not None:
                    return 0 if await peer.send_file(path) else 1
            logger.info('Waiting for files. Use ctrl-C to stop')
            await stop
    except SignalingError as e:
        logger.error(str(e))
        return 1
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        loop.remove_signal_handler(signal.SIGTERM)
    return 0


@click.command()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--relay', metavar='URL', help='Relay server address.')
@click.option(
    '--connect',
    'target',
    metavar='PEER_ID',
    help='Identifier of the peer to connect to.',
)
@click.option(
    '--send',
    'path',
    type=click.Path(exists=True, dir_okay=False),
    help='File to send once connected. Requires --connect.',
)
@click.option('--output', metavar='DIR', help='Directory to save files to.')
@click.option(
    '--ice-server',
    'ice_servers',
    multiple=True,
    metavar='URL',
    help='STUN/TURN server URL. May be repeated.',
)
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
    relay: str | None,
    target: str | None,
    path: str | None,
    output: str | None,
    ice_servers: tuple[str, ...],
    log_level: str | None,
) -> None:
    """Send or receive files directly between two peers.

    Run without --connect to print this peer's ID and wait for files.
    Run with --connect and --send on another machine to send a file to it.
    """
    if path is not None and target is None:
        raise click.UsageError('--send requires --connect.')

    config = (
        PeerConfig()
        if config_path is None
        else PeerConfig.from_toml(config_path)
    )

    # Override config with CLI options if given
    if relay is not None:
        try:
            config.relay_address = relay
        except pydantic.ValidationError as e:
            raise click.BadParameter(str(e), param_hint='--relay') from e
    if output is not None:
        config.download_dir = output
    if len(ice_servers) > 0:
        config.ice_servers = list(ice_servers)
    if log_level is not None:
        config.log_level = logging.getLevelName(log_level.upper())

    configure_logging(config.log_level)

    sys.exit(asyncio.run(run_peer(config, target, path)))
