"""Chunked file transfer over an ordered, reliable data channel.

A transfer is one text frame with the JSON encoded
[`TransferMetadata`][peershare.transfer.TransferMetadata] followed by the raw
file bytes split into binary frames of at most `chunk_size` bytes.

```
text    {"fileName": "notes.txt", "fileSize": 40000, "fileType": "text/plain"}
binary  16384 bytes
binary  16384 bytes
binary   7232 bytes
```

There is no end-of-transfer marker and no sequence numbering. The receiver
considers the transfer complete once it has received exactly `fileSize`
bytes, so the channel must deliver frames in order and without loss (an
aiortc data channel created with `ordered=True` and no retransmit limits).
"""
from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import mimetypes
import os
import pathlib
from typing import Any
from typing import TYPE_CHECKING

from peershare.exceptions import ChannelNotReady
from peershare.exceptions import ConnectionLost
from peershare.exceptions import ProtocolViolation
from peershare.status import Severity
from peershare.status import StatusReporter
from peershare.utils.data import format_file_size

if TYPE_CHECKING:
    from peershare.files import FileSaver

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 16384
"""Maximum size of a binary frame in bytes."""
BUFFERED_AMOUNT_LOW_THRESHOLD = 2**20
"""Send buffer size in bytes above which the sender waits for it to drain."""


@dataclasses.dataclass(frozen=True)
class TransferMetadata:
    """Description of a file sent before any of its bytes.

    Attributes:
        file_name: Name of the file (no directory components are implied).
        file_size: Exact size of the file in bytes.
        file_type: MIME type of the file or an empty string if unknown.
    """

    file_name: str
    file_size: int
    file_type: str = ''

    def to_json(self) -> str:
        """Encode the metadata as the JSON text frame sent on the channel."""
        return json.dumps(
            {
                'fileName': self.file_name,
                'fileSize': self.file_size,
                'fileType': self.file_type,
            },
        )

    @classmethod
    def from_json(cls, message: str) -> TransferMetadata:
        """Decode a metadata text frame.

        Raises:
            ProtocolViolation: If the frame is not a JSON object with a
                string `fileName`, a non-negative integer `fileSize`, and
                an optional string `fileType`.
        """
        try:
            data = json.loads(message)
        except (json.JSONDecodeError, RecursionError) as e:
            raise ProtocolViolation(
                'Transfer metadata is not valid JSON.',
            ) from e

        if not isinstance(data, dict):
            raise ProtocolViolation('Transfer metadata must be an object.')

        file_name = data.get('fileName')
        file_size = data.get('fileSize')
        file_type = data.get('fileType') or ''

        if not isinstance(file_name, str):
            raise ProtocolViolation('Transfer metadata is missing fileName.')
        if (
            isinstance(file_size, bool)
            or not isinstance(file_size, int)
            or file_size < 0
        ):
            raise ProtocolViolation(
                f'Transfer metadata has invalid fileSize: {file_size!r}.',
            )
        if not isinstance(file_type, str):
            raise ProtocolViolation(
                f'Transfer metadata has invalid fileType: {file_type!r}.',
            )
        return cls(file_name, file_size, file_type)


def describe_file(path: str | pathlib.Path) -> TransferMetadata:
    """Build the metadata for a file on disk.

    Raises:
        OSError: If the file cannot be accessed.
    """
    file_type, _ = mimetypes.guess_type(str(path))
    return TransferMetadata(
        file_name=os.path.basename(path),
        file_size=os.stat(path).st_size,
        file_type=file_type or '',
    )


def send_progress(offset: int, file_size: int) -> int:
    """Percent of a file sent, rounded down."""
    if file_size == 0:
        return 100
    return offset * 100 // file_size


def receive_progress(received_size: int, expected_size: int) -> int:
    """Percent of a file received, rounded to the nearest integer."""
    if expected_size == 0:
        return 100
    return round(received_size * 100 / expected_size)


class FileSender:
    """Send side of the transfer protocol.

    Args:
        channel: Data channel to send on. Must expose `readyState`,
            `send()`, `bufferedAmount`, `bufferedAmountLowThreshold`, and
            emit `bufferedamountlow` events, like
            [`aiortc.RTCDataChannel`][aiortc.RTCDataChannel].
        reporter: Status reporter.
        chunk_size: Maximum size of each binary frame in bytes.

    Raises:
        ValueError: If `chunk_size` is not positive.
    """

    def __init__(
        self,
        channel: Any,
        reporter: StatusReporter,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        if chunk_size < 1:
            raise ValueError(f'Chunk size must be positive. Got {chunk_size}.')
        self._channel = channel
        self._reporter = reporter
        self._chunk_size = chunk_size

        self._buffer_low = asyncio.Event()
        self._channel.bufferedAmountLowThreshold = (
            BUFFERED_AMOUNT_LOW_THRESHOLD
        )
        self._channel.on('bufferedamountlow', self._buffer_low.set)
        # Wake a sender waiting on the buffer so it sees the closed channel
        self._channel.on('close', self._buffer_low.set)

    @property
    def channel(self) -> Any:
        """Data channel files are sent on."""
        return self._channel

    @property
    def chunk_size(self) -> int:
        """Maximum size of each binary frame in bytes."""
        return self._chunk_size

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for the send buffer of the channel to empty.

        Returns early if the channel closes. A timeout is logged, not raised.
        """

        async def _drain() -> None:
            while (
                self._channel.readyState == 'open'
                and self._channel.bufferedAmount > 0
            ):
                await asyncio.sleep(0.05)

        try:
            await asyncio.wait_for(_drain(), timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f'Timeout waiting for {self._channel.bufferedAmount} '
                'buffered bytes to be sent',
            )

    def _check_open(self) -> None:
        if self._channel.readyState != 'open':
            raise ConnectionLost(
                f'Data channel is {self._channel.readyState}.',
            )

    async def _wait_for_buffer(self) -> None:
        if (
            self._channel.bufferedAmount
            > self._channel.bufferedAmountLowThreshold
        ):
            self._buffer_low.clear()
            await self._buffer_low.wait()

    async def _send_chunks(
        self,
        path: str | pathlib.Path,
        metadata: TransferMetadata,
    ) -> None:
        self._channel.send(metadata.to_json())
        if metadata.file_size == 0:
            self._reporter.update_status('Sending file: 100%')
            return

        offset = 0
        with open(path, 'rb') as f:
            while offset < metadata.file_size:
                remaining = metadata.file_size - offset
                chunk = f.read(min(self._chunk_size, remaining))
                if len(chunk) == 0:
                    raise OSError(
                        f'{path} shrank to {offset} bytes while sending.',
                    )
                await self._wait_for_buffer()
                self._check_open()
                self._channel.send(chunk)
                offset += len(chunk)
                progress = send_progress(offset, metadata.file_size)
                self._reporter.update_status(f'Sending file: {progress}%')

    async def send_file(self, path: str | pathlib.Path | None) -> bool:
        """Send a file to the peer.

        All failures are reported as error status events rather than raised.

        Args:
            path: File to send.

        Returns:
            `True` if every byte of the file was handed to the channel.
        """
        try:
            if self._channel.readyState != 'open':
                raise ChannelNotReady('No connection to peer')
            if path is None:
                raise ChannelNotReady('Please select a file first')
            metadata = describe_file(path)
        except ChannelNotReady as e:
            logger.warning(f'Cannot send file: {e}')
            self._reporter.update_status(str(e), Severity.ERROR)
            return False
        except OSError as e:
            logger.warning(f'Cannot read {path}: {e}')
            self._reporter.update_status(
                f'Failed to read file: {e}',
                Severity.ERROR,
            )
            return False

        logger.info(
            f'Sending {metadata.file_name} ({metadata.file_size} bytes) in '
            f'chunks of {self._chunk_size} bytes',
        )
        self._reporter.update_status(
            f'Sending file: {metadata.file_name} '
            f'({format_file_size(metadata.file_size)})',
        )
        try:
            await self._send_chunks(path, metadata)
        except Exception as e:
            logger.exception(f'Failed to send {metadata.file_name}')
            self._reporter.update_status(
                f'Failed to send file: {e}',
                Severity.ERROR,
            )
            return False

        self._reporter.update_status(
            'File sent successfully',
            Severity.SUCCESS,
        )
        return True


@dataclasses.dataclass
class ReceiveSession:
    """In progress receive of a single file.

    Attributes:
        metadata: Metadata the sender declared.
        chunks: Chunks received so far in arrival order.
        received_size: Total bytes received so far.
    """

    metadata: TransferMetadata
    chunks: list[bytes] = dataclasses.field(default_factory=list)
    received_size: int = 0

    @property
    def expected_size(self) -> int:
        """Declared size of the file in bytes."""
        return self.metadata.file_size

    @property
    def complete(self) -> bool:
        """All declared bytes have been received."""
        return self.received_size == self.expected_size

    def data(self) -> bytes:
        """Join the received chunks."""
        return b''.join(self.chunks)


class FileReceiver:
    """Receive side of the transfer protocol.

    Feed every data channel message to
    [`on_channel_message()`][peershare.transfer.FileReceiver.on_channel_message]
    in the order it arrived. At most one transfer is in flight per channel;
    a new metadata frame discards any unfinished transfer.

    Args:
        reporter: Status reporter.
        saver: Collaborator that persists completed files. If `None`,
            completed files are only kept in
            [`last_received`][peershare.transfer.FileReceiver.last_received].
    """

    def __init__(
        self,
        reporter: StatusReporter,
        saver: FileSaver | None = None,
    ) -> None:
        self._reporter = reporter
        self._saver = saver
        self._session: ReceiveSession | None = None
        self.last_received: tuple[TransferMetadata, bytes] | None = None
        self.progress = 0

    @property
    def session(self) -> ReceiveSession | None:
        """Current receive session, if a transfer is in progress."""
        return self._session

    @property
    def active(self) -> bool:
        """A transfer is in progress."""
        return self._session is not None

    @property
    def received_size(self) -> int:
        """Bytes received in the current transfer."""
        return 0 if self._session is None else self._session.received_size

    @property
    def expected_size(self) -> int:
        """Declared size of the current transfer."""
        return 0 if self._session is None else self._session.expected_size

    def on_channel_message(self, message: str | bytes) -> None:
        """Process the next message received on the data channel.

        Text frames start a new transfer. Binary frames are chunks of the
        current transfer. Protocol violations are logged and the offending
        frame is dropped.
        """
        try:
            if isinstance(message, str):
                self._start(message)
            else:
                self._append(bytes(message))
        except ProtocolViolation as e:
            logger.warning(f'{type(e).__name__}: {e}')

    def _start(self, message: str) -> None:
        if self._session is not None:
            logger.warning(
                f'Discarding incomplete transfer of '
                f'{self._session.metadata.file_name} '
                f'({self._session.received_size}/'
                f'{self._session.expected_size} bytes)',
            )
        self._session = None
        metadata = TransferMetadata.from_json(message)

        self._session = ReceiveSession(metadata)
        self.progress = 0
        logger.info(
            f'Receiving {metadata.file_name} ({metadata.file_size} bytes)',
        )
        self._reporter.update_status(f'Receiving file: {metadata.file_name}')

        if self._session.complete:
            self._finish()

    def _append(self, chunk: bytes) -> None:
        session = self._session
        if session is None:
            raise ProtocolViolation(
                f'Received {len(chunk)} byte chunk with no transfer in '
                'progress',
            )

        if session.received_size + len(chunk) > session.expected_size:
            self._session = None
            self._reporter.update_status(
                'File transfer failed: received more data than declared',
                Severity.ERROR,
            )
            raise ProtocolViolation(
                f'Chunk of {len(chunk)} bytes overflows '
                f'{session.metadata.file_name} '
                f'({session.received_size}/{session.expected_size} bytes)',
            )

        session.chunks.append(chunk)
        session.received_size += len(chunk)
        self.progress = receive_progress(
            session.received_size,
            session.expected_size,
        )
        self._reporter.update_status(f'Receiving file: {self.progress}%')

        if session.complete:
            self._finish()

    def _finish(self) -> None:
        session = self._session
        assert session is not None
        self._session = None
        self.progress = 100

        data = session.data()
        self.last_received = (session.metadata, data)
        logger.info(
            f'Received {session.metadata.file_name} ({len(data)} bytes)',
        )

        if self._saver is not None:
            try:
                self._saver.save(data, session.metadata)
            except (OSError, ValueError) as e:
                logger.error(
                    f'Failed to save {session.metadata.file_name}: {e}',
                )
                self._reporter.update_status(
                    f'Failed to save file: {e}',
                    Severity.ERROR,
                )
                return

        self._reporter.update_status(
            'File received successfully',
            Severity.SUCCESS,
        )

    def abandon(self) -> None:
        """Drop any in progress transfer because the connection was lost."""
        session = self._session
        if session is None:
            return
        self._session = None
        error = ConnectionLost(
            f'Connection lost after {session.received_size}/'
            f'{session.expected_size} bytes of '
            f'{session.metadata.file_name}',
        )
        logger.warning(str(error))
        self._reporter.update_status(
            'File transfer interrupted: connection lost',
            Severity.ERROR,
        )
