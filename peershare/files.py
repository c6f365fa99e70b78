"""Persist received files."""
from __future__ import annotations

import logging
import os
import pathlib
import re

from peershare.transfer import TransferMetadata

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r'[\x00-\x1f\x7f]')


class FileSaver:
    """Base file saver used by the receive side of a transfer."""

    def save(self, data: bytes, metadata: TransferMetadata) -> str:
        """Persist the received file.

        Args:
            data: Reassembled file contents.
            metadata: Metadata the sender declared for the file.

        Returns:
            Location the file was saved to.
        """
        raise NotImplementedError


class DirectorySaver(FileSaver):
    """Save received files into a directory.

    Only the final path component of the declared file name is used so a
    peer cannot write outside of `directory`. Existing files are never
    overwritten; a numbered suffix is added instead (e.g.,
    `report (1).pdf`). Control characters are removed from the name.

    Args:
        directory: Directory to save files into. Created if it does not
            exist.
    """

    def __init__(self, directory: str | pathlib.Path) -> None:
        self.directory = pathlib.Path(directory).expanduser()

    def _available_path(self, file_name: str) -> pathlib.Path:
        file_name = _CONTROL_CHARS.sub('', file_name)
        # Browsers may send Windows style paths
        name = pathlib.PurePath(file_name.replace('\\', '/')).name
        if name in ('', '.', '..'):
            name = 'download'
        path = self.directory / name
        stem, suffix = os.path.splitext(name)
        index = 1
        while path.exists():
            path = self.directory / f'{stem} ({index}){suffix}'
            index += 1
        return path

    def save(self, data: bytes, metadata: TransferMetadata) -> str:
        """Write the file and return its path."""
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._available_path(metadata.file_name)
        with open(path, 'xb') as f:
            f.write(data)
        logger.info(f'Saved {len(data)} bytes to {path}')
        return str(path)
