"""Utilities for interacting with data."""
from __future__ import annotations

_UNITS = ('Bytes', 'KB', 'MB', 'GB', 'TB')


def format_file_size(size: int, precision: int = 2) -> str:
    """Convert a byte count to a human readable string.

    Note:
        Unlike SI formatting, this uses base-2 steps (1 KB is 1024 bytes)
        because that is what file managers and browsers show users.

    Example:
        ```python
        >>> format_file_size(0)
        '0 Bytes'
        >>> format_file_size(1536)
        '1.5 KB'
        ```

    Args:
        size: Byte value to make readable.
        precision: Number of decimal places.

    Returns:
        String with human readable number of bytes.

    Raises:
        ValueError: If size is negative.
    """
    if size < 0:
        raise ValueError(f'Size ({size}) cannot be negative.')
    if size == 0:
        return '0 Bytes'

    value = float(size)
    index = 0
    while value >= 1024 and index < len(_UNITS) - 1:
        value /= 1024
        index += 1

    readable = str(round(value, precision))
    if '.' in readable:
        readable = readable.rstrip('0').rstrip('.')
    return f'{readable} {_UNITS[index]}'
