"""General purpose utility functions."""
from __future__ import annotations

from peershare.utils.data import format_file_size
