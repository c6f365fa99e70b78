"""peershare: peer-to-peer file transfer over WebRTC data channels."""
from __future__ import annotations

import importlib.metadata as importlib_metadata

__version__ = importlib_metadata.version('peershare')
