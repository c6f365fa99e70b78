"""Signaling relay server and client implementations.

The relay assigns every connected client an opaque identifier and forwards
offers, answers, and ICE candidates between clients so they can establish a
direct WebRTC connection.
"""
from __future__ import annotations
