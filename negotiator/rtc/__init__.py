"""
Transport and signal channel helpers.
"""

from __future__ import annotations

from .base import Observers, SignalChannel, Transport
from .channel import LoopbackChannel, WebSocketChannel
from .session import InMemoryTransport, SessionRecord

__all__ = [
    "InMemoryTransport",
    "LoopbackChannel",
    "Observers",
    "SessionRecord",
    "SignalChannel",
    "Transport",
    "WebSocketChannel",
]
