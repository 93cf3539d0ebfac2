"""
Signal channel implementations.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import List, Optional, Tuple

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from ..errors import ChannelNotReady
from .base import Listener, Observers

LOG = logging.getLogger(__name__)


class LoopbackChannel:
    """
    One end of an in-process channel pair.

    Frames are delivered to the peer end asynchronously and in order, via
    ``loop.call_soon``.  ``sent`` keeps every frame this end transmitted.
    """

    def __init__(self, name: str = "loopback") -> None:
        self.name = name
        self.peer: Optional["LoopbackChannel"] = None
        self.sent: List[str] = []
        self.received: List[str] = []
        self._open = True
        self._in_transit = 0
        self._listeners = Observers(f"channel.{name}")

    @classmethod
    def pair(cls, left: str = "a", right: str = "b") -> Tuple["LoopbackChannel", "LoopbackChannel"]:
        first, second = cls(left), cls(right)
        first.peer = second
        second.peer = first
        return first, second

    @property
    def is_open(self) -> bool:
        return self._open and self.peer is not None and self.peer._open

    @property
    def in_transit(self) -> int:
        """Frames sent to this end that have not been dispatched yet."""

        return self._in_transit

    def on_message(self, callback: Listener) -> int:
        return self._listeners.add(callback)

    def off_message(self, token: int) -> None:
        self._listeners.discard(token)

    async def send(self, raw: str) -> None:
        peer = self.peer
        if not self.is_open or peer is None:
            raise ChannelNotReady(f"channel {self.name} is not open")
        self.sent.append(raw)
        peer._in_transit += 1
        asyncio.get_running_loop().call_soon(peer._deliver, raw)

    def _deliver(self, raw: str) -> None:
        self._in_transit -= 1
        if not self._open:
            LOG.debug("Dropping frame for closed channel %s", self.name)
            return
        self.received.append(raw)
        self._listeners.emit(raw)

    def close(self) -> None:
        self._open = False
        if self.peer is not None:
            self.peer._open = False


class WebSocketChannel:
    """
    Adapt a server-side FastAPI WebSocket to the signal channel contract.

    The socket must already be accepted.  :meth:`pump` reads text frames and
    dispatches them to listeners until the client disconnects.
    """

    def __init__(self, websocket: WebSocket, *, name: str = "ws") -> None:
        self.websocket = websocket
        self.name = name
        self._closed = False
        self._listeners = Observers(f"channel.{name}")
        self.logger = LOG.getChild(name)

    @property
    def is_open(self) -> bool:
        if self._closed:
            return False
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    def on_message(self, callback: Listener) -> int:
        return self._listeners.add(callback)

    def off_message(self, token: int) -> None:
        self._listeners.discard(token)

    async def send(self, raw: str) -> None:
        if not self.is_open:
            raise ChannelNotReady(f"websocket {self.name} is not connected")
        try:
            await self.websocket.send_text(raw)
        except (WebSocketDisconnect, RuntimeError) as exc:
            self._closed = True
            raise ChannelNotReady(f"websocket {self.name} closed during send") from exc

    async def pump(self) -> None:
        try:
            while self.is_open:
                raw = await self.websocket.receive_text()
                self._listeners.emit(raw)
        except WebSocketDisconnect:
            self.logger.debug("WebSocket client disconnected")
        finally:
            self._closed = True

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closed:
            return
        self._closed = True
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await self.websocket.close(code=code, reason=reason)


__all__ = ["LoopbackChannel", "WebSocketChannel"]
