"""
Contracts for the two collaborators a coordinator drives.

The coordinator never reaches past these protocols: a transport owns the
offer/answer state machine and a signal channel owns delivery.  Both expose
token based subscriptions so a coordinator can detach cleanly.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol, Set, runtime_checkable

from ..protocol import IceCandidate, SessionDescription, SignalingState

LOG = logging.getLogger(__name__)

Listener = Callable[..., Any]


class Observers:
    """
    Token keyed callback set.

    Callbacks returning an awaitable are scheduled on the running loop; the
    resulting tasks are retained until they finish.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._lock = threading.RLock()
        self._counter = 0
        self._callbacks: Dict[int, Listener] = {}
        self._tasks: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._callbacks)

    def add(self, callback: Listener) -> int:
        if not callable(callback):
            raise TypeError("callback must be callable")
        with self._lock:
            self._counter += 1
            token = self._counter
            self._callbacks[token] = callback
        return token

    def discard(self, token: int) -> None:
        with self._lock:
            self._callbacks.pop(token, None)

    def emit(self, *args: Any) -> None:
        with self._lock:
            callbacks = dict(self._callbacks)
        for token, callback in callbacks.items():
            try:
                result = callback(*args)
            except Exception:
                LOG.exception("%s listener %s failed.", self._name, token)
                continue
            if inspect.isawaitable(result):
                self._track(result)

    def _track(self, awaitable: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOG.error("%s listener task failed: %s", self._name, exc, exc_info=exc)


@runtime_checkable
class Transport(Protocol):
    """Offer/answer engine consumed by a coordinator."""

    @property
    def signaling_state(self) -> SignalingState: ...

    @property
    def local_description(self) -> Optional[SessionDescription]: ...

    def on_negotiation_needed(self, callback: Listener) -> int: ...

    def off_negotiation_needed(self, token: int) -> None: ...

    def on_local_candidate(self, callback: Listener) -> int: ...

    def off_local_candidate(self, token: int) -> None: ...

    async def create_local_offer(
        self, options: Optional[Mapping[str, Any]] = None
    ) -> SessionDescription: ...

    async def create_local_answer(self) -> SessionDescription: ...

    async def apply_remote_description(self, description: SessionDescription) -> None: ...

    async def rollback_local(self) -> None: ...

    async def add_remote_candidate(self, candidate: IceCandidate) -> None: ...


@runtime_checkable
class SignalChannel(Protocol):
    """Bidirectional pipe for serialised signalling frames."""

    @property
    def is_open(self) -> bool: ...

    async def send(self, raw: str) -> None: ...

    def on_message(self, callback: Listener) -> int: ...

    def off_message(self, token: int) -> None: ...


__all__ = ["Listener", "Observers", "SignalChannel", "Transport"]
