"""
Minimal in-memory WebRTC session representation.

:class:`InMemoryTransport` models the signaling-state machine of a peer
connection closely enough to exercise glare handling end to end without a
media stack.  Operations are serialised through an internal operations chain
the way a browser peer connection serialises ``setLocalDescription`` and
friends, and every operation yields to the event loop before it inspects
state, so callers observe the same interleavings they would against a real
transport.

Offer bodies carry a lineage tag (``"<name>:<n>"``) and answers echo the offer
they accept, which makes :attr:`InMemoryTransport.negotiated` comparable
across the two peers of a session.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from ..errors import InvalidStateError
from ..protocol import DescriptionType, IceCandidate, SessionDescription, SignalingState
from .base import Listener, Observers

LOG = logging.getLogger(__name__)


@dataclass
class SessionRecord:
    """
    Negotiation artefacts kept for inspection.

    ``history`` lists ``(operation, detail)`` pairs in the order the transport
    executed them.
    """

    offers: List[SessionDescription] = field(default_factory=list)
    answers: List[SessionDescription] = field(default_factory=list)
    ice_candidates: List[IceCandidate] = field(default_factory=list)
    local_candidates: List[IceCandidate] = field(default_factory=list)
    history: List[Tuple[str, str]] = field(default_factory=list)

    def add_candidate(self, candidate: IceCandidate) -> bool:
        if candidate in self.ice_candidates:
            return False
        self.ice_candidates.append(candidate)
        return True


class InMemoryTransport:
    """
    In-process transport with a faithful signaling-state machine.

    Parameters
    ----------
    name:
        Peer label used in offer lineage tags and log output.
    delay:
        Seconds each operation sleeps before touching state; ``0`` still
        yields once to the event loop.
    implicit_rollback:
        When true, applying a remote offer while a local offer is pending
        silently discards the local offer instead of failing.
    """

    def __init__(self, name: str = "peer", *, delay: float = 0.0, implicit_rollback: bool = False) -> None:
        self.name = name
        self.delay = max(0.0, float(delay))
        self.implicit_rollback = bool(implicit_rollback)
        self.record = SessionRecord()
        self.last_offer_options: Dict[str, Any] = {}

        self._state = SignalingState.STABLE
        self._current_local: Optional[SessionDescription] = None
        self._current_remote: Optional[SessionDescription] = None
        self._pending_local: Optional[SessionDescription] = None
        self._pending_remote: Optional[SessionDescription] = None
        self._negotiated: Optional[Any] = None
        self._offer_counter = 0
        self._chain = asyncio.Lock()
        self._negotiation_needed = Observers(f"transport.{name}.negotiation_needed")
        self._local_candidate = Observers(f"transport.{name}.local_candidate")
        self.logger = LOG.getChild(name)

    # ------------------------------------------------------------------ state

    @property
    def signaling_state(self) -> SignalingState:
        return self._state

    @property
    def local_description(self) -> Optional[SessionDescription]:
        return self._pending_local or self._current_local

    @property
    def remote_description(self) -> Optional[SessionDescription]:
        return self._pending_remote or self._current_remote

    @property
    def negotiated(self) -> Optional[Any]:
        """Body of the offer that the last completed exchange settled on."""

        return self._negotiated

    def describe(self) -> Dict[str, Any]:
        local = self.local_description
        remote = self.remote_description
        return {
            "name": self.name,
            "signalingState": self._state.value,
            "localDescription": local.to_dict() if local else None,
            "remoteDescription": remote.to_dict() if remote else None,
            "negotiated": self._negotiated,
            "candidates": len(self.record.ice_candidates),
        }

    # ------------------------------------------------------------------ events

    def on_negotiation_needed(self, callback: Listener) -> int:
        return self._negotiation_needed.add(callback)

    def off_negotiation_needed(self, token: int) -> None:
        self._negotiation_needed.discard(token)

    def on_local_candidate(self, callback: Listener) -> int:
        return self._local_candidate.add(callback)

    def off_local_candidate(self, token: int) -> None:
        self._local_candidate.discard(token)

    def request_negotiation(self) -> None:
        """Fire the negotiation-needed notification, as adding a track would."""

        if self._state is SignalingState.CLOSED:
            return
        self.logger.debug("Negotiation needed")
        self._negotiation_needed.emit()

    def gather_candidate(self, candidate: Union[str, IceCandidate]) -> IceCandidate:
        """Announce a locally gathered ICE candidate to subscribers."""

        if isinstance(candidate, str):
            candidate = IceCandidate(candidate=candidate)
        if self._state is SignalingState.CLOSED:
            raise InvalidStateError("Cannot gather ICE candidates on a closed transport")
        self.record.local_candidates.append(candidate)
        self._log("gather_candidate", candidate.candidate)
        self._local_candidate.emit(candidate)
        return candidate

    # ------------------------------------------------------------------ operations

    async def _enter(self, operation: str) -> None:
        await asyncio.sleep(self.delay)
        if self._state is SignalingState.CLOSED:
            raise InvalidStateError(f"{operation}: transport is closed")

    def _log(self, operation: str, detail: str = "") -> None:
        self.record.history.append((operation, detail))
        self.logger.debug("%s %s -> %s", operation, detail, self._state.value)

    async def create_local_offer(self, options: Optional[Mapping[str, Any]] = None) -> SessionDescription:
        async with self._chain:
            await self._enter("create_local_offer")
            if self._state not in (SignalingState.STABLE, SignalingState.HAVE_LOCAL_OFFER):
                raise InvalidStateError(f'Cannot create offer in signaling state "{self._state.value}"')
            self._offer_counter += 1
            self.last_offer_options = dict(options or {})
            offer = SessionDescription(DescriptionType.OFFER, f"{self.name}:{self._offer_counter}")
            self._pending_local = offer
            self._state = SignalingState.HAVE_LOCAL_OFFER
            self.record.offers.append(offer)
            self._log("create_local_offer", str(offer.body))
            return offer

    async def create_local_answer(self) -> SessionDescription:
        async with self._chain:
            await self._enter("create_local_answer")
            remote = self._pending_remote
            if self._state is not SignalingState.HAVE_REMOTE_OFFER or remote is None:
                raise InvalidStateError(f'Cannot create answer in signaling state "{self._state.value}"')
            answer = SessionDescription(DescriptionType.ANSWER, remote.body)
            self._current_remote = remote
            self._current_local = answer
            self._pending_remote = None
            self._pending_local = None
            self._negotiated = remote.body
            self._state = SignalingState.STABLE
            self.record.answers.append(answer)
            self._log("create_local_answer", str(answer.body))
            return answer

    async def apply_remote_description(self, description: SessionDescription) -> None:
        async with self._chain:
            await self._enter("apply_remote_description")
            kind = description.type
            if kind is DescriptionType.OFFER:
                self._apply_remote_offer(description)
            elif kind in (DescriptionType.ANSWER, DescriptionType.PRANSWER):
                self._apply_remote_answer(description)
            else:
                if self._state is not SignalingState.HAVE_REMOTE_OFFER:
                    raise InvalidStateError(
                        f'Cannot roll back remote description in signaling state "{self._state.value}"'
                    )
                self._pending_remote = None
                self._state = SignalingState.STABLE
            self._log("apply_remote_description", f"{kind.value}:{description.body}")

    def _apply_remote_offer(self, description: SessionDescription) -> None:
        if self._state is SignalingState.HAVE_LOCAL_OFFER and self.implicit_rollback:
            self._log("implicit_rollback", str(self._pending_local.body if self._pending_local else ""))
            self._pending_local = None
            self._state = SignalingState.STABLE
        if self._state not in (SignalingState.STABLE, SignalingState.HAVE_REMOTE_OFFER):
            raise InvalidStateError(f'Cannot handle offer in signaling state "{self._state.value}"')
        self._pending_remote = description
        self._state = SignalingState.HAVE_REMOTE_OFFER

    def _apply_remote_answer(self, description: SessionDescription) -> None:
        if self._state not in (SignalingState.HAVE_LOCAL_OFFER, SignalingState.HAVE_REMOTE_PRANSWER):
            raise InvalidStateError(
                f'Cannot handle {description.type.value} in signaling state "{self._state.value}"'
            )
        if description.type is DescriptionType.PRANSWER:
            self._pending_remote = description
            self._state = SignalingState.HAVE_REMOTE_PRANSWER
            return
        local = self._pending_local
        self._current_local = local
        self._current_remote = description
        self._pending_local = None
        self._pending_remote = None
        self._negotiated = local.body if local is not None else description.body
        self._state = SignalingState.STABLE

    async def rollback_local(self) -> None:
        async with self._chain:
            await self._enter("rollback_local")
            if self._state is SignalingState.HAVE_LOCAL_OFFER:
                discarded = self._pending_local
                self._pending_local = None
            elif self._state is SignalingState.HAVE_REMOTE_OFFER:
                discarded = self._pending_remote
                self._pending_remote = None
            else:
                raise InvalidStateError(f'Cannot roll back in signaling state "{self._state.value}"')
            self._state = SignalingState.STABLE
            self._log("rollback_local", str(discarded.body if discarded else ""))

    async def add_remote_candidate(self, candidate: IceCandidate) -> None:
        async with self._chain:
            await self._enter("add_remote_candidate")
            if self.remote_description is None:
                raise InvalidStateError("Cannot add ICE candidate before a remote description is set")
            if not self.record.add_candidate(candidate):
                self.logger.debug("Duplicate ICE candidate ignored: %s", candidate.candidate)
                return
            self._log("add_remote_candidate", candidate.candidate)

    def close(self) -> None:
        if self._state is SignalingState.CLOSED:
            return
        self._state = SignalingState.CLOSED
        self._log("close")


__all__ = ["InMemoryTransport", "SessionRecord"]
