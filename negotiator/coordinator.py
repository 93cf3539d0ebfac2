"""
Glare-free offer/answer coordination between two peers.

A :class:`NegotiationCoordinator` sits between a transport and a signal
channel.  It emits a local offer whenever the transport asks for negotiation,
classifies every incoming frame as a plain update or an offer collision, and
breaks collisions with a fixed polite/impolite role: the impolite peer keeps
its own offer, the polite peer yields and answers.

Everything runs on one asyncio loop.  ``initiate_offer`` and
``handle_incoming`` may interleave at ``await`` points; that interleaving is
what the in-flight flag exists to expose.  Incoming frames are classified one
at a time.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Set, Type, Union

from .errors import (
    CandidateApplyFailure,
    ChannelNotReady,
    DescriptionApplyFailure,
    MalformedMessage,
    NegotiationError,
)
from .protocol import (
    CandidateMessage,
    DescriptionMessage,
    DescriptionType,
    IceCandidate,
    Message,
    Role,
    SessionDescription,
    SignalingState,
    encode_candidate,
    encode_description,
    parse_message,
)
from .rtc.base import SignalChannel, Transport

LOG = logging.getLogger(__name__)

RawMessage = Union[str, bytes, Mapping[str, Any], DescriptionMessage, CandidateMessage]


class CollisionPolicy(str, Enum):
    """How the polite peer clears its own pending offer before answering."""

    ROLLBACK = "rollback"
    OVERWRITE = "overwrite"


class Phase(str, Enum):
    IDLE = "idle"
    OFFER_IN_FLIGHT = "offer-in-flight"
    COLLISION_PENDING = "collision-pending"
    RESOLVED = "resolved"


class Outcome(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    SUPERSEDED = "superseded"
    APPLIED = "applied"
    ANSWERED = "answered"
    CANDIDATE_ADDED = "candidate-added"
    COLLISION_DEFERRED = "collision-deferred"
    COLLISION_IGNORED = "collision-ignored"
    FAILED = "failed"
    REJECTED = "rejected"


@dataclass(frozen=True)
class NegotiationFailure:
    """Failure record delivered to observers."""

    kind: Type[NegotiationError]
    message: str
    error: Optional[BaseException] = None

    @property
    def kind_name(self) -> str:
        return self.kind.__name__


FailureObserver = Callable[[NegotiationFailure], None]


class NegotiationCoordinator:
    """
    Drive one transport/channel pair through offer/answer rounds.

    Parameters
    ----------
    transport, channel:
        Collaborators owned exclusively by this coordinator.
    role:
        Fixed tie-break role. Exactly one peer of a session must be polite.
    policy:
        :attr:`CollisionPolicy.ROLLBACK` rolls the pending local offer back
        before applying the remote one; :attr:`CollisionPolicy.OVERWRITE`
        applies the remote offer directly, for transports that discard a
        pending local offer on their own.
    offer_options:
        Passed through to ``Transport.create_local_offer``.
    """

    def __init__(
        self,
        transport: Transport,
        channel: SignalChannel,
        *,
        role: Role,
        policy: CollisionPolicy = CollisionPolicy.ROLLBACK,
        offer_options: Optional[Mapping[str, Any]] = None,
        coordinator_id: Optional[str] = None,
    ) -> None:
        self.transport = transport
        self.channel = channel
        self.role = Role(role)
        self.policy = CollisionPolicy(policy)
        self.offer_options: Dict[str, Any] = dict(offer_options or {})
        self.id = coordinator_id or uuid.uuid4().hex

        self._making_offer = False
        self._phase = Phase.IDLE
        self._yield_count = 0
        self._offer_attempts = 0
        self._offer_owner: Optional[int] = None
        self._incoming_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self._transport_token: Optional[int] = None
        self._candidate_token: Optional[int] = None
        self._channel_token: Optional[int] = None

        self._observer_lock = threading.RLock()
        self._observer_counter = 0
        self._observers: Dict[int, FailureObserver] = {}

        self.stats: Dict[str, int] = {
            "offers_sent": 0,
            "answers_sent": 0,
            "collisions_deferred": 0,
            "collisions_ignored": 0,
            "candidates_added": 0,
            "candidates_sent": 0,
            "failures": 0,
        }
        self.logger = LOG.getChild(f"{self.role.value}.{self.id[:8]}")

    # ------------------------------------------------------------------ state

    @property
    def making_offer(self) -> bool:
        return self._making_offer

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def _set_phase(self, phase: Phase) -> None:
        if phase is not self._phase:
            self.logger.debug("phase %s -> %s", self._phase.value, phase.value)
            self._phase = phase

    @contextlib.contextmanager
    def _offer_in_flight(self) -> Iterator[None]:
        # Only the attempt that still owns the flag may clear it.
        self._offer_attempts += 1
        token = self._offer_attempts
        self._offer_owner = token
        self._making_offer = True
        self._set_phase(Phase.OFFER_IN_FLIGHT)
        try:
            yield
        finally:
            if self._offer_owner == token:
                self._offer_owner = None
                self._making_offer = False
                if self._phase is Phase.OFFER_IN_FLIGHT:
                    self._set_phase(Phase.IDLE)

    def describe(self) -> Dict[str, Any]:
        state = self.transport.signaling_state
        return {
            "id": self.id,
            "role": self.role.value,
            "policy": self.policy.value,
            "phase": self._phase.value,
            "makingOffer": self._making_offer,
            "signalingState": state.value if isinstance(state, SignalingState) else str(state),
            "channelOpen": bool(self.channel.is_open),
            "stats": dict(self.stats),
        }

    # ------------------------------------------------------------------ wiring

    def attach(self) -> "NegotiationCoordinator":
        """Subscribe to the transport and channel notifications."""

        if self._transport_token is None:
            self._transport_token = self.transport.on_negotiation_needed(self._on_negotiation_needed)
        if self._candidate_token is None:
            self._candidate_token = self.transport.on_local_candidate(self._on_local_candidate)
        if self._channel_token is None:
            self._channel_token = self.channel.on_message(self._on_message)
        return self

    def detach(self) -> None:
        if self._transport_token is not None:
            self.transport.off_negotiation_needed(self._transport_token)
            self._transport_token = None
        if self._candidate_token is not None:
            self.transport.off_local_candidate(self._candidate_token)
            self._candidate_token = None
        if self._channel_token is not None:
            self.channel.off_message(self._channel_token)
            self._channel_token = None

    def _on_negotiation_needed(self) -> None:
        self.logger.info("Negotiation needed")
        self._spawn(self.initiate_offer())

    def _on_local_candidate(self, candidate: IceCandidate) -> None:
        self._spawn(self.send_local_candidate(candidate))

    def _on_message(self, raw: RawMessage) -> None:
        self._spawn(self.handle_incoming(raw))

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_idle(self) -> None:
        """Wait for every notification-driven task spawned so far."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------ observers

    def subscribe(self, callback: FailureObserver) -> int:
        if not callable(callback):
            raise TypeError("callback must be callable")
        with self._observer_lock:
            self._observer_counter += 1
            token = self._observer_counter
            self._observers[token] = callback
        return token

    def unsubscribe(self, token: int) -> None:
        with self._observer_lock:
            self._observers.pop(token, None)

    def _report(
        self,
        kind: Type[NegotiationError],
        message: str,
        error: Optional[BaseException] = None,
        *,
        level: int = logging.ERROR,
    ) -> None:
        self.stats["failures"] += 1
        if error is not None:
            self.logger.log(level, "%s: %s", message, error)
        else:
            self.logger.log(level, "%s", message)
        failure = NegotiationFailure(kind=kind, message=message, error=error)
        with self._observer_lock:
            observers = dict(self._observers)
        for token, callback in observers.items():
            try:
                callback(failure)
            except Exception:
                self.logger.exception("Failure observer %s failed.", token)

    # ------------------------------------------------------------------ send path

    async def _send_local_description(self) -> SessionDescription:
        description = self.transport.local_description
        if description is None:
            raise DescriptionApplyFailure("transport has no local description to send")
        if not self.channel.is_open:
            raise ChannelNotReady("signal channel closed before the description could be sent")
        await self.channel.send(encode_description(description))
        return description

    async def send_local_candidate(self, candidate: IceCandidate) -> Outcome:
        """Forward one locally gathered candidate to the remote peer."""

        if not self.channel.is_open:
            self._report(
                ChannelNotReady, "Signal channel not open; dropping local candidate", level=logging.INFO
            )
            return Outcome.SKIPPED
        try:
            await self.channel.send(encode_candidate(candidate))
        except ChannelNotReady as exc:
            self._report(ChannelNotReady, "Failed to send local candidate", exc, level=logging.WARNING)
            return Outcome.FAILED
        self.stats["candidates_sent"] += 1
        self.logger.debug("Sent local candidate %s", candidate.candidate)
        return Outcome.SENT

    # ------------------------------------------------------------------ offers

    async def initiate_offer(self) -> Outcome:
        """
        Create a local offer and send it to the remote peer.

        Never raises; the in-flight flag is clear again on every return.
        """

        if not self.channel.is_open:
            self._report(ChannelNotReady, "Signal channel not open; skipping offer", level=logging.INFO)
            return Outcome.SKIPPED
        if self._making_offer:
            self.logger.debug("Offer already in flight; skipping duplicate request")
            return Outcome.SKIPPED

        yields_before = self._yield_count
        with self._offer_in_flight():
            try:
                offer = await self.transport.create_local_offer(self.offer_options or None)
                if self._yield_count != yields_before:
                    self.logger.info("Local offer %s superseded by a remote offer; not sending", offer.body)
                    return Outcome.SUPERSEDED
                await self._send_local_description()
            except ChannelNotReady as exc:
                self._report(ChannelNotReady, "Failed to send local offer", exc, level=logging.WARNING)
                return Outcome.FAILED
            except Exception as exc:
                self._report(DescriptionApplyFailure, "Failed to create local offer", exc)
                return Outcome.FAILED

        self.stats["offers_sent"] += 1
        self.logger.info("Sent local offer %s", offer.body)
        return Outcome.SENT

    # ------------------------------------------------------------------ incoming

    async def handle_incoming(self, raw: RawMessage) -> Outcome:
        """
        Classify and apply one signalling frame.

        Malformed frames are logged and dropped; transport failures are logged
        and reported to observers.  Never raises.
        """

        try:
            message = self._coerce(raw)
        except MalformedMessage as exc:
            self.logger.warning("Ignoring malformed signalling message: %s", exc)
            return Outcome.REJECTED

        async with self._incoming_lock:
            if isinstance(message, CandidateMessage):
                return await self._handle_candidate(message.candidate)
            return await self._handle_description(message.description)

    @staticmethod
    def _coerce(raw: RawMessage) -> Message:
        if isinstance(raw, (DescriptionMessage, CandidateMessage)):
            return raw
        return parse_message(raw)

    async def _handle_description(self, description: SessionDescription) -> Outcome:
        offer_collision = description.type is DescriptionType.OFFER and (
            self._making_offer or self.transport.signaling_state is not SignalingState.STABLE
        )

        if offer_collision:
            previous = self._phase
            self._set_phase(Phase.COLLISION_PENDING)
            if self.role is Role.IMPOLITE:
                self.logger.info(
                    "Offer collision detected: impolite peer ignores remote offer %s", description.body
                )
                self.stats["collisions_ignored"] += 1
                self._set_phase(previous)
                return Outcome.COLLISION_IGNORED
            return await self._defer_to_remote(description)

        try:
            await self.transport.apply_remote_description(description)
            if description.type is not DescriptionType.OFFER:
                self._set_phase(Phase.RESOLVED)
                return Outcome.APPLIED
            await self.transport.create_local_answer()
            await self._send_local_description()
        except ChannelNotReady as exc:
            self._report(ChannelNotReady, "Failed to send local answer", exc, level=logging.WARNING)
            self._set_phase(Phase.IDLE)
            return Outcome.FAILED
        except Exception as exc:
            self._report(DescriptionApplyFailure, f"Failed to apply remote {description.type.value}", exc)
            self._set_phase(Phase.IDLE)
            return Outcome.FAILED

        self.stats["answers_sent"] += 1
        self._set_phase(Phase.RESOLVED)
        return Outcome.ANSWERED

    async def _defer_to_remote(self, description: SessionDescription) -> Outcome:
        self.logger.info(
            "Offer collision detected: polite peer rolls back and accepts remote offer %s", description.body
        )
        local_offer_pending = (
            self._making_offer or self.transport.signaling_state is SignalingState.HAVE_LOCAL_OFFER
        )
        self._making_offer = False
        self._offer_owner = None
        self._yield_count += 1

        try:
            if self.policy is CollisionPolicy.ROLLBACK and local_offer_pending:
                await self._rollback_and_apply(description)
            else:
                await self.transport.apply_remote_description(description)
            await self.transport.create_local_answer()
            await self._send_local_description()
        except ChannelNotReady as exc:
            self._report(ChannelNotReady, "Failed to send local answer", exc, level=logging.WARNING)
            self._set_phase(Phase.IDLE)
            return Outcome.FAILED
        except Exception as exc:
            self._report(DescriptionApplyFailure, "Failed to accept colliding remote offer", exc)
            self._set_phase(Phase.IDLE)
            return Outcome.FAILED

        self.stats["collisions_deferred"] += 1
        self.stats["answers_sent"] += 1
        self._set_phase(Phase.RESOLVED)
        return Outcome.COLLISION_DEFERRED

    async def _rollback_and_apply(self, description: SessionDescription) -> None:
        rollback, applied = await asyncio.gather(
            self.transport.rollback_local(),
            self.transport.apply_remote_description(description),
            return_exceptions=True,
        )
        if isinstance(applied, BaseException):
            raise applied
        if isinstance(rollback, BaseException):
            self.logger.debug("Nothing to roll back: %s", rollback)

    async def _handle_candidate(self, candidate: IceCandidate) -> Outcome:
        self.logger.debug("Adding ICE candidate %s", candidate.candidate)
        try:
            await self.transport.add_remote_candidate(candidate)
        except Exception as exc:
            self._report(CandidateApplyFailure, "Failed to add ICE candidate", exc, level=logging.WARNING)
            return Outcome.FAILED
        self.stats["candidates_added"] += 1
        return Outcome.CANDIDATE_ADDED


__all__ = [
    "CollisionPolicy",
    "FailureObserver",
    "NegotiationCoordinator",
    "NegotiationFailure",
    "Outcome",
    "Phase",
]
