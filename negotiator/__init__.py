"""
Perfect negotiation for two-peer WebRTC style sessions.

The package resolves "glare" (both peers offering at once) with a fixed
polite/impolite role pair.  :class:`~negotiator.coordinator.NegotiationCoordinator`
holds the protocol logic; transports and signal channels are pluggable
collaborators, with in-memory and WebSocket implementations under
:mod:`negotiator.rtc` and a room based signalling relay under
:mod:`negotiator.api`.
"""

from __future__ import annotations

from .config import NegotiatorConfig, load_config
from .coordinator import CollisionPolicy, NegotiationCoordinator, NegotiationFailure, Outcome, Phase
from .protocol import Role, SignalingState
from .registry import CoordinatorRegistry

__all__ = [
    "CollisionPolicy",
    "CoordinatorRegistry",
    "NegotiationCoordinator",
    "NegotiationFailure",
    "NegotiatorConfig",
    "Outcome",
    "Phase",
    "Role",
    "SignalingState",
    "load_config",
]
