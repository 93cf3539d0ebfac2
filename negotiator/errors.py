"""
Error kinds raised and reported by the negotiation layer.
"""

from __future__ import annotations


class NegotiationError(RuntimeError):
    """Base class for negotiation related errors."""


class ChannelNotReady(NegotiationError):
    """Raised when a send is attempted on a closed signal channel."""


class DescriptionApplyFailure(NegotiationError):
    """Raised when the transport rejects an offer, answer or rollback."""


class CandidateApplyFailure(NegotiationError):
    """Raised when a remote ICE candidate cannot be added."""


class MalformedMessage(NegotiationError, ValueError):
    """Raised when a wire message is neither a description nor a candidate."""


class InvalidStateError(NegotiationError):
    """Raised by a transport when an operation does not fit its signaling state."""


class CoordinatorNotFound(NegotiationError, KeyError):
    """Raised when a registry lookup misses."""


__all__ = [
    "NegotiationError",
    "ChannelNotReady",
    "DescriptionApplyFailure",
    "CandidateApplyFailure",
    "MalformedMessage",
    "InvalidStateError",
    "CoordinatorNotFound",
]
