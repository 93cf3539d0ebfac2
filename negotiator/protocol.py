"""
Typed signalling messages and their JSON wire form.

Incoming frames are parsed once, at the boundary, into one of two variants:
:class:`DescriptionMessage` or :class:`CandidateMessage`.  Everything past
:func:`parse_message` works with these types instead of raw dictionaries.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import ValidationError

from .api.schemas import SignalMessageModel
from .errors import MalformedMessage


class Role(str, Enum):
    POLITE = "polite"
    IMPOLITE = "impolite"

    @property
    def opposite(self) -> "Role":
        return Role.IMPOLITE if self is Role.POLITE else Role.POLITE


class SignalingState(str, Enum):
    STABLE = "stable"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    HAVE_LOCAL_PRANSWER = "have-local-pranswer"
    HAVE_REMOTE_PRANSWER = "have-remote-pranswer"
    CLOSED = "closed"


class DescriptionType(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"
    PRANSWER = "pranswer"
    ROLLBACK = "rollback"


@dataclass(frozen=True)
class SessionDescription:
    """Offer/answer payload; ``body`` is opaque to the negotiation layer."""

    type: DescriptionType
    body: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "body": self.body}


@dataclass(frozen=True)
class IceCandidate:
    """Serialisable ICE candidate container."""

    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None
    username_fragment: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "IceCandidate":
        if isinstance(payload, str):
            return cls(candidate=payload)
        if isinstance(payload, Mapping):
            value = payload.get("candidate")
            if not isinstance(value, str):
                raise MalformedMessage("candidate payload lacks a 'candidate' string")
            index = payload.get("sdpMLineIndex")
            return cls(
                candidate=value,
                sdp_mid=payload.get("sdpMid"),
                sdp_mline_index=int(index) if index is not None else None,
                username_fragment=payload.get("usernameFragment"),
            )
        raise MalformedMessage(f"unsupported candidate payload {type(payload).__name__}")

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"candidate": self.candidate}
        if self.sdp_mid is not None:
            payload["sdpMid"] = self.sdp_mid
        if self.sdp_mline_index is not None:
            payload["sdpMLineIndex"] = self.sdp_mline_index
        if self.username_fragment is not None:
            payload["usernameFragment"] = self.username_fragment
        return payload


@dataclass(frozen=True)
class DescriptionMessage:
    description: SessionDescription


@dataclass(frozen=True)
class CandidateMessage:
    candidate: IceCandidate


Message = Union[DescriptionMessage, CandidateMessage]


def parse_message(raw: Union[str, bytes, Mapping[str, Any]]) -> Message:
    """
    Parse one signalling frame.

    Raises :class:`MalformedMessage` for anything that is not exactly one of
    the two variants.
    """

    if isinstance(raw, (str, bytes, bytearray)):
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise MalformedMessage(f"invalid JSON frame: {exc}") from exc
    else:
        payload = raw

    if not isinstance(payload, Mapping):
        raise MalformedMessage("signalling frame must be a JSON object")

    try:
        model = SignalMessageModel.model_validate(dict(payload))
    except ValidationError as exc:
        raise MalformedMessage(str(exc)) from exc

    if model.description is not None:
        description = SessionDescription(
            type=DescriptionType(model.description.type),
            body=model.description.body,
        )
        return DescriptionMessage(description=description)
    return CandidateMessage(candidate=IceCandidate.from_payload(model.candidate))


def encode_description(description: SessionDescription) -> str:
    return json.dumps({"description": description.to_dict()})


def encode_candidate(candidate: IceCandidate) -> str:
    return json.dumps({"candidate": candidate.to_dict()})


__all__ = [
    "CandidateMessage",
    "DescriptionMessage",
    "DescriptionType",
    "IceCandidate",
    "Message",
    "Role",
    "SessionDescription",
    "SignalingState",
    "encode_candidate",
    "encode_description",
    "parse_message",
]
