"""
Pydantic schemas mirroring the signalling wire contract.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator, validator

DESCRIPTION_TYPES = ("offer", "answer", "pranswer", "rollback")


class DescriptionModel(BaseModel):
    type: str
    body: Any = Field(default=None, validation_alias=AliasChoices("body", "sdp"))
    model_config = ConfigDict(populate_by_name=True)

    @validator("type", pre=True)
    def _normalise_type(cls, value: object) -> str:
        result = str(value or "").strip().lower()
        if result not in DESCRIPTION_TYPES:
            raise ValueError(f"unsupported description type {value!r}")
        return result


class SignalMessageModel(BaseModel):
    """
    One signalling frame.

    Exactly one of ``description`` or ``candidate`` must be populated; unknown
    keys (``retry`` from older clients, for instance) are ignored.
    """

    description: Optional[DescriptionModel] = None
    candidate: Any = None
    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="after")
    def _exactly_one_variant(self) -> "SignalMessageModel":
        has_description = self.description is not None
        has_candidate = self.candidate is not None
        if has_description == has_candidate:
            raise ValueError("exactly one of 'description' or 'candidate' is required")
        return self


class ControlFrame(BaseModel):
    """Relay-to-peer control message (never fed to a coordinator)."""

    type: str
    role: Optional[str] = None
    peer_id: Optional[str] = Field(default=None, serialization_alias="peerId")
    room: Optional[str] = None
    model_config = ConfigDict(populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class RoomMemberModel(BaseModel):
    peerId: str
    role: str


class RoomModel(BaseModel):
    name: str
    members: list[RoomMemberModel] = Field(default_factory=list)
