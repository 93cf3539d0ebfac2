"""
Negotiation configuration and YAML profile loading.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .coordinator import CollisionPolicy
from .protocol import Role

CONFIG_DIR = Path(__file__).resolve().parent / "configs"
PROFILES_PATH = CONFIG_DIR / "profiles.yaml"

LOG = logging.getLogger(__name__)


@dataclass
class NegotiatorConfig:
    """Top level negotiation configuration."""

    profile: str = "default"
    role: Optional[Role] = None
    policy: CollisionPolicy = CollisionPolicy.ROLLBACK
    offer_options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, profile: str, payload: Mapping[str, Any]) -> "NegotiatorConfig":
        role = payload.get("role")
        options = payload.get("offer_options") or {}
        if not isinstance(options, Mapping):
            raise ValueError(f"profile {profile!r}: offer_options must be a mapping")
        return cls(
            profile=profile,
            role=Role(str(role).lower()) if role else None,
            policy=CollisionPolicy(str(payload.get("policy") or "rollback").lower()),
            offer_options=dict(options),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "profile": self.profile,
            "role": self.role.value if self.role else None,
            "policy": self.policy.value,
            "offer_options": dict(self.offer_options),
        }


def load_profiles(path: Optional[Path] = None) -> Dict[str, Any]:
    target = path or PROFILES_PATH
    try:
        with target.open("r", encoding="utf-8") as handle:
            profiles = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        LOG.warning("Profiles file %s not found; using built-in defaults", target)
        profiles = {}
    if not isinstance(profiles, dict):
        raise ValueError(f"{target}: top level must be a mapping of profiles")
    return profiles


def load_config(profile: str = "default", path: Optional[Path] = None) -> NegotiatorConfig:
    """
    Resolve ``profile`` from the YAML profiles file.

    An unknown profile falls back to the defaults with a warning, so a typo on
    the command line does not keep the relay from starting.
    """

    profiles = load_profiles(path)
    payload = profiles.get(profile)
    if payload is None:
        if profiles:
            LOG.warning("Unknown profile %r; using defaults", profile)
        return NegotiatorConfig(profile=profile)
    if not isinstance(payload, Mapping):
        raise ValueError(f"profile {profile!r} must be a mapping")
    return NegotiatorConfig.from_mapping(profile, payload)
