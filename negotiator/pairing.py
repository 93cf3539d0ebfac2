"""
Two local peers wired back to back.

:class:`PeerPair` builds two coordinators over in-memory transports and a
loopback channel pair.  It backs the glare demo script and the end-to-end
tests.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from .coordinator import CollisionPolicy, NegotiationCoordinator
from .protocol import Role
from .rtc.channel import LoopbackChannel
from .rtc.session import InMemoryTransport


@dataclass
class PeerPair:
    left: NegotiationCoordinator
    right: NegotiationCoordinator

    @classmethod
    def create(
        cls,
        *,
        left_role: Role = Role.IMPOLITE,
        policy: CollisionPolicy = CollisionPolicy.ROLLBACK,
        delay: float = 0.0,
        implicit_rollback: bool = False,
        offer_options: Optional[Mapping[str, Any]] = None,
        names: tuple[str, str] = ("a", "b"),
    ) -> "PeerPair":
        left_channel, right_channel = LoopbackChannel.pair(*names)
        coordinators = []
        for name, channel, role in (
            (names[0], left_channel, Role(left_role)),
            (names[1], right_channel, Role(left_role).opposite),
        ):
            transport = InMemoryTransport(name, delay=delay, implicit_rollback=implicit_rollback)
            coordinator = NegotiationCoordinator(
                transport,
                channel,
                role=role,
                policy=policy,
                offer_options=offer_options,
                coordinator_id=name,
            )
            coordinators.append(coordinator.attach())
        return cls(left=coordinators[0], right=coordinators[1])

    @property
    def quiescent(self) -> bool:
        return all(
            coordinator.pending == 0 and coordinator.channel.in_transit == 0  # type: ignore[attr-defined]
            for coordinator in (self.left, self.right)
        )

    async def settle(self, max_rounds: int = 1000) -> None:
        """Run the loop until no frame is in transit and no handler is pending."""

        for _ in range(max_rounds):
            await self.left.wait_idle()
            await self.right.wait_idle()
            if self.quiescent:
                return
            await asyncio.sleep(0)
        raise RuntimeError("peers did not settle")

    def describe(self) -> Dict[str, Any]:
        return {
            coordinator.id: {
                "coordinator": coordinator.describe(),
                "transport": coordinator.transport.describe(),  # type: ignore[attr-defined]
            }
            for coordinator in (self.left, self.right)
        }
