"""
FastAPI signalling surface.

Two WebSocket endpoints are exposed:

``/signal/{room}``
    A relay.  The first member of a room is told it is impolite and the
    second that it is polite; every valid signalling frame from one member is
    forwarded verbatim to the other.  Negotiation itself happens on the peers.

``/peer``
    A server-side negotiation peer.  The server hosts a coordinator over an
    in-memory transport, which lets clients exercise their own glare handling
    against a known-good counterpart.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from ..config import NegotiatorConfig, load_profiles
from ..coordinator import NegotiationCoordinator
from ..errors import MalformedMessage
from ..protocol import Role, parse_message
from ..registry import CoordinatorRegistry
from ..rtc.channel import WebSocketChannel
from ..rtc.session import InMemoryTransport
from . import schemas

LOG = logging.getLogger(__name__)

ROOM_CAPACITY = 2
CLOSE_ROOM_FULL = 4000


@dataclass
class RoomMember:
    peer_id: str
    role: Role
    websocket: WebSocket

    async def send(self, payload: Dict[str, Any]) -> bool:
        try:
            await self.websocket.send_json(payload)
        except (WebSocketDisconnect, RuntimeError):
            return False
        return True

    async def forward(self, raw: str) -> bool:
        try:
            await self.websocket.send_text(raw)
        except (WebSocketDisconnect, RuntimeError):
            return False
        return True


@dataclass
class Room:
    name: str
    members: Dict[str, RoomMember] = field(default_factory=dict)

    def other(self, peer_id: str) -> Optional[RoomMember]:
        for member_id, member in self.members.items():
            if member_id != peer_id:
                return member
        return None

    def next_role(self) -> Role:
        if not self.members:
            return Role.IMPOLITE
        taken = {member.role for member in self.members.values()}
        return Role.POLITE if Role.IMPOLITE in taken else Role.IMPOLITE

    def to_model(self) -> schemas.RoomModel:
        return schemas.RoomModel(
            name=self.name,
            members=[
                schemas.RoomMemberModel(peerId=member.peer_id, role=member.role.value)
                for member in self.members.values()
            ],
        )


class SignallingRelay:
    """Pair peers in named rooms and forward signalling frames between them."""

    def __init__(self, *, capacity: int = ROOM_CAPACITY) -> None:
        self.capacity = max(2, int(capacity))
        self._rooms: Dict[str, Room] = {}
        self._lock = asyncio.Lock()

    async def _join(self, room_name: str, member_id: str, websocket: WebSocket) -> Optional[RoomMember]:
        async with self._lock:
            room = self._rooms.setdefault(room_name, Room(room_name))
            if len(room.members) >= self.capacity or member_id in room.members:
                if not room.members:
                    self._rooms.pop(room_name, None)
                return None
            member = RoomMember(peer_id=member_id, role=room.next_role(), websocket=websocket)
            room.members[member_id] = member
            return member

    async def _leave(self, room_name: str, member_id: str) -> Optional[RoomMember]:
        async with self._lock:
            room = self._rooms.get(room_name)
            if room is None:
                return None
            room.members.pop(member_id, None)
            if not room.members:
                self._rooms.pop(room_name, None)
                return None
            return room.other(member_id)

    async def _peer_of(self, room_name: str, member_id: str) -> Optional[RoomMember]:
        async with self._lock:
            room = self._rooms.get(room_name)
            return room.other(member_id) if room else None

    def describe(self) -> List[schemas.RoomModel]:
        return [room.to_model() for room in self._rooms.values()]

    async def run(self, websocket: WebSocket, room_name: str, peer_id: Optional[str] = None) -> None:
        member_id = peer_id or uuid.uuid4().hex
        logger = LOG.getChild(f"room.{room_name}")
        await websocket.accept()

        member = await self._join(room_name, member_id, websocket)
        if member is None:
            logger.info("Rejecting %s: room full", member_id)
            with contextlib.suppress(WebSocketDisconnect, RuntimeError):
                await websocket.send_json(
                    schemas.ControlFrame(type="room_full", room=room_name).to_payload()
                )
                await websocket.close(code=CLOSE_ROOM_FULL, reason="room full")
            return

        logger.info("Peer %s joined as %s", member_id, member.role.value)
        try:
            await member.send(
                schemas.ControlFrame(
                    type="signalling_ready", role=member.role.value, peer_id=member_id, room=room_name
                ).to_payload()
            )
            other = await self._peer_of(room_name, member_id)
            if other is not None:
                await other.send(schemas.ControlFrame(type="peer_joined", peer_id=member_id).to_payload())

            while True:
                raw = await websocket.receive_text()
                try:
                    parse_message(raw)
                except MalformedMessage as exc:
                    logger.warning("Dropping malformed frame from %s: %s", member_id, exc)
                    continue
                other = await self._peer_of(room_name, member_id)
                if other is None:
                    logger.debug("No peer in room; dropping frame from %s", member_id)
                    continue
                if not await other.forward(raw):
                    logger.debug("Forward to %s failed", other.peer_id)
        except WebSocketDisconnect:
            logger.debug("Peer %s disconnected", member_id)
        finally:
            remaining = await self._leave(room_name, member_id)
            logger.info("Peer %s left", member_id)
            if remaining is not None:
                await remaining.send(schemas.ControlFrame(type="peer_left", peer_id=member_id).to_payload())


async def serve_peer(
    websocket: WebSocket,
    registry: CoordinatorRegistry,
    config: NegotiatorConfig,
    *,
    role: Role,
    initiate: bool = False,
) -> None:
    """Host a coordinator over an in-memory transport for one client."""

    await websocket.accept()
    coordinator_id = uuid.uuid4().hex
    transport = InMemoryTransport(name=f"server-{coordinator_id[:8]}")
    channel = WebSocketChannel(websocket, name=coordinator_id[:8])
    coordinator = NegotiationCoordinator(
        transport,
        channel,
        role=role,
        policy=config.policy,
        offer_options=config.offer_options,
        coordinator_id=coordinator_id,
    )
    registry.add(coordinator.attach())
    try:
        await websocket.send_json(
            schemas.ControlFrame(type="signalling_ready", role=role.opposite.value, peer_id=coordinator_id).to_payload()
        )
        if initiate:
            transport.request_negotiation()
        await channel.pump()
    finally:
        coordinator.detach()
        await coordinator.wait_idle()
        registry.remove(coordinator)
        transport.close()
        LOG.info("Server peer %s finished: %s", coordinator_id, coordinator.stats)


def create_app(*, config: Optional[NegotiatorConfig] = None) -> FastAPI:
    negotiator_config = config or NegotiatorConfig()
    relay = SignallingRelay()
    registry = CoordinatorRegistry()

    app = FastAPI(title="Negotiator Signalling API")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.relay = relay
    app.state.registry = registry
    app.state.config = negotiator_config

    @app.websocket("/signal/{room}")
    async def signal_endpoint(websocket: WebSocket, room: str) -> None:
        await relay.run(websocket, room, websocket.query_params.get("id"))

    @app.websocket("/peer")
    async def peer_endpoint(websocket: WebSocket) -> None:
        # The client's role; the server takes the complement.
        requested = str(websocket.query_params.get("role") or "").lower()
        client_role = Role(requested) if requested in (Role.POLITE.value, Role.IMPOLITE.value) else None
        if client_role is None:
            server_role = negotiator_config.role or Role.POLITE
        else:
            server_role = client_role.opposite
        initiate = str(websocket.query_params.get("offer") or "").lower() in {"1", "true", "yes"}
        await serve_peer(websocket, registry, negotiator_config, role=server_role, initiate=initiate)

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok", "profile": negotiator_config.profile}

    @app.get("/rooms", response_model=List[schemas.RoomModel])
    async def list_rooms() -> List[schemas.RoomModel]:
        return relay.describe()

    @app.get("/coordinators")
    async def list_coordinators() -> dict:
        return {"coordinators": [coordinator.describe() for coordinator in registry]}

    @app.get("/profiles")
    async def list_profiles() -> dict:
        return {"profiles": load_profiles(), "active": negotiator_config.to_dict()}

    return app
