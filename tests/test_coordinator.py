"""Tests covering single-coordinator classification and failure handling."""

from __future__ import annotations

import asyncio
import json

from negotiator.coordinator import CollisionPolicy, NegotiationCoordinator, NegotiationFailure, Outcome, Phase
from negotiator.errors import CandidateApplyFailure, ChannelNotReady, DescriptionApplyFailure, InvalidStateError
from negotiator.protocol import DescriptionType, IceCandidate, Role, SessionDescription, SignalingState
from negotiator.rtc import InMemoryTransport, LoopbackChannel


def make_coordinator(
    role: Role = Role.POLITE, *, delay: float = 0.0, policy: CollisionPolicy = CollisionPolicy.ROLLBACK
) -> tuple[NegotiationCoordinator, LoopbackChannel]:
    local, remote = LoopbackChannel.pair("local", "remote")
    transport = InMemoryTransport("local", delay=delay)
    coordinator = NegotiationCoordinator(transport, local, role=role, policy=policy, coordinator_id="local")
    return coordinator, remote


def frames(channel: LoopbackChannel) -> list[dict]:
    return [json.loads(raw) for raw in channel.sent]


def test_offer_then_candidate_on_fresh_coordinator() -> None:
    async def scenario() -> None:
        coordinator, _ = make_coordinator()

        first = await coordinator.handle_incoming('{"description": {"type": "offer", "body": "o1"}}')
        second = await coordinator.handle_incoming('{"candidate": "c1"}')

        assert first is Outcome.ANSWERED
        assert second is Outcome.CANDIDATE_ADDED
        history = [operation for operation, _ in coordinator.transport.record.history]
        assert history == ["apply_remote_description", "create_local_answer", "add_remote_candidate"]
        assert frames(coordinator.channel) == [{"description": {"type": "answer", "body": "o1"}}]
        assert coordinator.stats["collisions_deferred"] == 0
        assert coordinator.stats["collisions_ignored"] == 0
        assert coordinator.phase is Phase.RESOLVED

    asyncio.run(scenario())


def test_initiate_offer_sends_description_and_clears_flag() -> None:
    async def scenario() -> None:
        coordinator, _ = make_coordinator(Role.IMPOLITE)
        coordinator.offer_options = {"iceRestart": True}

        outcome = await coordinator.initiate_offer()

        assert outcome is Outcome.SENT
        assert coordinator.making_offer is False
        assert coordinator.phase is Phase.IDLE
        assert frames(coordinator.channel) == [{"description": {"type": "offer", "body": "local:1"}}]
        assert coordinator.transport.last_offer_options == {"iceRestart": True}

    asyncio.run(scenario())


def test_initiate_offer_without_channel_is_a_noop() -> None:
    async def scenario() -> None:
        coordinator, remote = make_coordinator()
        failures: list[NegotiationFailure] = []
        coordinator.subscribe(failures.append)
        remote.close()

        outcome = await coordinator.initiate_offer()

        assert outcome is Outcome.SKIPPED
        assert coordinator.making_offer is False
        assert coordinator.transport.signaling_state is SignalingState.STABLE
        assert [failure.kind for failure in failures] == [ChannelNotReady]

    asyncio.run(scenario())


def test_initiate_offer_failure_is_reported_and_flag_cleared() -> None:
    async def scenario() -> None:
        coordinator, _ = make_coordinator()
        failures: list[NegotiationFailure] = []
        coordinator.subscribe(failures.append)
        coordinator.transport.close()

        outcome = await coordinator.initiate_offer()

        assert outcome is Outcome.FAILED
        assert coordinator.making_offer is False
        assert coordinator.phase is Phase.IDLE
        assert failures[0].kind is DescriptionApplyFailure
        assert failures[0].kind_name == "DescriptionApplyFailure"
        assert coordinator.channel.sent == []

    asyncio.run(scenario())


def test_answer_while_offer_in_flight_is_not_a_collision() -> None:
    async def scenario() -> None:
        coordinator, _ = make_coordinator(Role.POLITE, delay=0.01)

        pending = asyncio.ensure_future(coordinator.initiate_offer())
        await asyncio.sleep(0)
        assert coordinator.making_offer is True

        outcome = await coordinator.handle_incoming('{"description": {"type": "answer", "body": "local:1"}}')
        offer_outcome = await pending

        assert outcome is Outcome.APPLIED
        assert offer_outcome is Outcome.SENT
        assert coordinator.stats["collisions_deferred"] == 0
        assert coordinator.transport.signaling_state is SignalingState.STABLE
        assert coordinator.making_offer is False

    asyncio.run(scenario())


def test_impolite_ignores_colliding_offer_without_touching_state() -> None:
    async def scenario() -> None:
        coordinator, _ = make_coordinator(Role.IMPOLITE)
        await coordinator.initiate_offer()
        before = coordinator.transport.describe()

        outcome = await coordinator.handle_incoming('{"description": {"type": "offer", "body": "remote:1"}}')

        assert outcome is Outcome.COLLISION_IGNORED
        assert coordinator.transport.describe() == before
        assert coordinator.transport.local_description.body == "local:1"
        assert len(coordinator.channel.sent) == 1
        assert coordinator.stats["collisions_ignored"] == 1

    asyncio.run(scenario())


def test_polite_rolls_back_and_answers_colliding_offer() -> None:
    async def scenario() -> None:
        coordinator, _ = make_coordinator(Role.POLITE)
        await coordinator.initiate_offer()

        outcome = await coordinator.handle_incoming('{"description": {"type": "offer", "body": "remote:1"}}')

        assert outcome is Outcome.COLLISION_DEFERRED
        assert coordinator.making_offer is False
        assert coordinator.phase is Phase.RESOLVED
        assert ("rollback_local", "local:1") in coordinator.transport.record.history
        assert coordinator.transport.negotiated == "remote:1"
        assert frames(coordinator.channel)[-1] == {"description": {"type": "answer", "body": "remote:1"}}

    asyncio.run(scenario())


def test_overwrite_policy_fails_against_strict_transport() -> None:
    async def scenario() -> None:
        coordinator, _ = make_coordinator(Role.POLITE, policy=CollisionPolicy.OVERWRITE)
        failures: list[NegotiationFailure] = []
        coordinator.subscribe(failures.append)
        await coordinator.initiate_offer()

        outcome = await coordinator.handle_incoming('{"description": {"type": "offer", "body": "remote:1"}}')

        assert outcome is Outcome.FAILED
        assert coordinator.making_offer is False
        assert [failure.kind for failure in failures] == [DescriptionApplyFailure]
        assert coordinator.transport.signaling_state is SignalingState.HAVE_LOCAL_OFFER

    asyncio.run(scenario())


def test_duplicate_candidates_are_tolerated() -> None:
    async def scenario() -> None:
        coordinator, _ = make_coordinator()
        await coordinator.handle_incoming('{"description": {"type": "offer", "body": "o1"}}')
        converged = coordinator.transport.describe()

        outcomes = [await coordinator.handle_incoming('{"candidate": "c1"}') for _ in range(2)]

        assert outcomes == [Outcome.CANDIDATE_ADDED, Outcome.CANDIDATE_ADDED]
        assert len(coordinator.transport.record.ice_candidates) == 1
        after = coordinator.transport.describe()
        assert after["negotiated"] == converged["negotiated"]
        assert after["signalingState"] == converged["signalingState"]

    asyncio.run(scenario())


def test_early_candidate_is_logged_and_ignored() -> None:
    async def scenario() -> None:
        coordinator, _ = make_coordinator()
        failures: list[NegotiationFailure] = []
        coordinator.subscribe(failures.append)

        outcome = await coordinator.handle_incoming('{"candidate": {"candidate": "c1", "sdpMid": "0"}}')
        follow_up = await coordinator.handle_incoming('{"description": {"type": "offer", "body": "o1"}}')

        assert outcome is Outcome.FAILED
        assert follow_up is Outcome.ANSWERED
        assert [failure.kind for failure in failures] == [CandidateApplyFailure]

    asyncio.run(scenario())


def test_malformed_messages_are_rejected() -> None:
    async def scenario() -> None:
        coordinator, _ = make_coordinator()
        for raw in ("garbage", "{}", '{"description": {"type": "offer"}, "candidate": "c1"}'):
            assert await coordinator.handle_incoming(raw) is Outcome.REJECTED
        assert coordinator.transport.record.history == []

    asyncio.run(scenario())


def test_observer_errors_do_not_break_negotiation() -> None:
    async def scenario() -> None:
        coordinator, remote = make_coordinator()
        seen: list[str] = []

        def broken(_failure: NegotiationFailure) -> None:
            raise RuntimeError("observer bug")

        coordinator.subscribe(broken)
        token = coordinator.subscribe(lambda failure: seen.append(failure.kind_name))
        remote.close()

        assert await coordinator.initiate_offer() is Outcome.SKIPPED
        coordinator.unsubscribe(token)
        assert await coordinator.initiate_offer() is Outcome.SKIPPED
        assert seen == ["ChannelNotReady"]

    asyncio.run(scenario())


def test_attach_routes_channel_frames() -> None:
    async def scenario() -> None:
        coordinator, remote = make_coordinator()
        coordinator.attach()
        replies: list[str] = []
        remote.on_message(replies.append)

        await remote.send('{"description": {"type": "offer", "body": "remote:1"}}')
        await asyncio.sleep(0)
        await coordinator.wait_idle()
        await asyncio.sleep(0)

        assert [json.loads(raw) for raw in replies] == [{"description": {"type": "answer", "body": "remote:1"}}]

        coordinator.detach()
        await remote.send('{"candidate": "c1"}')
        await asyncio.sleep(0)
        assert coordinator.pending == 0
        assert coordinator.transport.record.ice_candidates == []

    asyncio.run(scenario())


def test_describe_is_json_serialisable() -> None:
    coordinator, _ = make_coordinator(Role.IMPOLITE)

    snapshot = coordinator.describe()

    json.dumps(snapshot, sort_keys=True)
    assert snapshot["role"] == "impolite"
    assert snapshot["phase"] == "idle"
    assert snapshot["signalingState"] == "stable"


class GatedTransport:
    """Transport whose offers wait on a gate; its signaling state stays stable."""

    def __init__(self) -> None:
        self.signaling_state = SignalingState.STABLE
        self.local_description: SessionDescription | None = None
        self.gates: list[asyncio.Future] = []
        self.applied: list[SessionDescription] = []
        self.rollbacks = 0

    def on_negotiation_needed(self, callback) -> int:
        return 0

    def off_negotiation_needed(self, token: int) -> None:
        pass

    def on_local_candidate(self, callback) -> int:
        return 0

    def off_local_candidate(self, token: int) -> None:
        pass

    async def create_local_offer(self, options=None) -> SessionDescription:
        gate = asyncio.get_running_loop().create_future()
        self.gates.append(gate)
        number = len(self.gates)
        await gate
        return SessionDescription(DescriptionType.OFFER, f"gated:{number}")

    async def create_local_answer(self) -> SessionDescription:
        self.local_description = SessionDescription(DescriptionType.ANSWER, self.applied[-1].body)
        return self.local_description

    async def apply_remote_description(self, description: SessionDescription) -> None:
        self.applied.append(description)

    async def rollback_local(self) -> None:
        self.rollbacks += 1

    async def add_remote_candidate(self, candidate: IceCandidate) -> None:
        pass


class RollbackFailingTransport(InMemoryTransport):
    async def rollback_local(self) -> None:
        await asyncio.sleep(0)
        raise InvalidStateError("rollback rejected")


def test_flag_survives_stale_offer_after_polite_yield() -> None:
    async def scenario() -> None:
        local, _ = LoopbackChannel.pair("local", "remote")
        transport = GatedTransport()
        coordinator = NegotiationCoordinator(transport, local, role=Role.POLITE, coordinator_id="local")

        first = asyncio.ensure_future(coordinator.initiate_offer())
        await asyncio.sleep(0)
        assert coordinator.making_offer is True

        deferred = await coordinator.handle_incoming('{"description": {"type": "offer", "body": "r1"}}')
        assert deferred is Outcome.COLLISION_DEFERRED
        assert coordinator.making_offer is False

        second = asyncio.ensure_future(coordinator.initiate_offer())
        await asyncio.sleep(0)
        assert coordinator.making_offer is True

        transport.gates[0].set_result(None)
        assert await first is Outcome.SUPERSEDED
        assert coordinator.making_offer is True
        assert coordinator.phase is Phase.OFFER_IN_FLIGHT

        again = await coordinator.handle_incoming('{"description": {"type": "offer", "body": "r2"}}')
        assert again is Outcome.COLLISION_DEFERRED
        assert transport.rollbacks == 2

        transport.gates[1].set_result(None)
        assert await second is Outcome.SUPERSEDED
        assert coordinator.making_offer is False
        assert coordinator.stats["collisions_deferred"] == 2
        assert coordinator.stats["offers_sent"] == 0
        assert [frame["description"]["body"] for frame in frames(local)] == ["r1", "r2"]

    asyncio.run(scenario())


def test_rollback_error_with_successful_apply_still_answers() -> None:
    async def scenario() -> None:
        local, _ = LoopbackChannel.pair("local", "remote")
        transport = RollbackFailingTransport("local", implicit_rollback=True)
        coordinator = NegotiationCoordinator(transport, local, role=Role.POLITE, coordinator_id="local")
        failures: list[NegotiationFailure] = []
        coordinator.subscribe(failures.append)
        await coordinator.initiate_offer()

        outcome = await coordinator.handle_incoming('{"description": {"type": "offer", "body": "remote:1"}}')

        assert outcome is Outcome.COLLISION_DEFERRED
        assert failures == []
        assert coordinator.phase is Phase.RESOLVED
        assert transport.negotiated == "remote:1"
        assert transport.signaling_state is SignalingState.STABLE
        assert frames(local)[-1] == {"description": {"type": "answer", "body": "remote:1"}}

    asyncio.run(scenario())


def test_attach_forwards_local_candidates_until_detached() -> None:
    async def scenario() -> None:
        coordinator, remote = make_coordinator()
        received: list[str] = []
        remote.on_message(received.append)
        coordinator.attach()

        coordinator.transport.gather_candidate(IceCandidate("host-1", sdp_mid="0"))
        await coordinator.wait_idle()
        await asyncio.sleep(0)
        coordinator.detach()
        coordinator.transport.gather_candidate("host-2")
        await asyncio.sleep(0)

        assert [json.loads(raw) for raw in received] == [{"candidate": {"candidate": "host-1", "sdpMid": "0"}}]
        assert coordinator.stats["candidates_sent"] == 1
        assert coordinator.pending == 0

    asyncio.run(scenario())


def test_local_candidate_on_closed_channel_is_reported() -> None:
    async def scenario() -> None:
        coordinator, remote = make_coordinator()
        failures: list[NegotiationFailure] = []
        coordinator.subscribe(failures.append)
        remote.close()

        outcome = await coordinator.send_local_candidate(IceCandidate("host-1"))

        assert outcome is Outcome.SKIPPED
        assert [failure.kind for failure in failures] == [ChannelNotReady]
        assert coordinator.stats["candidates_sent"] == 0

    asyncio.run(scenario())
