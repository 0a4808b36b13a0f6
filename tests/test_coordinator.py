"""Tests for the Coordinator."""

import asyncio
import itertools
import json
from unittest.mock import Mock

import pytest

from rtcnego.candidates import relay_only
from rtcnego.coordinator import Coordinator
from rtcnego.errors import NegotiationError, TransportError
from rtcnego.messages import Answer, Bye, Offer, encode_message
from rtcnego.protocols import CandidateOrigin, NegotiationState, ReadinessFlag, Role
from tests.fakes import (
    ANSWER_SDP,
    HOST_CANDIDATE,
    OFFER_SDP,
    RELAY_CANDIDATE,
    SRFLX_CANDIDATE,
    FakeEngine,
    make_candidate,
)

BASE = [ReadinessFlag.SIGNALING_CHANNEL_OPEN, ReadinessFlag.TRANSPORT_CONFIG_RESOLVED]


def make_coordinator(role, engine, channel, **kwargs):
    factory = Mock(return_value=engine)
    coordinator = Coordinator(role=role, channel=channel, engine_factory=factory, **kwargs)
    coordinator.on_error = Mock()
    coordinator.on_remote_hangup = Mock()
    coordinator.on_active = Mock()
    return coordinator, factory


async def make_ready(coordinator, flags=BASE):
    for flag in flags:
        await coordinator.set_ready(flag)


class TestReadiness:
    """Test gate-driven session start."""

    async def test_waits_for_gate(self, engine, channel):
        coordinator, factory = make_coordinator(Role.INITIATOR, engine, channel)

        await coordinator.set_ready(ReadinessFlag.SIGNALING_CHANNEL_OPEN)

        assert coordinator.state == NegotiationState.AWAITING_GATE
        factory.assert_not_called()
        assert channel.sent == []

    @pytest.mark.parametrize("order", list(itertools.permutations(ReadinessFlag)))
    async def test_session_created_once_in_any_order(self, engine, channel, order):
        coordinator, factory = make_coordinator(
            Role.RESPONDER, engine, channel, require_local_media=True
        )

        for flag in order:
            await coordinator.set_ready(flag)
            await coordinator.set_ready(flag)
        for flag in order:
            await coordinator.set_ready(flag)

        factory.assert_called_once()
        assert coordinator.state == NegotiationState.NEGOTIATING

    async def test_initiator_sends_exactly_one_offer(self, engine, channel):
        coordinator, factory = make_coordinator(Role.INITIATOR, engine, channel)

        await make_ready(coordinator)

        factory.assert_called_once()
        assert channel.sent_types() == ["offer"]
        assert coordinator.state == NegotiationState.NEGOTIATING

    async def test_responder_sends_nothing_on_start(self, engine, channel):
        coordinator, _ = make_coordinator(Role.RESPONDER, engine, channel)

        await make_ready(coordinator)

        assert channel.sent == []
        assert coordinator.state == NegotiationState.NEGOTIATING

    async def test_factory_failure_is_reported(self, channel):
        def broken_factory():
            raise RuntimeError("no peer connection")

        coordinator = Coordinator(
            role=Role.INITIATOR, channel=channel, engine_factory=broken_factory
        )
        coordinator.on_error = Mock()

        await make_ready(coordinator)

        assert coordinator.state == NegotiationState.AWAITING_GATE
        (error,), _ = coordinator.on_error.call_args
        assert isinstance(error, NegotiationError)

    async def test_offer_send_failure_is_reported(self, engine, channel):
        channel.fail = True
        coordinator, _ = make_coordinator(Role.INITIATOR, engine, channel)

        await make_ready(coordinator)

        (error,), _ = coordinator.on_error.call_args
        assert isinstance(error, TransportError)
        assert coordinator.state == NegotiationState.NEGOTIATING


class TestQueueing:
    """Test buffering before the session exists."""

    async def test_offer_applied_before_earlier_candidates(self, engine, channel):
        coordinator, _ = make_coordinator(Role.RESPONDER, engine, channel)

        await coordinator.handle_inbound(make_candidate(SRFLX_CANDIDATE))
        await coordinator.handle_inbound(make_candidate(RELAY_CANDIDATE))
        await coordinator.handle_inbound(Offer(sdp=OFFER_SDP))
        assert engine.calls == []

        await make_ready(coordinator)

        assert engine.calls == [
            ("set_remote_description", "offer"),
            ("create_answer", None),
            ("set_local_description", "answer"),
            ("add_ice_candidate", SRFLX_CANDIDATE),
            ("add_ice_candidate", RELAY_CANDIDATE),
        ]

    async def test_offer_followed_by_two_candidates(self, engine, channel):
        coordinator, _ = make_coordinator(Role.RESPONDER, engine, channel)

        await coordinator.handle_inbound(Offer(sdp=OFFER_SDP))
        await coordinator.handle_inbound(make_candidate(SRFLX_CANDIDATE))
        await coordinator.handle_inbound(make_candidate(RELAY_CANDIDATE))
        await make_ready(coordinator)

        names = engine.call_names()
        assert names.index("set_remote_description") < names.index("add_ice_candidate")
        assert [arg for name, arg in engine.calls if name == "add_ice_candidate"] == [
            SRFLX_CANDIDATE,
            RELAY_CANDIDATE,
        ]

    async def test_responder_scenario_reaches_active(self, engine, channel):
        """Offer and candidate queued, gate fires, answer sent, state ACTIVE."""
        coordinator, _ = make_coordinator(Role.RESPONDER, engine, channel)

        await coordinator.handle_inbound(encode_message(Offer(sdp=OFFER_SDP)))
        await coordinator.handle_inbound(encode_message(make_candidate(HOST_CANDIDATE)))
        assert coordinator.state == NegotiationState.AWAITING_GATE

        await make_ready(coordinator)

        assert channel.sent == [Answer(sdp=ANSWER_SDP)]
        assert ("add_ice_candidate", HOST_CANDIDATE) in engine.calls
        assert coordinator.state == NegotiationState.ACTIVE
        assert coordinator.stats.get(CandidateOrigin.REMOTE) == {"host": 1}
        coordinator.on_active.assert_called_once()

    async def test_candidate_before_offer_after_gate(self, engine, channel):
        """Delivery can reorder a candidate ahead of the offer once started."""
        coordinator, _ = make_coordinator(Role.RESPONDER, engine, channel)
        await make_ready(coordinator)

        await coordinator.handle_inbound(make_candidate(SRFLX_CANDIDATE))
        assert engine.calls == []
        await coordinator.handle_inbound(Offer(sdp=OFFER_SDP))

        assert engine.calls == [
            ("set_remote_description", "offer"),
            ("create_answer", None),
            ("set_local_description", "answer"),
            ("add_ice_candidate", SRFLX_CANDIDATE),
        ]
        assert coordinator.stats.get(CandidateOrigin.REMOTE) == {"srflx": 1}
        assert coordinator.state == NegotiationState.ACTIVE
        coordinator.on_error.assert_not_called()

    async def test_messages_after_drain_applied_directly(self, engine, channel):
        coordinator, _ = make_coordinator(Role.INITIATOR, engine, channel)
        await make_ready(coordinator)
        assert coordinator.queue.is_bypassed

        await coordinator.handle_inbound({"type": "answer", "sdp": ANSWER_SDP})

        assert coordinator.state == NegotiationState.ACTIVE
        assert len(coordinator.queue) == 0

    async def test_out_of_state_message_dropped(self, engine, channel):
        coordinator, _ = make_coordinator(Role.INITIATOR, engine, channel)
        await coordinator.handle_inbound(Offer(sdp=OFFER_SDP))

        await make_ready(coordinator)

        # Initiator never applies an offer; the session carries on
        assert "set_remote_description" not in engine.call_names()
        assert coordinator.state == NegotiationState.NEGOTIATING
        coordinator.on_error.assert_not_called()

    async def test_inbound_messages_applied_one_at_a_time(self, channel):
        """Concurrent deliveries never interleave inside the engine."""
        active = 0
        overlaps = []

        class SlowEngine(FakeEngine):
            async def add_ice_candidate(self, candidate):
                nonlocal active
                active += 1
                overlaps.append(active)
                await asyncio.sleep(0)
                await super().add_ice_candidate(candidate)
                active -= 1

        engine = SlowEngine()
        coordinator, _ = make_coordinator(Role.RESPONDER, engine, channel)
        await make_ready(coordinator)
        await coordinator.handle_inbound(Offer(sdp=OFFER_SDP))

        await asyncio.gather(
            coordinator.handle_inbound(make_candidate(HOST_CANDIDATE)),
            coordinator.handle_inbound(make_candidate(SRFLX_CANDIDATE)),
            coordinator.handle_inbound(make_candidate(RELAY_CANDIDATE)),
        )

        assert overlaps == [1, 1, 1]
        assert [arg for name, arg in engine.calls if name == "add_ice_candidate"] == [
            HOST_CANDIDATE,
            SRFLX_CANDIDATE,
            RELAY_CANDIDATE,
        ]


class TestInboundErrors:
    """Test malformed and rejected inbound messages."""

    async def test_malformed_json_dropped(self, engine, channel):
        coordinator, _ = make_coordinator(Role.RESPONDER, engine, channel)

        await coordinator.handle_inbound("{not json")
        await coordinator.handle_inbound(json.dumps({"type": "hello"}))
        await make_ready(coordinator)

        assert engine.calls == []
        coordinator.on_error.assert_not_called()

    async def test_candidate_failure_reported_state_kept(self, engine, channel):
        coordinator, _ = make_coordinator(Role.RESPONDER, engine, channel)
        await make_ready(coordinator)
        await coordinator.handle_inbound(Offer(sdp=OFFER_SDP))
        engine.failures["add_ice_candidate"] = RuntimeError("bad candidate")

        await coordinator.handle_inbound(make_candidate())

        (error,), _ = coordinator.on_error.call_args
        assert isinstance(error, NegotiationError)
        assert coordinator.state == NegotiationState.ACTIVE

    async def test_duplicate_candidate_only_bumps_count(self, engine, channel):
        coordinator, _ = make_coordinator(Role.RESPONDER, engine, channel)
        await make_ready(coordinator)
        await coordinator.handle_inbound(Offer(sdp=OFFER_SDP))
        candidate = make_candidate(SRFLX_CANDIDATE)

        await coordinator.handle_inbound(candidate)
        state = coordinator.state
        await coordinator.handle_inbound(candidate)

        assert coordinator.state == state
        assert coordinator.stats.get(CandidateOrigin.REMOTE) == {"srflx": 2}
        assert channel.sent_types() == ["answer"]
        coordinator.on_error.assert_not_called()


class TestBye:
    """Test remote hangup and teardown."""

    async def test_bye_closes_while_awaiting_gate(self, engine, channel):
        coordinator, factory = make_coordinator(Role.RESPONDER, engine, channel)
        await coordinator.handle_inbound(Offer(sdp=OFFER_SDP))

        await coordinator.handle_inbound(Bye())

        assert coordinator.state == NegotiationState.CLOSED
        coordinator.on_remote_hangup.assert_called_once()

        # Gate completing afterwards does not start a session
        await make_ready(coordinator)
        factory.assert_not_called()

    async def test_bye_closes_active_session(self, engine, channel):
        coordinator, _ = make_coordinator(Role.INITIATOR, engine, channel)
        await make_ready(coordinator)
        await coordinator.handle_inbound(Answer(sdp=ANSWER_SDP))

        await coordinator.handle_inbound({"type": "bye"})

        assert coordinator.state == NegotiationState.CLOSED
        assert engine.closed

    async def test_messages_after_bye_are_noops(self, engine, channel):
        coordinator, _ = make_coordinator(Role.RESPONDER, engine, channel)
        await make_ready(coordinator)
        await coordinator.handle_inbound(Bye())
        engine.calls.clear()

        await coordinator.handle_inbound(Offer(sdp=OFFER_SDP))
        await coordinator.handle_inbound(make_candidate())
        await coordinator.handle_inbound(Bye())

        assert engine.calls == []
        assert channel.sent == []
        coordinator.on_remote_hangup.assert_called_once()

    async def test_hangup_sends_bye_and_closes(self, engine, channel):
        coordinator, _ = make_coordinator(Role.INITIATOR, engine, channel)
        await make_ready(coordinator)

        await coordinator.hangup()
        await coordinator.hangup()

        assert channel.sent_types() == ["offer", "bye"]
        assert coordinator.state == NegotiationState.CLOSED
        coordinator.on_remote_hangup.assert_not_called()

    async def test_hangup_before_gate_sends_nothing(self, engine, channel):
        coordinator, factory = make_coordinator(Role.RESPONDER, engine, channel)
        await coordinator.set_ready(ReadinessFlag.TRANSPORT_CONFIG_RESOLVED)

        await coordinator.hangup()

        assert channel.sent == []
        assert coordinator.state == NegotiationState.CLOSED
        factory.assert_not_called()

    async def test_bye_logs_discarded_messages(self, engine, channel, caplog):
        coordinator, _ = make_coordinator(Role.RESPONDER, engine, channel)
        await coordinator.handle_inbound(make_candidate(HOST_CANDIDATE))
        await coordinator.handle_inbound(Offer(sdp=OFFER_SDP))

        with caplog.at_level("INFO", logger="rtcnego.coordinator"):
            await coordinator.handle_inbound(Bye())

        assert "discarding queued: offer, candidate" in caplog.text

    async def test_hangup_closes_even_if_bye_fails(self, engine, channel):
        coordinator, _ = make_coordinator(Role.RESPONDER, engine, channel)
        await make_ready(coordinator)
        channel.fail = True

        await coordinator.hangup()

        assert coordinator.state == NegotiationState.CLOSED
        assert engine.closed

    async def test_teardown_sends_nothing(self, engine, channel):
        coordinator, _ = make_coordinator(Role.RESPONDER, engine, channel)
        await make_ready(coordinator)

        await coordinator.teardown()

        assert channel.sent == []
        assert coordinator.state == NegotiationState.CLOSED

    async def test_reset_starts_fresh_session(self, channel):
        engines = [FakeEngine(), FakeEngine()]
        coordinator = Coordinator(
            role=Role.INITIATOR, channel=channel, engine_factory=Mock(side_effect=engines)
        )
        await make_ready(coordinator)

        await coordinator.reset()

        assert engines[0].closed
        assert coordinator.state == NegotiationState.AWAITING_GATE
        assert not coordinator.queue.is_bypassed
        await make_ready(coordinator)
        assert channel.sent_types() == ["offer", "offer"]
        assert coordinator.state == NegotiationState.NEGOTIATING


class TestLocalCandidates:
    """Test local candidate forwarding through the relay."""

    async def test_candidates_forwarded_after_offer(self, channel):
        engine = FakeEngine(
            local_candidates=[make_candidate(HOST_CANDIDATE), make_candidate(SRFLX_CANDIDATE)]
        )
        coordinator, _ = make_coordinator(Role.INITIATOR, engine, channel)

        await make_ready(coordinator)

        assert channel.sent_types() == ["offer", "candidate", "candidate"]
        assert coordinator.stats.get(CandidateOrigin.LOCAL) == {"host": 1, "srflx": 1}
        assert coordinator.relay.end_of_candidates

    async def test_relay_only_forwards_relay_candidates(self, channel):
        engine = FakeEngine(
            local_candidates=[
                make_candidate(HOST_CANDIDATE),
                make_candidate(SRFLX_CANDIDATE),
                make_candidate(RELAY_CANDIDATE),
            ]
        )
        coordinator, _ = make_coordinator(
            Role.INITIATOR, engine, channel, ice_transports="relay"
        )

        await make_ready(coordinator)

        candidates = [m for m in channel.sent if m.type == "candidate"]
        assert [c.candidate for c in candidates] == [RELAY_CANDIDATE]
        assert coordinator.stats.get(CandidateOrigin.LOCAL) == {"relay": 1}

    async def test_remote_filter(self, engine, channel):
        coordinator, _ = make_coordinator(
            Role.RESPONDER, engine, channel, remote_filter=relay_only
        )
        await make_ready(coordinator)
        await coordinator.handle_inbound(Offer(sdp=OFFER_SDP))

        await coordinator.handle_inbound(make_candidate(HOST_CANDIDATE))
        await coordinator.handle_inbound(make_candidate(RELAY_CANDIDATE))

        assert [arg for name, arg in engine.calls if name == "add_ice_candidate"] == [
            RELAY_CANDIDATE
        ]

    async def test_candidate_send_failure_reported(self, channel):
        engine = FakeEngine(local_candidates=[make_candidate(HOST_CANDIDATE)])
        coordinator, _ = make_coordinator(Role.RESPONDER, engine, channel)
        await make_ready(coordinator)
        await coordinator.handle_inbound(Offer(sdp=OFFER_SDP))
        channel.fail = True

        await coordinator.handle_local_candidate(make_candidate(SRFLX_CANDIDATE))

        (error,), _ = coordinator.on_error.call_args
        assert isinstance(error, TransportError)

    async def test_local_candidate_ignored_after_close(self, engine, channel):
        coordinator, _ = make_coordinator(Role.RESPONDER, engine, channel)
        await coordinator.teardown()

        await coordinator.handle_local_candidate(make_candidate(HOST_CANDIDATE))

        assert channel.sent == []


class TestRemoteMedia:
    """Test that on_active waits for remote video."""

    async def test_active_reported_after_first_frame(self, channel):
        engine = FakeEngine(has_video=True)
        coordinator, _ = make_coordinator(Role.RESPONDER, engine, channel)
        coordinator.on_remote_media_ready = Mock()
        await make_ready(coordinator)
        await coordinator.handle_inbound(Offer(sdp=OFFER_SDP))

        assert coordinator.state == NegotiationState.ACTIVE
        coordinator.on_active.assert_not_called()

        engine.emit_first_frame()

        coordinator.on_remote_media_ready.assert_called_once()
        coordinator.on_active.assert_called_once()


class TestChannelEvents:
    """Test channel error reporting."""

    def test_channel_error_reported(self, engine, channel):
        coordinator, _ = make_coordinator(Role.RESPONDER, engine, channel)

        coordinator.on_channel_error(OSError("reset by peer"))

        (error,), _ = coordinator.on_error.call_args
        assert isinstance(error, TransportError)
        assert "reset by peer" in str(error)

    def test_channel_closed_reported(self, engine, channel):
        coordinator, _ = make_coordinator(Role.RESPONDER, engine, channel)

        coordinator.on_channel_closed(1006, "abnormal")

        (error,), _ = coordinator.on_error.call_args
        assert "code: 1006" in str(error)
        assert coordinator.state == NegotiationState.AWAITING_GATE
