"""Tests for the guest session state machine."""

import asyncio
from unittest.mock import Mock

from conftest import FakeGamepads, FakeSignaling, FakeTrack, FakeTransport, Harness, make_pad, settle

from remoteplay.session import (
    GUEST_DISCONNECT_REASON,
    INPUT_CHANNEL_LABEL,
    ReconnectPolicy,
    SessionConfig,
    SessionController,
    SessionState,
)
from remoteplay.signaling import (
    AnswerMessage,
    CandidateMessage,
    DisconnectMessage,
    IceCandidate,
    NameMessage,
    OfferMessage,
    WelcomeMessage,
)
from remoteplay.stats import StatsDelta
from remoteplay.transport import SESSION_CAPABILITIES


def make_controller(harness, policy=None, guest_name="", **kwargs):
    config = SessionConfig(relay_url="ws://relay.test/ws", guest_name=guest_name, video_queue_frames=2)
    return SessionController(
        config,
        kwargs.pop("gamepads", FakeGamepads([make_pad(0)])),
        signaling_factory=harness.signaling_factory,
        transport_factory=harness.transport_factory,
        policy=policy or ReconnectPolicy(mode="none"),
        stats_interval=kwargs.pop("stats_interval", 60.0),
        input_interval=kwargs.pop("input_interval", 60.0),
        **kwargs,
    )


async def connected(controller, harness):
    assert await controller.connect()
    harness.signaling[-1].feed(AnswerMessage("v=0 answer"))
    await settle()
    assert controller.state is SessionState.CONNECTED


def frozen_tick():
    return StatsDelta(
        packets_received=100,
        packets_lost=0,
        nack_count=0,
        retransmissions=0,
        frames_decoded=0,
        elapsed_ms=1000,
    )


CAND_A = IceCandidate("candidate:1 1 udp 2130706431 10.0.0.2 50000 typ host", "0", 0)
CAND_B = IceCandidate("candidate:2 1 udp 2130706431 10.0.0.2 50002 typ host", "1", 1)


class GatedSignaling(FakeSignaling):
    """Relay channel whose name message waits until the test releases it."""

    def __init__(self, url):
        super().__init__(url)
        self.gate = asyncio.Event()

    async def send(self, message):
        if isinstance(message, NameMessage):
            await self.gate.wait()
        return await super().send(message)


class GatedTransport(FakeTransport):
    """Transport whose offer waits until the test releases it."""

    def __init__(self, capabilities, on_track=None, on_local_candidate=None):
        super().__init__(capabilities, on_track=on_track, on_local_candidate=on_local_candidate)
        self.gate = asyncio.Event()

    async def create_offer(self):
        await self.gate.wait()
        return await super().create_offer()


class TestConnect:
    """Connecting to the relay and starting negotiation."""

    def test_connect_sends_offer_and_negotiates(self, harness):
        """Channel open builds the transport and sends exactly one offer."""

        async def scenario():
            ctl = make_controller(harness)
            assert await ctl.connect() is True
            assert ctl.state is SessionState.NEGOTIATING
            transport = harness.transports[0]
            assert transport.capabilities == SESSION_CAPABILITIES
            assert transport.transceivers == ["video", "audio"]
            assert transport.channel.label == INPUT_CHANNEL_LABEL
            assert harness.signaling[0].sent == [OfferMessage("v=0 offer")]
            await ctl.close()

        asyncio.run(scenario())

    def test_name_sent_before_offer(self, harness):
        """A configured display name is announced when the channel opens."""

        async def scenario():
            ctl = make_controller(harness, guest_name="Player Two")
            await ctl.connect()
            sent = harness.signaling[0].sent
            assert sent[0] == NameMessage("Player Two")
            assert isinstance(sent[1], OfferMessage)
            await ctl.close()

        asyncio.run(scenario())

    def test_connect_rejected_while_active(self, harness):
        """A second connect request does not open another channel."""

        async def scenario():
            ctl = make_controller(harness)
            assert await ctl.connect() is True
            assert await ctl.connect() is False
            assert len(harness.signaling) == 1
            await ctl.close()

        asyncio.run(scenario())

    def test_open_failure_returns_to_idle(self):
        """A relay that cannot be reached leaves the controller idle."""
        harness = Harness(fail_open=True)

        async def scenario():
            ctl = make_controller(harness)
            assert await ctl.connect() is False
            assert ctl.state is SessionState.IDLE
            assert harness.transports == []
            assert ctl.reconnect_pending is False

        asyncio.run(scenario())

    def test_transport_setup_failure_hangs_up(self, harness):
        """A transport that cannot be built ends the session instead of leaving it negotiating."""

        def broken_transport(capabilities, on_track=None, on_local_candidate=None):
            raise RuntimeError("no peer connection")

        harness.transport_factory = broken_transport

        async def scenario():
            ctl = make_controller(harness)
            assert await ctl.connect() is False
            assert ctl.state is SessionState.IDLE
            assert ctl.session is None
            sig = harness.signaling[0]
            assert sig.sent_of(DisconnectMessage) == [DisconnectMessage("Transport setup failed")]
            assert sig.sent_of(OfferMessage) == []
            assert sig.close_calls == 1

        asyncio.run(scenario())

    def test_settings_persisted_on_open(self, harness):
        """Current settings are saved once the relay accepts the connection."""
        persist = Mock()

        async def scenario():
            ctl = make_controller(harness, persist_settings=persist)
            await ctl.connect()
            persist.assert_called_once_with(ctl.config)
            await ctl.close()

        asyncio.run(scenario())

    def test_state_listener_sees_each_transition(self, harness):
        """State changes are reported in order."""
        states = []

        async def scenario():
            ctl = make_controller(harness, on_state_change=states.append)
            await connected(ctl, harness)
            await ctl.disconnect()

        asyncio.run(scenario())
        assert states == [
            SessionState.CONNECTING,
            SessionState.NEGOTIATING,
            SessionState.CONNECTED,
            SessionState.DISCONNECTING,
            SessionState.IDLE,
        ]


class TestNegotiation:
    """Answer and candidate handling."""

    def test_connected_only_after_answer(self, harness):
        """Candidates alone never complete negotiation."""

        async def scenario():
            ctl = make_controller(harness)
            await ctl.connect()
            harness.signaling[0].feed(CandidateMessage(CAND_A))
            await settle()
            assert ctl.state is SessionState.NEGOTIATING
            assert harness.transports[0].candidates == []
            await ctl.close()

        asyncio.run(scenario())

    def test_candidates_before_answer_are_queued(self, harness):
        """Early candidates are applied in arrival order once the answer lands."""

        async def scenario():
            ctl = make_controller(harness)
            await ctl.connect()
            sig = harness.signaling[0]
            sig.feed(CandidateMessage(CAND_A))
            sig.feed(CandidateMessage(CAND_B))
            sig.feed(AnswerMessage("v=0 answer"))
            await settle()
            assert ctl.state is SessionState.CONNECTED
            assert harness.transports[0].candidates == [CAND_A, CAND_B]
            assert ctl.session.pending_candidates == []
            await ctl.close()

        asyncio.run(scenario())

    def test_candidates_straddling_answer(self, harness):
        """Candidates before and after the answer all reach the transport once."""

        async def scenario():
            ctl = make_controller(harness)
            await ctl.connect()
            sig = harness.signaling[0]
            sig.feed(CandidateMessage(CAND_A))
            sig.feed(AnswerMessage("v=0 answer"))
            sig.feed(CandidateMessage(CAND_B))
            await settle()
            assert ctl.state is SessionState.CONNECTED
            assert harness.transports[0].candidates == [CAND_A, CAND_B]
            await ctl.close()

        asyncio.run(scenario())

    def test_second_answer_ignored(self, harness):
        """Only the first answer is applied as the remote description."""

        async def scenario():
            ctl = make_controller(harness)
            await connected(ctl, harness)
            harness.signaling[0].feed(AnswerMessage("v=0 second"))
            await settle()
            assert harness.transports[0].remote_answers == ["v=0 answer"]
            assert ctl.state is SessionState.CONNECTED
            await ctl.close()

        asyncio.run(scenario())

    def test_invalid_answer_tears_down(self, harness):
        """A rejected answer hangs up and notifies the host."""

        async def scenario():
            ctl = make_controller(harness)
            await ctl.connect()
            sig = harness.signaling[0]
            sig.feed(AnswerMessage("bad"))
            await settle()
            assert ctl.state is SessionState.IDLE
            assert sig.sent_of(DisconnectMessage) == [DisconnectMessage("Invalid answer")]
            assert ctl.has_established is False

        asyncio.run(scenario())

    def test_welcome_sets_client_id(self, harness):
        """Welcome is informational and does not change state."""

        async def scenario():
            ctl = make_controller(harness)
            await ctl.connect()
            harness.signaling[0].feed(WelcomeMessage(client_id="abc123"))
            await settle()
            assert ctl.session.client_id == "abc123"
            assert ctl.state is SessionState.NEGOTIATING
            await ctl.close()

        asyncio.run(scenario())

    def test_local_candidate_forwarded(self, harness):
        """Locally gathered candidates are sent to the relay."""

        async def scenario():
            ctl = make_controller(harness)
            await ctl.connect()
            harness.transports[0].on_local_candidate(CAND_A)
            await settle()
            assert harness.signaling[0].sent_of(CandidateMessage) == [CandidateMessage(CAND_A)]
            await ctl.close()

        asyncio.run(scenario())


class TestDisconnect:
    """Teardown triggers and idempotence."""

    def test_disconnect_twice_sends_one_message(self, harness):
        """Two disconnect requests produce one wire message and one teardown."""

        async def scenario():
            ctl = make_controller(harness)
            await connected(ctl, harness)
            await ctl.disconnect()
            await ctl.disconnect()
            sig = harness.signaling[0]
            assert sig.sent_of(DisconnectMessage) == [DisconnectMessage(GUEST_DISCONNECT_REASON)]
            assert harness.transports[0].close_calls == 1
            assert sig.close_calls == 1
            assert ctl.state is SessionState.IDLE

        asyncio.run(scenario())

    def test_concurrent_disconnects(self, harness):
        """Overlapping disconnect requests collapse into one teardown."""

        async def scenario():
            ctl = make_controller(harness)
            await connected(ctl, harness)
            await asyncio.gather(ctl.disconnect(), ctl.disconnect("again"))
            assert len(harness.signaling[0].sent_of(DisconnectMessage)) == 1
            assert harness.transports[0].close_calls == 1

        asyncio.run(scenario())

    def test_disconnect_message_precedes_close(self, harness):
        """The host is told before the relay socket closes."""

        async def scenario():
            ctl = make_controller(harness)
            await connected(ctl, harness)
            sig = harness.signaling[0]
            order = []
            original_close = sig.close

            async def tracking_close():
                order.append(("close", len(sig.sent_of(DisconnectMessage))))
                await original_close()

            sig.close = tracking_close
            await ctl.disconnect()
            assert order == [("close", 1)]

        asyncio.run(scenario())

    def test_remote_disconnect(self, harness):
        """A host disconnect tears down without echoing a disconnect back."""

        async def scenario():
            ctl = make_controller(harness)
            await connected(ctl, harness)
            sig = harness.signaling[0]
            sig.feed(DisconnectMessage("Host stopped"))
            await settle()
            assert ctl.state is SessionState.IDLE
            assert sig.sent_of(DisconnectMessage) == []
            assert harness.transports[0].close_calls == 1

        asyncio.run(scenario())

    def test_channel_close_tears_down(self, harness):
        """Losing the relay socket ends the session."""

        async def scenario():
            ctl = make_controller(harness)
            await connected(ctl, harness)
            harness.signaling[0].end()
            await settle()
            assert ctl.state is SessionState.IDLE
            assert harness.transports[0].close_calls == 1

        asyncio.run(scenario())

    def test_teardown_stops_input_streamer(self, harness):
        """The input poll is stopped when the session ends."""

        async def scenario():
            ctl = make_controller(harness, input_interval=0.001)
            await connected(ctl, harness)
            channel = harness.transports[0].channel
            channel.readyState = "open"
            channel.emit("open")
            await settle()
            streamer = ctl.session.streamer
            assert streamer.running
            await ctl.disconnect()
            assert not streamer.running
            assert channel.readyState == "closed"

        asyncio.run(scenario())

    def test_disconnect_while_name_in_flight(self, harness):
        """Hanging up while the name is being sent leaves no transport behind."""
        relays = []

        def gated_signaling(url):
            sig = GatedSignaling(url)
            relays.append(sig)
            return sig

        harness.signaling_factory = gated_signaling

        async def scenario():
            ctl = make_controller(harness, guest_name="Ann")
            attempt = asyncio.create_task(ctl.connect())
            await settle()
            assert ctl.state is SessionState.NEGOTIATING
            await ctl.disconnect()
            relays[0].gate.set()
            assert await attempt is False
            await settle()
            assert ctl.state is SessionState.IDLE
            assert ctl.session is None
            assert harness.transports == []
            assert relays[0].sent_of(OfferMessage) == []

        asyncio.run(scenario())

    def test_disconnect_while_offer_pending(self, harness):
        """Hanging up during offer creation closes the transport once and sends no offer."""
        transports = []

        def gated_transport(capabilities, on_track=None, on_local_candidate=None):
            transport = GatedTransport(capabilities, on_track=on_track, on_local_candidate=on_local_candidate)
            transports.append(transport)
            return transport

        harness.transport_factory = gated_transport

        async def scenario():
            ctl = make_controller(harness)
            attempt = asyncio.create_task(ctl.connect())
            await settle()
            assert len(transports) == 1
            await ctl.disconnect()
            transports[0].gate.set()
            assert await attempt is False
            await settle()
            assert ctl.state is SessionState.IDLE
            assert transports[0].close_calls == 1
            assert harness.signaling[0].sent_of(OfferMessage) == []

        asyncio.run(scenario())


class TestMedia:
    """Track wiring and freeze handling."""

    def test_video_track_wires_playout_and_sampler(self, harness):
        """The first video track attaches jitter control and starts sampling."""

        async def scenario():
            ctl = make_controller(harness)
            await connected(ctl, harness)
            harness.transports[0].on_track(FakeTrack("video"), None)
            await settle()
            session = ctl.session
            assert session.playout is not None
            assert session.sampler.running
            # No receiver control, so the playout carries the target
            assert session.playout.target_delay == ctl.jitter.target_seconds
            await ctl.disconnect()
            assert not session.sampler.running

        asyncio.run(scenario())

    def test_audio_track_played(self, harness):
        """Audio tracks are handed to the transport's audio sink."""

        async def scenario():
            ctl = make_controller(harness)
            await connected(ctl, harness)
            track = FakeTrack("audio")
            harness.transports[0].on_track(track, None)
            await settle()
            assert harness.transports[0].audio_tracks == [track]
            await ctl.close()

        asyncio.run(scenario())

    def test_track_from_previous_session_ignored(self, harness):
        """A track event queued before a reconnect does not attach to the new session."""

        async def scenario():
            ctl = make_controller(harness)
            await connected(ctl, harness)
            old_transport = harness.transports[0]
            old_transport.on_track(FakeTrack("video"), None)
            await ctl.disconnect()
            assert await ctl.connect() is True
            await settle()
            assert ctl.session.playout is None
            assert ctl.session.sampler is None
            await ctl.close()

        asyncio.run(scenario())

    def test_freeze_disconnects_once(self, harness):
        """Five frozen ticks hang up once; a sixth has no effect."""

        async def scenario():
            ctl = make_controller(harness)
            await connected(ctl, harness)
            harness.transports[0].on_track(FakeTrack("video"), None)
            await settle()
            for _ in range(6):
                ctl.jitter.on_stats_tick(frozen_tick())
                await settle()
            sig = harness.signaling[0]
            assert sig.sent_of(DisconnectMessage) == [DisconnectMessage("Video frozen")]
            assert ctl.state is SessionState.IDLE

        asyncio.run(scenario())

    def test_freeze_schedules_reconnect(self, harness):
        """After an established session freezes, a reconnect follows."""

        async def scenario():
            policy = ReconnectPolicy(mode="reconnect", base_delay=0.0)
            ctl = make_controller(harness, policy=policy)
            await connected(ctl, harness)
            harness.transports[0].on_track(FakeTrack("video"), None)
            await settle()
            for _ in range(5):
                ctl.jitter.on_stats_tick(frozen_tick())
            await settle()
            await asyncio.sleep(0.01)
            await settle()
            assert len(harness.signaling) == 2
            assert ctl.state is SessionState.NEGOTIATING
            await ctl.close()

        asyncio.run(scenario())


class TestRecoveryPolicy:
    """What happens after teardown."""

    def test_no_reconnect_before_first_connection(self, harness):
        """A session that never connected is not retried."""

        async def scenario():
            ctl = make_controller(harness, policy=ReconnectPolicy(mode="reconnect"))
            await ctl.connect()
            harness.signaling[0].end()
            await settle()
            assert ctl.state is SessionState.IDLE
            assert ctl.reconnect_pending is False

        asyncio.run(scenario())

    def test_guest_disconnect_not_retried(self, harness):
        """A user hang-up never triggers reconnect."""

        async def scenario():
            ctl = make_controller(harness, policy=ReconnectPolicy(mode="reconnect"))
            await connected(ctl, harness)
            await ctl.disconnect()
            assert ctl.reconnect_pending is False

        asyncio.run(scenario())

    def test_channel_loss_schedules_reconnect(self, harness):
        """Relay loss after an established session schedules a retry."""

        async def scenario():
            ctl = make_controller(harness, policy=ReconnectPolicy(mode="reconnect", base_delay=10.0))
            await connected(ctl, harness)
            harness.signaling[0].end()
            await settle()
            assert ctl.reconnect_pending is True
            await ctl.close()
            assert ctl.reconnect_pending is False

        asyncio.run(scenario())

    def test_exec_restart_latched(self, harness):
        """The process restart is scheduled at most once."""
        restart = Mock()

        async def scenario():
            ctl = make_controller(harness, policy=ReconnectPolicy(mode="exec"), restart_process=restart)
            await connected(ctl, harness)
            harness.signaling[-1].feed(DisconnectMessage("bye"))
            await settle()
            await connected(ctl, harness)
            harness.signaling[-1].feed(DisconnectMessage("bye again"))
            await settle()
            await asyncio.sleep(0.1)

        asyncio.run(scenario())
        restart.assert_called_once_with()

    def test_backoff_delays(self):
        """Delays grow geometrically and are capped."""
        policy = ReconnectPolicy(base_delay=0.05, factor=2.0, max_delay=10.0)
        assert policy.delay(0) == 0.05
        assert policy.delay(3) == 0.4
        assert policy.delay(20) == 10.0


class TestRuntimeSettings:
    """Settings changed while running."""

    def test_guest_name_sent_when_live(self, harness):
        """Renaming during a session announces the new name."""

        async def scenario():
            ctl = make_controller(harness)
            await connected(ctl, harness)
            await ctl.set_guest_name("  New Name ")
            assert harness.signaling[0].sent_of(NameMessage) == [NameMessage("New Name")]
            assert ctl.config.guest_name == "New Name"
            await ctl.close()

        asyncio.run(scenario())

    def test_set_baseline_persists(self, harness):
        """Changing the baseline depth updates config and is saved."""
        persist = Mock()
        ctl = make_controller(harness, persist_settings=persist)
        ctl.set_baseline(5)
        assert ctl.config.video_queue_frames == 5
        assert ctl.jitter.configured_frames == 5
        persist.assert_called_once()

    def test_select_gamepad_persists(self, harness):
        """Selecting a gamepad updates config."""
        ctl = make_controller(harness, gamepads=FakeGamepads([make_pad(0), make_pad(1)]))
        ctl.select_gamepad(1)
        assert ctl.config.gamepad_index == 1

    def test_set_relay_url(self, harness):
        """Blank URLs are ignored."""
        ctl = make_controller(harness)
        ctl.set_relay_url("   ")
        assert ctl.config.relay_url == "ws://relay.test/ws"
        ctl.set_relay_url(" ws://other/ws ")
        assert ctl.config.relay_url == "ws://other/ws"
