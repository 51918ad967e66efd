"""Guest session state machine.

One :class:`SessionController` drives at most one :class:`Session` through

    IDLE -> CONNECTING -> NEGOTIATING -> CONNECTED -> DISCONNECTING -> IDLE

Every stimulus (user request, relay message, transport or data-channel
callback, freeze detection) enters through :meth:`SessionController.dispatch`
as a :class:`SessionEvent`. All handlers run on the event loop that owns the
controller, so state is only ever touched from one timeline; handlers re-check
``Session.disconnecting`` after each await because teardown may have started
while they were suspended.

Candidates from the host are queued until the answer has been applied and
then flushed in arrival order. Teardown stops the input poll and the stats
sampler before anything else, notifies the host first when the guest is the
one hanging up, and is idempotent. Afterwards a :class:`ReconnectPolicy`
decides whether to reconnect (with backoff) or restart the process.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from remoteplay.input_streamer import INPUT_POLL_INTERVAL_SECS, GamepadSource, InputStreamer
from remoteplay.jitter import JitterBufferController, JitterTuning
from remoteplay.playout import FramePlayout
from remoteplay.settings import DEFAULT_VIDEO_QUEUE_FRAMES
from remoteplay.signaling import (
    AnswerMessage,
    CandidateMessage,
    DisconnectMessage,
    IceCandidate,
    NameMessage,
    OfferMessage,
    SignalingChannel,
    WelcomeMessage,
)
from remoteplay.stats import STATS_INTERVAL_SECS, StatsSampler
from remoteplay.transport import SESSION_CAPABILITIES, AiortcTransport


INPUT_CHANNEL_LABEL = "input"
GUEST_DISCONNECT_REASON = "Guest requested"
RESTART_DELAY_SECS = 0.05  # Delay before a process restart


class SessionState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


class SessionEvent(enum.Enum):
    CONNECT_REQUESTED = enum.auto()
    CHANNEL_OPENED = enum.auto()
    ANSWER_RECEIVED = enum.auto()
    CANDIDATE_RECEIVED = enum.auto()
    WELCOME_RECEIVED = enum.auto()
    LOCAL_CANDIDATE = enum.auto()
    TRACK_RECEIVED = enum.auto()
    INPUT_CHANNEL_OPENED = enum.auto()
    INPUT_CHANNEL_CLOSED = enum.auto()
    INPUT_MESSAGE = enum.auto()
    REMOTE_DISCONNECT = enum.auto()
    CHANNEL_CLOSED = enum.auto()
    DISCONNECT_REQUESTED = enum.auto()
    MEDIA_FROZEN = enum.auto()
    NEGOTIATION_FAILED = enum.auto()


# Triggers that warrant an automatic reconnect
RECOVERABLE_EVENTS = frozenset({SessionEvent.CHANNEL_CLOSED, SessionEvent.MEDIA_FROZEN})

# States in which a new connect request is rejected
ACTIVE_STATES = frozenset(
    {SessionState.CONNECTING, SessionState.NEGOTIATING, SessionState.CONNECTED, SessionState.DISCONNECTING}
)


@dataclass
class SessionConfig:
    relay_url: str
    guest_name: str = ""
    gamepad_index: int | None = None
    video_queue_frames: int = DEFAULT_VIDEO_QUEUE_FRAMES


@dataclass
class ReconnectPolicy:
    """What happens after a session that had been connected is torn down.

    ``reconnect``: reconnect after channel loss or a media freeze, with
    exponential backoff and a bounded number of consecutive attempts.
    ``exec``: restart the whole process once, whatever the trigger.
    ``none``: stay idle.
    """

    mode: str = "reconnect"
    base_delay: float = 0.05
    factor: float = 2.0
    max_delay: float = 10.0
    max_attempts: int = 5

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * (self.factor**attempt), self.max_delay)


@dataclass
class Session:
    """Everything owned by one guest<->host link; discarded on teardown."""

    relay_url: str
    guest_name: str = ""
    state: SessionState = SessionState.IDLE
    client_id: str | int | None = None
    disconnect_reason: str | None = None
    disconnecting: bool = False
    offer_sent: bool = False
    remote_description_set: bool = False
    signaling: SignalingChannel | None = None
    transport: AiortcTransport | None = None
    input_channel: object | None = None
    streamer: InputStreamer | None = None
    sampler: StatsSampler | None = None
    playout: FramePlayout | None = None
    pending_candidates: list[IceCandidate] = field(default_factory=list)


class SessionController:
    def __init__(  # noqa: PLR0913
        self,
        config: SessionConfig,
        gamepads: GamepadSource,
        *,
        signaling_factory: Callable[[str], SignalingChannel] = SignalingChannel,
        transport_factory: Callable[..., AiortcTransport] = AiortcTransport,
        tuning: JitterTuning | None = None,
        policy: ReconnectPolicy | None = None,
        persist_settings: Callable[[SessionConfig], None] | None = None,
        restart_process: Callable[[], None] | None = None,
        video_sink: Callable[[object], None] | None = None,
        on_state_change: Callable[[SessionState], None] | None = None,
        stats_interval: float = STATS_INTERVAL_SECS,
        input_interval: float = INPUT_POLL_INTERVAL_SECS,
    ) -> None:
        self.config = config
        self.gamepads = gamepads
        self.signaling_factory = signaling_factory
        self.transport_factory = transport_factory
        self.policy = policy or ReconnectPolicy()
        self.persist_settings = persist_settings
        self.restart_process = restart_process
        self.video_sink = video_sink
        self.on_state_change = on_state_change
        self.stats_interval = stats_interval
        self.input_interval = input_interval
        self.jitter = JitterBufferController(config.video_queue_frames, tuning, on_freeze=self._on_freeze)

        self.session: Session | None = None
        self.has_established = False
        self._reconnect_attempts = 0
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._restart_latched = False
        self._closed = False
        self._tasks: set[asyncio.Task] = set()
        self._handlers = {
            SessionEvent.CONNECT_REQUESTED: self._on_connect_requested,
            SessionEvent.CHANNEL_OPENED: self._on_channel_opened,
            SessionEvent.ANSWER_RECEIVED: self._on_answer,
            SessionEvent.CANDIDATE_RECEIVED: self._on_remote_candidate,
            SessionEvent.WELCOME_RECEIVED: self._on_welcome,
            SessionEvent.LOCAL_CANDIDATE: self._on_local_candidate,
            SessionEvent.TRACK_RECEIVED: self._on_track,
            SessionEvent.INPUT_CHANNEL_OPENED: self._on_input_open,
            SessionEvent.INPUT_CHANNEL_CLOSED: self._on_input_closed,
            SessionEvent.INPUT_MESSAGE: self._on_input_message,
            SessionEvent.REMOTE_DISCONNECT: self._on_remote_disconnect,
            SessionEvent.CHANNEL_CLOSED: self._on_channel_closed,
            SessionEvent.DISCONNECT_REQUESTED: self._on_disconnect_requested,
            SessionEvent.MEDIA_FROZEN: self._on_media_frozen,
            SessionEvent.NEGOTIATION_FAILED: self._on_negotiation_failed,
        }

    # ── public surface ───────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self.session.state if self.session is not None else SessionState.IDLE

    @property
    def is_active(self) -> bool:
        """Two-state view for the connect button: True shows "Disconnect"."""
        return self.state in ACTIVE_STATES

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    async def connect(self) -> bool:
        return bool(await self.dispatch(SessionEvent.CONNECT_REQUESTED))

    async def disconnect(self, reason: str = GUEST_DISCONNECT_REASON) -> None:
        self._cancel_reconnect()
        await self.dispatch(SessionEvent.DISCONNECT_REQUESTED, reason)

    async def close(self) -> None:
        """Final shutdown: hang up and never reconnect or restart."""
        self._closed = True
        self._cancel_reconnect()
        if self.session is not None:
            await self.dispatch(SessionEvent.DISCONNECT_REQUESTED, GUEST_DISCONNECT_REASON)
        for task in list(self._tasks):
            if task is not asyncio.current_task():
                task.cancel()

    def set_baseline(self, frames: int) -> None:
        self.jitter.set_baseline(frames)
        self.config.video_queue_frames = self.jitter.configured_frames
        self._persist()

    def select_gamepad(self, index: int | None) -> None:
        self.config.gamepad_index = index
        session = self.session
        if session is not None and session.streamer is not None:
            session.streamer.selected_index = index
        self._persist()

    def set_relay_url(self, url: str) -> None:
        """Takes effect on the next connect."""
        url = url.strip()
        if url and url != self.config.relay_url:
            self.config.relay_url = url
            self._persist()

    async def set_guest_name(self, name: str) -> None:
        self.config.guest_name = name.strip()
        self._persist()
        session = self.session
        if self._live(session) and session.signaling is not None:
            await session.signaling.send(NameMessage(self.config.guest_name))

    async def dispatch(self, event: SessionEvent, payload=None):
        """Route one event to its handler; handler failures are logged, never raised."""
        logging.debug(f"session event {event.name} in state {self.state.value}")
        try:
            return await self._handlers[event](payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logging.error(f"{event.name} handling failed: {e}")
            return None

    # ── helpers ──────────────────────────────────────────────────────

    def _live(self, session: Session | None) -> bool:
        return session is not None and session is self.session and not session.disconnecting

    def _set_state(self, session: Session, state: SessionState) -> None:
        if session.state is state:
            return
        logging.debug(f"Session {session.state.value} -> {state.value}")
        session.state = state
        if self.on_state_change is not None:
            try:
                self.on_state_change(state)
            except Exception as e:
                logging.debug(f"State listener failed: {e}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _post(self, session: Session, event: SessionEvent, payload=None) -> None:
        """Queue an event from a synchronous callback, dropping it if the session is gone."""
        if self._live(session):
            self._spawn(self._dispatch_for(session, event, payload))

    async def _dispatch_for(self, session: Session, event: SessionEvent, payload=None):
        # The originating session may have been replaced before this task ran
        if not self._live(session):
            logging.debug(f"Dropping {event.name} from a closed session")
            return None
        return await self.dispatch(event, payload)

    def _persist(self) -> None:
        if self.persist_settings is None:
            return
        try:
            self.persist_settings(self.config)
        except Exception as e:
            logging.warning(f"Failed to persist settings: {e}")

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    # ── connection setup ─────────────────────────────────────────────

    async def _on_connect_requested(self, _payload) -> bool:
        if self.session is not None:
            logging.info(f"Connect ignored: session already {self.session.state.value}")
            return False
        if self._closed:
            return False
        self._cancel_reconnect()

        session = Session(relay_url=self.config.relay_url, guest_name=self.config.guest_name)
        self.session = session
        self._set_state(session, SessionState.CONNECTING)
        logging.info(f"Connecting to {session.relay_url}")

        session.signaling = self.signaling_factory(session.relay_url)
        try:
            await session.signaling.open()
        except Exception as e:
            logging.error(f"WebSocket error: {e}")
            if self._live(session):
                await self._teardown(session, "WebSocket error", SessionEvent.CHANNEL_CLOSED, local=False)
            return False
        if not self._live(session):
            await session.signaling.close()
            return False

        await self.dispatch(SessionEvent.CHANNEL_OPENED, session)
        if not self._live(session):
            return False
        self._spawn(self._pump_signaling(session))
        return True

    async def _on_channel_opened(self, session: Session) -> None:
        if not self._live(session) or session.state is not SessionState.CONNECTING:
            return
        self._persist()
        self._set_state(session, SessionState.NEGOTIATING)

        if session.guest_name:
            await session.signaling.send(NameMessage(session.guest_name))
            if not self._live(session):
                return

        try:
            transport = self._build_transport(session)
        except Exception as e:
            logging.error(f"Transport setup failed: {e}")
            await self.dispatch(SessionEvent.NEGOTIATION_FAILED, "Transport setup failed")
            return

        try:
            sdp = await transport.create_offer()
        except Exception as e:
            logging.error(f"createOffer failed: {e}")
            if self._live(session):
                await self.dispatch(SessionEvent.NEGOTIATION_FAILED, "Offer creation failed")
            return
        if not self._live(session):
            # Teardown already closed session.transport
            return
        if await session.signaling.send(OfferMessage(sdp)):
            session.offer_sent = True
            logging.info("Sent offer")

    def _build_transport(self, session: Session):
        """Create the peer transport with its transceivers, input channel and streamer."""
        transport = self.transport_factory(
            SESSION_CAPABILITIES,
            on_track=lambda track, receiver: self._post(session, SessionEvent.TRACK_RECEIVED, (track, receiver)),
            on_local_candidate=lambda cand: self._post(session, SessionEvent.LOCAL_CANDIDATE, cand),
        )
        session.transport = transport
        transport.add_receive_transceiver("video")
        transport.add_receive_transceiver("audio")

        channel = transport.create_data_channel(INPUT_CHANNEL_LABEL)
        session.input_channel = channel
        session.streamer = InputStreamer(
            channel,
            self.gamepads,
            is_live=lambda: self._live(session),
            selected_index=self.config.gamepad_index,
            on_selection_changed=self.select_gamepad,
            interval=self.input_interval,
        )
        channel.on("open", lambda: self._post(session, SessionEvent.INPUT_CHANNEL_OPENED))
        channel.on("close", lambda: self._on_input_closed_sync(session))
        channel.on("message", lambda raw: self._post(session, SessionEvent.INPUT_MESSAGE, raw))
        return transport

    async def _pump_signaling(self, session: Session) -> None:
        events = {
            AnswerMessage: (SessionEvent.ANSWER_RECEIVED, lambda m: m.sdp),
            CandidateMessage: (SessionEvent.CANDIDATE_RECEIVED, lambda m: m.candidate),
            WelcomeMessage: (SessionEvent.WELCOME_RECEIVED, lambda m: m.client_id),
            DisconnectMessage: (SessionEvent.REMOTE_DISCONNECT, lambda m: m.reason),
        }
        channel = session.signaling
        async with contextlib.aclosing(channel.messages()) as messages:
            async for msg in messages:
                if not self._live(session):
                    break
                route = events.get(type(msg))
                if route is None:
                    logging.debug(f"Ignoring '{msg.type}' from relay")
                    continue
                event, extract = route
                await self.dispatch(event, extract(msg))
        if self._live(session):
            await self.dispatch(SessionEvent.CHANNEL_CLOSED, channel.close_reason or "WebSocket closed")

    async def _on_answer(self, sdp: str) -> None:
        session = self.session
        if not self._live(session):
            return
        if session.state is not SessionState.NEGOTIATING or not session.offer_sent or session.remote_description_set:
            logging.warning(f"Ignoring unexpected answer in state {session.state.value}")
            return
        logging.info("Received answer")
        try:
            await session.transport.set_remote_answer(sdp)
        except Exception as e:
            logging.error(f"setRemoteDescription failed: {e}")
            if self._live(session):
                await self.dispatch(SessionEvent.NEGOTIATION_FAILED, "Invalid answer")
            return
        if not self._live(session):
            return

        session.remote_description_set = True
        self.has_established = True
        self._reconnect_attempts = 0
        self._set_state(session, SessionState.CONNECTED)
        logging.info("Session connected")

        pending, session.pending_candidates = session.pending_candidates, []
        if pending:
            logging.info(f"Applying {len(pending)} queued candidate(s)")
        for cand in pending:
            if not self._live(session):
                return
            await self._apply_candidate(session, cand)

    async def _on_remote_candidate(self, cand: IceCandidate) -> None:
        session = self.session
        if not self._live(session):
            return
        logging.info("Received candidate from host")
        if not session.remote_description_set or session.transport is None:
            session.pending_candidates.append(cand)
            return
        await self._apply_candidate(session, cand)

    async def _apply_candidate(self, session: Session, cand: IceCandidate) -> None:
        try:
            await session.transport.add_candidate(cand)
        except Exception as e:
            logging.warning(f"addIceCandidate error: {e}")

    async def _on_local_candidate(self, cand: IceCandidate) -> None:
        session = self.session
        if self._live(session) and session.signaling is not None:
            await session.signaling.send(CandidateMessage(cand))

    async def _on_welcome(self, client_id) -> None:
        session = self.session
        if not self._live(session):
            return
        if session.state not in (SessionState.NEGOTIATING, SessionState.CONNECTED):
            logging.debug(f"Ignoring welcome in state {session.state.value}")
            return
        session.client_id = client_id
        logging.info(f"Received client id from host: {client_id}")

    # ── media and input ──────────────────────────────────────────────

    async def _on_track(self, payload) -> None:
        session = self.session
        if not self._live(session):
            return
        track, receiver = payload
        logging.info(f"ontrack: kind={track.kind}")
        if track.kind == "audio":
            await session.transport.play_audio(track)
            return
        if track.kind != "video":
            return

        if session.sampler is not None:
            session.sampler.stop()
        if session.playout is not None:
            session.playout.stop()

        transport = session.transport
        playout = FramePlayout(track, sink=self.video_sink, on_frame_rate_changed=self.jitter.on_frame_rate_changed)
        session.playout = playout
        playout.start()
        self.jitter.on_track_attached(playout, control_provider=lambda: transport.buffer_control(receiver) or playout)

        session.sampler = StatsSampler(
            fetch=lambda: transport.video_stats(receiver, playout.frames_decoded),
            on_delta=self.jitter.on_stats_tick,
            interval=self.stats_interval,
        )
        session.sampler.start()

    def _on_freeze(self) -> None:
        session = self.session
        if not self._live(session):
            return
        if session.sampler is not None:
            session.sampler.stop()
        self._post(session, SessionEvent.MEDIA_FROZEN, "Video frozen")

    async def _on_input_open(self, _payload) -> None:
        session = self.session
        if not self._live(session) or session.streamer is None:
            return
        logging.info("DataChannel open")
        session.streamer.start()

    def _on_input_closed_sync(self, session: Session) -> None:
        # Stop polling right away, even if the session is already tearing down
        if session.streamer is not None:
            session.streamer.stop()
        self._post(session, SessionEvent.INPUT_CHANNEL_CLOSED)

    async def _on_input_closed(self, _payload) -> None:
        logging.info("DataChannel closed")

    async def _on_input_message(self, raw) -> None:
        session = self.session
        if self._live(session) and session.streamer is not None:
            session.streamer.handle_message(raw)

    # ── teardown ─────────────────────────────────────────────────────

    async def _on_remote_disconnect(self, reason: str) -> None:
        await self._teardown(self.session, reason or "Host requested disconnect", SessionEvent.REMOTE_DISCONNECT)

    async def _on_channel_closed(self, reason: str) -> None:
        await self._teardown(self.session, reason or "WebSocket closed", SessionEvent.CHANNEL_CLOSED)

    async def _on_disconnect_requested(self, reason: str) -> None:
        if self.session is None:
            logging.debug("Disconnect requested with no active session")
            return
        await self._teardown(self.session, reason or GUEST_DISCONNECT_REASON, SessionEvent.DISCONNECT_REQUESTED, local=True)

    async def _on_media_frozen(self, reason: str) -> None:
        await self._teardown(self.session, reason, SessionEvent.MEDIA_FROZEN, local=True)

    async def _on_negotiation_failed(self, reason: str) -> None:
        await self._teardown(self.session, reason, SessionEvent.NEGOTIATION_FAILED, local=True)

    async def _teardown(self, session: Session | None, reason: str, trigger: SessionEvent, local: bool = False) -> None:
        if session is None or session is not self.session or session.disconnecting:
            return
        session.disconnecting = True
        session.disconnect_reason = reason
        self._set_state(session, SessionState.DISCONNECTING)
        logging.info(f"Disconnecting: {reason}")

        # Timers go first, before any await can let a tick slip in
        if session.streamer is not None:
            session.streamer.stop()
        if session.sampler is not None:
            session.sampler.stop()
        if session.playout is not None:
            session.playout.stop()
        self.jitter.detach()

        signaling = session.signaling
        if local and signaling is not None and signaling.is_open:
            await signaling.send(DisconnectMessage(reason))

        if session.input_channel is not None:
            with contextlib.suppress(Exception):
                session.input_channel.close()
        if session.transport is not None:
            try:
                await session.transport.close()
            except Exception as e:
                logging.warning(f"Transport close failed: {e}")
        if signaling is not None:
            await signaling.close()

        session.pending_candidates.clear()
        self._set_state(session, SessionState.IDLE)
        self.session = None
        logging.info("Session closed")
        self._after_teardown(trigger)

    def _after_teardown(self, trigger: SessionEvent) -> None:
        policy = self.policy
        if self._closed or not self.has_established or policy.mode == "none":
            return
        loop = asyncio.get_running_loop()

        if policy.mode == "exec":
            if self._restart_latched:
                return
            if self.restart_process is None:
                logging.warning("Process restart requested but no restart hook is configured")
                return
            self._restart_latched = True
            self._persist()
            logging.info("Scheduling process restart")
            loop.call_later(RESTART_DELAY_SECS, self.restart_process)
            return

        if trigger not in RECOVERABLE_EVENTS or self._reconnect_handle is not None:
            return
        if self._reconnect_attempts >= policy.max_attempts:
            logging.warning(f"Giving up after {self._reconnect_attempts} reconnect attempts")
            return
        delay = policy.delay(self._reconnect_attempts)
        self._reconnect_attempts += 1
        self._persist()
        logging.info(f"Reconnecting in {delay:.2f}s (attempt {self._reconnect_attempts}/{policy.max_attempts})")
        self._reconnect_handle = loop.call_later(delay, self._fire_reconnect)

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        if not self._closed and self.session is None:
            self._spawn(self.connect())
