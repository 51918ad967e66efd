"""Pytest configuration and shared fixtures."""

import asyncio
import sys
from unittest.mock import Mock

import pytest

from remoteplay.gamepad import Gamepad, GamepadButton


# Mock PyQt5 before any test collection so client.py imports without a display
mock_pyqt5 = Mock()
mock_qtcore = Mock()
mock_qtcore.QTimer = Mock()
mock_qtcore.Qt = Mock()
mock_qtwidgets = Mock()
mock_qtwidgets.QApplication = Mock()
mock_qtwidgets.QMainWindow = type("QMainWindow", (), {})
mock_qtgui = Mock()

sys.modules["PyQt5"] = mock_pyqt5
sys.modules["PyQt5.QtCore"] = mock_qtcore
sys.modules["PyQt5.QtWidgets"] = mock_qtwidgets
sys.modules["PyQt5.QtGui"] = mock_qtgui


async def settle(rounds=20):
    """Let queued callbacks and spawned tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeDataChannel:
    """Data channel with the pyee ``on``/``emit`` surface used by the session."""

    def __init__(self, label="input", ready_state="connecting"):
        self.label = label
        self.readyState = ready_state
        self.sent = []
        self.handlers = {}
        self.fail_send = False

    def on(self, event, fn=None):
        self.handlers.setdefault(event, []).append(fn)
        return fn

    def emit(self, event, *args):
        for fn in self.handlers.get(event, []):
            fn(*args)

    def send(self, payload):
        if self.fail_send:
            raise ConnectionError("channel send failed")
        self.sent.append(payload)

    def close(self):
        if self.readyState == "closed":
            return
        self.readyState = "closed"
        self.emit("close")


class FakeTrack:
    def __init__(self, kind="video"):
        self.kind = kind
        self._never = asyncio.Event()

    async def recv(self):
        await self._never.wait()


class FakeSignaling:
    """In-memory relay channel; ``feed`` delivers host messages, ``end`` drops the socket."""

    def __init__(self, url, fail_open=False):
        self.url = url
        self.fail_open = fail_open
        self.sent = []
        self.close_calls = 0
        self.close_reason = None
        self._open = False
        self._inbox = asyncio.Queue()

    @property
    def is_open(self):
        return self._open

    async def open(self):
        if self.fail_open:
            raise OSError("connection refused")
        self._open = True

    async def send(self, message):
        if not self._open:
            return False
        self.sent.append(message)
        return True

    async def messages(self):
        while True:
            msg = await self._inbox.get()
            if msg is None:
                self._open = False
                return
            yield msg

    def feed(self, msg):
        self._inbox.put_nowait(msg)

    def end(self):
        self._inbox.put_nowait(None)

    async def close(self):
        self.close_calls += 1
        self._open = False
        self._inbox.put_nowait(None)

    def sent_of(self, cls):
        return [m for m in self.sent if isinstance(m, cls)]


class FakeTransport:
    def __init__(self, capabilities, on_track=None, on_local_candidate=None):
        self.capabilities = capabilities
        self.on_track = on_track
        self.on_local_candidate = on_local_candidate
        self.transceivers = []
        self.channel = None
        self.remote_answers = []
        self.candidates = []
        self.audio_tracks = []
        self.close_calls = 0

    def add_receive_transceiver(self, kind):
        self.transceivers.append(kind)

    def create_data_channel(self, label):
        self.channel = FakeDataChannel(label)
        return self.channel

    async def create_offer(self):
        return "v=0 offer"

    async def set_remote_answer(self, sdp):
        if sdp == "bad":
            raise ValueError("invalid sdp")
        self.remote_answers.append(sdp)

    async def add_candidate(self, candidate):
        self.candidates.append(candidate)

    async def play_audio(self, track):
        self.audio_tracks.append(track)

    async def video_stats(self, receiver, frames_decoded_fallback=0):
        return None

    def buffer_control(self, receiver):
        return None

    async def close(self):
        self.close_calls += 1


class FakeGamepads:
    def __init__(self, pads=None):
        self.pads = list(pads or [])

    def gamepads(self):
        return list(self.pads)


def make_pad(index=0, pad_id="Test Pad", pressed=False, axes=(0.0, 0.0, 0.0, 0.0), connected=True):
    buttons = tuple(GamepadButton(pressed and i == 0, 1.0 if pressed and i == 0 else 0.0) for i in range(17))
    return Gamepad(id=pad_id, index=index, buttons=buttons, axes=tuple(axes), connected=connected)


class Harness:
    """Collects every signaling channel and transport a controller creates."""

    def __init__(self, fail_open=False):
        self.fail_open = fail_open
        self.signaling = []
        self.transports = []

    def signaling_factory(self, url):
        sig = FakeSignaling(url, fail_open=self.fail_open)
        self.signaling.append(sig)
        return sig

    def transport_factory(self, capabilities, on_track=None, on_local_candidate=None):
        transport = FakeTransport(capabilities, on_track=on_track, on_local_candidate=on_local_candidate)
        self.transports.append(transport)
        return transport


@pytest.fixture
def harness():
    return Harness()


@pytest.fixture
def fake_gamepads():
    return FakeGamepads([make_pad(0)])
