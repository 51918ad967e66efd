from __future__ import annotations

import json
import logging
from collections.abc import Callable, Sequence
from typing import Protocol

from remoteplay.gamepad import Gamepad
from remoteplay.periodic import PeriodicTask


INPUT_POLL_INTERVAL_SECS = 0.01  # 10 ms gamepad poll


class GamepadSource(Protocol):
    def gamepads(self) -> Sequence[Gamepad | None]: ...


def serialize_gamepad(gp: Gamepad | None) -> dict | None:
    if gp is None:
        return None
    return {
        "id": gp.id,
        "index": gp.index,
        "buttons": [{"pressed": b.pressed, "value": b.value} for b in gp.buttons],
        "axes": list(gp.axes),
        "connected": gp.connected,
        "mapping": gp.mapping,
        "timestamp": gp.timestamp,
    }


class InputStreamer:
    """Forward the selected gamepad over the ``input`` data channel.

    The poll loop runs only while the channel is open and the session is
    live, and stops itself as soon as either is no longer true. Unchanged
    state is never resent. Host ``ping`` probes are answered with ``pong``
    carrying the same ``sent_at``.
    """

    def __init__(
        self,
        channel,
        source: GamepadSource,
        is_live: Callable[[], bool],
        selected_index: int | None = None,
        on_selection_changed: Callable[[int | None], None] | None = None,
        interval: float = INPUT_POLL_INTERVAL_SECS,
    ) -> None:
        self.channel = channel
        self.source = source
        self.is_live = is_live
        self.selected_index = selected_index
        self.on_selection_changed = on_selection_changed
        self.last_sent: str | None = None
        self._timer = PeriodicTask("input-streamer", interval, self.poll_once)

    @property
    def running(self) -> bool:
        return self._timer.running

    def _channel_open(self) -> bool:
        return getattr(self.channel, "readyState", None) == "open"

    def start(self) -> None:
        self.last_sent = None
        self._timer.start()

    def stop(self) -> None:
        self._timer.stop()
        self.last_sent = None

    def select(self, index: int | None) -> None:
        if index != self.selected_index:
            self.selected_index = index
            if self.on_selection_changed is not None:
                self.on_selection_changed(index)

    def selected_gamepad(self) -> Gamepad | None:
        try:
            pads = list(self.source.gamepads())
        except Exception as e:
            logging.debug(f"Gamepad enumeration failed: {e}")
            return None

        idx = self.selected_index
        if idx is not None and 0 <= idx < len(pads):
            pad = pads[idx]
            if pad is not None and pad.connected:
                return pad

        for pad in pads:
            if pad is not None and pad.connected:
                self.select(pad.index)
                return pad
        return None

    def poll_once(self) -> None:
        if not self._channel_open() or not self.is_live():
            self._timer.stop()
            return

        state = serialize_gamepad(self.selected_gamepad())
        if state is None:
            return

        payload = json.dumps({"type": "gamepad", "gamepad": state}, separators=(",", ":"))
        if payload == self.last_sent:
            return
        try:
            self.channel.send(payload)
        except Exception as e:
            logging.warning(f"Failed to send gamepad state: {e}")
            return
        self.last_sent = payload

    def handle_message(self, raw: str | bytes) -> None:
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        try:
            msg = json.loads(text)
        except ValueError:
            logging.info(f"recv from host: {text}")
            return
        if isinstance(msg, dict) and msg.get("type") == "ping":
            sent_at = msg.get("sent_at")
            if isinstance(sent_at, (int, float)) and not isinstance(sent_at, bool):
                self.send_pong(sent_at)
                return
        logging.info(f"recv from host: {text}")

    def send_pong(self, sent_at: float) -> None:
        if not self._channel_open() or not self.is_live():
            return
        try:
            self.channel.send(json.dumps({"type": "pong", "sent_at": sent_at}))
        except Exception as e:
            logging.warning(f"Failed to send pong: {e}")
