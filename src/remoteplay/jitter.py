"""Adaptive receive-side jitter buffer control.

The controller keeps the video playout depth, counted in frames, matched to
the observed network quality. Each stats tick moves the depth by at most one
frame: up on loss/NACK/retransmission pressure, down when the link is clean.
The depth never drops below ``MIN_VIDEO_QUEUE_FRAMES`` and never exceeds the
configured baseline plus ``JitterTuning.headroom_frames``.

The same tick stream feeds a freeze detector: when the decoded frame rate
stays under ``freeze_fps`` for ``freeze_ticks`` consecutive ticks the
``on_freeze`` callback fires once and the controller ignores further ticks
until the next track attachment.
"""

from __future__ import annotations

import logging
import math
import os
from collections.abc import Callable
from dataclasses import dataclass, fields
from typing import Any, Protocol

from remoteplay.stats import StatsDelta


MIN_VIDEO_QUEUE_FRAMES = 1
DEFAULT_FRAME_RATE = 60.0


class BufferDepthControl(Protocol):
    def set_target_delay(self, seconds: float) -> None: ...


@dataclass(frozen=True)
class JitterTuning:
    loss_grow: float = 0.02
    loss_shrink: float = 0.005
    nack_grow: int = 10
    retrans_grow: int = 20
    retrans_shrink: int = 5
    headroom_frames: int = 2
    freeze_fps: float = 0.5
    freeze_ticks: int = 5
    frame_rate_epsilon: float = 0.25
    default_frame_rate: float = DEFAULT_FRAME_RATE

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> JitterTuning:
        """Build tuning from ``REMOTEPLAY_<FIELD>`` variables, e.g. ``REMOTEPLAY_LOSS_GROW=0.03``."""
        env = os.environ if environ is None else environ
        overrides: dict[str, Any] = {}
        for f in fields(cls):
            raw = env.get(f"REMOTEPLAY_{f.name.upper()}")
            if raw is None:
                continue
            cast = int if f.type == "int" else float
            try:
                overrides[f.name] = cast(raw)
            except ValueError:
                logging.warning(f"Ignoring invalid REMOTEPLAY_{f.name.upper()}={raw!r}")
        return cls(**overrides)


def read_frame_rate(source: object) -> float | None:
    """Frame rate reported by a track-like object, or None if unusable."""
    rate = None
    get_settings = getattr(source, "getSettings", None)
    if callable(get_settings):
        try:
            rate = (get_settings() or {}).get("frameRate")
        except Exception as e:
            logging.debug(f"Track settings unavailable: {e}")
    if rate is None:
        rate = getattr(source, "frame_rate", None)
    try:
        rate = float(rate)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(rate) or rate <= 0:
        return None
    return rate


class JitterBufferController:
    def __init__(
        self,
        configured_frames: int,
        tuning: JitterTuning | None = None,
        on_freeze: Callable[[], None] | None = None,
    ) -> None:
        self.tuning = tuning or JitterTuning()
        self.configured_frames = max(MIN_VIDEO_QUEUE_FRAMES, round(configured_frames))
        self.dynamic_frames = self.configured_frames
        self.frame_rate = self.tuning.default_frame_rate
        self.on_freeze = on_freeze
        self._control_provider: Callable[[], BufferDepthControl | None] | None = None
        self._apply_pending = False
        self._low_fps_ticks = 0
        self._frozen = False
        self._attached = False

    @property
    def max_frames(self) -> int:
        return self.configured_frames + self.tuning.headroom_frames

    @property
    def target_seconds(self) -> float:
        return self.dynamic_frames / self.frame_rate

    @property
    def frozen(self) -> bool:
        return self._frozen

    def set_baseline(self, frames: float) -> None:
        self.configured_frames = max(MIN_VIDEO_QUEUE_FRAMES, round(frames))
        self.dynamic_frames = min(self.dynamic_frames, self.max_frames)
        logging.info(f"Video queue baseline set to {self.configured_frames} frames")
        self._apply_target()

    def on_track_attached(
        self, source: object, control_provider: Callable[[], BufferDepthControl | None] | None = None
    ) -> None:
        self.frame_rate = read_frame_rate(source) or self.tuning.default_frame_rate
        self.dynamic_frames = self.configured_frames
        self._control_provider = control_provider
        self._low_fps_ticks = 0
        self._frozen = False
        self._attached = True
        logging.info(f"Video track attached: {self.frame_rate:.2f} fps, queue {self.dynamic_frames} frames")
        self._apply_target()

    def detach(self) -> None:
        self._attached = False
        self._control_provider = None
        self._apply_pending = False

    def on_frame_rate_changed(self, source: object) -> None:
        rate = read_frame_rate(source)
        if rate is None or abs(rate - self.frame_rate) < self.tuning.frame_rate_epsilon:
            return
        logging.info(f"Video frame rate changed {self.frame_rate:.2f} -> {rate:.2f} fps")
        self.frame_rate = rate
        self._apply_target()

    def on_stats_tick(self, delta: StatsDelta) -> None:
        if self._frozen:
            return
        if self._apply_pending:
            self._apply_target()

        previous = self.dynamic_frames
        self.dynamic_frames = self._next_depth(delta)
        if self.dynamic_frames != previous:
            logging.info(
                f"Video queue {previous} -> {self.dynamic_frames} frames "
                f"(loss={delta.loss_rate}, nack={delta.nack_count}, retrans={delta.retransmissions})"
            )
            self._apply_target()

        self._check_freeze(delta)

    def _next_depth(self, delta: StatsDelta) -> int:
        t = self.tuning
        loss = delta.loss_rate
        if loss is None or loss > t.loss_grow or delta.nack_count > t.nack_grow or delta.retransmissions > t.retrans_grow:
            return min(self.dynamic_frames + 1, self.max_frames)
        if 0 <= loss < t.loss_shrink and delta.nack_count == 0 and delta.retransmissions < t.retrans_shrink:
            return max(self.dynamic_frames - 1, MIN_VIDEO_QUEUE_FRAMES)
        return self.dynamic_frames

    def _check_freeze(self, delta: StatsDelta) -> None:
        # Only a frame counter reset makes the frame rate meaningless
        if delta.frames_reset or delta.elapsed_ms <= 0:
            return
        fps = delta.frames_decoded * 1000 / delta.elapsed_ms
        logging.debug(f"Receiver video FPS={fps:.2f} (frames={delta.frames_decoded}, {delta.elapsed_ms / 1000:.2f}s)")
        if fps < self.tuning.freeze_fps:
            self._low_fps_ticks += 1
        else:
            self._low_fps_ticks = 0
        if self._low_fps_ticks >= self.tuning.freeze_ticks:
            self._frozen = True
            logging.warning(f"Video seems frozen (FPS ~0 for {self._low_fps_ticks} ticks); disconnecting")
            if self.on_freeze is not None:
                self.on_freeze()

    def _apply_target(self) -> None:
        if not self._attached:
            return
        control = None
        if self._control_provider is not None:
            try:
                control = self._control_provider()
            except Exception as e:
                logging.debug(f"Buffer control lookup failed: {e}")
        if control is None:
            if not self._apply_pending:
                logging.info("Buffer depth control unavailable; deferring target")
            self._apply_pending = True
            return
        try:
            control.set_target_delay(self.target_seconds)
        except Exception as e:
            logging.warning(f"Failed to apply jitter buffer target: {e}")
            self._apply_pending = True
            return
        self._apply_pending = False
        logging.debug(f"Jitter buffer target {self.target_seconds * 1000:.1f} ms ({self.dynamic_frames} frames)")
