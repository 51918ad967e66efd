from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from collections.abc import Callable

import av
from aiortc.mediastreams import MediaStreamError


FPS_EMA_ALPHA = 0.1  # Smoothing for the frame-rate estimate
FPS_REPORT_EPSILON = 0.25  # Minimum change (fps) worth reporting


class FramePlayout:
    """Pull frames from a received video track and release them after a delay.

    Every received frame is held for ``target_delay`` seconds before it
    becomes due; when several frames are due at once only the newest one is
    handed to ``sink``. ``set_target_delay`` is the buffer-depth control point
    the jitter controller writes to.
    """

    def __init__(
        self,
        track,
        sink: Callable[[av.VideoFrame], None] | None = None,
        on_frame_rate_changed: Callable[[FramePlayout], None] | None = None,
    ) -> None:
        self.track = track
        self.sink = sink
        self.on_frame_rate_changed = on_frame_rate_changed
        self.target_delay = 0.0
        self.frames_decoded = 0
        self.frames_dropped = 0
        self.frame_rate = 0.0
        self._reported_rate = 0.0
        self._last_frame_time: float | None = None
        self._pending: deque[tuple[float, av.VideoFrame]] = deque()
        self._release_handle: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None

    def getSettings(self) -> dict[str, float]:  # noqa: N802  (mirrors MediaStreamTrack.getSettings)
        return {"frameRate": self.frame_rate} if self.frame_rate > 0 else {}

    def set_target_delay(self, seconds: float) -> None:
        self.target_delay = max(0.0, float(seconds))

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run(), name="video-playout")

    def stop(self) -> None:
        if self._release_handle is not None:
            self._release_handle.cancel()
            self._release_handle = None
        self._pending.clear()
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run(self) -> None:
        try:
            while True:
                frame = await self.track.recv()
                self.push(frame)
        except MediaStreamError:
            logging.info("track ended: video")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logging.error(f"Video playout failed: {e}")

    def push(self, frame: av.VideoFrame, now: float | None = None) -> None:
        now = time.monotonic() if now is None else now
        self.frames_decoded += 1
        self._update_frame_rate(frame)
        self._pending.append((now + self.target_delay, frame))
        if self.target_delay <= 0:
            self.release_due(now)
        else:
            self._schedule_release()

    def release_due(self, now: float | None = None) -> None:
        self._release_handle = None
        now = time.monotonic() if now is None else now
        newest = None
        while self._pending and self._pending[0][0] <= now:
            if newest is not None:
                self.frames_dropped += 1
            newest = self._pending.popleft()[1]
        if newest is not None and self.sink is not None:
            try:
                self.sink(newest)
            except Exception as e:
                logging.debug(f"Video sink error: {e}")
        if self._pending:
            self._schedule_release()

    def _schedule_release(self) -> None:
        if self._release_handle is not None or not self._pending:
            return
        loop = asyncio.get_running_loop()
        delay = max(0.0, self._pending[0][0] - time.monotonic())
        self._release_handle = loop.call_later(delay, self.release_due)

    def _update_frame_rate(self, frame: av.VideoFrame) -> None:
        frame_time = None
        with contextlib.suppress(Exception):
            frame_time = frame.time
        if frame_time is None:
            return
        last, self._last_frame_time = self._last_frame_time, frame_time
        if last is None or frame_time <= last:
            return
        instant = 1.0 / (frame_time - last)
        if self.frame_rate <= 0:
            self.frame_rate = instant
        else:
            self.frame_rate += FPS_EMA_ALPHA * (instant - self.frame_rate)
        if abs(self.frame_rate - self._reported_rate) >= FPS_REPORT_EPSILON and self.on_frame_rate_changed:
            self._reported_rate = self.frame_rate
            self.on_frame_rate_changed(self)
