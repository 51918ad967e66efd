from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from remoteplay.periodic import PeriodicTask


STATS_INTERVAL_SECS = 1.0  # Receiver stats cadence


@dataclass(frozen=True)
class VideoStatsSample:
    """Absolute inbound-video counters as reported by the transport.

    ``packets_received``/``packets_lost`` are ``None`` when the transport did
    not report them; the loss rate for such a tick is undefined.
    """

    packets_received: int | None
    packets_lost: int | None
    nack_count: int
    retransmissions: int
    frames_decoded: int
    timestamp_ms: float
    jitter_buffer_delay: float = 0.0
    jitter_buffer_emitted_count: int = 0
    jitter: float = 0.0


@dataclass(frozen=True)
class StatsDelta:
    """Per-interval counter deltas, negative values clamped to 0."""

    packets_received: int | None
    packets_lost: int | None
    nack_count: int
    retransmissions: int
    frames_decoded: int
    elapsed_ms: float
    counter_reset: bool = False
    frames_reset: bool = False

    @property
    def loss_rate(self) -> float | None:
        if self.packets_received is None or self.packets_lost is None:
            return None
        total = self.packets_received + self.packets_lost
        if total == 0:
            return 0.0
        return self.packets_lost / total


def _delta(current: int | None, previous: int | None) -> tuple[int | None, bool]:
    if current is None or previous is None:
        return None, False
    d = current - previous
    if d < 0:
        return 0, True
    return d, False


def compute_delta(current: VideoStatsSample, previous: VideoStatsSample) -> StatsDelta:
    received, r1 = _delta(current.packets_received, previous.packets_received)
    lost, r2 = _delta(current.packets_lost, previous.packets_lost)
    nacks, r3 = _delta(current.nack_count, previous.nack_count)
    retrans, r4 = _delta(current.retransmissions, previous.retransmissions)
    frames, r5 = _delta(current.frames_decoded, previous.frames_decoded)
    return StatsDelta(
        packets_received=received,
        packets_lost=lost,
        nack_count=nacks or 0,
        retransmissions=retrans or 0,
        frames_decoded=frames or 0,
        elapsed_ms=current.timestamp_ms - previous.timestamp_ms,
        counter_reset=r1 or r2 or r3 or r4 or r5,
        frames_reset=r5,
    )


def _log_sample(sample: VideoStatsSample) -> None:
    emitted = sample.jitter_buffer_emitted_count
    delay = sample.jitter_buffer_delay
    if emitted > 0:
        logging.info(
            f"Receiver jitter buffer avg={delay / emitted * 1000:.2f} ms "
            f"(total={delay * 1000:.2f} ms / emitted={emitted})"
        )
    else:
        logging.debug(f"Receiver jitter buffer delay={delay * 1000:.2f} ms (emitted={emitted})")
    logging.debug(
        f"Receiver video stats: packetsReceived={sample.packets_received}, packetsLost={sample.packets_lost}, "
        f"framesDecoded={sample.frames_decoded}, nackCount={sample.nack_count}, jitter={sample.jitter}"
    )


class StatsSampler:
    """Turn periodic absolute receiver counters into deltas.

    ``fetch`` returns the current sample or ``None`` when no inbound-video
    report exists yet. ``on_delta`` receives one :class:`StatsDelta` per tick
    once a baseline has been seeded.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[VideoStatsSample | None]],
        on_delta: Callable[[StatsDelta], None],
        interval: float = STATS_INTERVAL_SECS,
    ) -> None:
        self._fetch = fetch
        self._on_delta = on_delta
        self._previous: VideoStatsSample | None = None
        self._timer = PeriodicTask("stats-sampler", interval, self.tick)

    @property
    def running(self) -> bool:
        return self._timer.running

    def start(self) -> None:
        self._previous = None
        self._timer.start()

    def stop(self) -> None:
        self._timer.stop()
        self._previous = None

    async def tick(self) -> None:
        try:
            sample = await self._fetch()
        except Exception as e:
            logging.warning(f"Failed to fetch receiver stats: {e}")
            return
        if sample is None:
            logging.info("No inbound video stats found for jitter buffer logging")
            return

        _log_sample(sample)
        previous, self._previous = self._previous, sample
        if previous is None:
            return
        self._on_delta(compute_delta(sample, previous))
