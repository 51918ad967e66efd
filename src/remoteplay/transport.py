from __future__ import annotations

import contextlib
import logging
from collections.abc import Callable
from datetime import datetime

from aiortc import RTCConfiguration, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaBlackhole
from aiortc.sdp import candidate_from_sdp

from remoteplay.signaling import IceCandidate
from remoteplay.stats import VideoStatsSample


# Capabilities the session needs from a transport
SEND_OFFER = "send-offer"
RECEIVE_ANSWER = "receive-answer"
EXCHANGE_CANDIDATES = "exchange-candidates"
CREATE_DATA_CHANNEL = "create-data-channel"
SESSION_CAPABILITIES = frozenset({SEND_OFFER, RECEIVE_ANSWER, EXCHANGE_CANDIDATES, CREATE_DATA_CHANNEL})


class ReceiverTargetControl:
    """Buffer-depth control point backed by ``receiver.jitterBufferTarget`` (milliseconds)."""

    def __init__(self, receiver) -> None:
        self.receiver = receiver

    def set_target_delay(self, seconds: float) -> None:
        self.receiver.jitterBufferTarget = seconds * 1000


def _timestamp_ms(value) -> float:
    if isinstance(value, datetime):
        return value.timestamp() * 1000
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _int_or_none(value) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def inbound_video_sample(report, frames_decoded_fallback: int = 0) -> VideoStatsSample | None:
    """Pick the inbound-rtp video entry out of a stats report.

    aiortc reports packet counters and jitter only; frame and NACK counters
    that it lacks come from ``frames_decoded_fallback`` or default to 0.
    """
    for stat in (report or {}).values():
        if getattr(stat, "type", None) != "inbound-rtp":
            continue
        if getattr(stat, "kind", None) not in ("video", None) and getattr(stat, "mediaType", None) != "video":
            continue
        frames = getattr(stat, "framesDecoded", None)
        if frames is None:
            frames = getattr(stat, "framesReceived", None)
        return VideoStatsSample(
            packets_received=_int_or_none(getattr(stat, "packetsReceived", None)),
            packets_lost=_int_or_none(getattr(stat, "packetsLost", None)),
            nack_count=_int_or_none(getattr(stat, "nackCount", None)) or 0,
            retransmissions=_int_or_none(getattr(stat, "retransmittedPacketsReceived", None)) or 0,
            frames_decoded=_int_or_none(frames) if frames is not None else frames_decoded_fallback,
            timestamp_ms=_timestamp_ms(getattr(stat, "timestamp", 0)),
            jitter_buffer_delay=float(getattr(stat, "jitterBufferDelay", 0) or 0),
            jitter_buffer_emitted_count=_int_or_none(getattr(stat, "jitterBufferEmittedCount", None)) or 0,
            jitter=float(getattr(stat, "jitter", 0) or 0),
        )
    return None


class AiortcTransport:
    """Narrow wrapper around :class:`aiortc.RTCPeerConnection`.

    aiortc gathers ICE candidates before ``setLocalDescription`` returns and
    embeds them in the offer, so ``on_local_candidate`` is never invoked by
    this implementation; it is kept for trickle-capable transports.
    """

    def __init__(
        self,
        capabilities: frozenset[str] = SESSION_CAPABILITIES,
        on_track: Callable[[object, object], None] | None = None,
        on_local_candidate: Callable[[IceCandidate], None] | None = None,
    ) -> None:
        self.capabilities = capabilities
        self.on_track = on_track
        self.on_local_candidate = on_local_candidate
        missing = SESSION_CAPABILITIES - capabilities
        if missing:
            logging.debug(f"Transport created without capabilities: {sorted(missing)}")
        self._audio_sink: MediaBlackhole | None = None
        self.pc = RTCPeerConnection(RTCConfiguration(iceServers=[]))

        @self.pc.on("connectionstatechange")
        def _on_connection_state() -> None:
            logging.info(f"pc.connectionState={self.pc.connectionState}")

        @self.pc.on("iceconnectionstatechange")
        def _on_ice_state() -> None:
            logging.info(f"pc.iceConnectionState={self.pc.iceConnectionState}")

        @self.pc.on("track")
        def _on_track(track) -> None:
            receiver = self._receiver_for(track)

            @track.on("ended")
            def _on_ended() -> None:
                logging.info(f"track ended: {track.kind}")

            if self.on_track is not None:
                self.on_track(track, receiver)

    def _receiver_for(self, track):
        for transceiver in self.pc.getTransceivers():
            if getattr(transceiver.receiver, "track", None) is track:
                return transceiver.receiver
        return None

    def add_receive_transceiver(self, kind: str) -> None:
        self.pc.addTransceiver(kind, direction="recvonly")

    def create_data_channel(self, label: str):
        return self.pc.createDataChannel(label)

    async def create_offer(self) -> str:
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        return self.pc.localDescription.sdp

    async def set_remote_answer(self, sdp: str) -> None:
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))

    async def add_candidate(self, candidate: IceCandidate) -> None:
        if not candidate.candidate:
            logging.debug("End-of-candidates received")
            return
        text = candidate.candidate
        if text.startswith("candidate:"):
            text = text[len("candidate:") :]
        ice = candidate_from_sdp(text)
        ice.sdpMid = candidate.sdp_mid
        ice.sdpMLineIndex = candidate.sdp_mline_index
        await self.pc.addIceCandidate(ice)

    async def play_audio(self, track) -> None:
        if self._audio_sink is None:
            self._audio_sink = MediaBlackhole()
        self._audio_sink.addTrack(track)
        await self._audio_sink.start()

    async def video_stats(self, receiver, frames_decoded_fallback: int = 0) -> VideoStatsSample | None:
        if receiver is None or not callable(getattr(receiver, "getStats", None)):
            logging.info("Receiver stats unavailable; cannot log jitter buffer")
            return None
        report = await receiver.getStats()
        return inbound_video_sample(report, frames_decoded_fallback)

    def buffer_control(self, receiver) -> ReceiverTargetControl | None:
        if receiver is not None and hasattr(receiver, "jitterBufferTarget"):
            return ReceiverTargetControl(receiver)
        return None

    async def close(self) -> None:
        for transceiver in self.pc.getTransceivers():
            sender_track = getattr(transceiver.sender, "track", None)
            if sender_track is not None:
                with contextlib.suppress(Exception):
                    sender_track.stop()
        if self._audio_sink is not None:
            sink, self._audio_sink = self._audio_sink, None
            try:
                await sink.stop()
            except Exception as e:
                logging.debug(f"Audio sink stop failed: {e}")
        await self.pc.close()
