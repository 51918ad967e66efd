"""Signaling relay wire format and WebSocket channel.

Messages are JSON objects tagged by ``type``::

    guest -> host   {"type": "offer", "sdp": ...}
                    {"type": "candidate", "candidate": {...}}
                    {"type": "disconnect", "reason": ...}
                    {"type": "name", "name": ...}
    host -> guest   {"type": "answer", "sdp": ...}
                    {"type": "welcome", "client_id": ...}
                    {"type": "disconnect", "reason": ...}
                    {"type": "candidate", "candidate": {...}}

Candidates from the host may use camelCase or snake_case field names; both
are folded into one :class:`IceCandidate`.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import ClassVar, Union

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK


WS_OPEN_TIMEOUT_SECS = 10.0
WS_PING_INTERVAL_SECS = 20.0
WS_PING_TIMEOUT_SECS = 20.0


def _first(data: dict, *keys: str):
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


@dataclass(frozen=True)
class IceCandidate:
    candidate: str | None
    sdp_mid: str | None = None
    sdp_mline_index: int | None = None
    username_fragment: str | None = None

    @classmethod
    def from_wire(cls, data: dict) -> IceCandidate:
        index = _first(data, "sdpMLineIndex", "sdp_mline_index")
        return cls(
            candidate=data.get("candidate"),
            sdp_mid=_first(data, "sdpMid", "sdp_mid"),
            sdp_mline_index=int(index) if index is not None else None,
            username_fragment=_first(data, "usernameFragment", "username_fragment"),
        )

    def to_wire(self) -> dict:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
            "usernameFragment": self.username_fragment,
        }


@dataclass(frozen=True)
class OfferMessage:
    type: ClassVar[str] = "offer"
    sdp: str

    def to_wire(self) -> dict:
        return {"type": self.type, "sdp": self.sdp}


@dataclass(frozen=True)
class AnswerMessage:
    type: ClassVar[str] = "answer"
    sdp: str

    def to_wire(self) -> dict:
        return {"type": self.type, "sdp": self.sdp}


@dataclass(frozen=True)
class CandidateMessage:
    type: ClassVar[str] = "candidate"
    candidate: IceCandidate

    def to_wire(self) -> dict:
        return {"type": self.type, "candidate": self.candidate.to_wire()}


@dataclass(frozen=True)
class WelcomeMessage:
    type: ClassVar[str] = "welcome"
    client_id: str | int | None

    def to_wire(self) -> dict:
        return {"type": self.type, "client_id": self.client_id}


@dataclass(frozen=True)
class DisconnectMessage:
    type: ClassVar[str] = "disconnect"
    reason: str = ""

    def to_wire(self) -> dict:
        return {"type": self.type, "reason": self.reason}


@dataclass(frozen=True)
class NameMessage:
    type: ClassVar[str] = "name"
    name: str

    def to_wire(self) -> dict:
        return {"type": self.type, "name": self.name}


SignalingMessage = Union[
    OfferMessage, AnswerMessage, CandidateMessage, WelcomeMessage, DisconnectMessage, NameMessage
]


def parse_message(raw: str | bytes) -> SignalingMessage | None:
    """Decode one relay frame. Malformed or unknown frames are logged and yield None."""
    try:
        data = json.loads(raw)
    except ValueError as e:
        logging.warning(f"Malformed signaling message dropped ({e}): {raw!r}")
        return None
    if not isinstance(data, dict):
        logging.warning(f"Unexpected signaling payload dropped: {raw!r}")
        return None

    kind = data.get("type")
    try:
        if kind == "answer":
            return AnswerMessage(sdp=str(data["sdp"]))
        if kind == "offer":
            return OfferMessage(sdp=str(data["sdp"]))
        if kind == "candidate":
            cand = data.get("candidate")
            if not isinstance(cand, dict):
                raise ValueError("candidate payload is not an object")
            return CandidateMessage(IceCandidate.from_wire(cand))
        if kind == "welcome":
            return WelcomeMessage(client_id=data.get("client_id"))
        if kind == "disconnect":
            return DisconnectMessage(reason=data.get("reason") or "")
        if kind == "name":
            return NameMessage(name=str(data.get("name") or ""))
    except (KeyError, TypeError, ValueError) as e:
        logging.warning(f"Invalid '{kind}' signaling message dropped ({e}): {raw!r}")
        return None

    logging.debug(f"Unhandled signaling message type: {kind}")
    return None


class SignalingChannel:
    """One WebSocket connection to the relay.

    Sends are best-effort: while the socket is not open they are dropped.
    ``messages()`` yields parsed messages in receipt order until the socket
    closes; ``close_reason`` then tells a clean close from an error.
    """

    def __init__(self, url: str, connect=websockets.connect) -> None:
        self.url = url
        self._connect = connect
        self._ws = None
        self._open = False
        self.close_reason: str | None = None

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        self._ws = await self._connect(
            self.url,
            open_timeout=WS_OPEN_TIMEOUT_SECS,
            ping_interval=WS_PING_INTERVAL_SECS,
            ping_timeout=WS_PING_TIMEOUT_SECS,
        )
        self._open = True
        logging.info("WebSocket open")

    async def send(self, message: SignalingMessage) -> bool:
        if not self._open or self._ws is None:
            logging.debug(f"Signaling channel not open; dropped '{message.type}'")
            return False
        try:
            await self._ws.send(json.dumps(message.to_wire()))
        except ConnectionClosed as e:
            self._open = False
            logging.warning(f"Signaling send of '{message.type}' failed: {e}")
            return False
        return True

    async def messages(self) -> AsyncIterator[SignalingMessage]:
        if self._ws is None:
            return
        try:
            async for raw in self._ws:
                msg = parse_message(raw)
                if msg is not None:
                    yield msg
            self.close_reason = "WebSocket closed"
        except ConnectionClosedOK:
            self.close_reason = "WebSocket closed"
        except ConnectionClosed as e:
            logging.warning(f"WebSocket error: {e}")
            self.close_reason = "WebSocket error"
        finally:
            self._open = False

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        self._open = False
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as e:
            logging.debug(f"WebSocket close failed: {e}")
        logging.info("WebSocket closed")
