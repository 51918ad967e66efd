from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path


SETTINGS_KEY: str = "remoteplay_guest_settings"
SETTINGS_PATH: Path = Path.home() / ".remoteplay_guest.json"
LOG_PATH: Path = Path.home() / ".remoteplay_guest.log"
LOG_MAX_CHARS: int = 100_000  # Diagnostic log cap; oldest text trimmed first
DEFAULT_RELAY_URL: str = "ws://localhost:8765/ws"
DEFAULT_VIDEO_QUEUE_FRAMES: int = 2


@dataclass
class GuestSettings:
    relay_url: str = DEFAULT_RELAY_URL
    guest_name: str = ""
    gamepad_index: int | None = None
    video_queue_frames: int = DEFAULT_VIDEO_QUEUE_FRAMES

    @classmethod
    def from_record(cls, record: dict) -> GuestSettings:
        s = cls()
        if isinstance(record.get("relayUrl"), str):
            s.relay_url = record["relayUrl"]
        if isinstance(record.get("guestName"), str):
            s.guest_name = record["guestName"]
        idx = record.get("gamepadIndex")
        if isinstance(idx, int) and not isinstance(idx, bool) and idx >= 0:
            s.gamepad_index = idx
        frames = record.get("videoQueueFrames")
        if isinstance(frames, (int, float)) and not isinstance(frames, bool) and frames >= 1:
            s.video_queue_frames = round(frames)
        return s

    def to_record(self) -> dict:
        return {
            "relayUrl": self.relay_url,
            "guestName": self.guest_name,
            "gamepadIndex": self.gamepad_index,
            "videoQueueFrames": self.video_queue_frames,
        }


def load_settings(path: Path = SETTINGS_PATH) -> GuestSettings:
    """Load guest settings from the JSON settings file.

    Returns:
        Stored settings, or defaults if the file is missing or unreadable
    """
    try:
        with path.open(encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        logging.debug(f"Settings file not found: {path}")
        return GuestSettings()
    except json.JSONDecodeError as e:
        logging.warning(f"Corrupted settings file {path}: {e}")
        try:
            backup_path = path.with_suffix(".json.bak")
            path.rename(backup_path)
            logging.info(f"Backed up corrupted settings to {backup_path}")
        except OSError as backup_err:
            logging.debug(f"Failed to backup corrupted settings: {backup_err}")
        return GuestSettings()
    except OSError as e:
        logging.debug(f"Failed to load settings: {e}")
        return GuestSettings()

    record = data.get(SETTINGS_KEY) if isinstance(data, dict) else None
    return GuestSettings.from_record(record if isinstance(record, dict) else {})


def save_settings(settings: GuestSettings, path: Path = SETTINGS_PATH) -> None:
    try:
        with path.open("w", encoding="utf-8") as f:
            json.dump({SETTINGS_KEY: settings.to_record()}, f, indent=2)
    except (OSError, TypeError) as e:
        logging.warning(f"Failed to save settings: {e}")


def resolve_settings(
    stored: GuestSettings,
    relay_url: str | None = None,
    guest_name: str | None = None,
    gamepad_index: int | None = None,
    video_queue_frames: int | None = None,
) -> GuestSettings:
    """Merge startup parameters over persisted settings (startup wins)."""
    return GuestSettings(
        relay_url=relay_url if relay_url else stored.relay_url,
        guest_name=guest_name.strip() if guest_name is not None else stored.guest_name,
        gamepad_index=gamepad_index if gamepad_index is not None else stored.gamepad_index,
        video_queue_frames=max(1, video_queue_frames) if video_queue_frames is not None else stored.video_queue_frames,
    )


def read_diagnostic_log(path: Path = LOG_PATH) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ""
    except OSError as e:
        logging.debug(f"Failed to restore diagnostic log: {e}")
        return ""


class DiagnosticLogHandler(logging.Handler):
    """Append formatted records to a text file capped at ``max_chars``.

    The tail is kept in memory and the file rewritten on each record; when
    the text grows past the cap the oldest characters are dropped.
    """

    def __init__(self, path: Path = LOG_PATH, max_chars: int = LOG_MAX_CHARS) -> None:
        super().__init__()
        self.path = path
        self.max_chars = max_chars
        self._text = read_diagnostic_log(path)[-max_chars:]
        self._io_lock = threading.Lock()

    @property
    def text(self) -> str:
        return self._text

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record) + "\n"
            with self._io_lock:
                text = self._text + line
                if len(text) > self.max_chars:
                    text = text[len(text) - self.max_chars :]
                self._text = text
                self.path.write_text(text, encoding="utf-8")
        except Exception:
            self.handleError(record)
