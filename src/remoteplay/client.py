#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import platform as py_platform
import signal
import sys
import threading
from pathlib import Path
from queue import Empty, Full, Queue

import av
import numpy as np
import psutil
from PyQt5.QtCore import Qt, QTimer
from PyQt5.QtGui import QImage, QPixmap
from PyQt5.QtWidgets import (
    QApplication,
    QComboBox,
    QFormLayout,
    QHBoxLayout,
    QLabel,
    QLineEdit,
    QMainWindow,
    QPushButton,
    QSpinBox,
    QTextEdit,
    QVBoxLayout,
    QWidget,
)

from remoteplay.gamepad import EvdevGamepads
from remoteplay.jitter import JitterTuning
from remoteplay.session import ReconnectPolicy, SessionConfig, SessionController, SessionState
from remoteplay.settings import (
    LOG_PATH,
    SETTINGS_PATH,
    DiagnosticLogHandler,
    GuestSettings,
    load_settings,
    resolve_settings,
    save_settings,
)


IS_LINUX = py_platform.system() == "Linux"

LABEL_CONNECT = "Connect"
LABEL_DISCONNECT = "Disconnect"
INBOX_POLL_MS = 10  # UI inbox drain interval
STATS_POLL_MS = 1000  # Window title refresh interval
THREAD_JOIN_TIMEOUT_SECS = 3.0
LOOP_CALL_TIMEOUT_SECS = 5.0

# Cross-thread mailboxes, drained on the Qt thread by QTimer
UI_INBOX: Queue = Queue()
FRAME_INBOX: Queue = Queue(maxsize=2)


class QueueLogHandler(logging.Handler):
    """Forward formatted log lines to the UI inbox."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            UI_INBOX.put_nowait(("log", self.format(record)))
        except Exception:
            self.handleError(record)


def _setup_logging(debug: bool, log_path: Path = LOG_PATH) -> DiagnosticLogHandler:
    """Configure logging handlers with console and persisted diagnostic output.

    Args:
        debug: Enable DEBUG level logging (default: INFO)
        log_path: Diagnostic log file (capped, oldest text trimmed)

    Returns:
        The diagnostic handler, whose ``text`` seeds the log view
    """
    log_level = logging.DEBUG if debug else logging.INFO
    log_format = "%(asctime)s [%(levelname)s] %(message)s"
    log_datefmt = "%H:%M:%S"

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(log_level)
    console.setFormatter(logging.Formatter(log_format, datefmt=log_datefmt))
    root_logger.addHandler(console)

    diagnostic = DiagnosticLogHandler(log_path)
    diagnostic.setLevel(logging.INFO)
    diagnostic.setFormatter(logging.Formatter(log_format, datefmt=log_datefmt))
    root_logger.addHandler(diagnostic)

    # aiortc/aioice are chatty at DEBUG
    for name in ("aiortc", "aioice", "websockets"):
        logging.getLogger(name).setLevel(logging.INFO if debug else logging.WARNING)
    return diagnostic


def restart_process() -> None:
    """Replace the current process with a fresh copy of itself."""
    logging.info("Restarting guest process")
    for h in logging.getLogger().handlers:
        with contextlib.suppress(Exception):
            h.flush()
    os.execv(sys.executable, [sys.executable, *sys.argv])


def settings_from_config(config: SessionConfig) -> GuestSettings:
    return GuestSettings(
        relay_url=config.relay_url,
        guest_name=config.guest_name,
        gamepad_index=config.gamepad_index,
        video_queue_frames=config.video_queue_frames,
    )


def frame_to_rgb(frame: av.VideoFrame) -> np.ndarray:
    return frame.to_ndarray(format="rgb24")


def queue_video_frame(frame: av.VideoFrame) -> None:
    """Video sink: convert on the session thread, keep only the newest frames."""
    rgb = frame_to_rgb(frame)
    try:
        FRAME_INBOX.put_nowait(rgb)
    except Full:
        with contextlib.suppress(Empty):
            FRAME_INBOX.get_nowait()
        with contextlib.suppress(Full):
            FRAME_INBOX.put_nowait(rgb)


def build_controller(args: argparse.Namespace, settings: GuestSettings, settings_path: Path, gui: bool = False):
    config = SessionConfig(
        relay_url=settings.relay_url,
        guest_name=settings.guest_name,
        gamepad_index=settings.gamepad_index,
        video_queue_frames=settings.video_queue_frames,
    )
    return SessionController(
        config,
        EvdevGamepads(),
        tuning=JitterTuning.from_env(),
        policy=ReconnectPolicy(mode=args.restart),
        persist_settings=lambda cfg: save_settings(settings_from_config(cfg), settings_path),
        restart_process=restart_process,
        video_sink=queue_video_frame if gui else None,
        on_state_change=(lambda state: UI_INBOX.put_nowait(("state", state))) if gui else None,
    )


class SessionThread(threading.Thread):
    """Owns the asyncio loop that runs the session timeline."""

    def __init__(self) -> None:
        super().__init__(daemon=True, name="session-loop")
        self.loop = asyncio.new_event_loop()
        self._ready = threading.Event()

    def run(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.call_soon(self._ready.set)
        self.loop.run_forever()
        with contextlib.suppress(Exception):
            self.loop.run_until_complete(self.loop.shutdown_asyncgens())
        self.loop.close()

    def submit(self, coro):
        self._ready.wait(LOOP_CALL_TIMEOUT_SECS)
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        future.add_done_callback(_log_future_error)
        return future

    def stop(self, final_coro=None) -> None:
        if final_coro is not None and self.loop.is_running():
            try:
                asyncio.run_coroutine_threadsafe(final_coro, self.loop).result(LOOP_CALL_TIMEOUT_SECS)
            except Exception as e:
                logging.debug(f"Session shutdown incomplete: {e}")
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.join(THREAD_JOIN_TIMEOUT_SECS)
        if self.is_alive():
            logging.warning("Session thread did not stop cleanly")


def _log_future_error(future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logging.error(f"Session task failed: {exc}")


class GuestWindow(QMainWindow):
    def __init__(self, controller: SessionController, session_thread: SessionThread, log_text: str = "") -> None:
        super().__init__()
        self.setWindowTitle("RemotePlay Guest")
        self.controller = controller
        self.session_thread = session_thread
        self._proc = psutil.Process(os.getpid())
        self._frames_shown = 0
        self._active = False

        cfg = controller.config
        self.relay_edit = QLineEdit(cfg.relay_url)
        self.name_edit = QLineEdit(cfg.guest_name)
        self.queue_spin = QSpinBox()
        self.queue_spin.setRange(1, 30)
        self.queue_spin.setValue(cfg.video_queue_frames)
        self.gamepad_combo = QComboBox()
        self.refresh_btn = QPushButton("Refresh")
        self.connect_btn = QPushButton(LABEL_CONNECT)
        self.video_label = QLabel()
        self.video_label.setAlignment(Qt.AlignCenter)
        self.video_label.setMinimumSize(640, 360)
        self.log_view = QTextEdit()
        self.log_view.setReadOnly(True)
        if log_text:
            self.log_view.setPlainText(log_text.rstrip("\n"))

        form = QFormLayout()
        form.addRow("Relay URL", self.relay_edit)
        form.addRow("Name", self.name_edit)
        form.addRow("Video queue (frames)", self.queue_spin)
        pad_row = QHBoxLayout()
        pad_row.addWidget(self.gamepad_combo, 1)
        pad_row.addWidget(self.refresh_btn)
        form.addRow("Gamepad", pad_row)

        layout = QVBoxLayout()
        layout.addLayout(form)
        layout.addWidget(self.connect_btn)
        layout.addWidget(self.video_label, 1)
        layout.addWidget(self.log_view)
        central = QWidget()
        central.setLayout(layout)
        self.setCentralWidget(central)

        self.connect_btn.clicked.connect(self.on_connect_clicked)
        self.refresh_btn.clicked.connect(self.refresh_gamepads)
        self.gamepad_combo.activated.connect(self.on_gamepad_selected)
        self.name_edit.editingFinished.connect(self.on_name_changed)
        self.relay_edit.editingFinished.connect(self.on_relay_changed)
        self.queue_spin.valueChanged.connect(self.on_queue_changed)

        self._start_timers()
        self.refresh_gamepads()

    def _start_timers(self) -> None:
        self.inbox_timer = QTimer(self)
        self.inbox_timer.timeout.connect(self._drain_inboxes)
        self.inbox_timer.start(INBOX_POLL_MS)

        self.stats_timer = QTimer(self)
        self.stats_timer.timeout.connect(self._update_stats)
        self.stats_timer.start(STATS_POLL_MS)

    def _set_active(self, active: bool) -> None:
        self._active = active
        self.connect_btn.setText(LABEL_DISCONNECT if active else LABEL_CONNECT)
        for w in (self.relay_edit, self.name_edit, self.refresh_btn):
            w.setEnabled(not active)
        if not active:
            self.video_label.clear()

    def on_connect_clicked(self) -> None:
        if self._active:
            self.session_thread.submit(self.controller.disconnect())
        else:
            self.on_relay_changed()
            self.session_thread.submit(self.controller.connect())

    def on_relay_changed(self) -> None:
        self.session_thread.loop.call_soon_threadsafe(self.controller.set_relay_url, self.relay_edit.text())

    def on_name_changed(self) -> None:
        self.session_thread.submit(self.controller.set_guest_name(self.name_edit.text()))

    def on_queue_changed(self, value: int) -> None:
        self.session_thread.loop.call_soon_threadsafe(self.controller.set_baseline, value)

    def on_gamepad_selected(self, _pos: int) -> None:
        index = self.gamepad_combo.currentData()
        self.session_thread.loop.call_soon_threadsafe(self.controller.select_gamepad, index)

    def refresh_gamepads(self) -> None:
        self.session_thread.submit(self._list_gamepads())

    async def _list_gamepads(self) -> None:
        pads = [p for p in self.controller.gamepads.gamepads() if p is not None]
        UI_INBOX.put_nowait(("gamepads", [(p.index, p.id) for p in pads]))

    def _fill_gamepads(self, pads: list[tuple[int, str]]) -> None:
        self.gamepad_combo.clear()
        if not pads:
            self.gamepad_combo.addItem("No gamepads connected", None)
            self.gamepad_combo.setEnabled(False)
            return
        self.gamepad_combo.setEnabled(True)
        selected = self.controller.config.gamepad_index
        for index, name in pads:
            self.gamepad_combo.addItem(f"{name} (index {index})", index)
        pos = self.gamepad_combo.findData(selected)
        self.gamepad_combo.setCurrentIndex(pos if pos >= 0 else 0)

    def _drain_inboxes(self) -> None:
        while True:
            try:
                kind, value = UI_INBOX.get_nowait()
            except Empty:
                break
            if kind == "log":
                self.log_view.append(value)
            elif kind == "state":
                self._set_active(value is not SessionState.IDLE)
            elif kind == "gamepads":
                self._fill_gamepads(value)

        rgb = None
        with contextlib.suppress(Empty):
            while True:
                rgb = FRAME_INBOX.get_nowait()
        if rgb is not None:
            self._show_frame(rgb)

    def _show_frame(self, rgb: np.ndarray) -> None:
        h, w, _ = rgb.shape
        rgb = np.ascontiguousarray(rgb)
        image = QImage(rgb.data, w, h, 3 * w, QImage.Format_RGB888)
        pixmap = QPixmap.fromImage(image).scaled(self.video_label.size(), Qt.KeepAspectRatio, Qt.FastTransformation)
        self.video_label.setPixmap(pixmap)
        self._frames_shown += 1

    def _update_stats(self) -> None:
        try:
            cpu = self._proc.cpu_percent(interval=None)
            mem = self._proc.memory_info().rss / (1024 * 1024)
            fps, self._frames_shown = self._frames_shown, 0
            jitter = self.controller.jitter
            status = "Connected" if self._active else "Idle"
            self.setWindowTitle(
                f"RemotePlay Guest - {status} | FPS: {fps} | Queue: {jitter.dynamic_frames}f "
                f"({jitter.target_seconds * 1000:.0f} ms) | CPU: {cpu:.0f}% | RAM: {mem:.0f} MB"
            )
        except Exception as e:
            logging.debug(f"Stats update failed: {e}")

    def closeEvent(self, event) -> None:  # noqa: N802
        logging.info("Closing guest window…")
        for timer_name in ("inbox_timer", "stats_timer"):
            timer = getattr(self, timer_name, None)
            if timer:
                with contextlib.suppress(Exception):
                    timer.stop()
        self.session_thread.stop(self.controller.close())
        event.accept()


async def run_headless(controller: SessionController) -> None:
    """Connect once and keep the session running until SIGINT/SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    if not await controller.connect():
        logging.error("Initial connection failed")
    await stop.wait()
    await controller.close()


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="RemotePlay guest client")
    p.add_argument("--relay-url", default=None, help="Signaling relay WebSocket URL")
    p.add_argument("--name", default=None, help="Display name announced to the host")
    p.add_argument("--gamepad-index", type=int, default=None)
    p.add_argument(
        "--video-queue-frames",
        type=int,
        default=None,
        help="Baseline jitter buffer depth in frames (overrides the saved value)",
    )
    p.add_argument("--restart", choices=["reconnect", "exec", "none"], default="reconnect")
    p.add_argument("--headless", action="store_true", help="Run without a window")
    p.add_argument("--connect", action="store_true", help="Connect immediately on startup")
    p.add_argument("--settings", type=Path, default=SETTINGS_PATH)
    p.add_argument("--log-file", type=Path, default=LOG_PATH)
    p.add_argument("--debug", action="store_true")
    return p


def main() -> None:
    args = build_parser().parse_args()
    if args.video_queue_frames is not None and args.video_queue_frames < 1:
        build_parser().error("--video-queue-frames must be >= 1")

    sys.stdout.reconfigure(line_buffering=True)
    sys.stderr.reconfigure(line_buffering=True)
    try:
        psutil.Process(os.getpid()).nice(-5)
    except Exception:
        # Process priority adjustment failed (insufficient permissions) - continue with default priority
        pass

    diagnostic = _setup_logging(args.debug, args.log_file)
    restored_log = diagnostic.text

    logging.info("────────────────────────────────────────────")
    logging.info("RemotePlay Guest starting up")
    logging.info(f"Python: {sys.version.split()[0]}, Platform: {sys.platform}")
    logging.info("────────────────────────────────────────────")

    settings = resolve_settings(
        load_settings(args.settings),
        relay_url=args.relay_url,
        guest_name=args.name,
        gamepad_index=args.gamepad_index,
        video_queue_frames=args.video_queue_frames,
    )
    logging.info(f"Relay: {settings.relay_url}, video queue: {settings.video_queue_frames} frames")
    if not IS_LINUX:
        logging.info("evdev gamepad input is only available on Linux")

    if args.headless:
        controller = build_controller(args, settings, args.settings)
        asyncio.run(run_headless(controller))
        return

    app = QApplication(sys.argv)
    session_thread = SessionThread()
    session_thread.start()
    controller = build_controller(args, settings, args.settings, gui=True)

    ui_handler = QueueLogHandler()
    ui_handler.setLevel(logging.INFO)
    ui_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S"))
    logging.getLogger().addHandler(ui_handler)

    win = GuestWindow(controller, session_thread, restored_log)
    win.show()
    if args.connect:
        session_thread.submit(controller.connect())

    sys.exit(app.exec_())


if __name__ == "__main__":
    main()
