from __future__ import annotations

import contextlib
import logging
import time
from dataclasses import dataclass, field


try:
    from evdev import InputDevice, ecodes, list_devices

    HAVE_EVDEV = True
except ImportError:
    HAVE_EVDEV = False


RESCAN_INTERVAL_SECS = 2.0  # Hot-plug rescan cadence
TRIGGER_PRESS_THRESHOLD = 0.12  # Analog trigger counts as pressed above this
STANDARD_BUTTON_COUNT = 17
STANDARD_AXIS_COUNT = 4
GAMEPAD_NAME_HINTS = ("controller", "gamepad", "joystick", "xbox", "dualshock", "dualsense", "dual sense", "8bitdo")

_CLOCK_ORIGIN = time.monotonic()


def now_ms() -> float:
    """Milliseconds since module load, the Gamepad API timestamp origin."""
    return (time.monotonic() - _CLOCK_ORIGIN) * 1000


@dataclass(frozen=True)
class GamepadButton:
    pressed: bool
    value: float


@dataclass(frozen=True)
class Gamepad:
    """Point-in-time view of one controller in W3C Gamepad API shape."""

    id: str
    index: int
    buttons: tuple[GamepadButton, ...]
    axes: tuple[float, ...]
    connected: bool = True
    mapping: str = "standard"
    timestamp: float = 0.0


@dataclass(frozen=True)
class StandardLayout:
    """evdev code -> standard gamepad slot tables."""

    buttons: dict[int, int]
    axes: dict[int, int]
    triggers: dict[int, int]
    hat_x: int
    hat_y: int


def standard_layout() -> StandardLayout:
    e = ecodes
    button_order = [
        e.BTN_SOUTH,
        e.BTN_EAST,
        e.BTN_WEST,
        e.BTN_NORTH,
        e.BTN_TL,
        e.BTN_TR,
        e.BTN_TL2,
        e.BTN_TR2,
        e.BTN_SELECT,
        e.BTN_START,
        e.BTN_THUMBL,
        e.BTN_THUMBR,
        e.BTN_DPAD_UP,
        e.BTN_DPAD_DOWN,
        e.BTN_DPAD_LEFT,
        e.BTN_DPAD_RIGHT,
        e.BTN_MODE,
    ]
    return StandardLayout(
        buttons={code: slot for slot, code in enumerate(button_order)},
        axes={e.ABS_X: 0, e.ABS_Y: 1, e.ABS_RX: 2, e.ABS_RY: 3},
        triggers={e.ABS_Z: 6, e.ABS_RZ: 7, e.ABS_BRAKE: 6, e.ABS_GAS: 7},
        hat_x=e.ABS_HAT0X,
        hat_y=e.ABS_HAT0Y,
    )


def _normalize(value: int, lo: int, hi: int, signed: bool) -> float:
    if hi <= lo:
        return 0.0
    unit = (value - lo) / (hi - lo)
    unit = min(1.0, max(0.0, unit))
    return unit * 2 - 1 if signed else unit


@dataclass
class GamepadState:
    """Accumulates evdev key/abs events into standard-mapping button and axis values."""

    id: str
    index: int
    layout: StandardLayout
    abs_ranges: dict[int, tuple[int, int]] = field(default_factory=dict)
    buttons: list[float] = field(default_factory=lambda: [0.0] * STANDARD_BUTTON_COUNT)
    axes: list[float] = field(default_factory=lambda: [0.0] * STANDARD_AXIS_COUNT)
    timestamp: float = 0.0

    def apply(self, ev_type: int, code: int, value: int, timestamp: float | None = None) -> bool:
        """Fold one event into the state. Returns True if it was a mapped input."""
        lay = self.layout
        if ev_type == ecodes.EV_KEY and code in lay.buttons:
            self.buttons[lay.buttons[code]] = 1.0 if value else 0.0
        elif ev_type == ecodes.EV_ABS and code in lay.axes:
            lo, hi = self.abs_ranges.get(code, (-32768, 32767))
            self.axes[lay.axes[code]] = _normalize(value, lo, hi, signed=True)
        elif ev_type == ecodes.EV_ABS and code in lay.triggers:
            lo, hi = self.abs_ranges.get(code, (0, 255))
            self.buttons[lay.triggers[code]] = _normalize(value, lo, hi, signed=False)
        elif ev_type == ecodes.EV_ABS and code == lay.hat_x:
            self.buttons[14] = 1.0 if value < 0 else 0.0
            self.buttons[15] = 1.0 if value > 0 else 0.0
        elif ev_type == ecodes.EV_ABS and code == lay.hat_y:
            self.buttons[12] = 1.0 if value < 0 else 0.0
            self.buttons[13] = 1.0 if value > 0 else 0.0
        else:
            return False
        self.timestamp = now_ms() if timestamp is None else timestamp
        return True

    def snapshot(self, connected: bool = True) -> Gamepad:
        return Gamepad(
            id=self.id,
            index=self.index,
            buttons=tuple(GamepadButton(v > TRIGGER_PRESS_THRESHOLD, v) for v in self.buttons),
            axes=tuple(self.axes),
            connected=connected,
            mapping="standard",
            timestamp=self.timestamp,
        )


def _looks_like_gamepad(dev) -> bool:
    name = (dev.name or "").lower()
    if any(k in name for k in GAMEPAD_NAME_HINTS):
        return True
    try:
        keys = dev.capabilities().get(ecodes.EV_KEY, [])
    except OSError:
        return False
    return ecodes.BTN_SOUTH in keys or ecodes.BTN_JOYSTICK in keys


def _device_id(dev) -> str:
    try:
        return f"{dev.name} (Vendor: {dev.info.vendor:04x} Product: {dev.info.product:04x})"
    except (AttributeError, TypeError, ValueError):
        return dev.name or dev.path


class _EvdevPad:
    def __init__(self, dev, index: int, layout: StandardLayout) -> None:
        self.dev = dev
        ranges: dict[int, tuple[int, int]] = {}
        with contextlib.suppress(OSError, KeyError):
            for code, info in dev.capabilities(absinfo=True).get(ecodes.EV_ABS, []):
                ranges[code] = (info.min, info.max)
        self.state = GamepadState(_device_id(dev), index, layout, ranges)

    def drain(self) -> None:
        """Read all queued events without blocking. Raises OSError on unplug."""
        try:
            for event in self.dev.read():
                self.state.apply(event.type, event.code, event.value)
        except BlockingIOError:
            # Nothing queued since the last poll
            pass

    def close(self) -> None:
        with contextlib.suppress(Exception):
            self.dev.close()


class EvdevGamepads:
    """Enumerate local gamepads through evdev, Gamepad-API style.

    ``gamepads()`` returns a list indexed by gamepad index with ``None`` in
    free slots, like ``navigator.getGamepads()``. A device keeps its index
    until it is unplugged; new devices take the lowest free index.
    """

    def __init__(self, rescan_interval: float = RESCAN_INTERVAL_SECS) -> None:
        self.rescan_interval = rescan_interval
        self._pads: dict[int, _EvdevPad] = {}
        self._last_scan = float("-inf")
        self._ignored: set[str] = set()
        self._layout = standard_layout() if HAVE_EVDEV else None

    def gamepads(self) -> list[Gamepad | None]:
        if not HAVE_EVDEV:
            return []
        if time.monotonic() - self._last_scan >= self.rescan_interval:
            self.rescan()
        for index, pad in list(self._pads.items()):
            try:
                pad.drain()
            except OSError as e:
                logging.info(f"Gamepad disconnected: {pad.state.id} (index {index}): {e}")
                pad.close()
                del self._pads[index]
        if not self._pads:
            return []
        slots: list[Gamepad | None] = [None] * (max(self._pads) + 1)
        for index, pad in self._pads.items():
            slots[index] = pad.state.snapshot()
        return slots

    def rescan(self) -> None:
        self._last_scan = time.monotonic()
        known = {pad.dev.path for pad in self._pads.values()}
        paths = list_devices()
        # Forget rejected nodes that went away so a reused path is opened again
        self._ignored.intersection_update(paths)
        for path in paths:
            if path in known or path in self._ignored:
                continue
            try:
                dev = InputDevice(path)
            except OSError:
                # Permission denied or device vanished between list and open
                continue
            if not _looks_like_gamepad(dev):
                dev.close()
                self._ignored.add(path)
                continue
            index = next(i for i in range(len(self._pads) + 1) if i not in self._pads)
            self._pads[index] = _EvdevPad(dev, index, self._layout)
            logging.info(f"Gamepad connected: {self._pads[index].state.id} (index {index})")

    def close(self) -> None:
        for pad in self._pads.values():
            pad.close()
        self._pads.clear()
