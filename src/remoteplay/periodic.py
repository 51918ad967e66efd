from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable


class PeriodicTask:
    """Run a callback at a fixed cadence on the running event loop.

    The callback may be a plain function or a coroutine function. Exceptions
    raised by a tick are logged and the loop keeps running. ``stop()`` is safe
    to call from inside the callback: the current tick finishes and no further
    tick is scheduled.
    """

    def __init__(self, name: str, interval: float, callback: Callable[[], Awaitable[None] | None]) -> None:
        if interval <= 0:
            raise ValueError(f"{name}: interval must be positive, got {interval}")
        self.name = name
        self.interval = interval
        self._callback = callback
        self._task: asyncio.Task | None = None
        self._stopped = True

    @property
    def running(self) -> bool:
        return not self._stopped and self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopped = False
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)

    def stop(self) -> None:
        self._stopped = True
        task, self._task = self._task, None
        if task is None or task.done():
            return
        # Never cancel ourselves mid-tick; the loop exits on its own.
        if task is not asyncio.current_task():
            task.cancel()

    async def _run(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self.interval)
            if self._stopped:
                break
            try:
                result = self._callback()
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logging.error(f"{self.name} tick failed: {e}")
