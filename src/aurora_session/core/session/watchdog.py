from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable

from aurora_session.core.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

DEFAULT_STALL_WINDOW_S = 15.0


@dataclass(slots=True)
class StallWatchdog:
    """Single timer that fires when a stream goes quiet for ``window_s``.

    ``feed()`` only records the time of the latest data; the timer task
    re-checks that timestamp when it wakes, so it fires only after a full
    window without data, and at most once per ``arm()``.
    """

    on_stall: Callable[[float], None]
    window_s: float = DEFAULT_STALL_WINDOW_S
    clock: Clock = field(default_factory=SystemClock)

    _task: asyncio.Task[None] | None = field(init=False, default=None, repr=False)
    _last_data_at: float = field(init=False, default=0.0)

    def __post_init__(self) -> None:
        if self.window_s <= 0:
            raise ValueError("window_s must be > 0")

    @property
    def armed(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm(self) -> None:
        self._last_data_at = self.clock.now()
        if self.armed:
            return
        self._task = asyncio.create_task(self._run())

    def feed(self) -> None:
        if self.armed:
            self._last_data_at = self.clock.now()

    def disarm(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        try:
            while True:
                remaining = self._last_data_at + self.window_s - self.clock.now()
                if remaining <= 0:
                    break
                await asyncio.sleep(remaining)
        except asyncio.CancelledError:
            return
        silent_for = self.clock.now() - self._last_data_at
        logger.warning(f"[Watchdog] No stream data for {silent_for:.1f}s, forcing recovery")
        self._task = None
        self.on_stall(silent_for)
