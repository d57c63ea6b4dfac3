"""Linear gain ramps applied to the live audio output on track changes."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from .config import validate_crossfade_ms

log = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class CrossfadeController:
    """Drives one gain ramp at a time.

    Starting a ramp cancels whatever ramp is still running; its remaining
    steps are discarded and the new ramp takes over from the current gain.
    """

    def __init__(
        self,
        duration_ms: int = 3000,
        *,
        steps: int = 20,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.duration_ms = validate_crossfade_ms(duration_ms)
        self.steps = steps
        self.gain: float = 1.0
        self._sleep = sleep
        self._task: asyncio.Task | None = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def set_duration(self, duration_ms: int) -> None:
        """Takes effect on the next ramp."""
        self.duration_ms = validate_crossfade_ms(duration_ms)

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def reset(self) -> None:
        self.cancel()
        self.gain = 1.0

    def _apply(self, output, gain: float) -> None:
        self.gain = gain
        if output is not None and (output.is_playing() or output.is_paused()):
            output.set_volume(gain)

    async def _ramp(self, output, start: float, end: float, step_seconds: float) -> None:
        for step in range(1, self.steps + 1):
            await self._sleep(step_seconds)
            progress = step / self.steps
            gain = start + (end - start) * progress
            self._apply(output, min(1.0, max(0.0, gain)))

    @staticmethod
    def _log_failure(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            log.warning("Gain ramp failed: %s", task.exception())

    def _start(self, output, start: float, end: float) -> asyncio.Task:
        self.cancel()
        step_seconds = self.duration_ms / self.steps / 1000
        self._task = asyncio.ensure_future(self._ramp(output, start, end, step_seconds))
        self._task.add_done_callback(self._log_failure)
        return self._task

    async def fade_out(self, output) -> bool:
        """Ramp to silence, then stop the output.

        Returns False if the ramp was aborted before completing.
        """
        if output is None or not (output.is_playing() or output.is_paused()):
            self.cancel()
            return True
        task = self._start(output, self.gain, 0.0)
        await asyncio.wait({task})
        if task.cancelled():
            log.debug("Fade-out aborted at gain %.2f", self.gain)
            return False
        if self._task is task:
            self._task = None
        output.stop()
        return True

    def fade_in(self, output) -> asyncio.Task:
        """Drop gain to zero and ramp back up without blocking the caller."""
        self.cancel()
        self._apply(output, 0.0)
        return self._start(output, 0.0, 1.0)
