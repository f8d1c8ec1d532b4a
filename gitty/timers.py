"""
Timing primitives shared by wake-word debounce and capture endpointing.

QuietPeriodTimer is the trailing-edge half: every reset() cancels the pending
handle and schedules a new one, so the callback only fires after a full quiet
period. DebounceWindow is the leading-edge half: the first event is accepted
and anything inside the window after it is dropped.

Both work in milliseconds.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Optional


def monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


class QuietPeriodTimer:
    """Fire a callback once nothing has reset the timer for `delay_ms`."""

    def __init__(self, delay_ms: int, callback: Callable[[], None],
                 scheduler: Optional[Any] = None):
        self.delay_ms = delay_ms
        self.callback = callback
        # Anything with asyncio's call_later(delay_s, fn) -> handle.cancel()
        self._scheduler = scheduler
        self._handle = None
        self.generation = 0

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def reset(self, delay_ms: Optional[int] = None) -> None:
        """Cancel any pending fire and schedule a fresh one."""
        self.cancel()
        if delay_ms is not None:
            self.delay_ms = delay_ms
        scheduler = self._scheduler or asyncio.get_running_loop()
        self.generation += 1
        generation = self.generation
        self._handle = scheduler.call_later(self.delay_ms / 1000.0, self._fire, generation)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self, generation: int) -> None:
        # A handle that raced its own cancel() must not fire
        if generation != self.generation or self._handle is None:
            return
        self._handle = None
        self.callback()


class DebounceWindow:
    """Accept an event only if the previous accepted one is older than the window."""

    def __init__(self, window_ms: int = 2000, clock: Callable[[], int] = monotonic_ms):
        self.window_ms = window_ms
        self.clock = clock
        self.last_accepted_ms: Optional[int] = None

    def admit(self, now_ms: Optional[int] = None) -> bool:
        now = self.clock() if now_ms is None else now_ms
        if self.last_accepted_ms is not None and now - self.last_accepted_ms < self.window_ms:
            return False
        self.last_accepted_ms = now
        return True

    def clear(self) -> None:
        self.last_accepted_ms = None
