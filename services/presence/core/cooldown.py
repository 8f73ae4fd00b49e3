"""Cancellable, restartable delayed action used to debounce boolean flags."""
from __future__ import annotations

import asyncio
import heapq
import itertools
from typing import Callable, Optional, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Minimal clock the cooldown needs. Delays are in milliseconds."""

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle: ...

    def now_ms(self) -> float: ...


class LoopScheduler:
    """Scheduler backed by an asyncio event loop (wall clock)."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        return self.loop.call_later(delay_ms / 1000.0, callback)

    def now_ms(self) -> float:
        return self.loop.time() * 1000.0


class _ManualHandle:
    __slots__ = ("cancelled",)

    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Virtual clock for tests and offline replays.

    Nothing fires until `advance()` moves time forward. A callback due at
    exactly the new time fires (deadlines are inclusive).
    """

    def __init__(self, start_ms: float = 0.0) -> None:
        self._now = float(start_ms)
        self._queue: list[tuple[float, int, _ManualHandle, Callable[[], None]]] = []
        self._seq = itertools.count()

    def now_ms(self) -> float:
        return self._now

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        handle = _ManualHandle()
        heapq.heappush(self._queue, (self._now + max(0.0, delay_ms), next(self._seq), handle, callback))
        return handle

    def advance(self, ms: float) -> None:
        target = self._now + ms
        while self._queue and self._queue[0][0] <= target:
            deadline, _, handle, callback = heapq.heappop(self._queue)
            self._now = deadline
            if not handle.cancelled:
                callback()
        self._now = target

    @property
    def pending(self) -> int:
        return sum(1 for _, _, h, _ in self._queue if not h.cancelled)


class CooldownTimer:
    """Holds at most one pending deadline.

    `arm` cancels whatever is pending and schedules `on_expire` once, so a
    signal that keeps re-arming before expiry is reported as continuously
    active. `cancel` guarantees the pending `on_expire` never fires.
    """

    def __init__(self, scheduler: Scheduler) -> None:
        self._scheduler = scheduler
        self._handle: Optional[TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def arm(self, duration_ms: float, on_expire: Callable[[], None]) -> None:
        self.cancel()

        def fire() -> None:
            if self._handle is not handle:
                return  # superseded by a later arm/cancel
            self._handle = None
            on_expire()

        handle = self._scheduler.call_later(duration_ms, fire)
        self._handle = handle

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
