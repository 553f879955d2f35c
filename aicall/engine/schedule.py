from __future__ import annotations

"""
Polling schedule for ledger fulfillment checks.

A PollSchedule is an async iterator of attempt numbers. It yields the first
attempt immediately, then sleeps `interval_s` between attempts for as long
as the elapsed time stays below `max_wait_s`. When it stops, `stop_reason`
says why: "timeout" or "cancelled".

Time comes from an injectable Clock so tests can drive the schedule with a
ManualClock instead of waiting in real time.

Example
-------
    schedule = PollSchedule(PollPolicy(interval_s=10, max_wait_s=300))
    async for attempt in schedule:
        rec = await ledger.get(request_id)
        if rec is not None and rec.is_fulfilled:
            break
"""

import asyncio
import time
from dataclasses import dataclass
from typing import List, Optional, Protocol

from aicall.config import PollSettings

STOP_TIMEOUT = "timeout"
STOP_CANCELLED = "cancelled"


class Clock(Protocol):
    realtime: bool

    def now(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class MonotonicClock:
    """Wall-clock-independent time with real asyncio sleeps."""

    realtime = True

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class ManualClock:
    """Clock whose `sleep` advances time instantly; records every sleep."""

    realtime = False

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += float(seconds)

    async def sleep(self, seconds: float) -> None:
        seconds = max(0.0, float(seconds))
        self.sleeps.append(seconds)
        self._now += seconds
        await asyncio.sleep(0)


@dataclass(frozen=True)
class PollPolicy:
    interval_s: float = 10.0
    max_wait_s: float = 300.0

    def __post_init__(self) -> None:
        if self.interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        if self.max_wait_s < 0:
            raise ValueError("max_wait_s must be >= 0")

    @classmethod
    def from_settings(cls, settings: PollSettings) -> "PollPolicy":
        return cls(interval_s=settings.interval_s, max_wait_s=settings.max_wait_s)


class Cancellation:
    """
    Stop signal for a wait: explicit `cancel()`, an absolute deadline on
    the schedule's clock, or both.
    """

    def __init__(self, deadline: Optional[float] = None) -> None:
        self.deadline = deadline
        self.reason: Optional[str] = None
        self._event = asyncio.Event()

    @classmethod
    def after(cls, seconds: float, clock: Clock) -> "Cancellation":
        return cls(deadline=clock.now() + float(seconds))

    def cancel(self, reason: str = "cancelled") -> None:
        if self.reason is None:
            self.reason = reason
        self._event.set()

    def is_cancelled(self, now: Optional[float] = None) -> bool:
        if self._event.is_set():
            return True
        if self.deadline is not None and now is not None and now >= self.deadline:
            self.reason = self.reason or "deadline reached"
            return True
        return False

    async def wait(self) -> None:
        await self._event.wait()


class PollSchedule:
    def __init__(
        self,
        policy: PollPolicy,
        clock: Optional[Clock] = None,
        cancel: Optional[Cancellation] = None,
    ) -> None:
        self.policy = policy
        self.clock: Clock = clock or MonotonicClock()
        self.cancel = cancel
        self.attempts = 0
        self.stop_reason: Optional[str] = None
        self.started = self.clock.now()

    @property
    def elapsed(self) -> float:
        return self.clock.now() - self.started

    def __aiter__(self) -> "PollSchedule":
        return self

    async def __anext__(self) -> int:
        if self.stop_reason is not None:
            raise StopAsyncIteration
        if self.attempts > 0:
            await self._sleep(self.policy.interval_s)
        if self.cancel is not None and self.cancel.is_cancelled(self.clock.now()):
            self.stop_reason = STOP_CANCELLED
            raise StopAsyncIteration
        if self.elapsed >= self.policy.max_wait_s:
            self.stop_reason = STOP_TIMEOUT
            raise StopAsyncIteration
        self.attempts += 1
        return self.attempts

    async def _sleep(self, delay: float) -> None:
        cancel = self.cancel
        if cancel is None:
            await self.clock.sleep(delay)
            return
        if cancel.deadline is not None:
            delay = max(0.0, min(delay, cancel.deadline - self.clock.now()))
        if not self.clock.realtime:
            await self.clock.sleep(delay)
            return
        try:
            await asyncio.wait_for(cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass


__all__ = [
    "Clock",
    "MonotonicClock",
    "ManualClock",
    "PollPolicy",
    "Cancellation",
    "PollSchedule",
    "STOP_TIMEOUT",
    "STOP_CANCELLED",
]
