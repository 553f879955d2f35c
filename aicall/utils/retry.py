"""
Bounded retry with exponential backoff.

The content store, key-set and HTTP ledger clients all share one policy
shape: up to N attempts, the delay before attempt k+1 is
``min(base * 2**(k-1), max_delay)``, optionally jittered, and the last
failure is surfaced as `RetryError` once attempts run out.

Jitter modes
------------
- none         : exact exponential delay (default for protocol clients)
- full         : U(0, cap)
- equal        : cap/2 + U(0, cap/2)
- decorrelated : U(base, prev*3), capped

Example
-------
from aicall.utils.retry import RetryPolicy, aretry_call

policy = RetryPolicy(attempts=3, base=1.0, max_delay=5.0)
body = await aretry_call(fetch, policy=policy, exceptions=(httpx.HTTPError,))

The sleep function is injectable so tests can record delays instead of
waiting for them.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import (Any, Awaitable, Callable, Literal, Optional, Sequence,
                    Tuple, Type, TypeVar, Union)

__all__ = [
    "RetryError",
    "RetryPolicy",
    "BackoffState",
    "backoff_delay",
    "aretry_call",
]

log = logging.getLogger(__name__)

T = TypeVar("T")

JitterMode = Literal["none", "full", "equal", "decorrelated"]
SleepFn = Callable[[float], Awaitable[Any]]


class RetryError(RuntimeError):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, last_exception: BaseException, attempts: int) -> None:
        super().__init__(f"exhausted after {attempts} attempts: {last_exception!r}")
        self.last_exception = last_exception
        self.attempts = attempts


@dataclass(frozen=True)
class RetryPolicy:
    """
    attempts:  total tries including the first one (>= 1)
    base:      delay before the second attempt, seconds
    max_delay: ceiling for any single delay, seconds
    jitter:    see module docstring
    """

    attempts: int = 3
    base: float = 1.0
    max_delay: float = 5.0
    jitter: JitterMode = "none"

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.base < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    def delays(self) -> list[float]:
        """Planned delays between attempts for jitter='none' (handy for logs/tests)."""
        return [min(self.base * (2 ** i), self.max_delay) for i in range(self.attempts - 1)]


class BackoffState:
    """Mutable state for decorrelated jitter."""

    __slots__ = ("prev_delay",)

    def __init__(self) -> None:
        self.prev_delay: float = 0.0


def backoff_delay(
    attempt: int,
    *,
    base: float,
    max_delay: float,
    jitter: JitterMode = "none",
    state: Optional[BackoffState] = None,
) -> float:
    """
    Compute the delay (seconds) to wait after failed attempt number `attempt` (1-based).
    """
    if attempt < 1:
        attempt = 1
    cap = min(base * (2 ** (attempt - 1)), max_delay)

    if jitter == "none":
        delay = cap
    elif jitter == "full":
        delay = random.uniform(0.0, cap)
    elif jitter == "equal":
        delay = (cap * 0.5) + random.uniform(0.0, cap * 0.5)
    elif jitter == "decorrelated":
        if state is None:
            state = BackoffState()
        high = max(base, state.prev_delay * 3.0 if state.prev_delay > 0 else base)
        delay = min(random.uniform(base, high), max_delay)
        state.prev_delay = delay
    else:
        raise ValueError(f"unknown jitter mode: {jitter}")
    return max(0.0, float(delay))


async def aretry_call(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    policy: RetryPolicy = RetryPolicy(),
    exceptions: Union[Type[BaseException], Sequence[Type[BaseException]]] = Exception,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: SleepFn = asyncio.sleep,
    **kwargs: Any,
) -> T:
    """
    Await `fn(*args, **kwargs)` up to `policy.attempts` times.

    Only exceptions matching `exceptions` are retried; anything else
    propagates immediately. After the final failed attempt a `RetryError`
    chained to the last exception is raised.
    """
    if isinstance(exceptions, type):
        exc_types: Tuple[Type[BaseException], ...] = (exceptions,)
    else:
        exc_types = tuple(exceptions)

    state = BackoffState()
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn(*args, **kwargs)
        except exc_types as exc:
            if attempt >= policy.attempts:
                raise RetryError(exc, attempts=attempt) from exc

            delay = backoff_delay(
                attempt,
                base=policy.base,
                max_delay=policy.max_delay,
                jitter=policy.jitter,
                state=state if policy.jitter == "decorrelated" else None,
            )
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            log.debug("attempt %d/%d failed (%r); retrying in %.2fs", attempt, policy.attempts, exc, delay)
            await sleep(delay)
