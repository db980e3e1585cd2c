"""Time and randomness capabilities injected into the request gate.

Both capabilities are plain callables behind a ``Protocol`` so tests can pass
deterministic fakes. Implementations must be safe to call from any thread.
"""

from __future__ import annotations

import random
import time
from typing import Protocol, runtime_checkable

# Upper bound (exclusive) of the default jitter, in milliseconds
DEFAULT_MAX_JITTER_MS = 1000


@runtime_checkable
class Clock(Protocol):
    """Source of the current time in milliseconds since the epoch.

    Readings must be non-decreasing within a process run; they need not be
    accurate wall-clock time.
    """

    def now(self) -> int: ...


@runtime_checkable
class JitterSource(Protocol):
    """Source of non-negative random millisecond offsets."""

    def next(self) -> int: ...


class SystemClock:
    """Clock backed by ``time.time()``."""

    def now(self) -> int:
        return int(time.time() * 1000)


class RandomJitter:
    """Uniform jitter in ``[0, max_jitter_ms)`` milliseconds.

    Not cryptographically secure; the only purpose is to spread retries from
    many clients over time.
    """

    def __init__(self, max_jitter_ms: int = DEFAULT_MAX_JITTER_MS) -> None:
        if max_jitter_ms < 0:
            raise ValueError(f"max_jitter_ms must be non-negative, got {max_jitter_ms}")
        self.max_jitter_ms = max_jitter_ms

    def next(self) -> int:
        if self.max_jitter_ms == 0:
            return 0
        return random.randrange(self.max_jitter_ms)


__all__ = [
    "DEFAULT_MAX_JITTER_MS",
    "Clock",
    "JitterSource",
    "RandomJitter",
    "SystemClock",
]
