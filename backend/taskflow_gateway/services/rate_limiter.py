"""
In-process fixed-window rate limiter.

One RateLimiter instance tracks one family of keys (client IPs, or token
ids). The gateway consults two instances per request:
  • per-IP     — IP_RATE_LIMIT requests per IP_RATE_WINDOW_SECONDS
  • per-token  — TOKEN_RATE_LIMIT requests per TOKEN_RATE_WINDOW_SECONDS

Design decisions:
  • Fixed windows — a window opens on the first request for a key and
    resets once window_seconds have elapsed since it opened.
  • Per-key locks — check-then-increment runs under the key's own lock,
    so two concurrent requests can never both observe count < ceiling
    when only one slot is left. Unrelated keys never contend.
  • Bounded drift — once a window is over its ceiling the stored count
    stays at ceiling + 1; further rejections do not increment it.
  • Critical sections never await, so a threading.Lock is safe to take
    from both the event loop and worker threads.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RateWindow:
    """Request count for one key inside one fixed window."""

    key: str
    window_start: float
    window_seconds: int
    count: int

    def elapsed(self, now: float) -> bool:
        return now - self.window_start >= self.window_seconds

    def reset_in(self, now: float) -> int:
        """Whole seconds until this window resets (never less than 1)."""
        return max(1, math.ceil(self.window_start + self.window_seconds - now))


@dataclass(frozen=True, slots=True)
class RateDecision:
    """Outcome of one check_and_increment() call."""

    allowed: bool
    key: str
    count: int
    limit: int
    reset_after: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    @property
    def retry_after(self) -> int:
        return self.reset_after


class _Slot:
    __slots__ = ("lock", "window", "evicted")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.window: RateWindow | None = None
        self.evicted = False


class RateLimiter:
    """Fixed-window counters keyed by an opaque string."""

    def __init__(
        self,
        name: str,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._clock = clock
        self._slots: dict[str, _Slot] = {}
        # Guards slot creation/eviction only — never held while counting.
        self._registry_lock = threading.Lock()

    def _slot(self, key: str) -> _Slot:
        slot = self._slots.get(key)
        if slot is None:
            with self._registry_lock:
                slot = self._slots.setdefault(key, _Slot())
        return slot

    def check_and_increment(
        self,
        key: str,
        ceiling: int,
        window_seconds: int,
    ) -> RateDecision:
        """
        Atomically count one request against `key`.

        No window, or the window elapsed → open a new window with count=1.
        Otherwise increment; a result above `ceiling` is rejected.
        """
        while True:
            slot = self._slot(key)
            with slot.lock:
                if slot.evicted:
                    # Lost a race with sweep(); pick up the replacement slot.
                    continue

                now = self._clock()
                window = slot.window
                if window is None or window.elapsed(now):
                    window = RateWindow(
                        key=key,
                        window_start=now,
                        window_seconds=window_seconds,
                        count=1,
                    )
                    slot.window = window
                    return RateDecision(
                        allowed=ceiling >= 1,
                        key=key,
                        count=1,
                        limit=ceiling,
                        reset_after=window.reset_in(now),
                    )

                if window.count <= ceiling:
                    window.count += 1

                allowed = window.count <= ceiling
                if not allowed:
                    logger.debug(
                        "%s limiter rejected %s (count=%d limit=%d)",
                        self.name, key, window.count, ceiling,
                    )
                return RateDecision(
                    allowed=allowed,
                    key=key,
                    count=window.count,
                    limit=ceiling,
                    reset_after=window.reset_in(now),
                )

    def peek(self, key: str) -> RateWindow | None:
        """Return a copy of the live window for `key`, or None."""
        slot = self._slots.get(key)
        if slot is None:
            return None
        with slot.lock:
            window = slot.window
            if window is None or window.elapsed(self._clock()):
                return None
            return RateWindow(window.key, window.window_start, window.window_seconds, window.count)

    def reset(self, key: str) -> None:
        with self._registry_lock:
            slot = self._slots.pop(key, None)
            if slot is not None:
                with slot.lock:
                    slot.evicted = True

    def sweep(self) -> int:
        """Drop elapsed windows so idle keys don't accumulate. Returns count dropped."""
        now = self._clock()
        dropped = 0
        with self._registry_lock:
            for key, slot in list(self._slots.items()):
                with slot.lock:
                    if slot.window is None or slot.window.elapsed(now):
                        slot.evicted = True
                        del self._slots[key]
                        dropped += 1
        return dropped

    def __len__(self) -> int:
        return len(self._slots)
