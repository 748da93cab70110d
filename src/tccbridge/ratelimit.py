"""Outbound throttling: a token bucket for every request and a poll-cache gate."""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Callable

from tccbridge._constants import MIN_POLL_INTERVAL, RATE_LIMIT_BURST, RATE_LIMIT_PER_MINUTE
from tccbridge.models import ThermostatState


class RateLimiter:
    """Token bucket shared by every outbound call to the portal.

    Holds at most *burst* tokens and refills *per_minute* tokens per minute.
    The bucket starts full.  :meth:`acquire` waits until a token is available;
    waiters are served in arrival order and a cancelled waiter consumes nothing.
    """

    def __init__(
        self,
        per_minute: float = RATE_LIMIT_PER_MINUTE,
        burst: int = RATE_LIMIT_BURST,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if per_minute <= 0 or burst < 1:
            raise ValueError("per_minute must be positive and burst at least 1")
        self._refill_per_sec = per_minute / 60.0
        self._capacity = float(burst)
        self._clock = clock
        self._tokens = self._capacity
        self._updated = clock()
        self._lock = asyncio.Lock()

    @property
    def tokens(self) -> float:
        """Tokens currently available (after refill)."""
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self._capacity, self._tokens + elapsed * self._refill_per_sec)
        self._updated = now

    def _take(self) -> float:
        """Take a token if one is available; otherwise return seconds to wait."""
        self._refill()
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return 0.0
        return (1.0 - self._tokens) / self._refill_per_sec

    async def acquire(self) -> None:
        """Wait for and consume one token."""
        async with self._lock:
            while True:
                wait = self._take()
                if wait <= 0:
                    return
                await asyncio.sleep(wait)


class PollCache:
    """Last device list and when it was fetched.

    :meth:`get` returns the cached list only while it is non-empty and younger
    than *min_interval*; an empty cache always forces a live fetch.
    """

    def __init__(
        self,
        min_interval: float = MIN_POLL_INTERVAL,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock = threading.Lock()
        self._min_interval = min_interval
        self._clock = clock
        self._last_poll: float | None = None
        self._devices: list[ThermostatState] = []

    def get(self) -> list[ThermostatState] | None:
        with self._lock:
            if not self._devices or self._last_poll is None:
                return None
            if self._clock() - self._last_poll >= self._min_interval:
                return None
            return list(self._devices)

    def store(self, devices: list[ThermostatState]) -> None:
        with self._lock:
            self._devices = list(devices)
            self._last_poll = self._clock()

    def invalidate(self) -> None:
        """Reset the poll timestamp so the next poll is live.

        The cached list is kept; it is still used to fill in device names.
        """
        with self._lock:
            self._last_poll = None

    @property
    def devices(self) -> list[ThermostatState]:
        with self._lock:
            return list(self._devices)

    @property
    def last_poll(self) -> float | None:
        with self._lock:
            return self._last_poll
