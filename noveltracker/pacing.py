"""Fixed-interval request pacing.

A :class:`RateGate` lets at most one caller through per ``interval``
seconds for each key (normally a site's host name). Callers ``await
gate.wait(key)`` before making a request. The clock and the sleep
function are injectable, which lets tests check the pacing without
real delays.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Dict
from urllib.parse import urlsplit


def site_key(url: str) -> str:
    return urlsplit(url).netloc.lower() or url


class RateGate:
    def __init__(self, interval: float,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
        self.interval = max(0.0, interval)
        self._clock = clock
        self._sleep = sleep
        self._last: Dict[str, float] = {}

    async def wait(self, key: str = "") -> float:
        """Block until ``key`` may be used again; return the seconds waited."""
        waited = 0.0
        last = self._last.get(key)
        if last is not None:
            remaining = last + self.interval - self._clock()
            if remaining > 0:
                await self._sleep(remaining)
                waited = remaining
        self._last[key] = self._clock()
        return waited

    def reset(self) -> None:
        self._last.clear()
