from __future__ import annotations
import asyncio
from collections import defaultdict


class KeyedLocks:
    """One asyncio.Lock per key, so work on device A never waits on device B."""

    def __init__(self) -> None:
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __call__(self, key: str) -> asyncio.Lock:
        return self._locks[key]
