"""
Small shared helpers.
"""

from __future__ import annotations

import asyncio
import time
from typing import Dict, Hashable


def now_ms() -> int:
    return int(time.time() * 1000)


class KeyedLocks:
    """
    One ``asyncio.Lock`` per logical key (session id, user id).

    Writes for the same key are serialized; different keys never contend.
    """

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}

    def get(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)
