"""
Per-key asyncio locks.
"""

import asyncio
from collections import defaultdict
from typing import DefaultDict, Hashable


class KeyedLocks:
    """
    One lock per key (a subscription id, a user id).

    Writers to the same row run one at a time inside this process; the
    conditional updates in the store cover concurrent processes.
    """

    def __init__(self) -> None:
        self._locks: DefaultDict[Hashable, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __call__(self, key: Hashable) -> asyncio.Lock:
        return self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
