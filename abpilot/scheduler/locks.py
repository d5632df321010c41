"""Per-key asyncio locks with reference counting."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field


@dataclass
class _Entry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    refs: int = 0


class KeyedLock:
    """One ``asyncio.Lock`` per key, dropped when nobody holds or awaits it.

    Example:
        locks = KeyedLock()
        async with locks.try_acquire("t-1") as acquired:
            if acquired:
                ...
    """

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def locked(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def _checkout(self, key: str) -> _Entry:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.refs += 1
        return entry

    def _checkin(self, key: str, entry: _Entry) -> None:
        entry.refs -= 1
        if entry.refs == 0:
            self._entries.pop(key, None)

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        """Wait for the key's lock and hold it for the block."""
        entry = self._checkout(key)
        try:
            async with entry.lock:
                yield
        finally:
            self._checkin(key, entry)

    @asynccontextmanager
    async def try_acquire(self, key: str) -> AsyncIterator[bool]:
        """Hold the key's lock if it is free; yield whether it was acquired."""
        if self.locked(key):
            yield False
            return
        async with self.acquire(key):
            yield True
