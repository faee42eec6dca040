"""
Keyed asyncio locks.

One asyncio.Lock per key, created on first use and discarded once nobody
holds or waits on it. Waiters for the same key are served FIFO.

    locks = KeyedLock()
    release = await locks.acquire(("my-project", "my-card"))
    try:
        ...
    finally:
        release()

    # or
    async with locks.hold(("my-project", "my-card")):
        ...
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Callable, Dict, Hashable


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.refs = 0


class KeyedLock:
    """At most one holder per key; unrelated keys never block each other."""

    def __init__(self, name: str = "lock"):
        self.name = name
        self._entries: Dict[Hashable, _Entry] = {}

    async def acquire(self, key: Hashable) -> Callable[[], None]:
        """Wait for `key`, return its release handle. Call the handle exactly once."""
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.refs += 1
        try:
            await entry.lock.acquire()
        except BaseException:
            self._drop_ref(key, entry)
            raise

        released = False

        def release() -> None:
            nonlocal released
            if released:
                raise RuntimeError(f"{self.name} for {key!r} released twice")
            released = True
            entry.lock.release()
            self._drop_ref(key, entry)

        return release

    @asynccontextmanager
    async def hold(self, key: Hashable):
        release = await self.acquire(key)
        try:
            yield
        finally:
            release()

    def is_locked(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)

    def _drop_ref(self, key: Hashable, entry: _Entry) -> None:
        entry.refs -= 1
        if entry.refs == 0 and self._entries.get(key) is entry:
            del self._entries[key]
