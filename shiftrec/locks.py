"""Per-key asyncio locks that exist only while someone holds or awaits them."""

from __future__ import annotations

import asyncio
import contextlib
from typing import AsyncIterator, Hashable


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.refs = 0


class KeyedLockRegistry:
    """Serializes work per key, e.g. per ``(user_id, recording_date)``.

    Entries are reference counted: a waiter or holder keeps the entry alive and
    the last one out removes it, including when the body raises or the task is
    cancelled while waiting.
    """

    def __init__(self) -> None:
        self._entries: dict[Hashable, _Entry] = {}

    @contextlib.asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry()
            self._entries[key] = entry
        entry.refs += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.refs -= 1
            if entry.refs == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def locked(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def active_keys(self) -> list[Hashable]:
        return list(self._entries)


__all__ = ["KeyedLockRegistry"]
