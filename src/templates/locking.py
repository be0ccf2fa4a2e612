"""
Keyed locks for per-template serialization.

A KeyedLock hands out one re-entrant lock per key and drops it again once no
caller holds or waits on it, so the map does not grow with every key ever
seen. Operations on different keys never contend.

A KeyedSharedLock does the same for shared/exclusive locks: template writes
hold a category shared while category delete and reassign hold it exclusive.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.refs = 0


class KeyedLock:
    """
    Map of re-entrant locks keyed by an arbitrary hashable.

    Usage:
        locks = KeyedLock()
        with locks.hold(("tenant-a", None, None, "leave-request")):
            ...
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[Hashable, _Entry] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.refs += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.refs -= 1
                if entry.refs == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


class _SharedEntry:
    __slots__ = ("cond", "readers", "writer", "refs")

    def __init__(self) -> None:
        self.cond = threading.Condition()
        self.readers = 0
        self.writer = False
        self.refs = 0


class KeyedSharedLock:
    """
    Map of shared/exclusive locks keyed by an arbitrary hashable.

    Any number of callers may hold a key shared at once; an exclusive holder
    waits for all of them and keeps new ones out until it is done. Not
    re-entrant for exclusive holders.

    Usage:
        locks = KeyedSharedLock()
        with locks.shared(("tenant-a", None, None, "category-id")):
            ...  # write a row that references the category
        with locks.exclusive(("tenant-a", None, None, "category-id")):
            ...  # delete the category
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[Hashable, _SharedEntry] = {}

    def _enter(self, key: Hashable) -> _SharedEntry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _SharedEntry()
            entry.refs += 1
            return entry

    def _leave(self, key: Hashable, entry: _SharedEntry) -> None:
        with self._guard:
            entry.refs -= 1
            if entry.refs == 0:
                del self._entries[key]

    @contextmanager
    def shared(self, key: Hashable) -> Iterator[None]:
        entry = self._enter(key)
        try:
            with entry.cond:
                while entry.writer:
                    entry.cond.wait()
                entry.readers += 1
            try:
                yield
            finally:
                with entry.cond:
                    entry.readers -= 1
                    if entry.readers == 0:
                        entry.cond.notify_all()
        finally:
            self._leave(key, entry)

    @contextmanager
    def exclusive(self, key: Hashable) -> Iterator[None]:
        entry = self._enter(key)
        try:
            with entry.cond:
                while entry.writer or entry.readers:
                    entry.cond.wait()
                entry.writer = True
            try:
                yield
            finally:
                with entry.cond:
                    entry.writer = False
                    entry.cond.notify_all()
        finally:
            self._leave(key, entry)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
