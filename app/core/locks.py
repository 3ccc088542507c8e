"""Keyed mutual exclusion used to serialize writes to one conversation."""

from __future__ import annotations

import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


class KeyedLockRegistry:
    """Hand out one :class:`threading.Lock` per key.

    Entries are created on first use and dropped once no thread holds or waits
    for them, so the registry does not grow with the number of conversations
    ever touched. Locks for different keys never block each other.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[Hashable, _Entry] = {}

    @contextmanager
    def hold(self, key: Hashable, timeout: float | None = None) -> Iterator[None]:
        """Hold the lock for ``key`` for the duration of the ``with`` block.

        Raises:
            TimeoutError: If ``timeout`` seconds pass before the lock is free.
        """

        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.holders += 1
        acquired = entry.lock.acquire(timeout=-1 if timeout is None else timeout)
        try:
            if not acquired:
                raise TimeoutError(f"Timed out waiting for lock {key!r}")
            yield
        finally:
            if acquired:
                entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


def conversation_key(conversation_id: object) -> tuple[str, str]:
    return ("conversation", str(conversation_id))


def participant_key(instance_id: object, participant_id: object) -> tuple[str, str, str]:
    return ("participant", str(instance_id), str(participant_id))
