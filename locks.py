import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List


class KeyedLocks:
    """One re-entrant lock per key, created on demand and dropped when idle.

    Callers that need both a batch and a farmer lock take the batch lock first.
    """

    def __init__(self, name: str):
        self.name = name
        self._guard = threading.Lock()
        self._entries: Dict[str, List] = {}

    @contextmanager
    def hold(self, key) -> Iterator[None]:
        key = str(key)
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._entries[key] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
