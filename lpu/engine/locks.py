from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from lpu.core.errors import PriceListBusyError


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.refs = 0


class PriceListLocks:
    """
    One mutex per price list id (in-process). Runs on the same price list are
    serialised; different price lists never wait on each other. Entries are
    dropped once nobody holds or waits on them.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[str, _Entry] = {}

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None) -> Iterator[None]:
        with self._guard:
            entry = self._entries.setdefault(key, _Entry())
            entry.refs += 1

        acquired = False
        try:
            if timeout is None:
                acquired = entry.lock.acquire()
            else:
                acquired = entry.lock.acquire(timeout=max(0.0, timeout))
            if not acquired:
                raise PriceListBusyError(
                    f"Rules are already being applied to price list {key}",
                    meta={"priceListId": key},
                )
            yield
        finally:
            if acquired:
                entry.lock.release()
            with self._guard:
                entry.refs -= 1
                if entry.refs == 0:
                    self._entries.pop(key, None)

    def is_locked(self, key: str) -> bool:
        with self._guard:
            entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()
