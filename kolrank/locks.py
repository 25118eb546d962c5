"""Per-scope locks serializing batch recalculations.

Batch operations on the same campaign (bulk auto-match, survey and
composite recalculation) must not overlap; different campaigns run
independently. A second caller does not queue behind the first, it fails
fast with ConcurrencyError so the client can retry.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Generator, Hashable

from kolrank.errors import ConcurrencyError

log = logging.getLogger(__name__)


class ScopeLockRegistry:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.Lock] = {}
        self._holders: dict[Hashable, str] = {}

    def _lock_for(self, scope: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(scope)
            if lock is None:
                lock = self._locks[scope] = threading.Lock()
            return lock

    def is_held(self, scope: Hashable) -> bool:
        return self._lock_for(scope).locked()

    @contextmanager
    def hold(self, scope: Hashable, operation: str = "batch") -> Generator[None, None, None]:
        lock = self._lock_for(scope)
        if not lock.acquire(blocking=False):
            running = self._holders.get(scope, "another batch")
            log.warning("Scope %s busy (%s running), rejecting %s", scope, running, operation)
            raise ConcurrencyError(
                f"{running} is already running for scope {scope}", entity_id=scope,
            )
        self._holders[scope] = operation
        try:
            yield
        finally:
            self._holders.pop(scope, None)
            lock.release()


scope_locks = ScopeLockRegistry()
