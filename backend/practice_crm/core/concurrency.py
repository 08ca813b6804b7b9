"""
Per-key coordination helpers for the segment registry.

KeyedLock:
    Serializes work on one key (a segment id) while leaving other keys free.
    Recount is read-then-write on clientCount, so an update of a segment's
    filter must never interleave with a recount of the same segment.

SingleFlight:
    Coalesces concurrent identical calls. When several callers ask for a
    recount of the same segment at once, only the first one walks the client
    population; the others block and receive the same result (or exception).
    Inspired by Go's singleflight package.
"""

import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Hashable, Iterator, Optional

from practice_crm.core.logging_config import get_logger

logger = get_logger(__name__)


class _LockEntry:
    """A lock plus the number of threads currently holding or waiting on it."""

    def __init__(self):
        self.lock = threading.Lock()
        self.refs = 0


class KeyedLock:
    """
    One mutex per key, created on demand and dropped when nobody uses it.

    Usage:
        locks = KeyedLock()
        with locks.hold("seg-1a2b"):
            ...
    """

    def __init__(self):
        self._mu = threading.Lock()
        self._entries: Dict[Hashable, _LockEntry] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._mu:
            entry = self._entries.get(key)
            if entry is None:
                entry = _LockEntry()
                self._entries[key] = entry
            entry.refs += 1

        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._mu:
                entry.refs -= 1
                if entry.refs == 0:
                    self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._mu:
            return len(self._entries)


class _Call:
    """Represents a single in-flight function execution."""

    def __init__(self):
        self.event = threading.Event()
        self.result: Any = None
        self.error: Optional[Exception] = None


class SingleFlight:
    """
    Thread-safe call coalescing.

    Usage:
        sf = SingleFlight()
        segment = sf.do("seg-1a2b", lambda: registry._recount_locked("seg-1a2b"))
    """

    def __init__(self):
        self._mu = threading.Lock()
        self._calls: Dict[Hashable, _Call] = {}

    def do(self, key: Hashable, fn: Callable[[], Any]) -> Any:
        """
        Execute fn() for the given key, or wait for an execution already running.

        Raises:
            Whatever exception fn() raises (propagated to all waiters).
        """
        with self._mu:
            call = self._calls.get(key)
            is_owner = call is None
            if is_owner:
                call = _Call()
                self._calls[key] = call
            else:
                logger.debug(f"SingleFlight: joining in-flight call for key={key}")

        if is_owner:
            try:
                call.result = fn()
            except Exception as e:
                call.error = e
            finally:
                call.event.set()
                with self._mu:
                    self._calls.pop(key, None)
        else:
            call.event.wait()

        if call.error is not None:
            raise call.error

        return call.result

    def in_flight(self, key: Hashable) -> bool:
        with self._mu:
            return key in self._calls
