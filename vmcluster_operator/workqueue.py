"""
Deduplicating work queue keyed by cluster identity.

Guarantees:
  - at most one pending entry per key (repeated adds coalesce)
  - at most one worker holds a key at a time (the lease, get → done)
  - a key added while leased is redelivered right after done(), so no
    change is missed even though passes for one key never overlap
  - delayed adds are timers on the event loop, never busy waits; only the
    earliest-due delayed entry per key is kept, and an immediate add
    supersedes it

Not thread-safe: call it from the owning event loop (EventBus handles
cross-thread delivery).
"""

import asyncio
import logging
from typing import Dict, Generic, Hashable, Optional, Set, Tuple, TypeVar

logger = logging.getLogger("workqueue")

K = TypeVar("K", bound=Hashable)

_SHUTDOWN = object()


class QueueShutDown(Exception):
    """Raised from get() once the queue is shut down."""


class ExponentialBackoff(Generic[K]):
    """Per-key failure backoff: base * 2**failures, capped at max_delay."""

    def __init__(self, base_delay: float = 1.0, max_delay: float = 300.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: Dict[K, int] = {}

    def when(self, key: K) -> float:
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        return min(self.base_delay * (2 ** failures), self.max_delay)

    def forget(self, key: K) -> None:
        self._failures.pop(key, None)

    def retries(self, key: K) -> int:
        return self._failures.get(key, 0)


class WorkQueue(Generic[K]):

    def __init__(self, backoff: Optional[ExponentialBackoff] = None):
        self.backoff = backoff or ExponentialBackoff()
        self._ready: asyncio.Queue = asyncio.Queue()
        self._dirty: Set[K] = set()
        self._processing: Set[K] = set()
        self._waiting: Dict[K, Tuple[float, asyncio.TimerHandle]] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        """Keys ready for a worker, not counting leased or delayed ones."""
        return len(self._dirty - self._processing)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def is_leased(self, key: K) -> bool:
        return key in self._processing

    def pending_delay(self, key: K) -> bool:
        return key in self._waiting

    # --- Producers --------------------------------------------------------

    def add(self, key: K) -> None:
        if self._shutting_down:
            return
        self._cancel_waiting(key)
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            # redelivered by done()
            return
        self._ready.put_nowait(key)

    def add_after(self, key: K, delay: float) -> None:
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return
        if key in self._dirty:
            # an immediate delivery is already due
            return
        loop = asyncio.get_running_loop()
        due = loop.time() + delay
        current = self._waiting.get(key)
        if current is not None:
            if current[0] <= due:
                return
            current[1].cancel()
        handle = loop.call_at(due, self._fire, key)
        self._waiting[key] = (due, handle)

    def add_rate_limited(self, key: K) -> float:
        delay = self.backoff.when(key)
        self.add_after(key, delay)
        return delay

    def forget(self, key: K) -> None:
        self.backoff.forget(key)

    def _fire(self, key: K) -> None:
        self._waiting.pop(key, None)
        self.add(key)

    def _cancel_waiting(self, key: K) -> None:
        entry = self._waiting.pop(key, None)
        if entry is not None:
            entry[1].cancel()

    # --- Consumers --------------------------------------------------------

    async def get(self) -> K:
        """Suspend until a key is ready, then lease it to the caller."""
        key = await self._ready.get()
        if key is _SHUTDOWN:
            # wake the next getter too
            self._ready.put_nowait(_SHUTDOWN)
            raise QueueShutDown()
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def done(self, key: K) -> None:
        """Release the lease; redeliver the key if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._ready.put_nowait(key)

    def shut_down(self) -> None:
        if self._shutting_down:
            return
        self._shutting_down = True
        for _, handle in self._waiting.values():
            handle.cancel()
        self._waiting.clear()
        self._ready.put_nowait(_SHUTDOWN)
