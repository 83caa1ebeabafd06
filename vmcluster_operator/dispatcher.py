"""
Dispatcher — a fixed pool of asyncio workers draining the work queue.

Each worker leases one cluster key, runs one reconcile pass to completion,
then releases it. Passes for different clusters run in parallel; passes
for the same cluster are serialized by the queue's lease, which is the
only concurrency control in the loop.

Outcome handling:
  exception           → requeue with per-key exponential backoff
  requeue_after > 0   → reset backoff, delayed requeue
  requeue             → requeue with backoff
  otherwise           → reset backoff; wait for the next notification
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Union

from vmcluster_operator import metrics
from vmcluster_operator.workqueue import QueueShutDown, WorkQueue

logger = logging.getLogger("dispatcher")


@dataclass(frozen=True)
class Result:
    """Outcome of one reconcile pass."""
    requeue: bool = False
    requeue_after: float = 0.0


ReconcileFn = Callable[[Any], Union[Result, Awaitable[Result]]]


class Dispatcher:

    def __init__(self, queue: WorkQueue, reconcile: ReconcileFn, workers: int = 2):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.queue = queue
        self.reconcile = reconcile
        self.workers = workers
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"reconcile-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info(f"Dispatcher started ({self.workers} workers)")

    async def stop(self) -> None:
        """Shut the queue down and wait for in-flight passes to finish."""
        self.queue.shut_down()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Dispatcher stopped")

    async def _worker(self, index: int) -> None:
        while True:
            try:
                key = await self.queue.get()
            except QueueShutDown:
                return
            metrics.QUEUE_DEPTH.set(len(self.queue))
            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    async def _invoke(self, key) -> Result:
        if inspect.iscoroutinefunction(self.reconcile):
            return await self.reconcile(key)
        # blocking API calls run off the event loop
        return await asyncio.to_thread(self.reconcile, key)

    async def process(self, key) -> Optional[float]:
        """Run one pass for a leased key. Returns the requeue delay, if any."""
        started = time.monotonic()
        try:
            result = await self._invoke(key)
        except Exception as e:
            delay = self.queue.add_rate_limited(key)
            metrics.RECONCILE_TOTAL.labels(result="error").inc()
            logger.error(f"[{key}] reconcile failed (retry {self.queue.backoff.retries(key)}, "
                         f"next in {delay:.1f}s): {e}")
            return delay
        finally:
            metrics.RECONCILE_DURATION.observe(time.monotonic() - started)

        if result is None:
            result = Result()
        if result.requeue_after > 0:
            self.queue.forget(key)
            self.queue.add_after(key, result.requeue_after)
            metrics.RECONCILE_TOTAL.labels(result="requeue_after").inc()
            logger.debug(f"[{key}] requeue in {result.requeue_after}s")
            return result.requeue_after
        if result.requeue:
            metrics.RECONCILE_TOTAL.labels(result="requeue").inc()
            return self.queue.add_rate_limited(key)
        self.queue.forget(key)
        metrics.RECONCILE_TOTAL.labels(result="success").inc()
        return None
