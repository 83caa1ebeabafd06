"""
Reconciler — the entry point the dispatcher invokes for every cluster key.

    reconcile(key) → Result(requeue, requeue_after)   or raises

  NotFoundError        → the cluster was deleted between enqueue and dequeue; done
  TransientStoreError  → bump status.updateFailCount, re-raise so the
                         dispatcher retries with backoff
  ConvergeResult       → requeue_after while expanding, done otherwise
"""

import logging

from vmcluster_operator.convergence import ConvergenceEngine
from vmcluster_operator.dispatcher import Result
from vmcluster_operator.errors import NotFoundError, TransientStoreError
from vmcluster_operator.models import ClusterKey

logger = logging.getLogger("reconciler")


class Reconciler:

    def __init__(self, store, engine: ConvergenceEngine):
        self.store = store
        self.engine = engine

    def reconcile(self, key: ClusterKey) -> Result:
        logger.info(f"[{key}] Reconciling VMCluster")
        try:
            outcome = self.engine.converge(key)
        except NotFoundError:
            logger.info(f"[{key}] VMCluster not found — nothing to do")
            return Result()
        except TransientStoreError as e:
            self._record_failure(key, e)
            raise

        if outcome.requeue_after:
            logger.info(f"[{key}] {outcome.status.value}, requeue in {outcome.requeue_after}s")
            return Result(requeue=True, requeue_after=outcome.requeue_after)
        logger.info(f"[{key}] {outcome.status.value}")
        return Result()

    def _record_failure(self, key: ClusterKey, error: Exception) -> None:
        """Count the failed pass on the cluster; never masks the original error."""
        logger.warning(f"[{key}] transient store error: {error}")
        try:
            body = self.store.get_cluster(key.namespace, key.name)
            body["status"] = self.engine.machine.record_failure(body.get("status"))
            self.store.update_cluster_status(body)
        except NotFoundError:
            return
        except TransientStoreError as e:
            logger.warning(f"[{key}] could not record updateFailCount: {e}")
