"""Tests for the reconciler's outcome mapping and failure counting."""

import pytest

from tests.factories import KEY, STORAGE
from vmcluster_operator.config import settings
from vmcluster_operator.dispatcher import Result
from vmcluster_operator.errors import TransientStoreError
from vmcluster_operator.reconciler import Reconciler


class FlakyObjects:
    """Wraps a store so that workload reads fail while ``down`` is set."""

    def __init__(self, store):
        self._store = store
        self.down = True

    def __getattr__(self, name):
        return getattr(self._store, name)

    def get_object(self, kind, namespace, name):
        if self.down:
            raise TransientStoreError(f"{kind} {namespace}/{name}: API error 503 (Service Unavailable)")
        return self._store.get_object(kind, namespace, name)


def _status(store):
    return store.get_cluster(KEY.namespace, KEY.name).get("status") or {}


class TestReconciler:

    def test_deleted_cluster_is_done(self, store, engine):
        assert Reconciler(store, engine).reconcile(KEY) == Result()

    def test_expanding_requeues_after_interval(self, store, engine, make_cluster):
        make_cluster()
        result = Reconciler(store, engine).reconcile(KEY)
        assert result == Result(requeue=True, requeue_after=settings.EXPANDING_REQUEUE_SECONDS)

    def test_operational_is_done(self, store, engine, make_cluster, mark_ready):
        make_cluster({"retentionPeriod": "1", "vmstorage": {"replicaCount": 1}})
        reconciler = Reconciler(store, engine)
        reconciler.reconcile(KEY)
        mark_ready("StatefulSet", STORAGE, 1)
        assert reconciler.reconcile(KEY) == Result()

    def test_failed_is_done(self, store, engine, make_cluster):
        make_cluster({"retentionPeriod": "never"})
        assert Reconciler(store, engine).reconcile(KEY) == Result()
        assert _status(store)["clusterStatus"] == "failed"


class TestTransientFailures:

    def test_error_reraised_and_counted(self, store, engine, make_cluster):
        make_cluster()
        flaky = FlakyObjects(store)
        engine.store = flaky
        reconciler = Reconciler(flaky, engine)

        for expected in (1, 2):
            with pytest.raises(TransientStoreError):
                reconciler.reconcile(KEY)
            assert _status(store)["updateFailCount"] == expected

    def test_fail_count_leaves_status_alone(self, store, engine, make_cluster):
        make_cluster()
        Reconciler(store, engine).reconcile(KEY)
        flaky = FlakyObjects(store)
        engine.store = flaky

        with pytest.raises(TransientStoreError):
            Reconciler(flaky, engine).reconcile(KEY)

        status = _status(store)
        assert status["clusterStatus"] == "expanding"
        assert status["updateFailCount"] == 1

    def test_fail_count_reset_once_operational(self, store, engine, make_cluster, mark_ready):
        make_cluster({"retentionPeriod": "1", "vmstorage": {"replicaCount": 1}})
        reconciler = Reconciler(store, engine)
        reconciler.reconcile(KEY)

        flaky = FlakyObjects(store)
        engine.store = flaky
        with pytest.raises(TransientStoreError):
            Reconciler(flaky, engine).reconcile(KEY)
        assert _status(store)["updateFailCount"] == 1

        engine.store = store
        mark_ready("StatefulSet", STORAGE, 1)
        reconciler.reconcile(KEY)
        assert _status(store)["updateFailCount"] == 0
