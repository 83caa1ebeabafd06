"""Tests for watch notifications and their mapping onto cluster keys."""

import asyncio
import threading

import pytest

from vmcluster_operator.config import settings
from vmcluster_operator.events import (
    ADDED, DELETED, MODIFIED, EventBus, GenerationChanged, Notification, enqueue_for_object,
    enqueue_for_owner, register_cluster_watches,
)
from vmcluster_operator.models import ClusterKey
from vmcluster_operator.workqueue import WorkQueue

KEY = ClusterKey("monitoring", "metrics")


def _owned(kind="StatefulSet", owner_kind="VMCluster", api_version=None, controller=True):
    return {
        "kind": kind,
        "metadata": {
            "name": "vmstorage-metrics",
            "namespace": "monitoring",
            "ownerReferences": [{
                "apiVersion": api_version or settings.api_version,
                "kind": owner_kind,
                "name": "metrics",
                "uid": "u1",
                "controller": controller,
            }],
        },
    }


class TestNotification:

    def test_initial_listing_reads_as_added(self):
        n = Notification.from_watch_event("VMCluster", {"type": None, "object": {"metadata": {"name": "x"}}})
        assert n.type == ADDED
        assert not n.is_tombstone

    def test_tombstone(self):
        n = Notification.from_watch_event("StatefulSet", {"type": "DELETED", "object": _owned()})
        assert n.is_tombstone
        assert n.namespace == "monitoring"


class TestMappers:

    def test_object_maps_to_itself(self):
        n = Notification("VMCluster", ADDED, {"metadata": {"name": "metrics", "namespace": "monitoring"}})
        assert enqueue_for_object(n) == [KEY]

    def test_object_without_name(self):
        assert enqueue_for_object(Notification("VMCluster", ADDED, {})) == []

    def test_owner_mapping(self):
        mapper = enqueue_for_owner("VMCluster", settings.CRD_GROUP)
        assert mapper(Notification("StatefulSet", ADDED, _owned())) == [KEY]

    def test_owner_mapping_on_tombstone(self):
        mapper = enqueue_for_owner("VMCluster", settings.CRD_GROUP)
        assert mapper(Notification("Service", DELETED, _owned("Service"))) == [KEY]

    @pytest.mark.parametrize("obj", [
        _owned(controller=False),
        _owned(owner_kind="VMAgent"),
        _owned(api_version="example.com/v1"),
        {"kind": "StatefulSet", "metadata": {"name": "unowned", "namespace": "monitoring"}},
    ])
    def test_foreign_objects_ignored(self, obj):
        mapper = enqueue_for_owner("VMCluster", settings.CRD_GROUP)
        assert mapper(Notification("StatefulSet", ADDED, obj)) == []


def _cluster(generation, **status):
    return {
        "metadata": {"name": "metrics", "namespace": "monitoring", "generation": generation},
        "status": status,
    }


class TestGenerationChanged:

    def test_status_only_update_dropped(self):
        mapper = GenerationChanged(enqueue_for_object)
        assert mapper(Notification("VMCluster", ADDED, _cluster(1))) == [KEY]
        assert mapper(Notification("VMCluster", MODIFIED, _cluster(1, updateFailCount=1))) == []
        assert mapper(Notification("VMCluster", MODIFIED, _cluster(1, updateFailCount=2))) == []

    def test_spec_edit_passes(self):
        mapper = GenerationChanged(enqueue_for_object)
        mapper(Notification("VMCluster", ADDED, _cluster(1)))
        assert mapper(Notification("VMCluster", MODIFIED, _cluster(2))) == [KEY]

    def test_first_sighting_passes(self):
        mapper = GenerationChanged(enqueue_for_object)
        assert mapper(Notification("VMCluster", MODIFIED, _cluster(4))) == [KEY]

    def test_relisting_passes(self):
        mapper = GenerationChanged(enqueue_for_object)
        mapper(Notification("VMCluster", ADDED, _cluster(1)))
        assert mapper(Notification("VMCluster", ADDED, _cluster(1))) == [KEY]

    def test_delete_passes_and_forgets(self):
        mapper = GenerationChanged(enqueue_for_object)
        mapper(Notification("VMCluster", ADDED, _cluster(1)))
        assert mapper(Notification("VMCluster", DELETED, _cluster(1))) == [KEY]
        # recreated under the same name starts again at generation 1
        assert mapper(Notification("VMCluster", MODIFIED, _cluster(1))) == [KEY]


class TestEventBus:

    @pytest.mark.asyncio
    async def test_publish_enqueues(self):
        queue = WorkQueue()
        bus = EventBus(queue)
        register_cluster_watches(bus, settings.CRD_KIND, settings.CRD_GROUP)

        assert bus.publish(Notification("Deployment", ADDED, _owned("Deployment"))) == [KEY]
        assert bus.publish(Notification("VMCluster", ADDED, {"metadata": {"name": "metrics", "namespace": "monitoring"}})) == [KEY]
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_unwatched_kind(self):
        queue = WorkQueue()
        bus = EventBus(queue)
        register_cluster_watches(bus, settings.CRD_KIND, settings.CRD_GROUP)
        assert bus.publish(Notification("ConfigMap", ADDED, _owned("ConfigMap"))) == []
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_publish_from_another_thread(self):
        queue = WorkQueue()
        bus = EventBus(queue)
        register_cluster_watches(bus, settings.CRD_KIND, settings.CRD_GROUP)

        worker = threading.Thread(target=bus.publish, args=(Notification("StatefulSet", ADDED, _owned()),))
        worker.start()
        worker.join()

        assert await asyncio.wait_for(queue.get(), 1) == KEY

    @pytest.mark.asyncio
    async def test_status_write_does_not_requeue(self):
        queue = WorkQueue()
        bus = EventBus(queue)
        register_cluster_watches(bus, settings.CRD_KIND, settings.CRD_GROUP)
        bus.publish(Notification("VMCluster", ADDED, _cluster(1)))
        assert await queue.get() == KEY
        queue.done(KEY)

        assert bus.publish(Notification("VMCluster", MODIFIED, _cluster(1, clusterStatus="expanding"))) == []
        assert len(queue) == 0
