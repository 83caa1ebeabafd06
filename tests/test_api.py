"""Tests for the intent API, backed by the in-memory store."""

import pytest
from fastapi.testclient import TestClient

from tests.factories import KEY, full_spec
from vmcluster_operator.api.main import app
from vmcluster_operator.api.routers.clusters import get_store, limiter
from vmcluster_operator.errors import ConflictError, TransientStoreError


@pytest.fixture
def client(store):
    limiter.reset()
    app.dependency_overrides[get_store] = lambda: store
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def _create(client, name="metrics", namespace="monitoring", spec=None):
    return client.post("/api/clusters", json={
        "name": name,
        "namespace": namespace,
        "spec": spec if spec is not None else full_spec(),
    })


class TestHealthAndMetrics:

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["redis"] == "disabled"
        assert body["kubernetes"] == "reachable"

    def test_metrics(self, client):
        _create(client)
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert 'vmcluster_api_clusters{status="expanding"} 1.0' in resp.text


class TestCreate:

    def test_create(self, client, store):
        resp = _create(client)
        assert resp.status_code == 201
        body = resp.json()
        assert body["name"] == "metrics"
        assert body["namespace"] == "monitoring"
        assert body["clusterStatus"] == "expanding"
        assert body["replicas"] == {"vmstorage": 3, "vmselect": 2, "vminsert": 2}
        assert store.get_cluster(KEY.namespace, KEY.name)["spec"]["retentionPeriod"] == "1"

    def test_create_is_idempotent(self, client, store):
        assert _create(client).status_code == 201
        assert _create(client).status_code == 201
        assert len(store.list_clusters()) == 1

    def test_invalid_spec_rejected(self, client, store):
        spec = full_spec()
        spec["retentionPeriod"] = "0"
        resp = _create(client, spec=spec)
        assert resp.status_code == 422
        assert "retentionPeriod" in resp.json()["detail"]
        assert store.list_clusters() == []

    def test_unbuildable_spec_rejected(self, client, store):
        spec = full_spec()
        del spec["vmstorage"]
        resp = _create(client, spec=spec)
        assert resp.status_code == 422
        assert "requires a vmstorage tier" in resp.json()["detail"]

    def test_bad_name_rejected(self, client):
        assert _create(client, name="Not_Valid").status_code == 422


class TestReadAndDelete:

    def test_get(self, client):
        _create(client)
        resp = client.get("/api/clusters/monitoring/metrics")
        assert resp.status_code == 200
        assert resp.json()["name"] == "metrics"

    def test_get_missing(self, client):
        assert client.get("/api/clusters/monitoring/nope").status_code == 404

    def test_list_filters_by_namespace(self, client):
        _create(client, name="one", namespace="a")
        _create(client, name="two", namespace="b")
        assert client.get("/api/clusters").json()["total"] == 2
        listed = client.get("/api/clusters", params={"namespace": "a"}).json()
        assert [c["name"] for c in listed["clusters"]] == ["one"]

    def test_status_reported(self, client, store):
        _create(client)
        body = store.get_cluster(KEY.namespace, KEY.name)
        body["status"] = {"clusterStatus": "failed", "reason": "bad volume", "updateFailCount": 2}
        store.update_cluster_status(body)

        resp = client.get("/api/clusters/monitoring/metrics").json()
        assert resp["clusterStatus"] == "failed"
        assert resp["reason"] == "bad volume"
        assert resp["updateFailCount"] == 2

    def test_delete(self, client, store):
        _create(client)
        resp = client.delete("/api/clusters/monitoring/metrics")
        assert resp.status_code == 202
        assert store.list_clusters() == []
        assert client.delete("/api/clusters/monitoring/metrics").status_code == 404

    def test_events_without_redis(self, client):
        _create(client)
        resp = client.get("/api/clusters/monitoring/metrics/events")
        assert resp.status_code == 200
        assert resp.json() == {"cluster": "monitoring/metrics", "clusterStatus": "expanding", "events": []}

    def test_events_missing_cluster(self, client):
        assert client.get("/api/clusters/monitoring/nope/events").status_code == 404


class TestAudit:

    def test_actions_audited(self, client):
        _create(client, name="audited")
        client.delete("/api/clusters/monitoring/audited")
        entries = client.get("/api/clusters/audit/log").json()["entries"]
        recorded = [(e["action"], e["cluster"], e["result"]) for e in entries]
        assert ("CREATE", "monitoring/audited", "SUCCESS") in recorded
        assert ("DELETE", "monitoring/audited", "ACCEPTED") in recorded


class UnreachableStore:
    """Every API server call fails the way a dropped connection does."""

    def _down(self, *args, **kwargs):
        raise TransientStoreError("list vmclusters: API error 503 (Service Unavailable)")

    get_cluster = list_clusters = create_cluster = delete_cluster = _down


@pytest.fixture
def down_client():
    limiter.reset()
    app.dependency_overrides[get_store] = UnreachableStore
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


class TestStoreUnavailable:

    def test_health_degraded(self, down_client):
        resp = down_client.get("/health")
        assert resp.status_code == 503
        assert resp.json()["status"] == "degraded"
        assert resp.json()["kubernetes"] == "unreachable"

    def test_create_is_retryable(self, down_client):
        resp = _create(down_client, name="outage")
        assert resp.status_code == 503
        assert int(resp.headers["Retry-After"]) >= 1
        assert "Kubernetes API unavailable" in resp.json()["detail"]

    def test_reads_are_retryable(self, down_client):
        assert down_client.get("/api/clusters").status_code == 503
        assert down_client.get("/api/clusters/monitoring/metrics").status_code == 503
        assert down_client.delete("/api/clusters/monitoring/metrics").status_code == 503

    def test_metrics_still_served(self, down_client):
        resp = down_client.get("/metrics")
        assert resp.status_code == 200
        assert "vmcluster_api_clusters_created_total" in resp.text

    def test_conflict_maps_to_409(self, client, store):
        def conflict(namespace, name):
            raise ConflictError(f"VMCluster {namespace}/{name}: conflict (Conflict)")

        store.delete_cluster = conflict
        assert client.delete("/api/clusters/monitoring/metrics").status_code == 409
