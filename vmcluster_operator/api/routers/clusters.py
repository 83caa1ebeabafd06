"""
Cluster API routes — CRUD endpoints for VMCluster resources.

Features:
  - Specs validated with the reconcile loop's own validator before submit
  - Rate limiting per-IP via slowapi
  - Prometheus counters for API activity
  - Redis Stream read-back of status transitions
  - Audit logging (in-memory ring buffer)
"""

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from prometheus_client import Counter, Gauge
from slowapi import Limiter
from slowapi.util import get_remote_address

from vmcluster_operator.api.models import (
    AuditLogEntry, ClusterCreateRequest, ClusterListResponse, ClusterResponse, ErrorResponse,
)
from vmcluster_operator.builder import check_cluster_buildable
from vmcluster_operator.config import settings
from vmcluster_operator.errors import BuildError, ConflictError, NotFoundError, TransientStoreError, ValidationError
from vmcluster_operator.models import ClusterKey, ClusterStatus, Tier
from vmcluster_operator.services.redis_service import read_events
from vmcluster_operator.status import current_status
from vmcluster_operator.validation import validate_cluster

logger = logging.getLogger("clusters")

router = APIRouter(prefix="/clusters", tags=["clusters"])
limiter = Limiter(key_func=get_remote_address)

CLUSTERS_CREATED = Counter(
    "vmcluster_api_clusters_created_total",
    "VMClusters submitted through the API",
)
CLUSTERS_DELETED = Counter(
    "vmcluster_api_clusters_deleted_total",
    "VMCluster deletions requested through the API",
)
CLUSTERS_REJECTED = Counter(
    "vmcluster_api_clusters_rejected_total",
    "Create requests rejected by validation",
)
CLUSTERS_TOTAL = Gauge(
    "vmcluster_api_clusters",
    "Current VMClusters by status",
    ["status"],
)

# --- Audit log (in-memory ring buffer) ---
_audit_log: deque = deque(maxlen=50)


def _audit(action: str, key: ClusterKey, result: str, detail: str = ""):
    entry = AuditLogEntry(
        timestamp=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        action=action,
        cluster=str(key),
        result=result,
        detail=detail,
    )
    _audit_log.append(entry)
    logger.info(f"AUDIT: {action} {key} -> {result}")


# --- Resource store ---
_store = None


def get_store():
    """Lazy-init the Kubernetes-backed store. Overridden in tests."""
    global _store
    if _store is None:
        from vmcluster_operator.services.kubernetes_service import KubernetesResourceStore
        _store = KubernetesResourceStore(settings)
    return _store


def to_response(body: Dict[str, Any]) -> ClusterResponse:
    meta = body.get("metadata") or {}
    spec = body.get("spec") or {}
    status = body.get("status") or {}
    replicas = {
        tier.value: int((spec.get(tier.value) or {}).get("replicaCount", 1))
        for tier in Tier if spec.get(tier.value) is not None
    }
    return ClusterResponse(
        name=meta.get("name", ""),
        namespace=meta.get("namespace", "default"),
        clusterStatus=current_status(status).value,
        reason=status.get("reason", ""),
        updateFailCount=status.get("updateFailCount", 0),
        lastSync=status.get("lastSync") or None,
        storageStatus=(status.get("storageStatus") or {}).get("status", ""),
        replicas=replicas,
        createdAt=meta.get("creationTimestamp"),
    )


def update_gauges(store) -> None:
    counts = {s: 0 for s in ClusterStatus}
    for body in store.list_clusters():
        counts[current_status(body.get("status"))] += 1
    for state, count in counts.items():
        CLUSTERS_TOTAL.labels(status=state.value).set(count)


def _get_cluster_or_404(store, namespace: str, name: str) -> Dict[str, Any]:
    try:
        return store.get_cluster(namespace, name)
    except NotFoundError:
        raise HTTPException(status_code=404, detail=f"VMCluster '{namespace}/{name}' not found")


# =========================================================================
# REST Endpoints
# =========================================================================

@router.post("", response_model=ClusterResponse, status_code=201,
             responses={422: {"model": ErrorResponse}, 503: {"model": ErrorResponse}})
@limiter.limit(settings.RATE_LIMIT)
async def create_cluster_endpoint(req: ClusterCreateRequest, request: Request, store=Depends(get_store)):
    """Create a new VMCluster. Idempotent — returns the existing cluster if the name matches."""
    key = ClusterKey(req.namespace, req.name)
    body = {
        "apiVersion": settings.api_version,
        "kind": settings.CRD_KIND,
        "metadata": {"name": req.name, "namespace": req.namespace, "labels": req.labels},
        "spec": req.spec,
    }
    try:
        check_cluster_buildable(validate_cluster(body))
    except (ValidationError, BuildError) as e:
        _audit("CREATE", key, "INVALID", str(e))
        CLUSTERS_REJECTED.inc()
        raise HTTPException(status_code=422, detail=str(e))

    try:
        return to_response(store.get_cluster(key.namespace, key.name))
    except NotFoundError:
        pass

    try:
        created = store.create_cluster(body)
    except ConflictError:
        # lost a race with another create of the same name
        _audit("CREATE", key, "EXISTS")
        return to_response(store.get_cluster(key.namespace, key.name))
    except TransientStoreError as e:
        _audit("CREATE", key, "FAILED", str(e))
        raise

    _audit("CREATE", key, "SUCCESS")
    CLUSTERS_CREATED.inc()
    return to_response(created)


@router.get("", response_model=ClusterListResponse)
@limiter.limit(settings.RATE_LIMIT)
async def list_clusters_endpoint(
    request: Request,
    namespace: Optional[str] = Query(None, description="Filter by namespace"),
    store=Depends(get_store),
):
    """List all clusters, optionally filtered by namespace."""
    clusters = [to_response(body) for body in store.list_clusters(namespace)]
    return ClusterListResponse(clusters=clusters, total=len(clusters))


# --- Audit endpoint (declared before /{namespace}/{name}, which would shadow it) ---
@router.get("/audit/log")
@limiter.limit(settings.RATE_LIMIT)
async def get_audit_log(request: Request):
    """Get the API audit log (last 50 entries)."""
    entries: List[AuditLogEntry] = list(_audit_log)
    return {"entries": [e.model_dump() for e in entries], "count": len(entries)}


@router.get("/{namespace}/{name}", response_model=ClusterResponse,
            responses={404: {"model": ErrorResponse}})
@limiter.limit(settings.RATE_LIMIT)
async def get_cluster_endpoint(namespace: str, name: str, request: Request, store=Depends(get_store)):
    """Get a specific cluster."""
    return to_response(_get_cluster_or_404(store, namespace, name))


@router.delete("/{namespace}/{name}", status_code=202,
               responses={404: {"model": ErrorResponse}})
@limiter.limit(settings.RATE_LIMIT)
async def delete_cluster_endpoint(namespace: str, name: str, request: Request, store=Depends(get_store)):
    """Delete a cluster. Returns 202 Accepted; owned workloads are garbage collected."""
    key = ClusterKey(namespace, name)
    if not store.delete_cluster(namespace, name):
        raise HTTPException(status_code=404, detail=f"VMCluster '{key}' not found")
    _audit("DELETE", key, "ACCEPTED")
    CLUSTERS_DELETED.inc()
    return {"message": f"VMCluster '{key}' deletion initiated", "status": "accepted"}


@router.get("/{namespace}/{name}/events")
@limiter.limit(settings.RATE_LIMIT)
async def get_cluster_events(namespace: str, name: str, request: Request, store=Depends(get_store)):
    """
    Status transitions of a cluster, from its Redis stream.
    Empty when Redis is not configured.
    """
    body = _get_cluster_or_404(store, namespace, name)
    key = ClusterKey(namespace, name)
    return {
        "cluster": str(key),
        "clusterStatus": current_status(body.get("status")).value,
        "events": read_events(key),
    }
