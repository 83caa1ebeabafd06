"""
VMCluster Operator — Kubernetes operator for VictoriaMetrics clusters.

Architecture:
  kopf watches → EventBus → WorkQueue → Dispatcher workers → Reconciler
    VMCluster                    (dedup + lease     (fixed pool)   │
    StatefulSet / Deployment /    per cluster key)                 ▼
    Service (managed-by=vm-operator)                      ConvergenceEngine:
                                                            1. validate spec
                                                            2. vmstorage, wait ready
                                                            3. vmselect, vminsert
                                                            4. status → operational

  Kopf only supplies the watch streams here: no kopf create/update handlers,
  no finalizers, no progress storage. Sequencing, retries and requeues
  belong to the dispatcher so one pass per cluster runs at a time.

  On Delete:
    Nothing to do. ownerReferences let the garbage collector remove every
    StatefulSet, Deployment, Service and PVC template owner.

  On Restart:
    Kopf's initial listing re-publishes every cluster and owned object;
    status is re-derived from live objects.
"""

import logging

import kopf
from prometheus_client import start_http_server

from vmcluster_operator import metrics
from vmcluster_operator.config import MANAGED_BY, MANAGED_BY_LABEL, settings as config
from vmcluster_operator.convergence import ConvergenceEngine
from vmcluster_operator.dispatcher import Dispatcher
from vmcluster_operator.events import EventBus, Notification, register_cluster_watches
from vmcluster_operator.models import ClusterKey, ClusterStatus
from vmcluster_operator.reconciler import Reconciler
from vmcluster_operator.services.kubernetes_service import KubernetesResourceStore
from vmcluster_operator.services.redis_service import publish_transition
from vmcluster_operator.status import StatusMachine
from vmcluster_operator.workqueue import ExponentialBackoff, WorkQueue

logger = logging.getLogger("vmcluster-operator")

OWNED_LABELS = {MANAGED_BY_LABEL: MANAGED_BY}


def on_transition(key: ClusterKey, old: ClusterStatus, new: ClusterStatus, reason: str) -> None:
    metrics.CLUSTER_TRANSITIONS.labels(to=new.value).inc()
    publish_transition(key, old, new, reason)


# ---------------------------------------------------------------------------
# Kopf operator settings
# ---------------------------------------------------------------------------

@kopf.on.startup()
async def configure(settings: kopf.OperatorSettings, memo: kopf.Memo, **kwargs):
    settings.posting.level = logging.WARNING
    settings.peering.standalone = True

    store = KubernetesResourceStore(config)
    queue = WorkQueue(ExponentialBackoff(config.RETRY_BASE_DELAY, config.RETRY_MAX_DELAY))
    bus = EventBus(queue)
    register_cluster_watches(bus, config.CRD_KIND, config.CRD_GROUP)

    engine = ConvergenceEngine(store, config, StatusMachine(on_transition=on_transition))
    reconciler = Reconciler(store, engine)
    dispatcher = Dispatcher(queue, reconciler.reconcile, workers=config.MAX_CONCURRENT_RECONCILES)
    await dispatcher.start()

    memo.bus = bus
    memo.dispatcher = dispatcher

    if config.METRICS_PORT:
        start_http_server(config.METRICS_PORT)
    logger.info(
        f"VMCluster Operator started (workers={config.MAX_CONCURRENT_RECONCILES}, "
        f"requeue={config.EXPANDING_REQUEUE_SECONDS}s, metrics_port={config.METRICS_PORT or 'off'})"
    )


@kopf.on.cleanup()
async def shutdown(memo: kopf.Memo, **kwargs):
    await memo.dispatcher.stop()


# ---------------------------------------------------------------------------
# Watch streams → event bus
# ---------------------------------------------------------------------------

@kopf.on.event(config.CRD_GROUP, config.CRD_VERSION, config.CRD_PLURAL)
async def cluster_event(event, memo: kopf.Memo, **kwargs):
    memo.bus.publish(Notification.from_watch_event(config.CRD_KIND, event))


@kopf.on.event("apps", "v1", "statefulsets", labels=OWNED_LABELS)
async def statefulset_event(event, memo: kopf.Memo, **kwargs):
    memo.bus.publish(Notification.from_watch_event("StatefulSet", event))


@kopf.on.event("apps", "v1", "deployments", labels=OWNED_LABELS)
async def deployment_event(event, memo: kopf.Memo, **kwargs):
    memo.bus.publish(Notification.from_watch_event("Deployment", event))


@kopf.on.event("v1", "services", labels=OWNED_LABELS)
async def service_event(event, memo: kopf.Memo, **kwargs):
    memo.bus.publish(Notification.from_watch_event("Service", event))
