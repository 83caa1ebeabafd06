"""
Convergence engine — one pass of the VMCluster reconcile loop.

Pass (short-circuits on the first unfinished step):
  1. Read the cluster fresh and validate it        → failed (no objects touched)
  2. Build every declared tier's objects           → failed on BuildError
  3. Create-or-update vmstorage, check readiness   → expanding, requeue 10s
  4. Create-or-update vmselect, then vminsert      → expanding, requeue 10s
  5. All declared tiers ready                      → operational, no requeue

vmselect and vminsert are never created or updated while vmstorage is
below its desired ready replica count: both address storage pods by their
stable per-pod DNS names.

Idempotent: objects are only written when the desired managed fields
differ from the live ones, and status only when something besides
lastSync changed. Workload objects are never deleted here; removing the
cluster cascades through ownerReferences.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from vmcluster_operator.builder import build_tier_objects
from vmcluster_operator.config import Settings, settings as default_settings
from vmcluster_operator.errors import BuildError, NotFoundError, ValidationError
from vmcluster_operator.models import ClusterKey, ClusterStatus, Tier, VMCluster
from vmcluster_operator.status import StatusMachine
from vmcluster_operator.validation import validate_cluster

logger = logging.getLogger("convergence")

# Order matters: storage first, dependents after it is ready
TIER_ORDER = (Tier.STORAGE, Tier.SELECT, Tier.INSERT)

# Only these subtrees of a built object are owned by the operator
MANAGED_FIELDS = (("metadata", "labels"), ("metadata", "annotations"), ("spec",))


@dataclass(frozen=True)
class ConvergeResult:
    status: ClusterStatus
    requeue_after: Optional[float] = None


# ---------------------------------------------------------------------------
# Diffing
# ---------------------------------------------------------------------------

def is_subset(desired: Any, live: Any) -> bool:
    """
    True if ``live`` already carries everything in ``desired``.

    Extra keys on the live side are defaults filled in by the platform and
    never count as drift. Lists must match element-wise.
    """
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        return all(k in live and is_subset(v, live[k]) for k, v in desired.items())
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(is_subset(d, l) for d, l in zip(desired, live))
    return desired == live


def compute_merge_patch(desired: Any, live: Any) -> Optional[Any]:
    """Smallest merge patch moving ``live`` onto ``desired``; None if nothing differs."""
    if is_subset(desired, live):
        return None
    if isinstance(desired, dict) and isinstance(live, dict):
        patch = {}
        for key, value in desired.items():
            sub = compute_merge_patch(value, live.get(key)) if key in live else value
            if sub is not None:
                patch[key] = sub
        return patch or None
    return desired


def managed_patch(desired: Dict[str, Any], live: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Patch restricted to the operator-managed fields of an object."""
    patch: Dict[str, Any] = {}
    for path in MANAGED_FIELDS:
        want, have = desired, live
        for part in path:
            want = (want or {}).get(part)
            have = (have or {}).get(part)
        if want is None:
            continue
        sub = compute_merge_patch(want, have) if have is not None else want
        if sub is None:
            continue
        target = patch
        for part in path[:-1]:
            target = target.setdefault(part, {})
        target[path[-1]] = sub
    return patch or None


def workload_ready(obj: Dict[str, Any], desired_replicas: int) -> bool:
    """Observed generation caught up and ready replicas equal to the desired count."""
    meta = obj.get("metadata") or {}
    status = obj.get("status") or {}
    if (status.get("observedGeneration") or 0) < (meta.get("generation") or 0):
        return False
    return (status.get("readyReplicas") or 0) == desired_replicas


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ConvergenceEngine:

    def __init__(self, store, conf: Settings = default_settings,
                 machine: Optional[StatusMachine] = None, builder=build_tier_objects):
        self.store = store
        self.conf = conf
        self.machine = machine or StatusMachine()
        self.builder = builder

    def converge(self, key: ClusterKey) -> ConvergeResult:
        """
        Run one pass for ``key``.

        Raises NotFoundError if the cluster is gone and TransientStoreError
        for store failures; both are handled by the reconciler.
        """
        body = self.store.get_cluster(key.namespace, key.name)

        try:
            cluster = validate_cluster(body)
        except ValidationError as e:
            return self._fail(key, body, str(e))

        try:
            plan = self._plan(cluster)
        except BuildError as e:
            return self._fail(key, body, str(e))

        tiers_ready: Dict[Tier, bool] = {}
        try:
            for tier in TIER_ORDER:
                if tier not in plan:
                    continue
                tiers_ready[tier] = self._converge_tier(key, cluster, tier, plan[tier])
                if tier == Tier.STORAGE and not tiers_ready[tier]:
                    logger.info(f"[{key}] vmstorage still expanding, dependent tiers held back")
                    break
        except BuildError as e:
            # the API server rejected a built object (422)
            return self._fail(key, body, str(e))

        # declared tiers not reached in this pass count as not ready
        for tier in plan:
            tiers_ready.setdefault(tier, False)

        state = self.machine.evaluate(tiers_ready)
        storage_state = None
        if Tier.STORAGE in tiers_ready:
            storage_state = ClusterStatus.OPERATIONAL if tiers_ready[Tier.STORAGE] else ClusterStatus.EXPANDING
        self._write_status(key, body, state, storage_status=storage_state)

        if state == ClusterStatus.EXPANDING:
            return ConvergeResult(state, requeue_after=self.conf.EXPANDING_REQUEUE_SECONDS)
        return ConvergeResult(state)

    def _plan(self, cluster: VMCluster) -> Dict[Tier, List[Dict[str, Any]]]:
        """Build all declared tiers up front so a BuildError touches nothing."""
        plan = {}
        for tier in TIER_ORDER:
            objects = self.builder(cluster, tier, self.conf)
            if objects:
                plan[tier] = objects
        return plan

    def _converge_tier(self, key: ClusterKey, cluster: VMCluster, tier: Tier,
                       objects: List[Dict[str, Any]]) -> bool:
        live_objects = [self.create_or_update(obj) for obj in objects]
        workload = live_objects[0]
        desired = cluster.spec.tier(tier).replicaCount
        ready = workload_ready(workload, desired)
        status = workload.get("status") or {}
        logger.info(
            f"[{key}] {tier.value}: {status.get('readyReplicas') or 0}/{desired} ready"
            f"{'' if ready else ' (rolling out)'}"
        )
        return ready

    def create_or_update(self, desired: Dict[str, Any]) -> Dict[str, Any]:
        """Create the object if absent, else patch managed fields that drifted."""
        kind = desired["kind"]
        meta = desired["metadata"]
        namespace, name = meta["namespace"], meta["name"]
        try:
            live = self.store.get_object(kind, namespace, name)
        except NotFoundError:
            logger.info(f"Creating {kind} {namespace}/{name}")
            return self.store.create_object(desired)

        patch = managed_patch(desired, live)
        if patch is None:
            return live
        patch.setdefault("metadata", {})["resourceVersion"] = live["metadata"]["resourceVersion"]
        logger.info(f"Updating {kind} {namespace}/{name}")
        return self.store.patch_object(kind, namespace, name, patch)

    def _fail(self, key: ClusterKey, body: Dict[str, Any], reason: str) -> ConvergeResult:
        logger.warning(f"[{key}] cluster spec cannot be converged: {reason}")
        self._write_status(key, body, ClusterStatus.FAILED, reason=reason)
        return ConvergeResult(ClusterStatus.FAILED)

    def _write_status(self, key: ClusterKey, body: Dict[str, Any], state: ClusterStatus,
                      reason: str = "", storage_status: Optional[ClusterStatus] = None) -> None:
        previous = body.get("status")
        new = self.machine.next_status(previous, state, reason=reason, storage_status=storage_status)
        if new is None:
            return
        updated = dict(body)
        updated["status"] = new
        # carries the resourceVersion read at the start of the pass
        self.store.update_cluster_status(updated)
        self.machine.notify(key, previous, new)
