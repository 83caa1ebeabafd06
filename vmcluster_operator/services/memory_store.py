"""
In-memory resource store with the same interface as KubernetesResourceStore.

Emulates the parts of the API server the reconcile loop relies on:
  - resourceVersion bumped on every write; stale conditional writes → ConflictError
  - metadata.generation bumped only when spec changes
  - status subresource: status writes never touch spec or generation
  - RFC 7386 merge patch
  - watch notifications to subscribers (ADDED / MODIFIED / DELETED)
  - cascading deletion through ownerReferences (the garbage collector's job)

Every call is appended to ``calls`` so tests can assert which writes happened.
"""

import copy
import itertools
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from vmcluster_operator.config import Settings, settings as default_settings
from vmcluster_operator.errors import ConflictError, NotFoundError
from vmcluster_operator.events import ADDED, DELETED, MODIFIED, Notification

logger = logging.getLogger("memory_store")

ObjectKey = Tuple[str, str, str]  # (kind, namespace, name)


def apply_merge_patch(target: Any, patch: Any) -> Any:
    """RFC 7386 JSON merge patch: dicts merge recursively, None deletes, lists replace."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = apply_merge_patch(result.get(key), value)
    return result


class InMemoryResourceStore:

    def __init__(self, conf: Settings = default_settings):
        self.conf = conf
        self._objects: Dict[ObjectKey, Dict[str, Any]] = {}
        self._lock = threading.RLock()
        self._versions = itertools.count(1)
        self._subscribers: List[Callable[[Notification], None]] = []
        self.calls: List[Tuple[str, str, str, str]] = []

    # --- Watch ------------------------------------------------------------

    def subscribe(self, callback: Callable[[Notification], None]) -> None:
        self._subscribers.append(callback)

    def _emit(self, events: List[Tuple[str, Dict[str, Any]]]) -> None:
        # Called outside the lock so subscribers may read back from the store
        for event_type, obj in events:
            for callback in self._subscribers:
                callback(Notification(kind=obj["kind"], type=event_type, obj=obj))

    # --- Internals --------------------------------------------------------

    def _record(self, verb: str, kind: str, namespace: str, name: str) -> None:
        self.calls.append((verb, kind, namespace, name))

    def _next_version(self) -> str:
        return str(next(self._versions))

    def _get(self, kind: str, namespace: str, name: str) -> Dict[str, Any]:
        obj = self._objects.get((kind, namespace, name))
        if obj is None:
            raise NotFoundError(f"{kind} {namespace}/{name} not found")
        return obj

    def _insert(self, body: Dict[str, Any]) -> Dict[str, Any]:
        meta = body.setdefault("metadata", {})
        meta.setdefault("namespace", "default")
        key = (body["kind"], meta["namespace"], meta["name"])
        if key in self._objects:
            raise ConflictError(f"{key[0]} {key[1]}/{key[2]} already exists")
        meta["uid"] = str(uuid.uuid4())
        meta["resourceVersion"] = self._next_version()
        meta["generation"] = 1
        meta["creationTimestamp"] = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        self._objects[key] = body
        return body

    @staticmethod
    def _check_version(current: Dict[str, Any], expected: Optional[str]) -> None:
        if expected and expected != current["metadata"]["resourceVersion"]:
            meta = current["metadata"]
            raise ConflictError(
                f"{current['kind']} {meta['namespace']}/{meta['name']}: "
                f"resourceVersion {expected} is stale"
            )

    # --- VMCluster --------------------------------------------------------

    def get_cluster(self, namespace: str, name: str) -> Dict[str, Any]:
        with self._lock:
            self._record("get", self.conf.CRD_KIND, namespace, name)
            return copy.deepcopy(self._get(self.conf.CRD_KIND, namespace, name))

    def list_clusters(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(obj) for (kind, ns, _), obj in sorted(self._objects.items())
                if kind == self.conf.CRD_KIND and (namespace is None or ns == namespace)
            ]

    def create_cluster(self, body: Dict[str, Any]) -> Dict[str, Any]:
        body = copy.deepcopy(body)
        body.setdefault("apiVersion", self.conf.api_version)
        body["kind"] = self.conf.CRD_KIND
        with self._lock:
            obj = self._insert(body)
            self._record("create", obj["kind"], obj["metadata"]["namespace"], obj["metadata"]["name"])
            snapshot = copy.deepcopy(obj)
        self._emit([(ADDED, snapshot)])
        return copy.deepcopy(snapshot)

    def update_cluster_spec(self, namespace: str, name: str, spec: Dict[str, Any]) -> Dict[str, Any]:
        """A user edit of the spec subtree."""
        with self._lock:
            obj = self._get(self.conf.CRD_KIND, namespace, name)
            self._record("update", obj["kind"], namespace, name)
            obj["spec"] = copy.deepcopy(spec)
            obj["metadata"]["generation"] += 1
            obj["metadata"]["resourceVersion"] = self._next_version()
            snapshot = copy.deepcopy(obj)
        self._emit([(MODIFIED, snapshot)])
        return copy.deepcopy(snapshot)

    def update_cluster_status(self, body: Dict[str, Any]) -> Dict[str, Any]:
        meta = body["metadata"]
        with self._lock:
            obj = self._get(self.conf.CRD_KIND, meta["namespace"], meta["name"])
            self._check_version(obj, meta.get("resourceVersion"))
            self._record("update_status", obj["kind"], meta["namespace"], meta["name"])
            obj["status"] = copy.deepcopy(body.get("status") or {})
            obj["metadata"]["resourceVersion"] = self._next_version()
            snapshot = copy.deepcopy(obj)
        self._emit([(MODIFIED, snapshot)])
        return copy.deepcopy(snapshot)

    def delete_cluster(self, namespace: str, name: str) -> bool:
        """Delete a cluster and, like the garbage collector, everything it owns."""
        with self._lock:
            self._record("delete", self.conf.CRD_KIND, namespace, name)
            obj = self._objects.pop((self.conf.CRD_KIND, namespace, name), None)
            if obj is None:
                return False
            uid = obj["metadata"]["uid"]
            deleted = [(DELETED, obj)]
            for key, child in list(self._objects.items()):
                owners = child["metadata"].get("ownerReferences") or []
                if any(ref.get("uid") == uid for ref in owners):
                    deleted.append((DELETED, self._objects.pop(key)))
        self._emit(deleted)
        return True

    # --- Owned workload objects ------------------------------------------

    def get_object(self, kind: str, namespace: str, name: str) -> Dict[str, Any]:
        with self._lock:
            self._record("get", kind, namespace, name)
            return copy.deepcopy(self._get(kind, namespace, name))

    def create_object(self, body: Dict[str, Any]) -> Dict[str, Any]:
        body = copy.deepcopy(body)
        with self._lock:
            obj = self._insert(body)
            self._record("create", obj["kind"], obj["metadata"]["namespace"], obj["metadata"]["name"])
            snapshot = copy.deepcopy(obj)
        self._emit([(ADDED, snapshot)])
        return copy.deepcopy(snapshot)

    def patch_object(self, kind: str, namespace: str, name: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        patch = copy.deepcopy(patch)
        expected = (patch.get("metadata") or {}).pop("resourceVersion", None)
        with self._lock:
            obj = self._get(kind, namespace, name)
            self._check_version(obj, expected)
            self._record("patch", kind, namespace, name)
            merged = apply_merge_patch(obj, patch)
            if merged.get("spec") != obj.get("spec"):
                merged["metadata"]["generation"] = obj["metadata"]["generation"] + 1
            merged["metadata"]["resourceVersion"] = self._next_version()
            self._objects[(kind, namespace, name)] = merged
            snapshot = copy.deepcopy(merged)
        self._emit([(MODIFIED, snapshot)])
        return copy.deepcopy(snapshot)

    def set_workload_status(self, kind: str, namespace: str, name: str, ready_replicas: int,
                            observed_generation: Optional[int] = None) -> Dict[str, Any]:
        """What the workload controllers would report; defaults to the current generation."""
        with self._lock:
            obj = self._get(kind, namespace, name)
            generation = obj["metadata"]["generation"]
            obj["status"] = {
                "observedGeneration": generation if observed_generation is None else observed_generation,
                "replicas": obj["spec"].get("replicas", 0),
                "readyReplicas": ready_replicas,
                "updatedReplicas": ready_replicas,
            }
            obj["metadata"]["resourceVersion"] = self._next_version()
            snapshot = copy.deepcopy(obj)
        self._emit([(MODIFIED, snapshot)])
        return copy.deepcopy(snapshot)

    def objects(self, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(o) for (k, _, _), o in sorted(self._objects.items())
                    if kind is None or k == kind]
