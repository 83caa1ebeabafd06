"""
In-process event bus.

Watch notifications for the VMCluster CRD and for every owned workload kind
are published here; each subscription maps a notification onto the
identities of the clusters that must be reconciled and enqueues them.

  VMCluster               → its own identity, unless only its status changed
  StatefulSet/Deployment/
  Service                 → the controlling owner of kind VMCluster, if any
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from vmcluster_operator.models import ClusterKey

logger = logging.getLogger("events")

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"

OWNED_KINDS = ("StatefulSet", "Deployment", "Service")


@dataclass(frozen=True)
class Notification:
    """One watch event. For DELETED, ``obj`` is the tombstone (last known state)."""
    kind: str
    type: str
    obj: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_watch_event(cls, kind: str, event: Dict[str, Any]) -> "Notification":
        # kopf reports the initial listing with type None
        return cls(kind=kind, type=event.get("type") or ADDED, obj=event.get("object") or {})

    @property
    def is_tombstone(self) -> bool:
        return self.type == DELETED

    @property
    def namespace(self) -> str:
        return (self.obj.get("metadata") or {}).get("namespace", "default")


Mapper = Callable[[Notification], List[ClusterKey]]


def enqueue_for_object(notification: Notification) -> List[ClusterKey]:
    name = (notification.obj.get("metadata") or {}).get("name")
    if not name:
        return []
    return [ClusterKey(notification.namespace, name)]


class GenerationChanged:
    """
    Drop MODIFIED notifications whose metadata.generation was already seen.

    Status subresource writes never bump generation, so the operator's own
    status updates (including updateFailCount) do not requeue the cluster
    and cannot cancel a pending backoff. ADDED and DELETED always pass.
    """

    def __init__(self, mapper: Mapper):
        self.mapper = mapper
        self._seen: Dict[ClusterKey, int] = {}
        self._lock = threading.Lock()

    def __call__(self, notification: Notification) -> List[ClusterKey]:
        keys = self.mapper(notification)
        generation = (notification.obj.get("metadata") or {}).get("generation")
        with self._lock:
            if notification.is_tombstone:
                for key in keys:
                    self._seen.pop(key, None)
                return keys
            changed = []
            for key in keys:
                previous = self._seen.get(key)
                self._seen[key] = generation
                if notification.type != MODIFIED or generation is None or previous != generation:
                    changed.append(key)
            return changed


def enqueue_for_owner(owner_kind: str, owner_group: str) -> Mapper:
    """Map an owned object to its controlling owner of ``owner_kind``."""

    def mapper(notification: Notification) -> List[ClusterKey]:
        refs = (notification.obj.get("metadata") or {}).get("ownerReferences") or []
        for ref in refs:
            if not ref.get("controller"):
                continue
            group = ref.get("apiVersion", "").split("/")[0]
            if ref.get("kind") == owner_kind and group == owner_group:
                return [ClusterKey(notification.namespace, ref["name"])]
        return []

    return mapper


class EventBus:
    """
    Fans notifications out to the work queue.

    Must be created inside the event loop that owns the queue. ``publish``
    may be called from any thread; keys are always added on that loop.
    """

    def __init__(self, queue, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.queue = queue
        self._loop = loop or asyncio.get_running_loop()
        self._subscriptions: Dict[str, List[Mapper]] = {}

    def subscribe(self, kind: str, mapper: Mapper) -> None:
        self._subscriptions.setdefault(kind, []).append(mapper)

    def publish(self, notification: Notification) -> List[ClusterKey]:
        keys: List[ClusterKey] = []
        for mapper in self._subscriptions.get(notification.kind, []):
            keys.extend(mapper(notification))
        for key in keys:
            logger.debug(f"{notification.type} {notification.kind} → enqueue {key}")
            self._deliver(key)
        return keys

    def _deliver(self, key: ClusterKey) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self.queue.add(key)
        else:
            self._loop.call_soon_threadsafe(self.queue.add, key)


def register_cluster_watches(bus: EventBus, cluster_kind: str, cluster_group: str) -> None:
    """The cluster CRD itself plus every kind it owns."""
    bus.subscribe(cluster_kind, GenerationChanged(enqueue_for_object))
    owner_mapper = enqueue_for_owner(cluster_kind, cluster_group)
    for kind in OWNED_KINDS:
        bus.subscribe(kind, owner_mapper)
