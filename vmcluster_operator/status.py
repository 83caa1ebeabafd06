"""
Cluster status state machine.

    expanding ──all tiers ready──▶ operational
        ▲  │                           │
        │  └─validation/build error─┐  │ drift (tier not ready)
        │                           ▼  ▼
        └──────spec edited──────── failed / expanding

Status is derived: every pass recomputes it from the observed tiers, and
the persisted subtree is only a cache for operators. A missing status is
read as ``expanding``.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from vmcluster_operator.models import ClusterKey, ClusterStatus, Tier

logger = logging.getLogger("status")

TransitionHook = Callable[[ClusterKey, ClusterStatus, ClusterStatus, str], None]


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def current_status(status: Optional[dict]) -> ClusterStatus:
    """Read clusterStatus from a persisted subtree; absent or unknown → expanding."""
    value = (status or {}).get("clusterStatus") or ClusterStatus.EXPANDING.value
    try:
        return ClusterStatus(value)
    except ValueError:
        logger.warning(f"Unknown clusterStatus {value!r}, treating as expanding")
        return ClusterStatus.EXPANDING


class StatusMachine:
    """Computes and records cluster status transitions."""

    def __init__(self, on_transition: Optional[TransitionHook] = None,
                 clock: Callable[[], str] = _now):
        self.on_transition = on_transition
        self.clock = clock

    @staticmethod
    def evaluate(tiers_ready: Dict[Tier, bool]) -> ClusterStatus:
        """Next state of a pass that finished without error."""
        if all(tiers_ready.values()):
            return ClusterStatus.OPERATIONAL
        return ClusterStatus.EXPANDING

    def next_status(self, previous: Optional[dict], target: ClusterStatus,
                    reason: str = "", storage_status: Optional[ClusterStatus] = None) -> Optional[dict]:
        """
        Build the status subtree for ``target``.

        Returns None when nothing but lastSync would change, so a converged
        cluster is never rewritten.
        """
        previous = dict(previous or {})

        new = {
            "updateFailCount": previous.get("updateFailCount", 0),
            "lastSync": previous.get("lastSync", ""),
            "clusterStatus": target.value,
            "reason": reason if target == ClusterStatus.FAILED else "",
            "storageStatus": dict(previous.get("storageStatus") or {"status": ""}),
        }
        if storage_status is not None:
            new["storageStatus"] = {"status": storage_status.value}
        if target == ClusterStatus.OPERATIONAL:
            new["updateFailCount"] = 0

        if _without_last_sync(new) == _without_last_sync(previous):
            return None
        if target != ClusterStatus.FAILED:
            new["lastSync"] = self.clock()
        return new

    def record_failure(self, previous: Optional[dict]) -> dict:
        """Bump updateFailCount; clusterStatus is left exactly as it was."""
        new = dict(previous or {})
        new["updateFailCount"] = int(new.get("updateFailCount", 0)) + 1
        new.setdefault("clusterStatus", ClusterStatus.EXPANDING.value)
        return new

    def notify(self, key: ClusterKey, previous: Optional[dict], new: dict) -> None:
        """Log and publish a persisted change of clusterStatus."""
        old_state = current_status(previous)
        new_state = ClusterStatus(new["clusterStatus"])
        if old_state == new_state and (previous or {}).get("clusterStatus"):
            return
        reason = new.get("reason", "")
        if new_state == ClusterStatus.FAILED:
            logger.warning(f"[{key}] {old_state.value} -> {new_state.value}: {reason}")
        else:
            logger.info(f"[{key}] {old_state.value} -> {new_state.value}")
        if self.on_transition is not None:
            self.on_transition(key, old_state, new_state, reason)


def _without_last_sync(status: dict) -> dict:
    normalized = {
        "updateFailCount": status.get("updateFailCount", 0),
        "clusterStatus": status.get("clusterStatus", ""),
        "reason": status.get("reason", ""),
        "storageStatus": dict(status.get("storageStatus") or {"status": ""}),
    }
    return normalized
