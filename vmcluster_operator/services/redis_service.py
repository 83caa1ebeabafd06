"""
Redis Streams publishing of cluster status transitions.

Optional: with REDIS_URL unset, or Redis down, events are dropped and the
reconcile loop carries on. Dashboards read the per-cluster stream or
subscribe to the global channel.
"""

import json
import logging
from datetime import datetime, timezone
from typing import List, Optional

import redis

from vmcluster_operator.config import settings
from vmcluster_operator.models import ClusterKey, ClusterStatus

logger = logging.getLogger("redis_service")

STREAM_MAXLEN = 100
CHANNEL = "vmcluster:events"

_redis_client: Optional[redis.Redis] = None


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def stream_key(key: ClusterKey) -> str:
    return f"vmcluster:events:{key}"


def get_redis() -> Optional[redis.Redis]:
    """Lazy-init Redis client. Returns None if unavailable."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    if not settings.REDIS_URL:
        return None
    try:
        client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
        client.ping()
    except redis.RedisError as e:
        logger.warning(f"Redis unavailable (non-fatal): {e}")
        return None
    logger.info(f"Redis connected: {settings.REDIS_URL}")
    _redis_client = client
    return _redis_client


def publish_event(key: ClusterKey, event_type: str, message: str, phase: str = "") -> None:
    """Publish an event to the cluster's stream and the global channel."""
    r = get_redis()
    if not r:
        return
    entry = {
        "type": event_type,
        "message": message,
        "phase": phase,
        "timestamp": _now(),
        "cluster": str(key),
    }
    try:
        r.xadd(stream_key(key), entry, maxlen=STREAM_MAXLEN)
        r.publish(CHANNEL, json.dumps(entry))
    except redis.RedisError as e:
        logger.debug(f"Redis publish failed (non-fatal): {e}")


def publish_transition(key: ClusterKey, old: ClusterStatus, new: ClusterStatus, reason: str) -> None:
    """StatusMachine transition hook."""
    message = f"{old.value} -> {new.value}"
    if reason:
        message = f"{message}: {reason}"
    publish_event(key, f"STATUS_{new.name}", message, new.value)


def read_events(key: ClusterKey, count: int = 50) -> List[dict]:
    r = get_redis()
    if not r:
        return []
    try:
        entries = r.xrange(stream_key(key), count=count)
    except redis.RedisError as e:
        logger.debug(f"Redis stream read failed: {e}")
        return []
    return [dict(data, id=entry_id) for entry_id, data in entries]
