"""
Kubernetes service layer — abstracts all K8s API interactions.

Design principles:
  - One store interface for the cluster CRD and the workload objects it owns
  - Conditional writes: every update carries the last-read resourceVersion
  - Clean error handling: translates K8s API exceptions to domain errors
  - Never deletes workload objects (ownerReferences cascade does that)
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import urllib3
from kubernetes import client, config
from kubernetes.client import ApiException

from vmcluster_operator.config import Settings, settings as default_settings
from vmcluster_operator.errors import (
    ConflictError, InvalidObjectError, NotFoundError, TransientStoreError,
)

logger = logging.getLogger("kubernetes_service")

_k8s_loaded = False


def _ensure_k8s(conf: Settings):
    """Load Kubernetes config exactly once."""
    global _k8s_loaded
    if _k8s_loaded:
        return
    if conf.IN_CLUSTER:
        config.load_incluster_config()
    else:
        config.load_kube_config(config_file=conf.KUBECONFIG or None)
    _k8s_loaded = True


def translate_api_error(e: Exception, what: str) -> Exception:
    """Map an API/transport failure onto the operator's error taxonomy."""
    if isinstance(e, ApiException):
        if e.status == 404:
            return NotFoundError(f"{what} not found")
        if e.status == 409:
            return ConflictError(f"{what}: conflict ({e.reason})")
        if e.status == 422:
            return InvalidObjectError(f"{what} rejected as invalid: {e.body or e.reason}")
        return TransientStoreError(f"{what}: API error {e.status} ({e.reason})")
    return TransientStoreError(f"{what}: {e}")


def _call(what: str, fn: Callable, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except (ApiException, urllib3.exceptions.HTTPError, OSError) as e:
        raise translate_api_error(e, what) from e


MERGE_PATCH = "application/merge-patch+json"

# Workload kinds the operator manages: (api group, read, create, patch)
_KIND_METHODS = {
    "StatefulSet": ("apps", "read_namespaced_stateful_set",
                    "create_namespaced_stateful_set", "patch_namespaced_stateful_set"),
    "Deployment": ("apps", "read_namespaced_deployment",
                   "create_namespaced_deployment", "patch_namespaced_deployment"),
    "Service": ("core", "read_namespaced_service",
                "create_namespaced_service", "patch_namespaced_service"),
}


class KubernetesResourceStore:
    """Resource store backed by the Kubernetes API server."""

    def __init__(self, conf: Settings = default_settings):
        self.conf = conf
        _ensure_k8s(conf)
        self._api_client = client.ApiClient()
        self._apis = {
            "apps": client.AppsV1Api(self._api_client),
            "core": client.CoreV1Api(self._api_client),
        }
        self._custom = client.CustomObjectsApi(self._api_client)

    def _to_dict(self, obj) -> Dict[str, Any]:
        return self._api_client.sanitize_for_serialization(obj)

    def _crd(self):
        return self.conf.CRD_GROUP, self.conf.CRD_VERSION

    # --- VMCluster ---------------------------------------------------------

    def get_cluster(self, namespace: str, name: str) -> Dict[str, Any]:
        group, version = self._crd()
        return _call(
            f"{self.conf.CRD_KIND} {namespace}/{name}",
            self._custom.get_namespaced_custom_object,
            group, version, namespace, self.conf.CRD_PLURAL, name,
        )

    def list_clusters(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        group, version = self._crd()
        if namespace:
            result = _call(f"list {self.conf.CRD_PLURAL}", self._custom.list_namespaced_custom_object,
                           group, version, namespace, self.conf.CRD_PLURAL)
        else:
            result = _call(f"list {self.conf.CRD_PLURAL}", self._custom.list_cluster_custom_object,
                           group, version, self.conf.CRD_PLURAL)
        return result.get("items", [])

    def create_cluster(self, body: Dict[str, Any]) -> Dict[str, Any]:
        group, version = self._crd()
        meta = body["metadata"]
        return _call(
            f"{self.conf.CRD_KIND} {meta['namespace']}/{meta['name']}",
            self._custom.create_namespaced_custom_object,
            group, version, meta["namespace"], self.conf.CRD_PLURAL, body,
        )

    def delete_cluster(self, namespace: str, name: str) -> bool:
        """Delete a VMCluster. Returns False if it was already gone."""
        group, version = self._crd()
        try:
            _call(f"{self.conf.CRD_KIND} {namespace}/{name}",
                  self._custom.delete_namespaced_custom_object,
                  group, version, namespace, self.conf.CRD_PLURAL, name)
        except NotFoundError:
            return False
        logger.info(f"{self.conf.CRD_KIND} {namespace}/{name} deletion initiated")
        return True

    def update_cluster_status(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Replace the status subresource. ``body`` must carry the
        resourceVersion it was read at; a stale one raises ConflictError.
        """
        group, version = self._crd()
        meta = body["metadata"]
        return _call(
            f"{self.conf.CRD_KIND} {meta['namespace']}/{meta['name']} status",
            self._custom.replace_namespaced_custom_object_status,
            group, version, meta["namespace"], self.conf.CRD_PLURAL, meta["name"], body,
        )

    # --- Owned workload objects ---------------------------------------------

    def _method(self, kind: str, index: int):
        group = _KIND_METHODS[kind][0]
        return getattr(self._apis[group], _KIND_METHODS[kind][index])

    def get_object(self, kind: str, namespace: str, name: str) -> Dict[str, Any]:
        obj = _call(f"{kind} {namespace}/{name}", self._method(kind, 1), name, namespace)
        return self._to_dict(obj)

    def create_object(self, body: Dict[str, Any]) -> Dict[str, Any]:
        kind, meta = body["kind"], body["metadata"]
        obj = _call(f"{kind} {meta['namespace']}/{meta['name']}", self._method(kind, 2),
                    meta["namespace"], body)
        logger.info(f"{kind} {meta['namespace']}/{meta['name']} created")
        return self._to_dict(obj)

    def patch_object(self, kind: str, namespace: str, name: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """
        JSON merge-patch (RFC 7386) an object; a metadata.resourceVersion in
        ``patch`` makes it conditional. The client would otherwise send a dict
        body as a strategic merge patch, which merges lists by key.
        """
        obj = _call(f"{kind} {namespace}/{name}", self._method(kind, 3), name, namespace, patch,
                    _content_type=MERGE_PATCH)
        logger.info(f"{kind} {namespace}/{name} patched")
        return self._to_dict(obj)
