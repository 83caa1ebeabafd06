"""
Sub-resource builder — turns a validated VMCluster into the Kubernetes
objects that realize each tier.

  vmstorage → StatefulSet + headless Service (+ PVCs via volumeClaimTemplates)
  vmselect  → StatefulSet + headless Service
  vminsert  → Deployment  + ClusterIP Service

Pure and deterministic: the same cluster always yields the same manifests,
so the convergence engine can diff them against live objects without
generating spurious patches. Empty fields are omitted for the same reason.
"""
from typing import Any, Dict, List, Optional

from vmcluster_operator.config import MANAGED_BY, MANAGED_BY_LABEL, Settings, settings as default_settings
from vmcluster_operator.errors import BuildError
from vmcluster_operator.models import (
    StorageSpec, Tier, TierSpec, VMCluster, VMInsert, VMSelect, VMStorage, tier_object_name,
)

STORAGE_VOLUME_NAME = "vmstorage-db"
SELECT_CACHE_VOLUME_NAME = "vmselect-cachedir"
SECRETS_DIR = "/etc/vm/secrets"
CONFIGMAPS_DIR = "/etc/vm/configmaps"


# ---------------------------------------------------------------------------
# Labels, annotations, ownership
# ---------------------------------------------------------------------------

def selector_labels(tier: Tier, cluster_name: str) -> Dict[str, str]:
    return {
        "app.kubernetes.io/name": tier.value,
        "app.kubernetes.io/instance": cluster_name,
        "app.kubernetes.io/component": "monitoring",
        MANAGED_BY_LABEL: MANAGED_BY,
    }


def object_labels(cluster: VMCluster, tier: Tier) -> Dict[str, str]:
    """Cluster labels plus selector labels; selector labels always win."""
    labels = dict(cluster.metadata.labels)
    labels.update(selector_labels(tier, cluster.metadata.name))
    return labels


def pod_labels(cluster: VMCluster, tier: Tier, tier_spec: TierSpec) -> Dict[str, str]:
    labels = {}
    if tier_spec.podMetadata is not None:
        labels.update(tier_spec.podMetadata.labels)
    # podMetadata must never override the selector, or the workload loses its pods
    labels.update(selector_labels(tier, cluster.metadata.name))
    return labels


def cluster_annotations(cluster: VMCluster) -> Dict[str, str]:
    return {
        k: v for k, v in cluster.metadata.annotations.items()
        if not k.startswith("kubectl.kubernetes.io/")
    }


def owner_references(cluster: VMCluster, conf: Settings = default_settings) -> List[Dict[str, Any]]:
    return [{
        "apiVersion": cluster.apiVersion or conf.api_version,
        "kind": conf.CRD_KIND,
        "name": cluster.metadata.name,
        "uid": cluster.metadata.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _compact(d: Dict[str, Any]) -> Dict[str, Any]:
    """Drop unset values so desired manifests only carry managed fields."""
    return {
        k: v for k, v in d.items()
        if v is not None and v is not False and v != "" and not (isinstance(v, (list, dict)) and not v)
    }


def _port(value: str, field: str) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise BuildError(f"{field}: port {value!r} is not a number")
    if not 0 < port < 65536:
        raise BuildError(f"{field}: port {port} is out of range")
    return port


def _image(tier: Tier, tier_spec: TierSpec, conf: Settings) -> str:
    defaults = {
        Tier.STORAGE: conf.VMSTORAGE_IMAGE,
        Tier.SELECT: conf.VMSELECT_IMAGE,
        Tier.INSERT: conf.VMINSERT_IMAGE,
    }
    repository = tier_spec.image.repository or defaults[tier]
    tag = tier_spec.image.tag or conf.VM_IMAGE_TAG
    return f"{repository}:{tag}"


def storage_node_addrs(cluster: VMCluster, port: str) -> List[str]:
    """Stable per-pod DNS names of the storage StatefulSet, one per replica."""
    storage = cluster.spec.vmstorage
    base = tier_object_name(Tier.STORAGE, storage, cluster.metadata.name)
    ns = cluster.metadata.namespace
    return [f"{base}-{i}.{base}.{ns}.svc:{port}" for i in range(storage.replicaCount)]


def _common_args(tier_spec: TierSpec) -> List[str]:
    args = []
    if tier_spec.logLevel:
        args.append(f"-loggerLevel={tier_spec.logLevel}")
    if tier_spec.logFormat:
        args.append(f"-loggerFormat={tier_spec.logFormat}")
    return args


def _extra_args(tier_spec: TierSpec) -> List[str]:
    return [f"-{k}={v}" for k, v in sorted(tier_spec.extraArgs.items())]


def _secret_and_configmap_volumes(tier_spec: TierSpec):
    volumes, mounts = [], []
    for name in tier_spec.secrets:
        volumes.append({"name": f"secret-{name}", "secret": {"secretName": name}})
        mounts.append({"name": f"secret-{name}", "mountPath": f"{SECRETS_DIR}/{name}", "readOnly": True})
    for name in tier_spec.configMaps:
        volumes.append({"name": f"configmap-{name}", "configMap": {"name": name}})
        mounts.append({"name": f"configmap-{name}", "mountPath": f"{CONFIGMAPS_DIR}/{name}", "readOnly": True})
    return volumes, mounts


def _claim_templates(volume_name: str, storage: Optional[StorageSpec]) -> List[Dict[str, Any]]:
    if storage is None or storage.volumeClaimTemplate is None:
        return []
    template = storage.volumeClaimTemplate
    metadata = dict(template.get("metadata") or {})
    metadata["name"] = volume_name
    return [{"metadata": metadata, "spec": template.get("spec") or {}}]


def _data_volume(volume_name: str, storage: Optional[StorageSpec]) -> List[Dict[str, Any]]:
    """An emptyDir data volume, unless a claim template provides it."""
    if storage is not None and storage.volumeClaimTemplate is not None:
        return []
    empty_dir = storage.emptyDir if storage is not None and storage.emptyDir else {}
    return [{"name": volume_name, "emptyDir": empty_dir}]


def _pod_template(cluster: VMCluster, tier: Tier, tier_spec: TierSpec, container: Dict[str, Any],
                  volumes: List[Dict[str, Any]],
                  termination_grace: Optional[int] = None) -> Dict[str, Any]:
    annotations = tier_spec.podMetadata.annotations if tier_spec.podMetadata else {}
    pod_spec = _compact({
        "containers": [container] + list(tier_spec.containers),
        "initContainers": list(tier_spec.initContainers),
        "volumes": volumes + list(tier_spec.volumes),
        "serviceAccountName": tier_spec.serviceAccountName,
        "affinity": tier_spec.affinity,
        "tolerations": list(tier_spec.tolerations),
        "securityContext": tier_spec.securityContext,
        "priorityClassName": tier_spec.priorityClassName,
        "hostNetwork": tier_spec.hostNetwork,
        "dnsPolicy": tier_spec.dnsPolicy,
        "schedulerName": tier_spec.schedulerName,
        "imagePullSecrets": list(cluster.spec.imagePullSecrets),
        "terminationGracePeriodSeconds": termination_grace,
    })
    return {
        "metadata": _compact({
            "labels": pod_labels(cluster, tier, tier_spec),
            "annotations": dict(annotations),
        }),
        "spec": pod_spec,
    }


def _container(tier: Tier, tier_spec: TierSpec, args: List[str], ports: List[Dict[str, Any]],
               mounts: List[Dict[str, Any]], conf: Settings) -> Dict[str, Any]:
    return _compact({
        "name": tier.value,
        "image": _image(tier, tier_spec, conf),
        "imagePullPolicy": tier_spec.image.pullPolicy,
        "args": args,
        "ports": ports,
        "env": list(tier_spec.extraEnvs),
        "resources": dict(tier_spec.resources),
        "volumeMounts": mounts + list(tier_spec.volumeMounts),
        "readinessProbe": {
            "httpGet": {"path": "/health", "port": "http"},
            "initialDelaySeconds": 5,
            "periodSeconds": 5,
        },
    })


def _metadata(cluster: VMCluster, tier: Tier, name: str, conf: Settings) -> Dict[str, Any]:
    return _compact({
        "name": name,
        "namespace": cluster.metadata.namespace,
        "labels": object_labels(cluster, tier),
        "annotations": cluster_annotations(cluster),
        "ownerReferences": owner_references(cluster, conf),
    })


def _service(cluster: VMCluster, tier: Tier, name: str, ports: List[Dict[str, Any]],
             headless: bool, conf: Settings) -> Dict[str, Any]:
    spec = {
        "selector": selector_labels(tier, cluster.metadata.name),
        "ports": [
            {"name": p["name"], "port": p["containerPort"], "targetPort": p["name"], "protocol": "TCP"}
            for p in ports
        ],
    }
    if headless:
        spec["clusterIP"] = "None"
    else:
        spec["type"] = "ClusterIP"
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(cluster, tier, name, conf),
        "spec": spec,
    }


# ---------------------------------------------------------------------------
# Tiers
# ---------------------------------------------------------------------------

def _build_storage(cluster: VMCluster, storage: VMStorage, conf: Settings) -> List[Dict[str, Any]]:
    name = tier_object_name(Tier.STORAGE, storage, cluster.metadata.name)
    http = _port(storage.port, "vmstorage.port")
    insert_port = _port(storage.vmInsertPort, "vmstorage.vmInsertPort")
    select_port = _port(storage.vmSelectPort, "vmstorage.vmSelectPort")

    args = [
        f"-retentionPeriod={cluster.spec.retentionPeriod}",
        f"-storageDataPath={storage.storageDataPath}",
        f"-httpListenAddr=:{http}",
        f"-vminsertAddr=:{insert_port}",
        f"-vmselectAddr=:{select_port}",
    ] + _common_args(storage) + _extra_args(storage)
    ports = [
        {"name": "http", "containerPort": http, "protocol": "TCP"},
        {"name": "vminsert", "containerPort": insert_port, "protocol": "TCP"},
        {"name": "vmselect", "containerPort": select_port, "protocol": "TCP"},
    ]
    extra_volumes, extra_mounts = _secret_and_configmap_volumes(storage)
    volumes = _data_volume(STORAGE_VOLUME_NAME, storage.storage) + extra_volumes
    mounts = [{"name": STORAGE_VOLUME_NAME, "mountPath": storage.storageDataPath}] + extra_mounts

    container = _container(Tier.STORAGE, storage, args, ports, mounts, conf)
    statefulset = {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": _metadata(cluster, Tier.STORAGE, name, conf),
        "spec": _compact({
            "replicas": storage.replicaCount,
            "serviceName": name,
            "selector": {"matchLabels": selector_labels(Tier.STORAGE, cluster.metadata.name)},
            "template": _pod_template(cluster, Tier.STORAGE, storage, container, volumes,
                                      storage.terminationGracePeriodSeconds),
            "volumeClaimTemplates": _claim_templates(STORAGE_VOLUME_NAME, storage.storage),
        }),
    }
    return [statefulset, _service(cluster, Tier.STORAGE, name, ports, headless=True, conf=conf)]


def _build_select(cluster: VMCluster, select: VMSelect, conf: Settings) -> List[Dict[str, Any]]:
    name = tier_object_name(Tier.SELECT, select, cluster.metadata.name)
    http = _port(select.port, "vmselect.port")
    storage_port = cluster.spec.vmstorage.vmSelectPort

    args = [f"-httpListenAddr=:{http}"]
    if select.replicaCount and cluster.spec.vmstorage.replicaCount:
        args.append(f"-storageNode={','.join(storage_node_addrs(cluster, storage_port))}")
    volumes, mounts = [], []
    claim_templates = []
    if select.cacheMountPath:
        args.append(f"-cacheDataPath={select.cacheMountPath}")
        volumes = _data_volume(SELECT_CACHE_VOLUME_NAME, select.persistentVolume)
        claim_templates = _claim_templates(SELECT_CACHE_VOLUME_NAME, select.persistentVolume)
        mounts = [{"name": SELECT_CACHE_VOLUME_NAME, "mountPath": select.cacheMountPath}]
    args += _common_args(select) + _extra_args(select)
    ports = [{"name": "http", "containerPort": http, "protocol": "TCP"}]
    extra_volumes, extra_mounts = _secret_and_configmap_volumes(select)

    container = _container(Tier.SELECT, select, args, ports, mounts + extra_mounts, conf)
    statefulset = {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": _metadata(cluster, Tier.SELECT, name, conf),
        "spec": _compact({
            "replicas": select.replicaCount,
            "serviceName": name,
            "selector": {"matchLabels": selector_labels(Tier.SELECT, cluster.metadata.name)},
            "template": _pod_template(cluster, Tier.SELECT, select, container, volumes + extra_volumes),
            "volumeClaimTemplates": claim_templates,
        }),
    }
    return [statefulset, _service(cluster, Tier.SELECT, name, ports, headless=True, conf=conf)]


def _build_insert(cluster: VMCluster, insert: VMInsert, conf: Settings) -> List[Dict[str, Any]]:
    name = tier_object_name(Tier.INSERT, insert, cluster.metadata.name)
    http = _port(insert.port, "vminsert.port")
    storage_port = cluster.spec.vmstorage.vmInsertPort

    args = [f"-httpListenAddr=:{http}"]
    if insert.replicaCount and cluster.spec.vmstorage.replicaCount:
        args.append(f"-storageNode={','.join(storage_node_addrs(cluster, storage_port))}")
    if cluster.spec.replicationFactor:
        args.append(f"-replicationFactor={cluster.spec.replicationFactor}")
    args += _common_args(insert) + _extra_args(insert)
    ports = [{"name": "http", "containerPort": http, "protocol": "TCP"}]
    volumes, mounts = _secret_and_configmap_volumes(insert)

    container = _container(Tier.INSERT, insert, args, ports, mounts, conf)
    deployment = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": _metadata(cluster, Tier.INSERT, name, conf),
        "spec": {
            "replicas": insert.replicaCount,
            "selector": {"matchLabels": selector_labels(Tier.INSERT, cluster.metadata.name)},
            "template": _pod_template(cluster, Tier.INSERT, insert, container, volumes),
        },
    }
    return [deployment, _service(cluster, Tier.INSERT, name, ports, headless=False, conf=conf)]


def check_cluster_buildable(cluster: VMCluster) -> None:
    """Cross-tier constraints the schema cannot express."""
    spec = cluster.spec
    if spec.vmstorage is None:
        for tier in (Tier.SELECT, Tier.INSERT):
            if spec.tier(tier) is not None:
                raise BuildError(f"{tier.value} requires a vmstorage tier")
        return
    if spec.replicationFactor and spec.vminsert is not None:
        if spec.replicationFactor > spec.vmstorage.replicaCount:
            raise BuildError(
                f"replicationFactor {spec.replicationFactor} exceeds "
                f"vmstorage replicaCount {spec.vmstorage.replicaCount}"
            )


def build_tier_objects(cluster: VMCluster, tier: Tier,
                       conf: Settings = default_settings) -> List[Dict[str, Any]]:
    """
    Build the desired objects for one tier. The workload-set (StatefulSet or
    Deployment) is always first. Returns [] when the tier is not declared.
    Raises BuildError for a spec that cannot be realized.
    """
    check_cluster_buildable(cluster)
    tier_spec = cluster.spec.tier(tier)
    if tier_spec is None:
        return []
    if tier == Tier.STORAGE:
        return _build_storage(cluster, tier_spec, conf)
    if tier == Tier.SELECT:
        return _build_select(cluster, tier_spec, conf)
    return _build_insert(cluster, tier_spec, conf)
