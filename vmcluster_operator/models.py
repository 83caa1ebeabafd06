"""
Pydantic models for the VMCluster custom resource.

Field names mirror the CRD's camelCase JSON so raw Kubernetes dicts parse
directly. Unknown fields are preserved (``extra="allow"``) so a newer CRD
does not break an older operator.
"""
from enum import Enum
from typing import Any, Dict, List, Literal, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field


class ClusterKey(NamedTuple):
    """Namespace-qualified identity of a VMCluster."""
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class ClusterStatus(str, Enum):
    EXPANDING = "expanding"
    OPERATIONAL = "operational"
    FAILED = "failed"


class Tier(str, Enum):
    STORAGE = "vmstorage"
    SELECT = "vmselect"
    INSERT = "vminsert"


class _Model(BaseModel):
    model_config = ConfigDict(extra="allow")


class Image(_Model):
    repository: str = ""
    tag: str = ""
    pullPolicy: str = "IfNotPresent"


class EmbeddedObjectMetadata(_Model):
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)


class StorageSpec(_Model):
    """Persistent volume settings: either an emptyDir or a claim template."""
    emptyDir: Optional[Dict[str, Any]] = None
    volumeClaimTemplate: Optional[Dict[str, Any]] = None


class TierSpec(_Model):
    name: str = ""
    podMetadata: Optional[EmbeddedObjectMetadata] = None
    image: Image = Field(default_factory=Image)
    replicaCount: int = Field(default=1, ge=0)
    resources: Dict[str, Any] = Field(default_factory=dict)
    affinity: Optional[Dict[str, Any]] = None
    tolerations: List[Dict[str, Any]] = Field(default_factory=list)
    securityContext: Optional[Dict[str, Any]] = None
    serviceAccountName: str = ""
    containers: List[Dict[str, Any]] = Field(default_factory=list)
    initContainers: List[Dict[str, Any]] = Field(default_factory=list)
    volumes: List[Dict[str, Any]] = Field(default_factory=list)
    volumeMounts: List[Dict[str, Any]] = Field(default_factory=list)
    priorityClassName: str = ""
    hostNetwork: bool = False
    dnsPolicy: str = ""
    schedulerName: str = ""
    logLevel: Optional[Literal["INFO", "WARN", "ERROR", "FATAL", "PANIC"]] = None
    logFormat: Optional[Literal["default", "json"]] = None
    extraArgs: Dict[str, str] = Field(default_factory=dict)
    extraEnvs: List[Dict[str, Any]] = Field(default_factory=list)
    secrets: List[str] = Field(default_factory=list)
    configMaps: List[str] = Field(default_factory=list)
    port: str = ""


class VMStorage(TierSpec):
    port: str = "8482"
    storageDataPath: str = "/vmstorage-data"
    storage: Optional[StorageSpec] = None
    terminationGracePeriodSeconds: Optional[int] = Field(default=None, ge=0)
    vmInsertPort: str = "8400"
    vmSelectPort: str = "8401"


class VMSelect(TierSpec):
    port: str = "8481"
    cacheMountPath: str = ""
    persistentVolume: Optional[StorageSpec] = None


class VMInsert(TierSpec):
    port: str = "8480"


class VMClusterSpec(_Model):
    retentionPeriod: str = Field(..., pattern=r"^[1-9][0-9]*$")
    replicationFactor: Optional[int] = Field(default=None, ge=1)
    imagePullSecrets: List[Dict[str, str]] = Field(default_factory=list)
    vmstorage: Optional[VMStorage] = None
    vmselect: Optional[VMSelect] = None
    vminsert: Optional[VMInsert] = None

    def tier(self, tier: Tier) -> Optional[TierSpec]:
        return getattr(self, tier.value)


def tier_object_name(tier: Tier, tier_spec: Optional[TierSpec], cluster_name: str) -> str:
    """Name of every object derived for a tier. Must stay stable across releases."""
    if tier_spec is not None and tier_spec.name:
        return tier_spec.name
    return f"{tier.value}-{cluster_name}"


class VMStorageStatus(_Model):
    status: str = ""


class VMClusterStatus(_Model):
    updateFailCount: int = 0
    lastSync: str = ""
    clusterStatus: str = ""
    reason: str = ""
    storageStatus: VMStorageStatus = Field(default_factory=VMStorageStatus)


class ObjectMeta(_Model):
    name: str
    namespace: str = "default"
    uid: str = ""
    resourceVersion: str = ""
    generation: int = 0
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)


class VMCluster(_Model):
    apiVersion: str = ""
    kind: str = "VMCluster"
    metadata: ObjectMeta
    spec: VMClusterSpec
    status: VMClusterStatus = Field(default_factory=VMClusterStatus)

    @property
    def key(self) -> ClusterKey:
        return ClusterKey(self.metadata.namespace, self.metadata.name)
