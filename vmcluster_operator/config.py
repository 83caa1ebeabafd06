"""
Configuration module — all settings from env vars with sensible defaults.
Follows 12-factor app methodology.
"""
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    # Kubernetes
    KUBECONFIG: str = os.environ.get("KUBECONFIG", "")
    IN_CLUSTER: bool = os.environ.get("IN_CLUSTER", "false").lower() == "true"

    # CRD
    CRD_GROUP: str = "operator.victoriametrics.com"
    CRD_VERSION: str = "v1beta1"
    CRD_PLURAL: str = "vmclusters"
    CRD_KIND: str = "VMCluster"

    # Reconcile loop
    MAX_CONCURRENT_RECONCILES: int = int(os.environ.get("MAX_CONCURRENT_RECONCILES", "2"))
    EXPANDING_REQUEUE_SECONDS: float = float(os.environ.get("EXPANDING_REQUEUE_SECONDS", "10"))
    RETRY_BASE_DELAY: float = float(os.environ.get("RETRY_BASE_DELAY", "1.0"))
    RETRY_MAX_DELAY: float = float(os.environ.get("RETRY_MAX_DELAY", "300"))

    # Default images (overridden per tier by spec.<tier>.image)
    VMSTORAGE_IMAGE: str = os.environ.get("VMSTORAGE_IMAGE", "victoriametrics/vmstorage")
    VMSELECT_IMAGE: str = os.environ.get("VMSELECT_IMAGE", "victoriametrics/vmselect")
    VMINSERT_IMAGE: str = os.environ.get("VMINSERT_IMAGE", "victoriametrics/vminsert")
    VM_IMAGE_TAG: str = os.environ.get("VM_IMAGE_TAG", "v1.34.0-cluster")

    # Observability
    REDIS_URL: str = os.environ.get("REDIS_URL", "")
    METRICS_PORT: int = int(os.environ.get("METRICS_PORT", "0"))
    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")

    # API
    API_HOST: str = os.environ.get("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.environ.get("API_PORT", "8080"))
    RATE_LIMIT: str = os.environ.get("RATE_LIMIT", "30/minute")
    CORS_ORIGINS: str = os.environ.get("CORS_ORIGINS", "*")

    @property
    def api_version(self) -> str:
        return f"{self.CRD_GROUP}/{self.CRD_VERSION}"


settings = Settings()

# Labels stamped on every object the operator builds
MANAGED_BY_LABEL = "managed-by"
MANAGED_BY = "vm-operator"
