"""
Pydantic models for API request/response validation.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ClusterCreateRequest(BaseModel):
    """Request to create a new VMCluster."""
    name: str = Field(
        ...,
        min_length=3,
        max_length=40,
        pattern=r"^[a-z][a-z0-9-]*[a-z0-9]$",
        description="Cluster name (lowercase, alphanumeric with hyphens, 3-40 chars)",
        examples=["metrics", "vm-prod"],
    )
    namespace: str = Field(
        default="default",
        max_length=63,
        pattern=r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$",
    )
    labels: Dict[str, str] = Field(default_factory=dict)
    spec: Dict[str, Any] = Field(
        ...,
        description="VMCluster spec, as it would appear in the custom resource",
        examples=[{"retentionPeriod": "1", "vmstorage": {"replicaCount": 3}}],
    )


class ClusterResponse(BaseModel):
    """Cluster details returned to the dashboard."""
    name: str
    namespace: str
    clusterStatus: str = "expanding"
    reason: str = ""
    updateFailCount: int = 0
    lastSync: Optional[str] = None
    storageStatus: str = ""
    replicas: Dict[str, int] = {}
    createdAt: Optional[str] = None


class ClusterListResponse(BaseModel):
    clusters: List[ClusterResponse]
    total: int


class ErrorResponse(BaseModel):
    detail: str
    code: str = "UNKNOWN_ERROR"


class AuditLogEntry(BaseModel):
    timestamp: str
    action: str  # CREATE, DELETE
    cluster: str
    result: str  # SUCCESS, EXISTS, INVALID, FAILED, ACCEPTED
    detail: str = ""
