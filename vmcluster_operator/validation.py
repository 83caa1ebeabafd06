"""
Structural validation of a VMCluster document.

Runs as the first step of every convergence pass. The intent API runs it
too, before a cluster is submitted, but the reconcile loop never assumes
that happened.
"""
import re
from typing import Optional

import pydantic

from vmcluster_operator.errors import ValidationError
from vmcluster_operator.models import StorageSpec, Tier, VMCluster, tier_object_name

# Kubernetes resource quantity: signed decimal with an optional SI or exponent suffix
_QUANTITY_RE = re.compile(
    r"^(?P<number>[+-]?([0-9]+(\.[0-9]*)?|\.[0-9]+))"
    r"(?P<suffix>Ki|Mi|Gi|Ti|Pi|Ei|n|u|m|k|M|G|T|P|E|[eE][+-]?[0-9]+)?$"
)

ACCESS_MODES = frozenset({"ReadWriteOnce", "ReadOnlyMany", "ReadWriteMany", "ReadWriteOncePod"})


def _format_pydantic_error(err: pydantic.ValidationError) -> str:
    parts = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e["loc"])
        parts.append(f"{loc}: {e['msg']}")
    return "; ".join(parts)


def validate_storage_spec(storage: Optional[StorageSpec]) -> None:
    """Raise ValueError if a persistent volume spec is malformed."""
    if storage is None:
        return
    if storage.emptyDir is not None and storage.volumeClaimTemplate is not None:
        raise ValueError("emptyDir and volumeClaimTemplate are mutually exclusive")

    template = storage.volumeClaimTemplate
    if template is None:
        return
    claim_spec = template.get("spec") or {}
    requests = (claim_spec.get("resources") or {}).get("requests") or {}
    size = requests.get("storage")
    if size is None:
        raise ValueError("volumeClaimTemplate.spec.resources.requests.storage is required")
    match = _QUANTITY_RE.match(str(size))
    if not match:
        raise ValueError(f"volumeClaimTemplate storage size {size!r} is not a valid quantity")
    if float(match.group("number")) <= 0:
        raise ValueError(f"volumeClaimTemplate storage size {size!r} must be positive")

    for mode in claim_spec.get("accessModes") or []:
        if mode not in ACCESS_MODES:
            raise ValueError(f"unsupported access mode {mode!r}")


def validate_cluster(body: dict) -> VMCluster:
    """
    Parse and validate a raw VMCluster dict.

    The status subtree is ignored: it is derived and never validated.
    Raises ValidationError with a human-readable message.
    """
    try:
        cluster = VMCluster.model_validate({
            "apiVersion": body.get("apiVersion", ""),
            "kind": body.get("kind", "VMCluster"),
            "metadata": body.get("metadata") or {},
            "spec": body.get("spec") or {},
        })
    except pydantic.ValidationError as e:
        raise ValidationError(f"invalid cluster spec: {_format_pydantic_error(e)}") from e

    storage = cluster.spec.vmstorage
    if storage is not None:
        try:
            validate_storage_spec(storage.storage)
        except ValueError as e:
            name = tier_object_name(Tier.STORAGE, storage, cluster.metadata.name)
            raise ValidationError(f"invalid persistent volume spec for {name}: {e}") from e

    select = cluster.spec.vmselect
    if select is not None:
        try:
            validate_storage_spec(select.persistentVolume)
        except ValueError as e:
            name = tier_object_name(Tier.SELECT, select, cluster.metadata.name)
            raise ValidationError(f"invalid persistent volume spec for {name}: {e}") from e

    return cluster
