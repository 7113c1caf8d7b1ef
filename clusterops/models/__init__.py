"""Data models for records kept in the resource store."""

from clusterops.models.cluster import (
    Cluster,
    ClusterSpec,
    ClusterStatus,
    DeployOptions,
    PackageSpec,
    Phase,
    ResourceReference,
    RoleRequirement,
    WorkHistory,
)
from clusterops.models.machine import (
    BoundMachine,
    Machine,
    MachineBinding,
    MachineClaim,
    MachineCondition,
    Usage,
)
from clusterops.models.meta import ObjectMeta, ObjectReference, Record, RecordKey, parse_key
from clusterops.models.resources import (
    ConfigSnapshot,
    Credential,
    Volume,
    WorkCondition,
    WorkItem,
    WorkItemSpec,
)

RECORD_KINDS: dict[str, type[Record]] = {
    cls.kind: cls
    for cls in (
        Cluster,
        Machine,
        MachineBinding,
        MachineClaim,
        Credential,
        Volume,
        ConfigSnapshot,
        WorkItem,
    )
}


def record_from_manifest(data: dict) -> Record:
    """Build a record from its manifest form (``kind`` plus model fields)."""
    data = dict(data)
    kind = data.pop("kind", None)
    if kind not in RECORD_KINDS:
        raise ValueError(f"kind must be one of {sorted(RECORD_KINDS)}, got '{kind}'")
    return RECORD_KINDS[kind].model_validate(data)


__all__ = [
    "BoundMachine",
    "Cluster",
    "ClusterSpec",
    "ClusterStatus",
    "ConfigSnapshot",
    "Credential",
    "DeployOptions",
    "Machine",
    "MachineBinding",
    "MachineClaim",
    "MachineCondition",
    "ObjectMeta",
    "ObjectReference",
    "PackageSpec",
    "Phase",
    "RECORD_KINDS",
    "Record",
    "RecordKey",
    "ResourceReference",
    "RoleRequirement",
    "Usage",
    "Volume",
    "WorkCondition",
    "WorkHistory",
    "WorkItem",
    "WorkItemSpec",
    "parse_key",
    "record_from_manifest",
]
