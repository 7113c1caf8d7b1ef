"""Data models for cluster desired state and reconciliation status."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from clusterops.models.machine import Usage
from clusterops.models.meta import ObjectReference, Record


class Phase(str, Enum):
    """Explicit lifecycle phase of a cluster, derived from its status references."""

    ALLOCATING = "Allocating"
    VALIDATING_CREDENTIAL = "ValidatingCredential"
    VALIDATING_VOLUME = "ValidatingVolume"
    SNAPSHOTTING = "Snapshotting"
    DEPLOYING = "Deploying"
    MONITORING = "Monitoring"
    READY = "Ready"
    TEARING_DOWN_WORK = "TearingDownWork"
    TEARING_DOWN_BINDING = "TearingDownBinding"
    TEARING_DOWN_SNAPSHOT = "TearingDownSnapshot"
    DELETED = "Deleted"


CREATION_PHASES = (
    Phase.ALLOCATING,
    Phase.VALIDATING_CREDENTIAL,
    Phase.VALIDATING_VOLUME,
    Phase.SNAPSHOTTING,
    Phase.DEPLOYING,
    Phase.MONITORING,
    Phase.READY,
)


class RoleRequirement(BaseModel):
    """How many machines a role needs and which features they must carry."""

    number: int = 0
    features: dict[str, str] = Field(default_factory=dict)


class ResourceReference(BaseModel):
    """User supplied pointer to an externally managed resource."""

    name: str
    namespace: str = ""

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v:
            raise ValueError("name cannot be empty")
        return v


class PackageSpec(BaseModel):
    """A package installed on hosts of a role."""

    name: str
    type: str = "repo"  # repo, pkg, binary
    dst: str | None = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        allowed = ["repo", "pkg", "binary"]
        if v not in allowed:
            raise ValueError(f"type must be one of {allowed}, got '{v}'")
        return v


class DeployOptions(BaseModel):
    """Cluster-wide settings rendered into the deployment recipe."""

    api_endpoint: str = ""
    api_timeout: str = "120s"
    cert_sans_dns: list[str] = Field(default_factory=list)
    cert_sans_ips: list[str] = Field(default_factory=list)
    service_cidr: str = "10.32.0.0/16"
    dns_address: str = "10.32.0.10"
    gateway: str = "10.32.0.1"
    pod_cidr: str = "10.244.64.0/16"
    network_plugin: str = ""
    network_plugin_args: dict[str, str] = Field(default_factory=dict)
    dns_domain: str = "cluster.local"
    pause_image: str = "k8s.gcr.io/pause:3.2"
    cni_bin_dir: str = "/usr/libexec/cni"
    runtime: str = ""
    runtime_endpoint: str = ""
    etcd_token: str = "etcd-cluster"
    etcd_data_dir: str = "/var/lib/etcd/default.etcd"
    etcd_external: bool = False
    packages: dict[str, list[PackageSpec]] = Field(default_factory=dict)

    @field_validator("packages")
    @classmethod
    def validate_package_roles(cls, v: dict[str, list[PackageSpec]]) -> dict:
        """Validate package groups are keyed by known roles."""
        allowed = ["master", "node", "etcd", "loadbalance"]
        for role in v:
            if role not in allowed:
                raise ValueError(f"package role must be one of {allowed}, got '{role}'")
        return v


class ClusterSpec(BaseModel):
    """Desired state of a cluster."""

    master_require: RoleRequirement = Field(default_factory=lambda: RoleRequirement(number=1))
    worker_require: RoleRequirement = Field(default_factory=RoleRequirement)
    etcd_require: RoleRequirement = Field(default_factory=RoleRequirement)
    loadbalance_require: RoleRequirement = Field(default_factory=RoleRequirement)
    login_secret: ResourceReference
    package_volume: ResourceReference
    options: DeployOptions = Field(default_factory=DeployOptions)

    def requirements(self) -> list[tuple[Usage, RoleRequirement]]:
        """Role requirements in allocation order."""
        return [
            (Usage.MASTER, self.master_require),
            (Usage.WORKER, self.worker_require),
            (Usage.ETCD, self.etcd_require),
            (Usage.LOADBALANCE, self.loadbalance_require),
        ]


class WorkHistory(BaseModel):
    """One finished work item attempt."""

    name: str
    uid: str = ""
    start_time: datetime | None = None
    finish_time: datetime | None = None
    message: str = ""


class ClusterStatus(BaseModel):
    """Observed state. The references advance monotonically during creation."""

    phase: Phase = Phase.ALLOCATING
    binding_ref: ObjectReference | None = None
    credential_ref: ObjectReference | None = None
    volume_ref: ObjectReference | None = None
    config_ref: ObjectReference | None = None
    work_item_ref: ObjectReference | None = None
    has_cluster: bool = False
    deleted: bool = False
    message: str = ""
    work_history: list[WorkHistory] = Field(default_factory=list)

    def infer_phase(self, deleting: bool = False) -> Phase:
        """Derive the lifecycle phase from which references are set."""
        if deleting:
            if self.deleted:
                return Phase.DELETED
            if self.work_item_ref is not None or self.has_cluster:
                return Phase.TEARING_DOWN_WORK
            if self.binding_ref is not None:
                return Phase.TEARING_DOWN_BINDING
            if self.config_ref is not None:
                return Phase.TEARING_DOWN_SNAPSHOT
            return Phase.DELETED

        if self.has_cluster:
            return Phase.READY
        if self.binding_ref is None:
            return Phase.ALLOCATING
        if self.credential_ref is None:
            return Phase.VALIDATING_CREDENTIAL
        if self.volume_ref is None:
            return Phase.VALIDATING_VOLUME
        if self.config_ref is None:
            return Phase.SNAPSHOTTING
        if self.work_item_ref is None:
            return Phase.DEPLOYING
        return Phase.MONITORING


class Cluster(Record):
    """Declared cluster plus its reconciliation status."""

    kind = "Cluster"

    spec: ClusterSpec
    status: ClusterStatus = Field(default_factory=ClusterStatus)

    def is_created(self) -> bool:
        return self.status.has_cluster
