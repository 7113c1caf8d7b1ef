"""Data models for the supporting resources a work item consumes."""

from pydantic import BaseModel, Field, field_validator

from clusterops.models.meta import Record

SSH_AUTH = "ssh-auth"
BASIC_AUTH = "basic-auth"

SSH_PRIVATE_KEY = "ssh-privatekey"
USERNAME_KEY = "username"
PASSWORD_KEY = "password"

VOLUME_BOUND = "Bound"

DEPLOY = "deploy"
CLEANUP = "cleanup"

CONDITION_COMPLETE = "Complete"
CONDITION_FAILED = "Failed"


class Credential(Record):
    """Machine login secret, managed outside the controller."""

    kind = "Credential"

    type: str
    data: dict[str, str] = Field(default_factory=dict)


class Volume(Record):
    """Package volume claim, managed outside the controller."""

    kind = "Volume"

    phase: str = "Pending"

    @field_validator("phase")
    @classmethod
    def validate_phase(cls, v: str) -> str:
        allowed = ["Pending", "Bound", "Lost"]
        if v not in allowed:
            raise ValueError(f"phase must be one of {allowed}, got '{v}'")
        return v


class ConfigSnapshot(Record):
    """Immutable rendered deployment recipe."""

    kind = "ConfigSnapshot"

    data: dict[str, str] = Field(default_factory=dict)


class VolumeSource(BaseModel):
    """Volume attached to a work item. Exactly one source is set."""

    name: str
    config_snapshot: str | None = None
    volume_claim: str | None = None
    credential: str | None = None
    read_only: bool = True


class VolumeMount(BaseModel):
    name: str
    mount_path: str
    read_only: bool = True


class WorkItemSpec(BaseModel):
    """Container the work backend runs against the bound machines."""

    action: str
    image: str
    container_name: str
    command: list[str]
    volumes: list[VolumeSource] = Field(default_factory=list)
    volume_mounts: list[VolumeMount] = Field(default_factory=list)
    restart_policy: str = "Never"
    # Needed to reach machines directly over ssh
    host_network: bool = True

    @field_validator("action")
    @classmethod
    def validate_action(cls, v: str) -> str:
        allowed = [DEPLOY, CLEANUP]
        if v not in allowed:
            raise ValueError(f"action must be one of {allowed}, got '{v}'")
        return v


class WorkCondition(BaseModel):
    type: str  # Complete, Failed
    status: str = "True"
    reason: str = ""
    message: str = ""


class WorkItemStatus(BaseModel):
    conditions: list[WorkCondition] = Field(default_factory=list)


class WorkItem(Record):
    """One asynchronous deploy or cleanup execution."""

    kind = "WorkItem"

    spec: WorkItemSpec
    status: WorkItemStatus = Field(default_factory=WorkItemStatus)
