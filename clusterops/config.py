"""Controller settings."""

import os
import re

from pydantic import BaseModel, field_validator

from clusterops.exceptions import ConfigurationError
from clusterops.logging_config import get_logger

logger = get_logger(__name__)

ENV_PREFIX = "CLUSTEROPS_"

FINALIZER_NAME = "cluster.clusterops.io/finalizer"
CLUSTER_LABEL = "clusterops.io/cluster"
CLUSTER_NAMESPACE_LABEL = "clusterops.io/cluster-namespace"
BINDING_LABEL = "clusterops.io/binding"

BINDING_NAME_FORMAT = "machinebind-{cluster}"
SNAPSHOT_NAME_FORMAT = "{cluster}-cmd-config"
SNAPSHOT_DATA_KEY = "cluster.yaml"
CONFIG_MOUNT_FORMAT = "/etc/clusterops/{cluster}"
PACKAGE_MOUNT_FORMAT = "/root/packages/{cluster}"
PRIVATE_KEY_MOUNT_FORMAT = "/root/.ssh/{cluster}"

_NAMESPACE_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


class OperatorSettings(BaseModel):
    """Tunables for the reconciliation loop."""

    namespace: str = "clusterops-system"
    tool: str = "clusterops-deploy"
    image: str = "clusterops-deploy:0.1.0"
    container_name: str = "clusterops-cluster"
    requeue_short: float = 2.0
    requeue_medium: float = 5.0
    requeue_long: float = 30.0
    requeue_retry: float = 1.0
    grace_period_seconds: int = 60
    workers: int = 2
    resync_period: float = 30.0

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        """Validate namespace follows DNS label conventions."""
        if not v:
            raise ValueError("namespace cannot be empty")
        if len(v) > 63 or not _NAMESPACE_PATTERN.match(v):
            raise ValueError(
                f"namespace '{v}' must be a DNS label (lowercase alphanumerics and hyphens)"
            )
        return v

    @field_validator("tool", "image", "container_name")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("value cannot be empty")
        return v

    @field_validator(
        "requeue_short", "requeue_medium", "requeue_long", "requeue_retry", "resync_period"
    )
    @classmethod
    def validate_delay(cls, v: float) -> float:
        """Validate requeue delays are positive."""
        if v <= 0:
            raise ValueError(f"delay must be positive, got {v}")
        return v

    @field_validator("grace_period_seconds")
    @classmethod
    def validate_grace_period(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"grace_period_seconds cannot be negative, got {v}")
        return v

    @field_validator("workers")
    @classmethod
    def validate_workers(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"workers must be at least 1, got {v}")
        return v

    def save(self, path: str) -> None:
        """Save settings to YAML file."""
        import yaml

        with open(path, "w") as f:
            yaml.dump(self.model_dump(), f, default_flow_style=False)

    @classmethod
    def load(cls, path: str) -> "OperatorSettings":
        """Load settings from YAML file.

        Raises:
            ConfigurationError: If the file cannot be read or holds invalid values
        """
        import yaml

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(
                f"Settings file not found: {path}",
                "Create the file or omit --config to use the defaults",
            )
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse settings file {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"Settings file {path} must contain a mapping")

        try:
            return cls(**data)
        except ValueError as e:
            raise ConfigurationError(f"Invalid settings in {path}", str(e))

    @classmethod
    def from_env(cls, base: "OperatorSettings | None" = None) -> "OperatorSettings":
        """Overlay CLUSTEROPS_* environment variables on top of base settings."""
        data = (base or cls()).model_dump()
        for field in cls.model_fields:
            value = os.environ.get(f"{ENV_PREFIX}{field.upper()}")
            if value is not None:
                logger.debug(f"Settings override from environment: {field}={value}")
                data[field] = value

        try:
            return cls(**data)
        except ValueError as e:
            raise ConfigurationError("Invalid settings in environment", str(e))


def binding_name(cluster_name: str) -> str:
    return BINDING_NAME_FORMAT.format(cluster=cluster_name)


def snapshot_name(cluster_name: str) -> str:
    return SNAPSHOT_NAME_FORMAT.format(cluster=cluster_name)
