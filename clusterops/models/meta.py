"""Metadata shared by every record kept in the resource store."""

import re
from datetime import datetime
from typing import ClassVar, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

# RFC 1123 subdomain, same rule as node hostnames
_NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")


class RecordKey(NamedTuple):
    """Namespace/name pair identifying a record of a given kind."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


def parse_key(key: "str | RecordKey", default_namespace: str = "default") -> RecordKey:
    """Parse a ``namespace/name`` string into a RecordKey."""
    if isinstance(key, RecordKey):
        return key
    if "/" in key:
        namespace, name = key.split("/", 1)
        return RecordKey(namespace or default_namespace, name)
    return RecordKey(default_namespace, key)


class ObjectMeta(BaseModel):
    """Identity and bookkeeping fields of a record."""

    name: str
    namespace: str = "default"
    uid: str = ""
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    creation_timestamp: datetime | None = None
    deletion_timestamp: datetime | None = None
    resource_version: int = 0

    @field_validator("name", "namespace")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate names follow DNS naming conventions."""
        if not v:
            raise ValueError("name cannot be empty")
        if len(v) > 253:
            raise ValueError("name cannot exceed 253 characters")
        if not _NAME_PATTERN.match(v):
            raise ValueError(
                f"name '{v}' must contain only lowercase alphanumeric characters, "
                "hyphens, and dots, and cannot start or end with a hyphen"
            )
        return v


class ObjectReference(BaseModel):
    """Pointer from a cluster status to another record."""

    model_config = ConfigDict(frozen=True)

    kind: str
    namespace: str
    name: str
    uid: str = ""

    def key(self) -> RecordKey:
        return RecordKey(self.namespace, self.name)


class Record(BaseModel):
    """Base class of every record kind."""

    kind: ClassVar[str] = ""

    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    def key(self) -> RecordKey:
        return RecordKey(self.metadata.namespace, self.metadata.name)

    def reference(self) -> ObjectReference:
        """Build a reference to this record."""
        return ObjectReference(
            kind=self.kind,
            namespace=self.metadata.namespace,
            name=self.metadata.name,
            uid=self.metadata.uid,
        )

    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.metadata.finalizers

    def add_finalizer(self, finalizer: str) -> None:
        if finalizer not in self.metadata.finalizers:
            self.metadata.finalizers.append(finalizer)

    def remove_finalizer(self, finalizer: str) -> None:
        self.metadata.finalizers = [f for f in self.metadata.finalizers if f != finalizer]

    def matches(self, label_selector: dict[str, str] | None) -> bool:
        """Check whether the record's labels satisfy an equality selector."""
        if not label_selector:
            return True
        labels = self.metadata.labels
        return all(k in labels and labels[k] == v for k, v in label_selector.items())

    def to_manifest(self) -> dict:
        """Convert to the manifest format used by ``apply`` and the file store."""
        return {"kind": self.kind, **self.model_dump(mode="json")}
