"""Resource store holding every declarative record the controller works with.

The store is strongly consistent: ``create`` rejects duplicate names and
``update`` rejects stale resource versions, which is what the allocator relies
on for mutual exclusion. Records carrying finalizers are only marked for
deletion; they disappear once an update removes the last finalizer.
"""

from __future__ import annotations

import shutil
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TypeVar

from ruamel.yaml import YAML

from clusterops.exceptions import ConflictError, NotFoundError, StoreError
from clusterops.logging_config import get_logger
from clusterops.models import Record, record_from_manifest

logger = get_logger(__name__)

R = TypeVar("R", bound=Record)

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"


@dataclass
class WatchEvent:
    """Change notification delivered to watchers."""

    type: str
    record: Record


@dataclass
class Operation:
    """Audit entry for one mutating call."""

    verb: str
    kind: str
    namespace: str
    name: str
    options: dict = field(default_factory=dict)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResourceStore(ABC):
    """Interface of the record store consumed by the controller."""

    @abstractmethod
    def get(self, kind: type[R], namespace: str, name: str) -> R:
        """Fetch one record.

        Raises:
            NotFoundError: If no such record exists
        """

    @abstractmethod
    def list(
        self,
        kind: type[R],
        namespace: str | None = None,
        label_selector: dict[str, str] | None = None,
    ) -> list[R]:
        """List records of a kind in listing (creation) order."""

    @abstractmethod
    def create(self, record: R) -> R:
        """Create a record.

        Raises:
            ConflictError: If a record with the same name already exists
        """

    @abstractmethod
    def update(self, record: R) -> R:
        """Replace a record.

        Raises:
            NotFoundError: If the record no longer exists
            ConflictError: If the record changed since it was read
        """

    @abstractmethod
    def delete(
        self, kind: type[Record], namespace: str, name: str, grace_period_seconds: int | None = None
    ) -> None:
        """Delete a record, or mark it for deletion when it has finalizers.

        Raises:
            NotFoundError: If no such record exists
        """

    @abstractmethod
    def watch(self, callback: Callable[[WatchEvent], None]) -> Callable[[], None]:
        """Register a change callback. Returns a function that unregisters it."""


class InMemoryResourceStore(ResourceStore):
    """Thread-safe store keeping records in process memory.

    Every mutating call is appended to ``operations``.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._lock = threading.RLock()
        self._records: dict[tuple[str, str, str], Record] = {}
        self._watchers: list[Callable[[WatchEvent], None]] = []
        self._clock = clock
        self.operations: list[Operation] = []

    def get(self, kind: type[R], namespace: str, name: str) -> R:
        with self._lock:
            record = self._records.get((kind.kind, namespace, name))
            if record is None:
                raise NotFoundError(f"{kind.kind} {namespace}/{name} not found")
            return record.model_copy(deep=True)

    def list(
        self,
        kind: type[R],
        namespace: str | None = None,
        label_selector: dict[str, str] | None = None,
    ) -> list[R]:
        with self._lock:
            return [
                record.model_copy(deep=True)
                for (record_kind, record_ns, _), record in self._records.items()
                if record_kind == kind.kind
                and (namespace is None or record_ns == namespace)
                and record.matches(label_selector)
            ]

    def create(self, record: R) -> R:
        key = (record.kind, record.namespace, record.name)
        with self._lock:
            if key in self._records:
                raise ConflictError(
                    f"{record.kind} {record.namespace}/{record.name} already exists"
                )

            stored = record.model_copy(deep=True)
            stored.metadata.uid = stored.metadata.uid or str(uuid.uuid4())
            stored.metadata.creation_timestamp = self._clock()
            stored.metadata.deletion_timestamp = None
            stored.metadata.resource_version = 1
            self._records[key] = stored
            self._record_operation("create", stored)
            self._persist()
            event = WatchEvent(ADDED, stored.model_copy(deep=True))

        logger.debug(f"Created {record.kind} {record.namespace}/{record.name}")
        self._notify(event)
        return event.record.model_copy(deep=True)

    def update(self, record: R) -> R:
        key = (record.kind, record.namespace, record.name)
        with self._lock:
            current = self._records.get(key)
            if current is None:
                raise NotFoundError(f"{record.kind} {record.namespace}/{record.name} not found")
            if current.metadata.resource_version != record.metadata.resource_version:
                raise ConflictError(
                    f"{record.kind} {record.namespace}/{record.name} was modified concurrently",
                    f"expected resource version {record.metadata.resource_version}, "
                    f"found {current.metadata.resource_version}",
                )

            stored = record.model_copy(deep=True)
            stored.metadata.uid = current.metadata.uid
            stored.metadata.creation_timestamp = current.metadata.creation_timestamp
            stored.metadata.deletion_timestamp = current.metadata.deletion_timestamp
            stored.metadata.resource_version = current.metadata.resource_version + 1
            self._record_operation("update", stored)

            if stored.is_deleting() and not stored.metadata.finalizers:
                del self._records[key]
                event = WatchEvent(DELETED, stored)
            else:
                self._records[key] = stored
                event = WatchEvent(MODIFIED, stored.model_copy(deep=True))
            self._persist()

        logger.debug(f"Updated {record.kind} {record.namespace}/{record.name} ({event.type})")
        self._notify(event)
        return event.record.model_copy(deep=True)

    def delete(
        self, kind: type[Record], namespace: str, name: str, grace_period_seconds: int | None = None
    ) -> None:
        key = (kind.kind, namespace, name)
        with self._lock:
            current = self._records.get(key)
            if current is None:
                raise NotFoundError(f"{kind.kind} {namespace}/{name} not found")

            options = {}
            if grace_period_seconds is not None:
                options["grace_period_seconds"] = grace_period_seconds
            self._record_operation("delete", current, options)

            if current.metadata.finalizers:
                if current.metadata.deletion_timestamp is None:
                    current.metadata.deletion_timestamp = self._clock()
                    current.metadata.resource_version += 1
                event = WatchEvent(MODIFIED, current.model_copy(deep=True))
            else:
                del self._records[key]
                event = WatchEvent(DELETED, current)
            self._persist()

        logger.debug(f"Deleted {kind.kind} {namespace}/{name} ({event.type})")
        self._notify(event)

    def watch(self, callback: Callable[[WatchEvent], None]) -> Callable[[], None]:
        with self._lock:
            self._watchers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._watchers:
                    self._watchers.remove(callback)

        return unsubscribe

    def mutations(self, kind: str | None = None) -> list[Operation]:
        """Audit entries, optionally filtered by record kind."""
        with self._lock:
            return [op for op in self.operations if kind is None or op.kind == kind]

    def _record_operation(self, verb: str, record: Record, options: dict | None = None) -> None:
        self.operations.append(
            Operation(verb, record.kind, record.namespace, record.name, options or {})
        )

    def _persist(self) -> None:
        """Hook called under the lock after every mutation."""

    def _notify(self, event: WatchEvent) -> None:
        with self._lock:
            watchers = list(self._watchers)
        for callback in watchers:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Watch callback failed for {event.type} event: {e}", exc_info=True)


class FileResourceStore(InMemoryResourceStore):
    """Store persisted to a YAML document after every mutation.

    Uses ruamel.yaml so hand edits and comments in the file survive a rewrite.
    """

    def __init__(self, path: str | Path, clock: Callable[[], datetime] = _utcnow):
        super().__init__(clock=clock)
        self.path = Path(path)
        self.yaml = YAML()
        self.yaml.default_flow_style = False
        self.yaml.indent(mapping=2, sequence=2, offset=0)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            logger.debug(f"Store file {self.path} does not exist yet, starting empty")
            return

        try:
            with open(self.path) as f:
                data = self.yaml.load(f)
        except Exception as e:
            logger.error(f"Failed to read store file: {e}", exc_info=True)
            raise StoreError(
                f"Failed to read store file: {e}",
                f"The file may be corrupted or have invalid YAML syntax. "
                f"Check the file at: {self.path.absolute()}",
            )

        for entry in (data or {}).get("records", []) or []:
            try:
                record = record_from_manifest(entry)
            except ValueError as e:
                raise StoreError(f"Invalid record in store file {self.path}", str(e))
            self._records[(record.kind, record.namespace, record.name)] = record

        logger.debug(f"Loaded {len(self._records)} records from {self.path}")

    def _persist(self) -> None:
        data = {"records": [record.to_manifest() for record in self._records.values()]}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self.path.exists():
                shutil.copy2(self.path, self.path.with_suffix(".yml.backup"))
            with open(self.path, "w") as f:
                self.yaml.dump(data, f)
        except OSError as e:
            logger.error(f"OS error writing store file: {e}")
            raise StoreError(
                f"Failed to write store file: {e}",
                "Check disk space and file system permissions",
            )
