"""Unit tests for the resource stores."""

import pytest

from clusterops.exceptions import ConflictError, NotFoundError, StoreError
from clusterops.models import Machine, ObjectMeta
from clusterops.store import ADDED, DELETED, MODIFIED, FileResourceStore, InMemoryResourceStore


def machine(name, namespace="default", labels=None, address="10.0.0.1"):
    return Machine(
        metadata=ObjectMeta(name=name, namespace=namespace, labels=labels or {}),
        address=address,
    )


def test_create_assigns_identity(store):
    created = store.create(machine("m1"))

    assert created.metadata.uid
    assert created.metadata.resource_version == 1
    assert created.metadata.creation_timestamp is not None


def test_create_duplicate_conflicts(store):
    store.create(machine("m1"))

    with pytest.raises(ConflictError):
        store.create(machine("m1"))


def test_same_name_in_other_namespace_is_distinct(store):
    store.create(machine("m1"))
    store.create(machine("m1", namespace="other"))

    assert len(store.list(Machine)) == 2
    assert len(store.list(Machine, namespace="other")) == 1


def test_get_missing_raises(store):
    with pytest.raises(NotFoundError):
        store.get(Machine, "default", "missing")


def test_get_returns_copy(store):
    store.create(machine("m1"))

    fetched = store.get(Machine, "default", "m1")
    fetched.address = "changed"

    assert store.get(Machine, "default", "m1").address == "10.0.0.1"


def test_list_keeps_creation_order_and_filters_labels(store):
    store.create(machine("b", labels={"zone": "a"}))
    store.create(machine("a", labels={"zone": "b"}))
    store.create(machine("c", labels={"zone": "a"}))

    assert [m.name for m in store.list(Machine)] == ["b", "a", "c"]
    assert [m.name for m in store.list(Machine, label_selector={"zone": "a"})] == ["b", "c"]


def test_update_bumps_resource_version(store):
    created = store.create(machine("m1"))
    created.port = 2222

    updated = store.update(created)
    assert updated.metadata.resource_version == 2
    assert updated.metadata.uid == created.metadata.uid
    assert store.get(Machine, "default", "m1").port == 2222


def test_update_stale_version_conflicts(store):
    created = store.create(machine("m1"))
    store.update(created)

    with pytest.raises(ConflictError):
        store.update(created)


def test_update_missing_raises(store):
    with pytest.raises(NotFoundError):
        store.update(machine("ghost"))


def test_delete_without_finalizers_removes(store):
    store.create(machine("m1"))
    store.delete(Machine, "default", "m1")

    with pytest.raises(NotFoundError):
        store.get(Machine, "default", "m1")


def test_delete_with_finalizer_marks_then_update_removes(store):
    record = machine("m1")
    record.add_finalizer("test/finalizer")
    store.create(record)

    store.delete(Machine, "default", "m1")
    marked = store.get(Machine, "default", "m1")
    assert marked.is_deleting()

    marked.remove_finalizer("test/finalizer")
    store.update(marked)
    with pytest.raises(NotFoundError):
        store.get(Machine, "default", "m1")


def test_delete_records_grace_period(store):
    store.create(machine("m1"))
    store.delete(Machine, "default", "m1", grace_period_seconds=60)

    deletes = [op for op in store.mutations("Machine") if op.verb == "delete"]
    assert deletes[0].options == {"grace_period_seconds": 60}


def test_watch_receives_events_until_unsubscribed(store):
    events = []
    unsubscribe = store.watch(events.append)

    created = store.create(machine("m1"))
    store.update(created)
    store.delete(Machine, "default", "m1")
    unsubscribe()
    store.create(machine("m2"))

    assert [e.type for e in events] == [ADDED, MODIFIED, DELETED]
    assert all(e.record.name == "m1" for e in events)


def test_failing_watcher_does_not_break_store(store):
    def broken(event):
        raise RuntimeError("boom")

    store.watch(broken)
    store.create(machine("m1"))

    assert store.get(Machine, "default", "m1")


def test_operations_audit_log():
    store = InMemoryResourceStore()
    created = store.create(machine("m1"))
    store.update(created)
    store.delete(Machine, "default", "m1")

    assert [(op.verb, op.kind, op.name) for op in store.operations] == [
        ("create", "Machine", "m1"),
        ("update", "Machine", "m1"),
        ("delete", "Machine", "m1"),
    ]


def test_file_store_persists_records(tmp_path):
    path = tmp_path / "store.yml"
    store = FileResourceStore(path)
    created = store.create(machine("m1", labels={"gpu": "true"}))

    reopened = FileResourceStore(path)
    loaded = reopened.get(Machine, "default", "m1")
    assert loaded.metadata.uid == created.metadata.uid
    assert loaded.metadata.labels == {"gpu": "true"}
    assert loaded.metadata.resource_version == 1


def test_file_store_writes_backup(tmp_path):
    path = tmp_path / "store.yml"
    store = FileResourceStore(path)
    store.create(machine("m1"))
    store.create(machine("m2"))

    assert (tmp_path / "store.yml.backup").exists()


def test_file_store_rejects_unknown_kind(tmp_path):
    path = tmp_path / "store.yml"
    path.write_text("records:\n- kind: Spaceship\n  metadata:\n    name: x\n")

    with pytest.raises(StoreError) as exc_info:
        FileResourceStore(path)

    assert "Invalid record" in exc_info.value.message


def test_file_store_rejects_invalid_yaml(tmp_path):
    path = tmp_path / "store.yml"
    path.write_text("records: [unclosed\n")

    with pytest.raises(StoreError):
        FileResourceStore(path)
