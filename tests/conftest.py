"""Pytest configuration and shared fixtures."""

import pytest
from hypothesis import Verbosity, settings

from clusterops.config import OperatorSettings
from clusterops.models import (
    Cluster,
    ClusterSpec,
    Credential,
    Machine,
    ObjectMeta,
    ResourceReference,
    RoleRequirement,
    Volume,
    WorkCondition,
    WorkItem,
)
from clusterops.models.resources import CONDITION_COMPLETE, CONDITION_FAILED
from clusterops.reconciler import ClusterReconciler
from clusterops.store import InMemoryResourceStore

# Configure Hypothesis for property-based testing
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose)

# Load the default profile
settings.load_profile("default")


SYSTEM_NAMESPACE = "clusterops-system"


@pytest.fixture
def operator_settings():
    return OperatorSettings()


@pytest.fixture
def store():
    return InMemoryResourceStore()


@pytest.fixture
def reconciler(store, operator_settings):
    return ClusterReconciler(store, operator_settings)


@pytest.fixture
def add_machines(store):
    """Create machines ``node-0 .. node-<count-1>`` in the default namespace."""

    def _add(count, labels=None, prefix="node", namespace="default"):
        created = []
        for i in range(count):
            machine = Machine(
                metadata=ObjectMeta(
                    name=f"{prefix}-{i}", namespace=namespace, labels=dict(labels or {})
                ),
                address=f"192.168.1.{10 + i}",
            )
            created.append(store.create(machine))
        return created

    return _add


@pytest.fixture
def add_credential(store):
    def _add(cred_type="ssh-auth", data=None, name="login", namespace=SYSTEM_NAMESPACE):
        if data is None:
            data = {"ssh-privatekey": "-----BEGIN KEY-----"}
        return store.create(
            Credential(
                metadata=ObjectMeta(name=name, namespace=namespace), type=cred_type, data=data
            )
        )

    return _add


@pytest.fixture
def add_volume(store):
    def _add(phase="Bound", name="packages", namespace=SYSTEM_NAMESPACE):
        volume = Volume(metadata=ObjectMeta(name=name, namespace=namespace), phase=phase)
        return store.create(volume)

    return _add


def make_cluster(name="demo", masters=1, workers=0, etcd=0, features=None, **spec):
    """Build an unsaved cluster declaration."""
    features = dict(features or {})
    return Cluster(
        metadata=ObjectMeta(name=name, namespace="default"),
        spec=ClusterSpec(
            master_require=RoleRequirement(number=masters, features=features),
            worker_require=RoleRequirement(number=workers, features=features),
            etcd_require=RoleRequirement(number=etcd, features=features),
            login_secret=spec.pop("login_secret", ResourceReference(name="login")),
            package_volume=spec.pop("package_volume", ResourceReference(name="packages")),
            **spec,
        ),
    )


@pytest.fixture
def cluster_factory():
    return make_cluster


@pytest.fixture
def add_cluster(store):
    def _add(**kwargs):
        return store.create(make_cluster(**kwargs))

    return _add


@pytest.fixture
def ready_inputs(add_machines, add_credential, add_volume):
    """Three machines plus a valid credential and bound volume."""
    machines = add_machines(3)
    add_credential()
    add_volume()
    return machines


@pytest.fixture
def finish_work(store):
    """Mark a work item Complete, or Failed with ``reason``."""

    def _finish(name, reason=None, namespace=SYSTEM_NAMESPACE):
        item = store.get(WorkItem, namespace, name)
        if reason is None:
            item.status.conditions.append(WorkCondition(type=CONDITION_COMPLETE))
        else:
            item.status.conditions.append(WorkCondition(type=CONDITION_FAILED, reason=reason))
        return store.update(item)

    return _finish


@pytest.fixture
def get_cluster(store):
    def _get(name="demo"):
        return store.get(Cluster, "default", name)

    return _get


@pytest.fixture
def race_cluster_reads(store, monkeypatch):
    """Return a switch that makes every Cluster read race with another writer.

    Once switched on, the record is updated behind the reader's back right
    after each read, so the reader's own update conflicts. Switch off with
    ``monkeypatch.undo()``.
    """

    def _start():
        original_get = store.get

        def get_then_touch(kind, namespace, name):
            record = original_get(kind, namespace, name)
            if kind.kind == "Cluster":
                store.update(original_get(kind, namespace, name))
            return record

        monkeypatch.setattr(store, "get", get_then_touch)

    return _start
