"""Unit tests for work item construction and monitoring."""

from datetime import datetime, timezone

import pytest

from clusterops.models import Credential, ObjectMeta, Volume, WorkCondition, WorkItem
from clusterops.models.resources import CLEANUP, DEPLOY, WorkItemSpec
from clusterops.workitems import (
    WorkExecutionMonitor,
    build_work_item,
    is_finished,
    work_item_name,
)

NAMESPACE = "clusterops-system"
FINISHED_AT = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def item(*conditions):
    return WorkItem(
        metadata=ObjectMeta(name="demo-create-job", namespace=NAMESPACE),
        spec=WorkItemSpec(action=DEPLOY, image="img", container_name="c", command=["x"]),
        status={"conditions": [c.model_dump() for c in conditions]},
    )


@pytest.fixture
def monitor(store, operator_settings):
    return WorkExecutionMonitor(store, operator_settings, clock=lambda: FINISHED_AT)


@pytest.fixture
def prepared_cluster(add_credential, add_volume, add_cluster, store):
    """A cluster whose credential and volume references are already set."""
    credential = add_credential()
    volume = add_volume()
    cluster = add_cluster()
    cluster.status.credential_ref = credential.reference()
    cluster.status.volume_ref = volume.reference()
    return cluster


def test_work_item_names():
    assert work_item_name("demo", DEPLOY) == "demo-create-job"
    assert work_item_name("demo", CLEANUP) == "demo-delete-job"


def test_is_finished():
    assert is_finished(item()) == (False, None)
    assert is_finished(item(WorkCondition(type="Complete"))) == (True, None)
    assert is_finished(item(WorkCondition(type="Complete", status="False"))) == (False, None)

    finished, error = is_finished(item(WorkCondition(type="Failed", reason="exit 1")))
    assert finished
    assert error.message == "work item: demo-create-job failed: exit 1"


def test_build_work_item_ssh(prepared_cluster, operator_settings, store):
    credential = store.get(Credential, NAMESPACE, "login")
    volume = store.get(Volume, NAMESPACE, "packages")

    work_item = build_work_item(prepared_cluster, DEPLOY, volume, credential, operator_settings)

    assert work_item.name == "demo-create-job"
    assert work_item.namespace == NAMESPACE
    assert work_item.spec.command == [
        "clusterops-deploy",
        "-d",
        "deploy",
        "-f",
        "/etc/clusterops/demo/cluster.yaml",
    ]
    mounts = {m.name: m.mount_path for m in work_item.spec.volume_mounts}
    assert mounts == {
        "cluster-config": "/etc/clusterops/demo",
        "cluster-package": "/root/packages/demo",
        "privatekey-secret": "/root/.ssh/demo",
    }
    assert all(m.read_only for m in work_item.spec.volume_mounts)
    assert work_item.spec.restart_policy == "Never"
    assert work_item.spec.host_network


def test_build_work_item_basic_auth_has_no_key_mount(operator_settings, cluster_factory):
    credential = Credential(
        metadata=ObjectMeta(name="login", namespace=NAMESPACE),
        type="basic-auth",
        data={"username": "u", "password": "p"},
    )
    volume = Volume(metadata=ObjectMeta(name="packages", namespace=NAMESPACE), phase="Bound")

    work_item = build_work_item(cluster_factory(), CLEANUP, volume, credential, operator_settings)

    assert work_item.spec.command[2] == "cleanup"
    assert [m.name for m in work_item.spec.volume_mounts] == ["cluster-config", "cluster-package"]


def test_ensure_is_fetch_or_create(store, monitor, prepared_cluster):
    first = monitor.ensure(prepared_cluster, DEPLOY)
    second = monitor.ensure(prepared_cluster, DEPLOY)

    assert first.metadata.uid == second.metadata.uid
    assert len(store.list(WorkItem)) == 1


def test_check_unfinished(monitor, prepared_cluster):
    prepared_cluster.status.work_item_ref = monitor.ensure(prepared_cluster, DEPLOY).reference()

    assert monitor.check(prepared_cluster) == (False, None)
    assert prepared_cluster.status.work_history == []


def test_check_success_records_history(monitor, prepared_cluster, finish_work):
    created = monitor.ensure(prepared_cluster, DEPLOY)
    prepared_cluster.status.work_item_ref = created.reference()
    finish_work("demo-create-job")

    assert monitor.check(prepared_cluster) == (True, None)
    history = prepared_cluster.status.work_history
    assert len(history) == 1
    assert history[0].message == "success"
    assert history[0].start_time == created.metadata.creation_timestamp
    assert history[0].finish_time == FINISHED_AT
    assert prepared_cluster.status.work_item_ref is not None


def test_check_failure_records_and_clears_ref(store, monitor, prepared_cluster, finish_work):
    failed = monitor.ensure(prepared_cluster, DEPLOY)
    prepared_cluster.status.work_item_ref = failed.reference()
    finish_work("demo-create-job", reason="exit 1")

    finished, error = monitor.check(prepared_cluster)

    assert finished
    assert error.message == "work item: demo-create-job failed: exit 1"
    assert prepared_cluster.status.work_item_ref is None
    history = prepared_cluster.status.work_history
    assert history[0].message == error.message
    assert history[0].uid == failed.metadata.uid
    # kept until the recorded outcome has been saved
    assert store.get(WorkItem, NAMESPACE, "demo-create-job").metadata.uid == failed.metadata.uid


def test_ensure_replaces_recorded_item(store, monitor, prepared_cluster, finish_work):
    failed = monitor.ensure(prepared_cluster, DEPLOY)
    prepared_cluster.status.work_item_ref = failed.reference()
    finish_work("demo-create-job", reason="exit 1")
    monitor.check(prepared_cluster)

    fresh = monitor.ensure(prepared_cluster, DEPLOY)

    assert fresh.metadata.uid != failed.metadata.uid
    assert not monitor.is_recorded(prepared_cluster, fresh)
    assert is_finished(fresh) == (False, None)
    assert len(store.list(WorkItem)) == 1


def test_ensure_keeps_unrecorded_finished_item(store, monitor, prepared_cluster, finish_work):
    failed = monitor.ensure(prepared_cluster, DEPLOY)
    finish_work("demo-create-job", reason="exit 1")

    assert monitor.ensure(prepared_cluster, DEPLOY).metadata.uid == failed.metadata.uid


def test_check_vanished_item_clears_ref(monitor, prepared_cluster, store):
    prepared_cluster.status.work_item_ref = monitor.ensure(prepared_cluster, DEPLOY).reference()
    store.delete(WorkItem, NAMESPACE, "demo-create-job")

    assert monitor.check(prepared_cluster) == (False, None)
    assert prepared_cluster.status.work_item_ref is None
    assert prepared_cluster.status.work_history == []


def test_run_cleanup_lifecycle(store, monitor, prepared_cluster, finish_work):
    assert monitor.run_cleanup(prepared_cluster) == (False, None)
    assert store.get(WorkItem, NAMESPACE, "demo-delete-job").spec.action == CLEANUP

    assert monitor.run_cleanup(prepared_cluster) == (False, None)

    finish_work("demo-delete-job")
    assert monitor.run_cleanup(prepared_cluster) == (True, None)
    assert [h.name for h in prepared_cluster.status.work_history] == ["demo-delete-job"]
    assert store.get(WorkItem, NAMESPACE, "demo-delete-job")


def test_run_cleanup_failure_starts_fresh_attempt(store, monitor, prepared_cluster, finish_work):
    monitor.run_cleanup(prepared_cluster)
    first = store.get(WorkItem, NAMESPACE, "demo-delete-job")
    finish_work("demo-delete-job", reason="ssh timeout")

    finished, error = monitor.run_cleanup(prepared_cluster)
    assert finished
    assert error.message == "work item: demo-delete-job failed: ssh timeout"

    assert monitor.run_cleanup(prepared_cluster) == (False, None)
    retried = store.get(WorkItem, NAMESPACE, "demo-delete-job")
    assert retried.metadata.uid != first.metadata.uid
    assert len(prepared_cluster.status.work_history) == 1
