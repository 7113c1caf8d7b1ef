"""Unit tests for CLI commands."""

import textwrap

import pytest
from typer.testing import CliRunner

from clusterops.cli import app
from clusterops.models import Cluster, Machine, WorkItem
from clusterops.store import FileResourceStore

runner = CliRunner()

MANIFEST = textwrap.dedent(
    """\
    kind: Machine
    metadata:
      name: node-0
    address: 192.168.1.10
    ---
    kind: Machine
    metadata:
      name: node-1
    address: 192.168.1.11
    ---
    kind: Credential
    metadata:
      name: login
      namespace: clusterops-system
    type: ssh-auth
    data:
      ssh-privatekey: key
    ---
    kind: Volume
    metadata:
      name: packages
      namespace: clusterops-system
    phase: Bound
    ---
    kind: Cluster
    metadata:
      name: demo
    spec:
      master_require:
        number: 1
      worker_require:
        number: 1
      login_secret:
        name: login
      package_volume:
        name: packages
    """
)


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "store.yml"


@pytest.fixture
def applied(tmp_path, store_path):
    manifest = tmp_path / "manifest.yml"
    manifest.write_text(MANIFEST)
    result = runner.invoke(app, ["--store", str(store_path), "apply", "-f", str(manifest)])
    assert result.exit_code == 0, result.stdout
    return store_path


def invoke(store_path, *args):
    return runner.invoke(app, ["--store", str(store_path), *args])


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.stdout


def test_help_lists_commands():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for command in ("apply", "machines", "status", "reconcile", "delete", "run", "complete-work"):
        assert command in result.stdout


def test_apply_creates_records(applied):
    store = FileResourceStore(applied)

    assert [m.name for m in store.list(Machine)] == ["node-0", "node-1"]
    assert store.get(Cluster, "default", "demo").spec.worker_require.number == 1


def test_apply_twice_updates(tmp_path, applied):
    manifest = tmp_path / "manifest.yml"
    result = invoke(applied, "apply", "-f", str(manifest))

    assert result.exit_code == 0
    assert "configured" in result.stdout
    machine = FileResourceStore(applied).get(Machine, "default", "node-0")
    assert machine.metadata.resource_version == 2


def test_apply_missing_file(store_path):
    result = invoke(store_path, "apply", "-f", "nonexistent.yml")
    assert result.exit_code == 1
    assert "Manifest file not found" in result.stdout


def test_apply_unknown_kind(tmp_path, store_path):
    manifest = tmp_path / "bad.yml"
    manifest.write_text("kind: Spaceship\nmetadata:\n  name: x\n")

    result = invoke(store_path, "apply", "-f", str(manifest))
    assert result.exit_code == 1
    assert "Manifest Error" in result.stdout


def test_apply_invalid_record(tmp_path, store_path):
    manifest = tmp_path / "bad.yml"
    manifest.write_text("kind: Machine\nmetadata:\n  name: Bad_Name\naddress: 10.0.0.1\n")

    result = invoke(store_path, "apply", "-f", str(manifest))
    assert result.exit_code == 1
    assert "Validation Error" in result.stdout


def test_machines_table(applied):
    result = invoke(applied, "machines")

    assert result.exit_code == 0
    assert "node-0" in result.stdout
    assert "Total machines:" in result.stdout


def test_reconcile_reaches_monitoring(applied):
    result = invoke(applied, "reconcile", "demo", "--no-wait", "--passes", "15")

    assert result.exit_code == 0
    cluster = FileResourceStore(applied).get(Cluster, "default", "demo")
    assert cluster.status.work_item_ref.name == "demo-create-job"

    status = invoke(applied, "status", "demo")
    assert "Monitoring" in status.stdout


def test_complete_work_and_settle(applied):
    invoke(applied, "reconcile", "demo", "--no-wait", "--passes", "15")

    result = invoke(applied, "complete-work", "demo-create-job")
    assert result.exit_code == 0
    item = FileResourceStore(applied).get(WorkItem, "clusterops-system", "demo-create-job")
    assert item.status.conditions[0].type == "Complete"

    result = invoke(applied, "reconcile", "demo", "--no-wait")
    assert result.exit_code == 0
    assert "settled" in result.stdout

    status = invoke(applied, "status", "demo")
    assert "Ready" in status.stdout
    assert "success" in status.stdout


def test_complete_work_failed(applied):
    invoke(applied, "reconcile", "demo", "--no-wait", "--passes", "15")

    result = invoke(applied, "complete-work", "demo-create-job", "--failed", "exit 1")
    assert result.exit_code == 0
    assert "failed (exit 1)" in result.stdout


def test_complete_work_missing(applied):
    result = invoke(applied, "complete-work", "nope")
    assert result.exit_code == 1
    assert "Not Found Error" in result.stdout


def test_status_missing_cluster(store_path):
    result = invoke(store_path, "status", "ghost")
    assert result.exit_code == 1
    assert "not found" in result.stdout


def test_status_empty_store(store_path):
    result = invoke(store_path, "status")
    assert result.exit_code == 0
    assert "No clusters found" in result.stdout


def test_delete_requests_deletion(applied):
    invoke(applied, "reconcile", "demo", "--no-wait", "--passes", "1")

    result = invoke(applied, "delete", "demo", "--force")

    assert result.exit_code == 0
    assert FileResourceStore(applied).get(Cluster, "default", "demo").is_deleting()


def test_delete_cancelled(applied):
    result = runner.invoke(app, ["--store", str(applied), "delete", "demo"], input="n\n")

    assert result.exit_code == 0
    assert "Operation cancelled" in result.stdout
    assert not FileResourceStore(applied).get(Cluster, "default", "demo").is_deleting()


def test_invalid_settings_file(tmp_path, applied):
    settings = tmp_path / "settings.yml"
    settings.write_text("workers: 0\n")

    result = runner.invoke(
        app, ["--store", str(applied), "--config", str(settings), "reconcile", "demo"]
    )
    assert result.exit_code == 1
    assert "Configuration Error" in result.stdout
