"""Main CLI entry point for the cluster controller."""

import re
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from clusterops.exceptions import ClusterOpsError
from clusterops.logging_config import get_logger, setup_logging

app = typer.Typer(
    name="clusterops",
    help="Declarative controller that turns machine inventory into running clusters",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)

DEFAULT_STORE = "clusterops-store.yml"


class State:
    """Options shared by every command."""

    store_path: Path = Path(DEFAULT_STORE)
    config_path: Path | None = None


state = State()


def _error_label(error: ClusterOpsError) -> str:
    words = re.findall(r"[A-Z][a-z]*", type(error).__name__.removesuffix("Error"))
    return " ".join(words) + " Error" if words else "Error"


def _fail(error: ClusterOpsError) -> NoReturn:
    logger.error(f"{type(error).__name__}: {error.message}")
    console.print(f"[red]{_error_label(error)}:[/red] {error.message}")
    if error.details:
        console.print(f"\n{error.details}")
    raise typer.Exit(code=1)


def _unexpected(error: Exception) -> NoReturn:
    logger.error(f"Unexpected error: {error}", exc_info=True)
    console.print(f"[red]Unexpected error:[/red] {error}")
    console.print("\nRun with --verbose --log-file debug.log for more details")
    raise typer.Exit(code=1)


def load_settings():
    from clusterops.config import OperatorSettings

    base = OperatorSettings.load(str(state.config_path)) if state.config_path else None
    return OperatorSettings.from_env(base)


def open_store():
    from clusterops.store import FileResourceStore

    return FileResourceStore(state.store_path)


# Global callback to set up logging
@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
    store: str = typer.Option(
        DEFAULT_STORE, "--store", "-s", help="Path to the YAML resource store"
    ),
    config: str | None = typer.Option(None, "--config", "-c", help="Path to settings YAML"),
):
    """Global options for all commands."""
    log_path = Path(log_file) if log_file else None
    setup_logging(verbose=verbose, log_file=log_path)
    state.store_path = Path(store)
    state.config_path = Path(config) if config else None
    logger.debug("Logging initialized")


@app.command()
def version() -> None:
    """Show version information."""
    from clusterops import __version__

    typer.echo(f"clusterops version {__version__}")


@app.command()
def apply(
    file: str = typer.Option(..., "--file", "-f", help="YAML manifest with one or more records"),
) -> None:
    """
    Create or update records from a manifest.

    The file may hold several YAML documents, or a single document holding a
    list. Existing records keep their metadata and, for clusters, their status.
    """
    import yaml
    from pydantic import ValidationError

    from clusterops.exceptions import NotFoundError
    from clusterops.models import Cluster, record_from_manifest

    path = Path(file)
    if not path.exists():
        console.print(f"[red]Error:[/red] Manifest file not found: {file}")
        raise typer.Exit(code=1)

    try:
        with open(path) as f:
            documents = [doc for doc in yaml.safe_load_all(f) if doc]
    except yaml.YAMLError as e:
        console.print(f"[red]Manifest Error:[/red] Failed to parse {file}: {e}")
        raise typer.Exit(code=1)

    manifests = []
    for doc in documents:
        manifests.extend(doc if isinstance(doc, list) else [doc])

    try:
        records = [record_from_manifest(m) for m in manifests]
    except ValidationError as e:
        console.print("[red]Validation Error:[/red]")
        for error in e.errors():
            field = ".".join(str(x) for x in error["loc"])
            console.print(f"  - {field}: {error['msg']}")
        raise typer.Exit(code=1)
    except ValueError as e:
        console.print(f"[red]Manifest Error:[/red] {e}")
        raise typer.Exit(code=1)

    try:
        store = open_store()
        for record in records:
            try:
                existing = store.get(type(record), record.namespace, record.name)
            except NotFoundError:
                store.create(record)
                console.print(f"[green]✓[/green] {record.kind} {record.key()} created")
                continue

            record.metadata = existing.metadata.model_copy(
                update={
                    "labels": record.metadata.labels,
                    "annotations": record.metadata.annotations,
                }
            )
            if isinstance(record, Cluster):
                record.status = existing.status
            store.update(record)
            console.print(f"[green]✓[/green] {record.kind} {record.key()} configured")
    except ClusterOpsError as e:
        _fail(e)


@app.command()
def machines(
    namespace: str | None = typer.Option(None, "--namespace", "-n", help="Only this namespace"),
) -> None:
    """List inventoried machines and the binding holding each one."""
    from clusterops.models import Machine, MachineBinding
    from clusterops.models.machine import usage_names

    try:
        store = open_store()
        machine_list = store.list(Machine, namespace=namespace)
        holders: dict[str, tuple[str, int]] = {}
        for binding in store.list(MachineBinding):
            for uid, bound in binding.machines.items():
                holders[uid] = (binding.name, bound.usage)
    except ClusterOpsError as e:
        _fail(e)

    if not machine_list:
        console.print("[yellow]No machines found[/yellow]")
        return

    table = Table(title="Machines")
    table.add_column("Namespace", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Address", style="magenta")
    table.add_column("Arch")
    table.add_column("Features")
    table.add_column("Bound To", style="yellow")
    table.add_column("Roles", style="green")

    for machine in machine_list:
        binding, usage = holders.get(machine.uid, ("", 0))
        features = ", ".join(f"{k}={v}" for k, v in sorted(machine.metadata.labels.items()))
        table.add_row(
            machine.namespace,
            machine.name,
            f"{machine.address}:{machine.port}",
            machine.arch,
            features,
            binding or "-",
            ", ".join(usage_names(usage)) or "-",
        )

    console.print(table)
    bound_count = sum(1 for m in machine_list if m.uid in holders)
    console.print(f"\n[bold]Total machines:[/bold] {len(machine_list)}")
    console.print(f"[bold]Bound:[/bold] {bound_count}")
    console.print(f"[bold]Free:[/bold] {len(machine_list) - bound_count}")


def _timestamp(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _ref_name(ref) -> str:
    return ref.name if ref else "-"


def _print_cluster_detail(cluster) -> None:
    status = cluster.status
    console.print(f"[bold]Cluster:[/bold] {cluster.key()}")
    console.print(f"  Phase: [green]{status.phase.value}[/green]")
    console.print(f"  Binding: {_ref_name(status.binding_ref)}")
    console.print(f"  Credential: {_ref_name(status.credential_ref)}")
    console.print(f"  Volume: {_ref_name(status.volume_ref)}")
    console.print(f"  Snapshot: {_ref_name(status.config_ref)}")
    console.print(f"  Work item: {_ref_name(status.work_item_ref)}")
    console.print(f"  Deployed: {'Yes' if status.has_cluster else 'No'}")
    if cluster.is_deleting():
        console.print("  [yellow]Deletion requested[/yellow]")
    if status.message:
        console.print(f"  Message: {status.message}")

    if not status.work_history:
        return
    history = Table(title="Work history")
    history.add_column("Work Item", style="cyan")
    history.add_column("Started")
    history.add_column("Finished")
    history.add_column("Result")
    for entry in status.work_history:
        history.add_row(
            entry.name, _timestamp(entry.start_time), _timestamp(entry.finish_time), entry.message
        )
    console.print(history)


@app.command()
def status(
    name: str | None = typer.Argument(None, help="Cluster name; all clusters when omitted"),
    namespace: str = typer.Option("default", "--namespace", "-n", help="Cluster namespace"),
) -> None:
    """Show cluster phases, references and work history."""
    from clusterops.models import Cluster

    try:
        store = open_store()
        if name:
            clusters = [store.get(Cluster, namespace, name)]
        else:
            clusters = store.list(Cluster)
    except ClusterOpsError as e:
        _fail(e)

    if not clusters:
        console.print("[yellow]No clusters found[/yellow]")
        return

    if name:
        _print_cluster_detail(clusters[0])
        return

    table = Table(title="Clusters")
    table.add_column("Cluster", style="cyan")
    table.add_column("Phase", style="green")
    table.add_column("Binding")
    table.add_column("Work Item")
    table.add_column("Deleting")
    table.add_column("Message", style="yellow")

    for cluster in clusters:
        table.add_row(
            str(cluster.key()),
            cluster.status.phase.value,
            _ref_name(cluster.status.binding_ref),
            _ref_name(cluster.status.work_item_ref),
            "Yes" if cluster.is_deleting() else "No",
            cluster.status.message or "-",
        )
    console.print(table)
    console.print(f"\n[bold]Total clusters:[/bold] {len(clusters)}")


@app.command()
def reconcile(
    name: str = typer.Argument(..., help="Cluster name"),
    namespace: str = typer.Option("default", "--namespace", "-n", help="Cluster namespace"),
    passes: int = typer.Option(50, "--passes", "-p", help="Maximum number of reconcile passes"),
    wait: bool = typer.Option(
        True, "--wait/--no-wait", help="Sleep for requested requeue delays between passes"
    ),
) -> None:
    """
    Run reconcile passes for one cluster in this process.

    Passes continue until the cluster settles, i.e. no requeue is requested
    and the last pass did not change the record.
    """
    from clusterops.controller import reconcile_until_settled
    from clusterops.models import RecordKey
    from clusterops.reconciler import ClusterReconciler

    key = RecordKey(namespace, name)

    def report(n: int, result) -> None:
        if result.requeue:
            console.print(f"  pass {n}: requeue after {result.requeue_after:g}s")
        else:
            console.print(f"  pass {n}: done")
        if result.error is not None:
            console.print(f"    [yellow]{result.error.message}[/yellow]")

    try:
        settings = load_settings()
        reconciler = ClusterReconciler(open_store(), settings)
        console.print(f"Reconciling cluster {key}")
        result = reconcile_until_settled(
            reconciler, key, max_passes=passes, wait=wait, on_pass=report
        )
    except ClusterOpsError as e:
        _fail(e)

    if result.requeue:
        console.print(f"[yellow]Stopped after {passes} passes, cluster not settled[/yellow]")
    else:
        console.print(f"[green]✓[/green] Cluster {key} settled")


@app.command()
def delete(
    name: str = typer.Argument(..., help="Cluster name"),
    namespace: str = typer.Option("default", "--namespace", "-n", help="Cluster namespace"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation prompt"),
) -> None:
    """Request deletion of a cluster. Teardown happens on later reconcile passes."""
    from clusterops.models import Cluster

    try:
        store = open_store()
        cluster = store.get(Cluster, namespace, name)

        if not force:
            console.print(f"[yellow]Warning:[/yellow] About to delete cluster '{cluster.key()}'")
            console.print(f"  Phase: {cluster.status.phase.value}")
            if not typer.confirm("Are you sure you want to continue?"):
                console.print("Operation cancelled")
                raise typer.Exit(code=0)

        store.delete(Cluster, namespace, name)
    except ClusterOpsError as e:
        _fail(e)

    console.print(f"[green]✓[/green] Deletion of cluster {namespace}/{name} requested")


@app.command()
def run(
    workers: int | None = typer.Option(None, "--workers", "-w", help="Number of worker threads"),
) -> None:
    """Run the controller until interrupted."""
    from clusterops.controller import Controller
    from clusterops.reconciler import ClusterReconciler

    try:
        settings = load_settings()
        controller = Controller(ClusterReconciler(open_store(), settings), workers=workers)
    except ClusterOpsError as e:
        _fail(e)

    console.print(
        f"[bold]Controller running[/bold] ({controller.workers} workers, "
        f"namespace {settings.namespace}). Press Ctrl+C to stop."
    )
    try:
        controller.run()
    except Exception as e:
        _unexpected(e)


@app.command()
def complete_work(
    name: str = typer.Argument(..., help="Work item name"),
    failed: str | None = typer.Option(
        None, "--failed", help="Mark the work item failed with this reason"
    ),
) -> None:
    """Mark a work item finished, standing in for the external execution backend."""
    from clusterops.models import WorkCondition, WorkItem
    from clusterops.models.resources import CONDITION_COMPLETE, CONDITION_FAILED

    try:
        settings = load_settings()
        store = open_store()
        item = store.get(WorkItem, settings.namespace, name)
        if failed is not None:
            condition = WorkCondition(type=CONDITION_FAILED, reason=failed)
        else:
            condition = WorkCondition(type=CONDITION_COMPLETE)
        item.status.conditions.append(condition)
        store.update(item)
    except ClusterOpsError as e:
        _fail(e)

    outcome = f"failed ({failed})" if failed is not None else "complete"
    console.print(f"[green]✓[/green] Work item {name} marked {outcome}")


if __name__ == "__main__":
    app()
