"""Ordered teardown of everything a cluster created.

Each step inspects the store, removes at most one kind of record and either
returns a ReconcileResult (suspend until the next pass) or None to fall
through to the next step. Records are looked up by their deterministic names
as well as by status references so nothing leaks when a reference was never
recorded.
"""

from collections.abc import Callable

from clusterops.allocator import MachineAllocator
from clusterops.config import FINALIZER_NAME, OperatorSettings, binding_name, snapshot_name
from clusterops.exceptions import NotFoundError
from clusterops.logging_config import get_logger
from clusterops.models import Cluster, ConfigSnapshot, MachineBinding, WorkItem
from clusterops.models.resources import CLEANUP, DEPLOY
from clusterops.result import ReconcileResult
from clusterops.store import ResourceStore
from clusterops.workitems import WorkExecutionMonitor, is_finished, work_item_name

logger = get_logger(__name__)

Step = Callable[[Cluster], "ReconcileResult | None"]


class DeletionPipeline:
    """Drives a deleting cluster back to nothing, one step per pass."""

    def __init__(
        self,
        store: ResourceStore,
        settings: OperatorSettings,
        allocator: MachineAllocator,
        monitor: WorkExecutionMonitor,
    ):
        self.store = store
        self.settings = settings
        self.allocator = allocator
        self.monitor = monitor
        self.steps: list[Step] = [
            self.remove_deploy_work,
            self.cleanup_cluster,
            self.remove_cleanup_work,
            self.remove_binding,
            self.remove_snapshot,
            self.finalize,
        ]

    def run(self, cluster: Cluster) -> ReconcileResult:
        """Run steps in order until one asks to suspend. Mutates ``cluster.status``."""
        for step in self.steps:
            result = step(cluster)
            if result is not None:
                return result
        return ReconcileResult()

    def remove_deploy_work(self, cluster: Cluster) -> ReconcileResult | None:
        ref = cluster.status.work_item_ref
        name = ref.name if ref else work_item_name(cluster.name, DEPLOY)
        try:
            work_item = self.store.get(WorkItem, self.settings.namespace, name)
        except NotFoundError:
            cluster.status.work_item_ref = None
            return None

        finished, _ = is_finished(work_item)
        grace = 0 if finished else self.settings.grace_period_seconds
        logger.info(f"Deleting deploy work item {name} of cluster {cluster.name} (grace {grace}s)")
        self.monitor.remove(work_item, grace_period_seconds=grace)
        return ReconcileResult(requeue_after=self.settings.requeue_medium)

    def cleanup_cluster(self, cluster: Cluster) -> ReconcileResult | None:
        if not cluster.status.has_cluster:
            return None

        finished, error = self.monitor.run_cleanup(cluster)
        if not finished:
            return ReconcileResult(requeue_after=self.settings.requeue_medium)
        if error is not None:
            return ReconcileResult(requeue_after=self.settings.requeue_retry)

        logger.info(f"Cleanup of cluster {cluster.name} finished")
        cluster.status.has_cluster = False
        return ReconcileResult(requeue_after=self.settings.requeue_short)

    def remove_cleanup_work(self, cluster: Cluster) -> ReconcileResult | None:
        """Delete the cleanup work item once its outcome is saved with the cluster."""
        name = work_item_name(cluster.name, CLEANUP)
        try:
            work_item = self.store.get(WorkItem, self.settings.namespace, name)
        except NotFoundError:
            return None

        self.monitor.remove(work_item, grace_period_seconds=0)
        logger.info(f"Deleted cleanup work item {name} of cluster {cluster.name}")
        return ReconcileResult(requeue_after=0.0)

    def remove_binding(self, cluster: Cluster) -> ReconcileResult | None:
        ref = cluster.status.binding_ref
        name = ref.name if ref else binding_name(cluster.name)
        try:
            self.store.get(MachineBinding, self.settings.namespace, name)
        except NotFoundError:
            self.allocator.release(name)
            cluster.status.binding_ref = None
            return None

        self.store.delete(MachineBinding, self.settings.namespace, name)
        released = self.allocator.release(name)
        logger.info(f"Deleted machine binding {name}, released {released} machine claims")
        return ReconcileResult(requeue_after=0.0)

    def remove_snapshot(self, cluster: Cluster) -> ReconcileResult | None:
        ref = cluster.status.config_ref
        name = ref.name if ref else snapshot_name(cluster.name)
        try:
            self.store.get(ConfigSnapshot, self.settings.namespace, name)
        except NotFoundError:
            cluster.status.config_ref = None
            return None

        self.store.delete(ConfigSnapshot, self.settings.namespace, name)
        logger.info(f"Deleted config snapshot {name}")
        return ReconcileResult(requeue_after=0.0)

    def finalize(self, cluster: Cluster) -> ReconcileResult | None:
        cluster.status.credential_ref = None
        cluster.status.volume_ref = None
        cluster.status.deleted = True
        cluster.remove_finalizer(FINALIZER_NAME)
        logger.info(f"Cluster {cluster.key()} torn down, releasing finalizer")
        return ReconcileResult()
