"""Level-triggered reconciliation of Cluster records.

A pass reads the cluster, performs the single step its current phase calls
for, persists the status if it changed and returns how long to wait before
the next pass. Waiting is always expressed as a requeue, never by blocking.
"""

from collections.abc import Callable
from datetime import datetime

from clusterops.allocator import MachineAllocator
from clusterops.config import FINALIZER_NAME, OperatorSettings, binding_name
from clusterops.exceptions import (
    ClusterOpsError,
    ConflictError,
    CredentialError,
    InsufficientMachinesError,
    NotFoundError,
    StoreError,
    ValidationError,
    VolumeNotReadyError,
)
from clusterops.logging_config import get_logger
from clusterops.models import Cluster, MachineBinding, MachineCondition, Phase, RecordKey, parse_key
from clusterops.models.resources import DEPLOY
from clusterops.provisioner import ResourceProvisioner, owner_labels
from clusterops.result import ReconcileResult
from clusterops.store import ResourceStore
from clusterops.teardown import DeletionPipeline
from clusterops.workitems import SUCCESS_MESSAGE, WorkExecutionMonitor

logger = get_logger(__name__)

CREATED_MESSAGE = "create cluster job successfully"


class ClusterReconciler:
    """Reconciles one cluster key per call.

    Example:
        >>> reconciler = ClusterReconciler(store)
        >>> result = reconciler.reconcile("default/demo")
        >>> result.error is None
        True
    """

    def __init__(
        self,
        store: ResourceStore,
        settings: OperatorSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.settings = settings or OperatorSettings()
        self.allocator = MachineAllocator(store, self.settings.namespace)
        self.provisioner = ResourceProvisioner(store, self.settings)
        self.monitor = WorkExecutionMonitor(store, self.settings, clock)
        self.teardown = DeletionPipeline(store, self.settings, self.allocator, self.monitor)
        self.handlers: dict[Phase, Callable[[Cluster], ReconcileResult]] = {
            Phase.ALLOCATING: self.allocate,
            Phase.VALIDATING_CREDENTIAL: self.validate_credential,
            Phase.VALIDATING_VOLUME: self.validate_volume,
            Phase.SNAPSHOTTING: self.snapshot,
            Phase.DEPLOYING: self.deploy,
            Phase.MONITORING: self.monitor_deploy,
            Phase.READY: self.ready,
        }

    def reconcile(self, key: "str | RecordKey") -> ReconcileResult:
        """Run one reconcile pass for a cluster.

        Errors are never raised; they are returned in ``ReconcileResult.error``.
        Machine shortages leave the status untouched; other errors are also
        written to ``status.message``.
        """
        key = parse_key(key)
        try:
            cluster = self.store.get(Cluster, key.namespace, key.name)
        except NotFoundError:
            logger.debug(f"Cluster {key} no longer exists, nothing to do")
            return ReconcileResult()

        if not cluster.is_deleting() and not cluster.has_finalizer(FINALIZER_NAME):
            cluster.add_finalizer(FINALIZER_NAME)
            logger.info(f"Added finalizer to cluster {key}")
            return self._persist(cluster, ReconcileResult())

        status_before = cluster.status.model_dump()
        finalizers_before = list(cluster.metadata.finalizers)

        try:
            if cluster.is_deleting():
                result = self.teardown.run(cluster)
            else:
                phase = cluster.status.infer_phase()
                result = self.handlers[phase](cluster)
        except StoreError as e:
            logger.warning(f"Store error while reconciling {key}, retrying: {e.message}")
            return ReconcileResult(requeue_after=self.settings.requeue_short)
        except ClusterOpsError as e:
            logger.error(f"Reconcile of {key} failed: {e.format_message()}")
            result = ReconcileResult(requeue_after=self.settings.requeue_short, error=e)

        if result.error is not None and not isinstance(result.error, InsufficientMachinesError):
            cluster.status.message = result.error.message
        cluster.status.phase = cluster.status.infer_phase(cluster.is_deleting())

        changed = (
            cluster.status.model_dump() != status_before
            or cluster.metadata.finalizers != finalizers_before
        )
        if not changed:
            return result
        return self._persist(cluster, result)

    def _persist(self, cluster: Cluster, result: ReconcileResult) -> ReconcileResult:
        try:
            self.store.update(cluster)
        except ConflictError:
            logger.debug(f"Cluster {cluster.key()} changed while reconciling, retrying")
            return ReconcileResult(requeue_after=self.settings.requeue_short, error=result.error)
        except NotFoundError:
            logger.debug(f"Cluster {cluster.key()} removed while reconciling")
            return ReconcileResult()
        return result

    def allocate(self, cluster: Cluster) -> ReconcileResult:
        name = binding_name(cluster.name)
        try:
            binding = self.store.get(MachineBinding, self.settings.namespace, name)
        except NotFoundError:
            binding = None

        if binding is not None:
            cluster.status.binding_ref = binding.reference()
            return ReconcileResult()

        try:
            self.allocator.allocate(
                cluster.namespace,
                cluster.spec.requirements(),
                name,
                labels=owner_labels(cluster),
            )
        except InsufficientMachinesError as e:
            logger.warning(f"Cannot allocate machines for {cluster.key()}: {e.format_message()}")
            return ReconcileResult(requeue_after=self.settings.requeue_short, error=e)
        return ReconcileResult(requeue_after=self.settings.requeue_short)

    def validate_credential(self, cluster: Cluster) -> ReconcileResult:
        try:
            self.provisioner.prepare_credential(cluster)
        except NotFoundError:
            logger.info(f"Login credential of {cluster.key()} not found yet")
            return ReconcileResult(requeue_after=self.settings.requeue_long)
        except CredentialError as e:
            return ReconcileResult(requeue_after=self.settings.requeue_long, error=e)
        return ReconcileResult()

    def validate_volume(self, cluster: Cluster) -> ReconcileResult:
        try:
            self.provisioner.prepare_volume(cluster)
        except NotFoundError:
            logger.info(f"Package volume of {cluster.key()} not found yet")
            return ReconcileResult(requeue_after=self.settings.requeue_long)
        except VolumeNotReadyError as e:
            logger.info(f"Waiting for package volume of {cluster.key()}: {e.details}")
            return ReconcileResult(requeue_after=self.settings.requeue_long)
        except ValidationError as e:
            return ReconcileResult(requeue_after=self.settings.requeue_long, error=e)
        return ReconcileResult()

    def snapshot(self, cluster: Cluster) -> ReconcileResult:
        if self.provisioner.prepare_config_snapshot(cluster) is None:
            return ReconcileResult(requeue_after=self.settings.requeue_short)
        return ReconcileResult()

    def deploy(self, cluster: Cluster) -> ReconcileResult:
        work_item = self.monitor.ensure(cluster, DEPLOY)
        if self.monitor.is_recorded(cluster, work_item):
            # the previous attempt is still being removed
            return ReconcileResult(requeue_after=self.settings.requeue_short)
        cluster.status.work_item_ref = work_item.reference()
        return ReconcileResult(requeue_after=self.settings.requeue_short)

    def monitor_deploy(self, cluster: Cluster) -> ReconcileResult:
        finished, error = self.monitor.check(cluster)
        if not finished:
            return ReconcileResult(requeue_after=self.settings.requeue_medium)
        if error is not None:
            return ReconcileResult(requeue_after=self.settings.requeue_medium, error=error)

        self._mark_binding_success(cluster)
        cluster.status.has_cluster = True
        cluster.status.message = CREATED_MESSAGE
        logger.info(f"Cluster {cluster.key()} deployed")
        return ReconcileResult()

    def ready(self, cluster: Cluster) -> ReconcileResult:
        return ReconcileResult()

    def _mark_binding_success(self, cluster: Cluster) -> None:
        ref = cluster.status.binding_ref
        binding = self.store.get(MachineBinding, ref.namespace, ref.name)
        for uid, bound in binding.machines.items():
            binding.update_condition(
                uid, MachineCondition(usage=bound.usage, status=SUCCESS_MESSAGE)
            )
        self.store.update(binding)
