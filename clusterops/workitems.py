"""Creation and monitoring of deploy/cleanup work items."""

from collections.abc import Callable
from datetime import datetime, timezone

from clusterops.config import (
    CONFIG_MOUNT_FORMAT,
    PACKAGE_MOUNT_FORMAT,
    PRIVATE_KEY_MOUNT_FORMAT,
    SNAPSHOT_DATA_KEY,
    OperatorSettings,
    snapshot_name,
)
from clusterops.exceptions import ConflictError, NotFoundError, WorkItemFailedError
from clusterops.logging_config import get_logger
from clusterops.models import Cluster, Credential, ObjectMeta, Volume, WorkHistory, WorkItem
from clusterops.models.resources import (
    CLEANUP,
    CONDITION_COMPLETE,
    CONDITION_FAILED,
    DEPLOY,
    SSH_AUTH,
    VolumeMount,
    VolumeSource,
    WorkItemSpec,
)
from clusterops.provisioner import owner_labels
from clusterops.store import ResourceStore

logger = get_logger(__name__)

SUCCESS_MESSAGE = "success"

_NAME_FORMATS = {DEPLOY: "{cluster}-create-job", CLEANUP: "{cluster}-delete-job"}


def work_item_name(cluster_name: str, action: str) -> str:
    return _NAME_FORMATS[action].format(cluster=cluster_name)


def build_work_item(
    cluster: Cluster,
    action: str,
    volume: Volume,
    credential: Credential,
    settings: OperatorSettings,
) -> WorkItem:
    """Describe the container that runs ``<tool> -d <action> -f <recipe>``.

    The snapshot and package volume are always mounted read-only; an ssh-auth
    credential is mounted as well so the tool can read the private key.
    """
    config_path = CONFIG_MOUNT_FORMAT.format(cluster=cluster.name)
    command = [settings.tool, "-d", action, "-f", f"{config_path}/{SNAPSHOT_DATA_KEY}"]

    volumes = [
        VolumeSource(name="cluster-config", config_snapshot=snapshot_name(cluster.name)),
        VolumeSource(name="cluster-package", volume_claim=volume.name),
    ]
    mounts = [
        VolumeMount(name="cluster-config", mount_path=config_path),
        VolumeMount(
            name="cluster-package", mount_path=PACKAGE_MOUNT_FORMAT.format(cluster=cluster.name)
        ),
    ]
    if credential.type == SSH_AUTH:
        volumes.append(VolumeSource(name="privatekey-secret", credential=credential.name))
        mounts.append(
            VolumeMount(
                name="privatekey-secret",
                mount_path=PRIVATE_KEY_MOUNT_FORMAT.format(cluster=cluster.name),
            )
        )

    return WorkItem(
        metadata=ObjectMeta(
            name=work_item_name(cluster.name, action),
            namespace=settings.namespace,
            labels=owner_labels(cluster),
        ),
        spec=WorkItemSpec(
            action=action,
            image=settings.image,
            container_name=settings.container_name,
            command=command,
            volumes=volumes,
            volume_mounts=mounts,
        ),
    )


def is_finished(work_item: WorkItem) -> tuple[bool, WorkItemFailedError | None]:
    """Classify a work item by its terminal conditions.

    Returns:
        (True, None) when complete, (True, error) when failed, (False, None) while running
    """
    for condition in work_item.status.conditions:
        if condition.status != "True":
            continue
        if condition.type == CONDITION_COMPLETE:
            return True, None
        if condition.type == CONDITION_FAILED:
            return True, WorkItemFailedError(
                f"work item: {work_item.name} failed: {condition.reason}", condition.message or None
            )
    return False, None


class WorkExecutionMonitor:
    """Creates work items for a cluster and records their outcome in the cluster's history.

    A finished work item is only deleted once its outcome is part of the
    cluster's saved history. Recording happens on one pass, deletion on a
    later one, so a lost status write never loses an outcome.
    """

    def __init__(
        self,
        store: ResourceStore,
        settings: OperatorSettings,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.settings = settings
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def ensure(self, cluster: Cluster, action: str) -> WorkItem:
        """Fetch the cluster's work item for ``action``, creating it if absent.

        An existing item whose outcome is already recorded is replaced by a
        fresh one.

        Raises:
            NotFoundError: If the referenced credential or volume disappeared
        """
        name = work_item_name(cluster.name, action)
        try:
            existing = self.store.get(WorkItem, self.settings.namespace, name)
        except NotFoundError:
            existing = None

        if existing is not None:
            if not self.is_recorded(cluster, existing):
                return existing
            logger.info(f"Replacing recorded {action} work item {name} of cluster {cluster.name}")
            self.remove(existing, grace_period_seconds=0)

        credential_ref = cluster.status.credential_ref
        volume_ref = cluster.status.volume_ref
        credential = self.store.get(Credential, credential_ref.namespace, credential_ref.name)
        volume = self.store.get(Volume, volume_ref.namespace, volume_ref.name)

        work_item = build_work_item(cluster, action, volume, credential, self.settings)
        try:
            created = self.store.create(work_item)
        except ConflictError:
            return self.store.get(WorkItem, self.settings.namespace, name)
        logger.info(f"Created {action} work item {name} for cluster {cluster.name}")
        return created

    def is_recorded(self, cluster: Cluster, work_item: WorkItem) -> bool:
        """Whether this exact work item already has an entry in the cluster's history."""
        uid = work_item.metadata.uid
        return bool(uid) and any(h.uid == uid for h in cluster.status.work_history)

    def record(
        self, cluster: Cluster, work_item: WorkItem, error: WorkItemFailedError | None
    ) -> WorkHistory:
        """Append the outcome of a finished work item to the cluster's history."""
        history = WorkHistory(
            name=work_item.name,
            uid=work_item.metadata.uid,
            start_time=work_item.metadata.creation_timestamp,
            finish_time=self.clock(),
            message=error.message if error else SUCCESS_MESSAGE,
        )
        cluster.status.work_history.append(history)
        return history

    def remove(self, work_item: WorkItem, grace_period_seconds: int | None = None) -> None:
        try:
            self.store.delete(
                WorkItem,
                work_item.namespace,
                work_item.name,
                grace_period_seconds=grace_period_seconds,
            )
        except NotFoundError:
            logger.debug(f"Work item {work_item.name} already removed")

    def check(self, cluster: Cluster) -> tuple[bool, WorkItemFailedError | None]:
        """Follow the deploy work item referenced by the cluster status.

        A failure is recorded and the reference cleared; the failed item is
        replaced by ``ensure`` on the next pass. A vanished item only clears
        the reference. Success is recorded and the item kept.
        """
        ref = cluster.status.work_item_ref
        try:
            work_item = self.store.get(WorkItem, ref.namespace, ref.name)
        except NotFoundError:
            logger.warning(f"Work item {ref.name} of cluster {cluster.name} disappeared")
            cluster.status.work_item_ref = None
            return False, None

        finished, error = is_finished(work_item)
        if not finished:
            return False, None

        self.record(cluster, work_item, error)
        if error is not None:
            logger.error(f"Work item {work_item.name} failed: {error.message}")
            cluster.status.work_item_ref = None
        return True, error

    def run_cleanup(self, cluster: Cluster) -> tuple[bool, WorkItemFailedError | None]:
        """Drive the cleanup work item and record its outcome once.

        Returns (False, None) while an attempt is running, including a fresh
        attempt that replaced a recorded failure.
        """
        work_item = self.ensure(cluster, CLEANUP)
        finished, error = is_finished(work_item)
        if not finished or self.is_recorded(cluster, work_item):
            return False, None

        self.record(cluster, work_item, error)
        if error is not None:
            logger.error(f"Cleanup of cluster {cluster.name} failed: {error.message}")
        return True, error
