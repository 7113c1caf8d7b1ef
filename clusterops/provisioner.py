"""Validation and creation of the resources a work item depends on.

Credentials and package volumes are managed outside the controller; they are
only checked and referenced. The ConfigSnapshot is rendered and created here.
"""

from clusterops.config import (
    CLUSTER_LABEL,
    CLUSTER_NAMESPACE_LABEL,
    SNAPSHOT_DATA_KEY,
    OperatorSettings,
    snapshot_name,
)
from clusterops.exceptions import (
    ConflictError,
    CredentialError,
    NotFoundError,
    ValidationError,
    VolumeNotReadyError,
)
from clusterops.logging_config import get_logger
from clusterops.models import (
    Cluster,
    ConfigSnapshot,
    Credential,
    MachineBinding,
    ObjectMeta,
    ResourceReference,
    Volume,
)
from clusterops.models.resources import (
    BASIC_AUTH,
    PASSWORD_KEY,
    SSH_AUTH,
    SSH_PRIVATE_KEY,
    USERNAME_KEY,
    VOLUME_BOUND,
)
from clusterops.snapshot import render_config_snapshot
from clusterops.store import ResourceStore

logger = get_logger(__name__)


def owner_labels(cluster: Cluster) -> dict[str, str]:
    """Labels tying a controller-created record back to its cluster."""
    return {CLUSTER_LABEL: cluster.name, CLUSTER_NAMESPACE_LABEL: cluster.namespace}


def validate_credential(credential: Credential) -> None:
    """Check that a credential carries the fields its auth type needs.

    Raises:
        CredentialError: If the type is unsupported or a required field is missing
    """
    if credential.type == SSH_AUTH:
        required = [SSH_PRIVATE_KEY]
    elif credential.type == BASIC_AUTH:
        required = [USERNAME_KEY, PASSWORD_KEY]
    else:
        raise CredentialError(
            f"Credential {credential.name} type '{credential.type}' is invalid",
            f"Supported types: {SSH_AUTH}, {BASIC_AUTH}",
        )

    missing = [key for key in required if not credential.data.get(key)]
    if missing:
        raise CredentialError(
            f"Credential {credential.name} is invalid",
            f"{credential.type} credentials require: {', '.join(missing)}",
        )


class ResourceProvisioner:
    """Prepares login credential, package volume and config snapshot for a cluster."""

    def __init__(self, store: ResourceStore, settings: OperatorSettings):
        self.store = store
        self.settings = settings

    def _resolve(self, ref: ResourceReference, what: str) -> str:
        """Return the namespace of a user reference, which must be the controller namespace."""
        namespace = ref.namespace or self.settings.namespace
        if namespace != self.settings.namespace:
            raise ValidationError(
                f"{what} {ref.name} namespace must be {self.settings.namespace}",
                f"found namespace '{ref.namespace}'",
            )
        return namespace

    def prepare_credential(self, cluster: Cluster) -> Credential:
        """Validate the login credential and record a reference to it.

        Raises:
            NotFoundError: If the credential does not exist yet
            CredentialError: If it is in the wrong namespace or malformed
        """
        ref = cluster.spec.login_secret
        try:
            namespace = self._resolve(ref, "Login credential")
        except ValidationError as e:
            raise CredentialError(e.message, e.details)

        credential = self.store.get(Credential, namespace, ref.name)
        try:
            validate_credential(credential)
        except CredentialError as e:
            logger.error(f"Credential for cluster {cluster.name} rejected: {e.message}")
            raise

        cluster.status.credential_ref = credential.reference()
        logger.info(f"Login credential {credential.name} accepted for cluster {cluster.name}")
        return credential

    def prepare_volume(self, cluster: Cluster) -> Volume:
        """Validate the package volume is bound and record a reference to it.

        Raises:
            NotFoundError: If the volume does not exist yet
            ValidationError: If it is in the wrong namespace
            VolumeNotReadyError: If it is not bound
        """
        ref = cluster.spec.package_volume
        namespace = self._resolve(ref, "Package volume")

        volume = self.store.get(Volume, namespace, ref.name)
        if volume.phase != VOLUME_BOUND:
            raise VolumeNotReadyError(
                f"Package volume {volume.name} is not bound",
                f"current phase: {volume.phase}",
            )

        cluster.status.volume_ref = volume.reference()
        logger.info(f"Package volume {volume.name} accepted for cluster {cluster.name}")
        return volume

    def prepare_config_snapshot(self, cluster: Cluster) -> ConfigSnapshot | None:
        """Render and store the deployment recipe.

        The first call creates the snapshot and returns None; the reference is
        recorded by a later call that finds the snapshot in the store.

        Raises:
            NotFoundError: If the binding or credential referenced by status is gone
        """
        name = snapshot_name(cluster.name)
        try:
            snapshot = self.store.get(ConfigSnapshot, self.settings.namespace, name)
        except NotFoundError:
            snapshot = None

        if snapshot is not None:
            cluster.status.config_ref = snapshot.reference()
            logger.info(f"Saved cluster config into snapshot {name} for {cluster.name}")
            return snapshot

        binding_ref = cluster.status.binding_ref
        credential_ref = cluster.status.credential_ref
        binding = self.store.get(MachineBinding, binding_ref.namespace, binding_ref.name)
        credential = self.store.get(Credential, credential_ref.namespace, credential_ref.name)

        data = render_config_snapshot(cluster, binding, credential)
        snapshot = ConfigSnapshot(
            metadata=ObjectMeta(
                name=name, namespace=self.settings.namespace, labels=owner_labels(cluster)
            ),
            data={SNAPSHOT_DATA_KEY: data},
        )
        try:
            self.store.create(snapshot)
            logger.debug(f"Created config snapshot {name} for cluster {cluster.name}")
        except ConflictError:
            logger.debug(f"Config snapshot {name} appeared concurrently")
        return None
