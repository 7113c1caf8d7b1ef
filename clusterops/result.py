"""Outcome of one reconcile pass."""

from dataclasses import dataclass

from clusterops.exceptions import ClusterOpsError


@dataclass
class ReconcileResult:
    """Re-invocation directive returned by a reconcile pass.

    Attributes:
        requeue_after: None for no requeue, 0.0 for immediate, else seconds
        error: Error to surface to the operator; the pass is still retried
    """

    requeue_after: float | None = None
    error: ClusterOpsError | None = None

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None
