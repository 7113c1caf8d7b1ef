"""Machine selection and exclusive reservation.

Selection scans machines in listing order and skips any machine already bound
by a live MachineBinding. Because the scan is optimistic, reservation is made
safe by MachineClaim records: one claim per selected machine, created through
the store's conflict-detecting create. Whichever allocation creates a claim
first owns the machine; the loser releases what it took and retries later.
"""

from clusterops.config import BINDING_LABEL
from clusterops.exceptions import (
    ConflictError,
    InsufficientMachinesError,
    MachineConflictError,
    NotFoundError,
)
from clusterops.logging_config import get_logger
from clusterops.models import (
    Machine,
    MachineBinding,
    MachineClaim,
    ObjectMeta,
    RoleRequirement,
    Usage,
)
from clusterops.models.machine import USAGE_NAMES
from clusterops.store import ResourceStore

logger = get_logger(__name__)

ROLE_ORDER = (Usage.MASTER, Usage.WORKER, Usage.ETCD, Usage.LOADBALANCE)


def claim_name(machine_uid: str) -> str:
    return f"claim-{machine_uid}"


def filter_machines(
    machines: list[Machine], required: int, bound_uids: set[str]
) -> tuple[list[Machine], list[Machine]]:
    """Pick ``required`` machines not present in ``bound_uids``.

    Args:
        machines: Candidates in listing order
        required: Number of machines the role needs; <= 0 selects nothing
        bound_uids: Machines already held by another binding

    Returns:
        Tuple of (selected, unused) machines, both in listing order

    Raises:
        InsufficientMachinesError: If fewer than ``required`` candidates are free
    """
    if required <= 0:
        return [], list(machines)

    if len(machines) < required:
        raise InsufficientMachinesError(
            "Not enough machines for requirement",
            f"need {required}, only {len(machines)} match the requested features",
        )

    selected: list[Machine] = []
    unused: list[Machine] = []
    for machine in machines:
        if len(selected) == required:
            unused.append(machine)
            continue
        if machine.uid in bound_uids:
            unused.append(machine)
            continue
        selected.append(machine)

    if len(selected) != required:
        raise InsufficientMachinesError(
            "Not enough machines for requirement",
            f"need {required}, only {len(selected)} of {len(machines)} matching machines are free",
        )

    return selected, unused


class MachineAllocator:
    """Selects machines for every role of a cluster and records them in a binding."""

    def __init__(self, store: ResourceStore, namespace: str):
        """Initialize the allocator.

        Args:
            store: Resource store holding machines, bindings and claims
            namespace: Namespace where bindings and claims are kept
        """
        self.store = store
        self.namespace = namespace

    def label_select_machines(self, namespace: str, requirement: RoleRequirement) -> list[Machine]:
        return self.store.list(Machine, namespace=namespace, label_selector=requirement.features)

    def bound_machine_uids(self, exclude_binding: str | None = None) -> set[str]:
        """Machines held by live bindings or claimed by bindings other than ``exclude_binding``."""
        bound: set[str] = set()
        for binding in self.store.list(MachineBinding, namespace=self.namespace):
            if binding.is_deleting() or binding.name == exclude_binding:
                continue
            bound |= binding.bound_uids()
        for claim in self.store.list(MachineClaim, namespace=self.namespace):
            if claim.binding != exclude_binding:
                bound.add(claim.machine_uid)
        return bound

    def allocate(
        self,
        namespace: str,
        requirements: list[tuple[Usage, RoleRequirement]],
        binding_name: str,
        labels: dict[str, str] | None = None,
    ) -> MachineBinding:
        """Select machines for every role and persist the binding.

        Args:
            namespace: Namespace of the machine pool
            requirements: (usage, requirement) pairs; evaluated in ROLE_ORDER
            binding_name: Deterministic name of the binding to create
            labels: Extra labels for the binding

        Returns:
            The created MachineBinding

        Raises:
            InsufficientMachinesError: If any role cannot be satisfied
            MachineConflictError: If a selected machine was claimed concurrently
            ConflictError: If the binding already exists
        """
        by_usage = dict(requirements)
        bound = self.bound_machine_uids(exclude_binding=binding_name)
        consumed: set[str] = set()

        binding = MachineBinding(
            metadata=ObjectMeta(
                name=binding_name, namespace=self.namespace, labels=dict(labels or {})
            )
        )

        for usage in ROLE_ORDER:
            requirement = by_usage.get(usage, RoleRequirement())
            role = USAGE_NAMES[usage]
            candidates = [
                m
                for m in self.label_select_machines(namespace, requirement)
                if m.uid not in consumed
            ]
            try:
                selected, _ = filter_machines(candidates, requirement.number, bound)
            except InsufficientMachinesError as e:
                logger.warning(f"Allocation for {binding_name} failed on {role}: {e.details}")
                raise InsufficientMachinesError(
                    f"Not enough machines for {role} requirement", e.details
                )

            if selected:
                logger.info(
                    f"Selected machines for {role}: {', '.join(m.name for m in selected)}"
                )
            for machine in selected:
                binding.add_machine(machine, usage)
                consumed.add(machine.uid)

        taken = self._claim(binding)
        try:
            created = self.store.create(binding)
        except ConflictError:
            logger.warning(f"Binding {binding_name} already exists, releasing new claims")
            self._release(taken)
            raise

        logger.info(f"Created machine binding {binding_name} with {len(binding.machines)} machines")
        return created

    def release(self, binding_name: str) -> int:
        """Delete every claim owned by a binding. Returns how many were deleted."""
        claims = self.store.list(
            MachineClaim, namespace=self.namespace, label_selector={BINDING_LABEL: binding_name}
        )
        self._release([c.name for c in claims])
        return len(claims)

    def _claim(self, binding: MachineBinding) -> list[str]:
        taken: list[str] = []
        for uid, bound in binding.machines.items():
            claim = MachineClaim(
                metadata=ObjectMeta(
                    name=claim_name(uid),
                    namespace=self.namespace,
                    labels={BINDING_LABEL: binding.name},
                ),
                machine_uid=uid,
                binding=binding.name,
            )
            try:
                self.store.create(claim)
                taken.append(claim.name)
                continue
            except ConflictError:
                pass

            try:
                owner = self.store.get(MachineClaim, self.namespace, claim.name).binding
            except NotFoundError:
                owner = None
            if owner == binding.name:
                # left over from an earlier attempt of this same binding
                continue

            logger.warning(f"Machine {bound.name} was claimed by {owner} during allocation")
            self._release(taken)
            raise MachineConflictError(
                f"Machine {bound.name} was claimed concurrently",
                f"claimed by binding {owner}; allocation will be retried",
            )
        return taken

    def _release(self, claim_names: list[str]) -> None:
        for name in claim_names:
            try:
                self.store.delete(MachineClaim, self.namespace, name)
            except NotFoundError:
                logger.debug(f"Claim {name} already released")
