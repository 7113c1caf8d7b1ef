"""Data models for inventoried machines and their allocation."""

from enum import IntFlag

from pydantic import BaseModel, Field, field_validator

from clusterops.models.meta import Record


class Usage(IntFlag):
    """Role a machine serves in a cluster. Values combine as a bitmask."""

    MASTER = 0x1
    WORKER = 0x2
    ETCD = 0x4
    LOADBALANCE = 0x8


USAGE_NAMES = {
    Usage.MASTER: "master",
    Usage.WORKER: "worker",
    Usage.ETCD: "etcd",
    Usage.LOADBALANCE: "loadbalance",
}


def usage_names(mask: int) -> list[str]:
    """List the role names contained in a usage bitmask."""
    return [name for usage, name in USAGE_NAMES.items() if mask & usage]


class Machine(Record):
    """An inventoried compute node. Labels are its features."""

    kind = "Machine"

    address: str
    port: int = 22
    arch: str = "amd64"

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        if not v:
            raise ValueError("address cannot be empty")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError(f"port must be between 1 and 65535, got {v}")
        return v

    @field_validator("arch")
    @classmethod
    def validate_arch(cls, v: str) -> str:
        allowed = ["amd64", "arm64", "aarch64", "x86_64"]
        if v not in allowed:
            raise ValueError(f"arch must be one of {allowed}, got '{v}'")
        return v

    @property
    def uid(self) -> str:
        return self.metadata.uid


class BoundMachine(BaseModel):
    """Snapshot of a machine taken when it was bound."""

    name: str
    address: str
    port: int = 22
    arch: str = "amd64"
    usage: int = 0


class MachineCondition(BaseModel):
    """Per-machine outcome recorded on a binding."""

    usage: int = 0
    status: str = ""
    message: str = ""


class MachineBinding(Record):
    """Allocation lock mapping machines to role usages for one cluster."""

    kind = "MachineBinding"

    machines: dict[str, BoundMachine] = Field(default_factory=dict)
    conditions: dict[str, MachineCondition] = Field(default_factory=dict)

    def add_machine(self, machine: Machine, usage: Usage) -> None:
        """Bind a machine for a usage, merging with any usage it already has."""
        bound = self.machines.get(machine.uid)
        if bound is None:
            bound = BoundMachine(
                name=machine.name, address=machine.address, port=machine.port, arch=machine.arch
            )
            self.machines[machine.uid] = bound
        bound.usage |= int(usage)
        self.metadata.labels[machine.name] = ""

    def machines_for(self, usage: Usage) -> list[BoundMachine]:
        """Machines bound for a usage, in binding order."""
        return [m for m in self.machines.values() if m.usage & usage]

    def update_condition(self, uid: str, condition: MachineCondition) -> None:
        self.conditions[uid] = condition

    def bound_uids(self) -> set[str]:
        return set(self.machines)


class MachineClaim(Record):
    """Create-if-absent lock on a single machine, owned by one binding."""

    kind = "MachineClaim"

    machine_uid: str
    binding: str
