"""Default packages and open ports per machine role.

Lookups take a role bitmask (see ``Usage``) and return fresh lists, so callers
may extend the result without touching the tables.
"""

from urllib.parse import urlparse

from clusterops.models.machine import Usage

DEFAULT_API_PORT = 6443

_MASTER_PACKAGES = (
    ("kubernetes-client", "repo"),
    ("kubernetes-master", "repo"),
    ("kubernetes-kubeadm", "repo"),
    ("coredns", "repo"),
    ("tar", "repo"),
)

_WORKER_PACKAGES = (
    ("docker-engine", "repo"),
    ("iSulad", "repo"),
    ("kubernetes-client", "repo"),
    ("kubernetes-node", "repo"),
    ("kubernetes-kubelet", "repo"),
    ("tar", "repo"),
)

_ETCD_PACKAGES = (
    ("etcd", "repo"),
    ("tar", "repo"),
)

_LOADBALANCE_PACKAGES = (
    ("nginx", "repo"),
    ("tar", "repo"),
)

_MASTER_PORTS = (
    (6443, "tcp"),  # kube-apiserver
    (10251, "tcp"),  # kube-scheduler
    (10252, "tcp"),  # kube-controller-manager
    (53, "tcp"),  # coredns
    (53, "udp"),
    (9153, "tcp"),
)

_WORKER_PORTS = (
    (10250, "tcp"),  # kubelet
    (10256, "tcp"),  # kube-proxy
)

_ETCD_PORTS = (
    (2379, "tcp"),  # client
    (2380, "tcp"),  # peer
    (2381, "tcp"),  # metrics
)

_PACKAGES = (
    (Usage.MASTER, _MASTER_PACKAGES),
    (Usage.WORKER, _WORKER_PACKAGES),
    (Usage.ETCD, _ETCD_PACKAGES),
    (Usage.LOADBALANCE, _LOADBALANCE_PACKAGES),
)


def port_from_endpoint(endpoint: str) -> int:
    """Extract the port of an api-server endpoint such as ``https://10.0.0.1:6443``."""
    if not endpoint:
        return DEFAULT_API_PORT
    try:
        port = urlparse(endpoint).port
    except ValueError:
        return DEFAULT_API_PORT
    return port or DEFAULT_API_PORT


def packages_for(role_mask: int) -> list[dict]:
    """Default packages for every role in the mask, first occurrence of a name wins."""
    seen = set()
    packages = []
    for usage, table in _PACKAGES:
        if not role_mask & usage:
            continue
        for name, pkg_type in table:
            if name in seen:
                continue
            seen.add(name)
            packages.append({"name": name, "type": pkg_type})
    return packages


def ports_for(role_mask: int, api_endpoint: str = "") -> list[dict]:
    """Ports that must be open for every role in the mask, without duplicates."""
    tables = []
    if role_mask & Usage.MASTER:
        tables.append(_MASTER_PORTS)
    if role_mask & Usage.WORKER:
        tables.append(_WORKER_PORTS)
    if role_mask & Usage.ETCD:
        tables.append(_ETCD_PORTS)
    if role_mask & Usage.LOADBALANCE:
        tables.append(((port_from_endpoint(api_endpoint), "tcp"),))

    seen = set()
    ports = []
    for table in tables:
        for port, protocol in table:
            if (port, protocol) in seen:
                continue
            seen.add((port, protocol))
            ports.append({"port": port, "protocol": protocol})
    return ports
