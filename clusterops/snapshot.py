"""Render the deployment recipe stored in a cluster's ConfigSnapshot.

The recipe is what the external deploy tool reads from the mounted snapshot.
Rendering is a pure function of (Cluster, MachineBinding, Credential) and emits
YAML with sorted keys and hosts ordered by address, so identical inputs always
produce byte-identical output.
"""

import yaml

from clusterops.config import PACKAGE_MOUNT_FORMAT, PRIVATE_KEY_MOUNT_FORMAT
from clusterops.defaults import DEFAULT_API_PORT, packages_for, ports_for
from clusterops.models import Cluster, Credential, MachineBinding, PackageSpec, Usage
from clusterops.models.resources import (
    BASIC_AUTH,
    PASSWORD_KEY,
    SSH_AUTH,
    SSH_PRIVATE_KEY,
    USERNAME_KEY,
)

DEFAULT_CONFIG_DIR = "/etc/kubernetes"
DEFAULT_CERT_DIR = "/etc/kubernetes/pki"

# role -> key of DeployOptions.packages
_PACKAGE_GROUPS = (
    (Usage.MASTER, "master"),
    (Usage.WORKER, "node"),
    (Usage.ETCD, "etcd"),
    (Usage.LOADBALANCE, "loadbalance"),
)


def _login_fields(cluster: Cluster, credential: Credential) -> dict:
    if credential.type == BASIC_AUTH:
        return {
            "username": credential.data.get(USERNAME_KEY, ""),
            "password": credential.data.get(PASSWORD_KEY, ""),
        }
    if credential.type == SSH_AUTH:
        key_dir = PRIVATE_KEY_MOUNT_FORMAT.format(cluster=cluster.name)
        return {
            "username": credential.data.get(USERNAME_KEY, "root"),
            "private-key-path": f"{key_dir}/{SSH_PRIVATE_KEY}",
        }
    return {}


def _merge_packages(host: dict, user_packages: list[PackageSpec], defaults: list[dict]) -> None:
    """User packages replace defaults of the same name."""
    packages = host["packages"]
    index = {p["name"]: i for i, p in enumerate(packages)}
    for pkg in user_packages:
        entry = {"name": pkg.name, "type": pkg.type}
        if pkg.dst:
            entry["dstpath"] = pkg.dst
        if pkg.name in index:
            packages[index[pkg.name]] = entry
        else:
            index[pkg.name] = len(packages)
            packages.append(entry)
    for entry in defaults:
        if entry["name"] not in index:
            index[entry["name"]] = len(packages)
            packages.append(entry)


def build_hosts(cluster: Cluster, binding: MachineBinding, credential: Credential) -> list[dict]:
    """Merge bound machines into one host entry per address with a role bitmask."""
    options = cluster.spec.options
    login = _login_fields(cluster, credential)
    hosts: dict[str, dict] = {}

    for usage, group in _PACKAGE_GROUPS:
        machines = binding.machines_for(usage)
        if usage == Usage.ETCD and not machines:
            # no dedicated coordination-store machines: run it on the masters
            machines = binding.machines_for(Usage.MASTER)

        for bound in machines:
            host = hosts.get(bound.address)
            if host is None:
                host = {
                    "name": bound.name,
                    "address": bound.address,
                    "port": bound.port,
                    "arch": bound.arch,
                    "type": 0,
                    "packages": [],
                    "open-ports": [],
                    **login,
                }
                hosts[bound.address] = host
            host["type"] |= int(usage)
            _merge_packages(host, options.packages.get(group, []), packages_for(usage))
            for port in ports_for(usage, options.api_endpoint):
                if port not in host["open-ports"]:
                    host["open-ports"].append(port)

    return [hosts[address] for address in sorted(hosts)]


def render_config(cluster: Cluster, binding: MachineBinding, credential: Credential) -> dict:
    """Build the recipe as plain data."""
    options = cluster.spec.options
    nodes = build_hosts(cluster, binding, credential)
    etcd_nodes = [node["name"] for node in nodes if node["type"] & Usage.ETCD]

    return {
        "name": cluster.name,
        "config-dir": DEFAULT_CONFIG_DIR,
        "certificate": {"savepath": DEFAULT_CERT_DIR, "external-ca": False},
        "servicecluster": {
            "cidr": options.service_cidr,
            "dns-address": options.dns_address,
            "gateway": options.gateway,
        },
        "network": {
            "pod-cidr": options.pod_cidr,
            "plugin": options.network_plugin,
            "plugin-args": dict(options.network_plugin_args),
        },
        "local-endpoint": {"advertise-address": "127.0.0.1", "bind-port": DEFAULT_API_PORT},
        "controlplane": {
            "endpoint": options.api_endpoint,
            "apiconf": {
                "timeout": options.api_timeout,
                "cert-sans": {
                    "dns-names": list(options.cert_sans_dns),
                    "ips": list(options.cert_sans_ips),
                },
            },
            "kubeletconf": {
                "dns-vip": options.dns_address,
                "dns-domain": options.dns_domain,
                "pause-image": options.pause_image,
                "network-plugin": "cni",
                "cni-bin-dir": options.cni_bin_dir,
                "runtime": options.runtime,
                "runtime-endpoint": options.runtime_endpoint,
            },
        },
        "packagesource": {
            "type": "tar.gz",
            "dir": PACKAGE_MOUNT_FORMAT.format(cluster=cluster.name),
        },
        "etcdcluster": {
            "token": options.etcd_token,
            "data-dir": options.etcd_data_dir,
            "certs-dir": DEFAULT_CERT_DIR,
            "external": options.etcd_external,
            "nodes": etcd_nodes,
        },
        "nodes": nodes,
    }


def render_config_snapshot(
    cluster: Cluster, binding: MachineBinding, credential: Credential
) -> str:
    """Render the recipe to YAML text."""
    return yaml.safe_dump(
        render_config(cluster, binding, credential),
        default_flow_style=False,
        sort_keys=True,
    )
