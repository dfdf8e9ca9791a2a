"""Cluster planning.

Derives the immutable ClusterPlan (networks, ports, directories, hostname)
from user overrides and host facts, and persists it to ``cluster.yaml`` so
later commands can attach to a running cluster.
"""

from __future__ import annotations

import ipaddress
import os
import re
import socket
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

import structlog
import yaml

from .errors import ConfigError, FilesystemError
from .shared.paths import ClusterPaths, ensure_dirs

logger = structlog.get_logger(__name__)

MIN_CPUS = 2
NODE_SUBNET_PREFIX = 24
DEFAULT_PODS_PER_NODE = 110

# Well-known offsets inside the service CIDR
API_SERVICE_OFFSET = 1
DNS_SERVICE_OFFSET = 10

DEFAULT_PORTS: dict[str, int] = {
    "etcd": 2379,
    "etcd-peer": 2380,
    "kube-apiserver": 6443,
    "kube-controller-manager": 10257,
    "kube-scheduler": 10259,
    "kubelet": 10250,
    "kubelet-healthz": 10248,
    "kube-proxy-healthz": 10256,
    "kube-proxy-metrics": 10249,
    "coredns": 53,
    "coredns-health": 8080,
    "coredns-ready": 8181,
}

_HOSTNAME_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")


@dataclass(frozen=True)
class HostFacts:
    """Facts about the machine the cluster runs on."""

    cpu_count: int
    hostname: str

    @classmethod
    def detect(cls) -> HostFacts:
        return cls(
            cpu_count=os.cpu_count() or 1,
            hostname=socket.gethostname().lower(),
        )


@dataclass(frozen=True)
class ClusterPlan:
    """Cluster-wide configuration, computed once per run."""

    cluster_cidr: ipaddress.IPv4Network
    service_cidr: ipaddress.IPv4Network
    root: Path
    hostname: str
    nodes: int = 1
    pods_per_node: int = DEFAULT_PODS_PER_NODE
    cpu_count: int = MIN_CPUS
    ports: Mapping[str, int] = field(default_factory=lambda: MappingProxyType(dict(DEFAULT_PORTS)))

    @property
    def paths(self) -> ClusterPaths:
        return ClusterPaths(self.root)

    @property
    def api_service_address(self) -> ipaddress.IPv4Address:
        """First address of the service network, the ``kubernetes`` VIP."""
        return self.service_cidr[API_SERVICE_OFFSET]

    @property
    def dns_service_address(self) -> ipaddress.IPv4Address:
        return self.service_cidr[DNS_SERVICE_OFFSET]

    @property
    def apiserver_url(self) -> str:
        return f"https://127.0.0.1:{self.ports['kube-apiserver']}"

    def port(self, name: str) -> int:
        try:
            return self.ports[name]
        except KeyError:
            raise ConfigError(f"No port assigned to '{name}'", field="ports") from None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cluster_cidr": str(self.cluster_cidr),
            "service_cidr": str(self.service_cidr),
            "root": str(self.root),
            "hostname": self.hostname,
            "nodes": self.nodes,
            "pods_per_node": self.pods_per_node,
            "cpu_count": self.cpu_count,
            "ports": dict(self.ports),
        }

    def to_file(self) -> Path:
        """Write the plan to ``<root>/cluster.yaml``."""
        path = self.paths.plan_file
        try:
            with open(path, "w") as f:
                yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
        except OSError as e:
            raise FilesystemError("Unable to write cluster plan", path=str(path), cause=str(e)) from e
        return path

    @classmethod
    def from_file(cls, root: Path) -> ClusterPlan:
        """Read a plan persisted by a running cluster.

        Raises:
            ConfigError: If the file is missing or malformed.
        """
        path = ClusterPaths(root).plan_file
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
            return cls(
                cluster_cidr=ipaddress.IPv4Network(data["cluster_cidr"]),
                service_cidr=ipaddress.IPv4Network(data["service_cidr"]),
                root=Path(data["root"]),
                hostname=data["hostname"],
                nodes=int(data.get("nodes", 1)),
                pods_per_node=int(data.get("pods_per_node", DEFAULT_PODS_PER_NODE)),
                cpu_count=int(data.get("cpu_count", MIN_CPUS)),
                ports=MappingProxyType({str(k): int(v) for k, v in data["ports"].items()}),
            )
        except FileNotFoundError:
            raise ConfigError(
                f"No cluster plan at {path}. Is a cluster running with this root?",
                field="root",
            ) from None
        except (KeyError, TypeError, ValueError, yaml.YAMLError) as e:
            raise ConfigError(f"Malformed cluster plan {path}", field="root", cause=str(e)) from e


def _parse_network(value: str, name: str) -> ipaddress.IPv4Network:
    try:
        return ipaddress.IPv4Network(value)
    except ValueError as e:
        raise ConfigError(f"Invalid IPv4 CIDR '{value}'", field=name, cause=str(e)) from e


def _usable(network: ipaddress.IPv4Network) -> int:
    """Host addresses, excluding network and broadcast."""
    return max(network.num_addresses - 2, 0)


def _validate_networks(
    cluster: ipaddress.IPv4Network,
    service: ipaddress.IPv4Network,
    nodes: int,
    pods_per_node: int,
) -> None:
    if cluster.overlaps(service):
        raise ConfigError(
            f"Service CIDR {service} overlaps cluster CIDR {cluster}",
            field="service_cidr",
        )

    if cluster.prefixlen > NODE_SUBNET_PREFIX:
        raise ConfigError(
            f"Cluster CIDR {cluster} is smaller than one /{NODE_SUBNET_PREFIX} node subnet",
            field="cidr",
        )
    node_subnets = 2 ** (NODE_SUBNET_PREFIX - cluster.prefixlen)
    if node_subnets < nodes:
        raise ConfigError(
            f"Cluster CIDR {cluster} holds {node_subnets} node subnets, {nodes} required",
            field="cidr",
        )
    per_node = 2 ** (32 - NODE_SUBNET_PREFIX) - 2
    if per_node <= pods_per_node:
        raise ConfigError(
            f"A /{NODE_SUBNET_PREFIX} node subnet cannot hold {pods_per_node} pods",
            field="pods_per_node",
        )

    if _usable(service) <= DNS_SERVICE_OFFSET:
        raise ConfigError(
            f"Service CIDR {service} is too small, needs more than {DNS_SERVICE_OFFSET} addresses",
            field="service_cidr",
        )


def _validate_ports(ports: Mapping[str, int]) -> None:
    seen: dict[int, str] = {}
    for name, port in ports.items():
        if not 0 < port < 65536:
            raise ConfigError(f"Port {port} for '{name}' out of range", field="ports")
        if port in seen:
            raise ConfigError(
                f"Port {port} assigned to both '{seen[port]}' and '{name}'",
                field="ports",
            )
        seen[port] = name


def _validate_root(root: Path) -> None:
    # Walk up to the nearest existing ancestor, that is what mkdir will need to write to
    probe = root
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    if probe.exists() and probe.is_dir() and not os.access(probe, os.W_OK | os.X_OK):
        raise ConfigError(f"Root directory {probe} is not writable", field="root")


def plan_cluster(
    cidr: str,
    service_cidr: str,
    root: str | Path,
    nodes: int = 1,
    pods_per_node: int = DEFAULT_PODS_PER_NODE,
    ports: Mapping[str, int] | None = None,
    host: HostFacts | None = None,
) -> ClusterPlan:
    """Validate user input against host facts and build the ClusterPlan.

    Creates the working directory layout as a side effect.

    Args:
        cidr: Cluster (pod) network.
        service_cidr: Service network, must not overlap ``cidr``.
        root: Working directory for this run.
        nodes: Node count parameter, at least 1.
        pods_per_node: Pods each node subnet must hold.
        ports: Overrides merged into the default port assignments.
        host: Host facts, detected when omitted.

    Raises:
        ConfigError: Naming the invalid field.
        FilesystemError: If the layout is blocked by existing files.
    """
    host = host or HostFacts.detect()

    if nodes < 1:
        raise ConfigError(f"Node count must be at least 1, got {nodes}", field="nodes")
    if pods_per_node < 1:
        raise ConfigError(
            f"Pods per node must be at least 1, got {pods_per_node}",
            field="pods_per_node",
        )
    if host.cpu_count < MIN_CPUS:
        raise ConfigError(
            f"{host.cpu_count} CPU(s) available, at least {MIN_CPUS} needed to run all daemons",
            field="cpu_count",
        )
    if not _HOSTNAME_RE.match(host.hostname):
        raise ConfigError(f"Hostname '{host.hostname}' is not a valid DNS name", field="hostname")

    cluster_net = _parse_network(cidr, "cidr")
    service_net = _parse_network(service_cidr, "service_cidr")
    _validate_networks(cluster_net, service_net, nodes, pods_per_node)

    merged_ports = dict(DEFAULT_PORTS)
    merged_ports.update(ports or {})
    _validate_ports(merged_ports)

    root_path = Path(root).expanduser().absolute()
    _validate_root(root_path)
    ensure_dirs(root_path)

    plan = ClusterPlan(
        cluster_cidr=cluster_net,
        service_cidr=service_net,
        root=root_path.resolve(),
        hostname=host.hostname,
        nodes=nodes,
        pods_per_node=pods_per_node,
        cpu_count=host.cpu_count,
        ports=MappingProxyType(merged_ports),
    )
    logger.debug(
        "Cluster planned",
        cluster_cidr=str(cluster_net),
        service_cidr=str(service_net),
        root=str(plan.root),
        nodes=nodes,
    )
    return plan
