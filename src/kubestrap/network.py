"""Host network wiring for the single-node cluster.

Computes the bridge, service addresses and NAT rules from the ClusterPlan,
applies them on the host and removes them again on teardown.
"""

from __future__ import annotations

import ipaddress
import json
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from .errors import NetworkError
from .plan import NODE_SUBNET_PREFIX, ClusterPlan

logger = structlog.get_logger(__name__)

BRIDGE_NAME = "kubestrap0"
CNI_CONFIG_NAME = "10-kubestrap.conflist"
COMMAND_TIMEOUT = 10

CommandRunner = Callable[[Sequence[str]], subprocess.CompletedProcess]


@dataclass(frozen=True)
class HostCommand:
    """A host mutation and the command that reverts it."""

    apply: tuple[str, ...]
    revert: tuple[str, ...] | None = None
    description: str = ""


@dataclass(frozen=True)
class NetworkPlan:
    """Addresses and rules derived from the cluster/service CIDRs."""

    cluster_cidr: ipaddress.IPv4Network
    service_cidr: ipaddress.IPv4Network
    pod_subnet: ipaddress.IPv4Network
    bridge_name: str
    bridge_address: ipaddress.IPv4Address
    api_service_address: ipaddress.IPv4Address
    dns_address: ipaddress.IPv4Address
    dns_port: int
    dns_bind_address: ipaddress.IPv4Address
    commands: tuple[HostCommand, ...] = field(default_factory=tuple)

    @property
    def bridge_interface(self) -> ipaddress.IPv4Interface:
        return ipaddress.IPv4Interface(f"{self.bridge_address}/{self.pod_subnet.prefixlen}")

    def cni_config(self) -> dict[str, Any]:
        """CNI bridge plugin configuration for the container runtime."""
        return {
            "cniVersion": "1.0.0",
            "name": "kubestrap",
            "plugins": [
                {
                    "type": "bridge",
                    "bridge": self.bridge_name,
                    "isGateway": True,
                    "ipMasq": False,
                    "hairpinMode": True,
                    "ipam": {
                        "type": "host-local",
                        "routes": [{"dst": "0.0.0.0/0"}],
                        "ranges": [
                            [
                                {
                                    "subnet": str(self.pod_subnet),
                                    "gateway": str(self.bridge_address),
                                }
                            ]
                        ],
                    },
                },
                {"type": "portmap", "capabilities": {"portMappings": True}},
                {"type": "loopback"},
            ],
        }


def _run(command: Sequence[str]) -> subprocess.CompletedProcess:
    return subprocess.run(
        list(command),
        capture_output=True,
        text=True,
        timeout=COMMAND_TIMEOUT,
    )


class NetworkPlanner:
    """Compute and apply host networking."""

    def __init__(
        self,
        plan: ClusterPlan,
        runner: CommandRunner | None = None,
        manage_host: bool = True,
    ):
        """Initialize network planner.

        Args:
            plan: The cluster plan.
            runner: Executes a host command, defaults to subprocess.run.
            manage_host: If False, apply/teardown only log what they would do.
        """
        self.plan = plan
        self.runner = runner or _run
        self.manage_host = manage_host
        self._applied: list[HostCommand] = []

    def compute(self) -> NetworkPlan:
        """Derive bridge, service addresses and NAT rules."""
        cluster = self.plan.cluster_cidr
        pod_subnet = next(cluster.subnets(new_prefix=NODE_SUBNET_PREFIX))
        bridge_address = pod_subnet[1]
        dns_address = self.plan.dns_service_address
        dns_port = self.plan.port("coredns")
        # Without a managed bridge CoreDNS can only bind loopback
        dns_bind = bridge_address if self.manage_host else ipaddress.IPv4Address("127.0.0.1")

        commands = (
            HostCommand(
                apply=("sysctl", "-w", "net.ipv4.ip_forward=1"),
                description="enable IPv4 forwarding",
            ),
            HostCommand(
                apply=("ip", "link", "add", BRIDGE_NAME, "type", "bridge"),
                revert=("ip", "link", "delete", BRIDGE_NAME),
                description="create bridge",
            ),
            HostCommand(
                apply=(
                    "ip",
                    "addr",
                    "add",
                    f"{bridge_address}/{pod_subnet.prefixlen}",
                    "dev",
                    BRIDGE_NAME,
                ),
                description="address bridge",
            ),
            HostCommand(
                apply=("ip", "link", "set", BRIDGE_NAME, "up"),
                description="bring bridge up",
            ),
            HostCommand(
                apply=_iptables("-A", "POSTROUTING", *_masquerade_rule(cluster)),
                revert=_iptables("-D", "POSTROUTING", *_masquerade_rule(cluster)),
                description="masquerade pod egress",
            ),
            HostCommand(
                apply=_iptables(
                    "-A", "PREROUTING", *_dns_rule(dns_address, dns_bind, dns_port)
                ),
                revert=_iptables(
                    "-D", "PREROUTING", *_dns_rule(dns_address, dns_bind, dns_port)
                ),
                description="route DNS service address to CoreDNS",
            ),
            HostCommand(
                apply=_iptables(
                    "-A", "OUTPUT", *_dns_rule(dns_address, dns_bind, dns_port)
                ),
                revert=_iptables(
                    "-D", "OUTPUT", *_dns_rule(dns_address, dns_bind, dns_port)
                ),
                description="route host DNS lookups to CoreDNS",
            ),
        )

        return NetworkPlan(
            cluster_cidr=cluster,
            service_cidr=self.plan.service_cidr,
            pod_subnet=pod_subnet,
            bridge_name=BRIDGE_NAME,
            bridge_address=bridge_address,
            api_service_address=self.plan.api_service_address,
            dns_address=dns_address,
            dns_port=dns_port,
            dns_bind_address=dns_bind,
            commands=commands,
        )

    def write_cni_config(self, network: NetworkPlan) -> Path:
        """Write the CNI conflist the container runtime loads."""
        cni_dir = self.plan.paths.configs_dir / "cni"
        cni_dir.mkdir(parents=True, exist_ok=True)
        path = cni_dir / CNI_CONFIG_NAME
        path.write_text(json.dumps(network.cni_config(), indent=2))
        return path

    def apply(self, network: NetworkPlan) -> None:
        """Apply host commands in order.

        Raises:
            NetworkError: On the first failing command, after rolling back
                whatever was already applied.
        """
        if not self.manage_host:
            logger.info("Host network management disabled, skipping", bridge=network.bridge_name)
            return

        for command in network.commands:
            logger.debug("Applying network command", step=command.description)
            try:
                result = self.runner(command.apply)
            except (OSError, subprocess.SubprocessError) as e:
                self._rollback()
                raise NetworkError(
                    f"Unable to {command.description}",
                    cause=str(e),
                ) from e
            if result.returncode != 0:
                self._rollback()
                raise NetworkError(
                    f"Unable to {command.description}",
                    cause=(result.stderr or "").strip() or f"exit status {result.returncode}",
                )
            self._applied.append(command)

        logger.info(
            "Network configured",
            bridge=network.bridge_name,
            address=str(network.bridge_interface),
            dns=str(network.dns_address),
        )

    def teardown(self) -> None:
        """Revert applied commands in reverse order. Best effort."""
        self._rollback()

    def _rollback(self) -> None:
        while self._applied:
            command = self._applied.pop()
            if command.revert is None:
                continue
            try:
                result = self.runner(command.revert)
            except (OSError, subprocess.SubprocessError) as e:
                logger.warning("Network revert failed", step=command.description, error=str(e))
                continue
            if result.returncode != 0:
                logger.warning(
                    "Network revert failed",
                    step=command.description,
                    error=(result.stderr or "").strip(),
                )


def _iptables(action: str, chain: str, *rule: str) -> tuple[str, ...]:
    return ("iptables", "-t", "nat", action, chain, *rule)


def _masquerade_rule(cluster: ipaddress.IPv4Network) -> tuple[str, ...]:
    return ("-s", str(cluster), "!", "-d", str(cluster), "-j", "MASQUERADE")


def _dns_rule(
    dns_address: ipaddress.IPv4Address,
    target: ipaddress.IPv4Address,
    port: int,
) -> tuple[str, ...]:
    return (
        "-d",
        f"{dns_address}/32",
        "-p",
        "udp",
        "--dport",
        "53",
        "-j",
        "DNAT",
        "--to-destination",
        f"{target}:{port}",
    )
