"""Host prerequisite detection.

Resolves daemon executables, checks that planned ports are free and that
the process may modify host networking. Everything here runs before the
first process is spawned, so failures leave nothing to tear down.
"""

from __future__ import annotations

import os
import shutil
import socket
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

import structlog

from .errors import ConfigError
from .plan import ClusterPlan

logger = structlog.get_logger(__name__)

# Ports that are not bound by a supervised daemon over TCP on loopback
UNCHECKED_PORTS = frozenset({"etcd-peer", "coredns"})


@dataclass
class BinaryInfo:
    """Executable resolution result."""

    component: str
    path: str | None = None
    error: str | None = None

    @property
    def found(self) -> bool:
        return self.path is not None


class BinaryResolver:
    """Locate daemon executables on PATH or at configured locations."""

    def __init__(self, overrides: Mapping[str, str] | None = None):
        self.overrides = dict(overrides or {})

    def resolve(self, component: str) -> BinaryInfo:
        """Resolve one component's executable."""
        configured = self.overrides.get(component)
        if configured and os.sep in configured:
            path = Path(configured).expanduser()
            if not path.is_file():
                return BinaryInfo(component, error=f"{path} does not exist")
            if not os.access(path, os.X_OK):
                return BinaryInfo(component, error=f"{path} is not executable")
            return BinaryInfo(component, path=str(path.absolute()))

        name = configured or component
        found = shutil.which(name)
        if not found:
            return BinaryInfo(component, error=f"'{name}' not found on PATH")
        return BinaryInfo(component, path=found)

    def resolve_all(self, components: Iterable[str]) -> dict[str, str]:
        """Resolve every component, reporting all missing executables at once.

        Raises:
            ConfigError: If any executable is missing.
        """
        results = [self.resolve(name) for name in components]
        missing = [r for r in results if not r.found]
        if missing:
            raise ConfigError(
                "Required executables are missing",
                field="binaries",
                cause="; ".join(f"{r.component}: {r.error}" for r in missing),
            )
        resolved = {r.component: r.path for r in results if r.path}
        logger.debug("Executables resolved", binaries=resolved)
        return resolved


@dataclass
class PortStatus:
    """Result of port availability check."""

    port: int
    available: bool
    service_name: str | None = None


class PortScanner:
    """Check port availability on localhost."""

    def check_ports(self, ports: Mapping[int, str]) -> list[PortStatus]:
        """Check if ports are available.

        Args:
            ports: dict of {port_number: service_name}

        Returns:
            List of PortStatus for each checked port.
        """
        return [
            PortStatus(port, self._is_port_available(port), service)
            for port, service in ports.items()
        ]

    def _is_port_available(self, port: int) -> bool:
        """Check if a port is available on localhost."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(1)
        try:
            return sock.connect_ex(("127.0.0.1", port)) != 0
        except OSError:
            return False
        finally:
            sock.close()

    def require_free(self, plan: ClusterPlan) -> None:
        """Fail if any daemon port is already taken.

        Raises:
            ConfigError: Listing the busy ports.
        """
        wanted = {
            port: name for name, port in plan.ports.items() if name not in UNCHECKED_PORTS
        }
        busy = [status for status in self.check_ports(wanted) if not status.available]
        if busy:
            raise ConfigError(
                "Ports already in use, is another cluster running?",
                field="ports",
                cause=", ".join(f"{s.port} ({s.service_name})" for s in busy),
            )


def check_privileges(manage_network: bool) -> None:
    """Host networking changes and most daemons need root.

    Raises:
        ConfigError: If host networking is managed but we are not root.
    """
    if manage_network and os.geteuid() != 0:
        raise ConfigError(
            "Managing host networking requires root. Re-run with sudo or set manage_network: false",
            field="manage_network",
        )
    if os.geteuid() != 0:
        logger.warning("Not running as root, crio and kubelet will likely fail to start")
