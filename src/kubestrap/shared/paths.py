"""Path management for kubestrap.

Manages the per-run working directory. The layout below is a contract:
log viewers and external health-check scripts rely on it.

    <root>/
        cluster.yaml            persisted ClusterPlan
        kubeconfig              admin kubeconfig
        certs/ca.crt            root certificate
        certs/<name>.{crt,key}  leaf certificates
        configs/<name>.*        rendered configuration
        logs/<name>.log         daemon output
        run/<name>.pid          PID files and sockets (removed on teardown)
        state/<name>/           daemon data directories
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ..errors import FilesystemError

# Base directory for user configuration
KUBESTRAP_DIR = Path.home() / ".kubestrap"

DEFAULT_ROOT = Path("kubestrap-run")

SUBDIRS = ("certs", "configs", "logs", "run", "state")


@dataclass(frozen=True)
class ClusterPaths:
    """Resolves every file location under a run root."""

    root: Path

    @property
    def certs_dir(self) -> Path:
        return self.root / "certs"

    @property
    def configs_dir(self) -> Path:
        return self.root / "configs"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def run_dir(self) -> Path:
        return self.root / "run"

    @property
    def state_root(self) -> Path:
        return self.root / "state"

    @property
    def plan_file(self) -> Path:
        return self.root / "cluster.yaml"

    @property
    def kubeconfig(self) -> Path:
        return self.root / "kubeconfig"

    @property
    def ca_cert(self) -> Path:
        return self.certs_dir / "ca.crt"

    @property
    def ca_key(self) -> Path:
        return self.certs_dir / "ca.key"

    def cert(self, name: str) -> Path:
        return self.certs_dir / f"{name}.crt"

    def key(self, name: str) -> Path:
        return self.certs_dir / f"{name}.key"

    def config(self, name: str, suffix: str = "yaml") -> Path:
        return self.configs_dir / f"{name}.{suffix}"

    def component_kubeconfig(self, name: str) -> Path:
        return self.config(name, "kubeconfig")

    def log(self, name: str) -> Path:
        return self.logs_dir / f"{name}.log"

    def pid(self, name: str) -> Path:
        return self.run_dir / f"{name}.pid"

    def socket(self, name: str) -> Path:
        return self.run_dir / f"{name}.sock"

    def state(self, name: str) -> Path:
        return self.state_root / name


def ensure_dirs(root: Path) -> ClusterPaths:
    """Create the working directory structure if missing.

    Certificates get mode 0o700 (user-only access).

    Raises:
        FilesystemError: If a path in the layout exists but is not a directory,
            or cannot be created.
    """
    paths = ClusterPaths(root)
    for candidate in (root, *(root / name for name in SUBDIRS)):
        if candidate.exists() and not candidate.is_dir():
            raise FilesystemError(
                "Expected a directory but found a file",
                path=str(candidate),
            )
        try:
            candidate.mkdir(
                mode=0o700 if candidate.name == "certs" else 0o755,
                parents=True,
                exist_ok=True,
            )
        except OSError as e:
            raise FilesystemError(
                "Unable to create directory",
                path=str(candidate),
                cause=str(e),
            ) from e
    return paths


def clear_runtime(paths: ClusterPaths) -> list[Path]:
    """Remove sockets and PID files, keep logs, certs and configs.

    Returns:
        The paths that were removed.
    """
    removed: list[Path] = []
    if not paths.run_dir.is_dir():
        return removed
    for entry in sorted(paths.run_dir.iterdir()):
        if entry.is_dir():
            continue
        entry.unlink(missing_ok=True)
        removed.append(entry)
    return removed
