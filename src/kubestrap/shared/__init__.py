"""Shared modules for kubestrap.

Working-directory layout and logging setup, used by every other module.
"""

from .logging import bind_run, configure_logging, unbind_run
from .paths import (
    DEFAULT_ROOT,
    KUBESTRAP_DIR,
    ClusterPaths,
    clear_runtime,
    ensure_dirs,
)

__all__ = [
    # Paths
    "KUBESTRAP_DIR",
    "DEFAULT_ROOT",
    "ClusterPaths",
    "ensure_dirs",
    "clear_runtime",
    # Logging
    "configure_logging",
    "bind_run",
    "unbind_run",
]
