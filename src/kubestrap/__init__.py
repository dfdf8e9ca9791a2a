"""kubestrap - single-host Kubernetes clusters for development."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("kubestrap")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"  # Fallback for editable installs without metadata

from .main import main

__all__ = ["main", "__version__"]
