"""Error taxonomy for kubestrap.

Every failure raised by the orchestration engine is a KubestrapError. The
subclass names the kind of failure; ``component`` names the daemon involved
(when there is one) and ``cause`` carries the underlying exception text.
"""

from dataclasses import dataclass, field


@dataclass
class KubestrapError(Exception):
    """Base error class for kubestrap errors."""

    message: str
    component: str | None = None
    cause: str | None = None
    fatal: bool = True

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @property
    def kind(self) -> str:
        """Name of the error kind, e.g. ``ConfigError``."""
        return type(self).__name__

    def __str__(self) -> str:
        parts = [self.message]
        if self.component:
            parts.insert(0, f"[{self.component}]")
        if self.cause:
            parts.append(f"(cause: {self.cause})")
        return " ".join(parts)

    def to_dict(self) -> dict[str, str | None]:
        """Structured form used for log events."""
        return {
            "kind": self.kind,
            "component": self.component,
            "message": self.message,
            "cause": self.cause,
        }


@dataclass
class ConfigError(KubestrapError):
    """Invalid or conflicting user input, reported before anything starts."""

    field: str = ""

    def __str__(self) -> str:
        base = super().__str__()
        return f"{self.field}: {base}" if self.field else base


@dataclass
class FilesystemError(KubestrapError):
    """The working directory tree cannot be created or written."""

    path: str = ""

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base} [{self.path}]" if self.path else base


@dataclass
class PermissionError(FilesystemError):
    """Writing key material or a protected path was denied."""


@dataclass
class CryptoError(KubestrapError):
    """PKI generation or issuance failed. Never retried."""


@dataclass
class DependencyCycleError(KubestrapError):
    """The component dependency graph is not a DAG."""

    cycle: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base}: {' -> '.join(self.cycle)}" if self.cycle else base


@dataclass
class RenderError(KubestrapError):
    """A component's configuration could not be rendered."""


@dataclass
class NetworkError(KubestrapError):
    """Host networking could not be set up."""


@dataclass
class ProcessStartError(KubestrapError):
    """A component did not reach READY."""

    attempts: int = 0


@dataclass
class ProbeFailure(KubestrapError):
    """A liveness probe failed. Transient until the threshold is crossed."""

    fatal: bool = False
    consecutive: int = 0
