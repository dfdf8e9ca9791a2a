"""Process supervision for cluster daemons.

The ProcessSupervisor owns every spawned daemon. It starts components as
soon as their dependencies are READY, polls readiness with bounded retries,
runs liveness probes, and stops everything in reverse start order.

Per-component state machine::

    PENDING -> STARTING -> READY <-> DEGRADED
                  |          |          |
                  +----------+----------+--> FAILED (terminal)
    STARTING/READY/DEGRADED -> STOPPING -> STOPPED
"""

from __future__ import annotations

import asyncio
import signal
import subprocess
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Protocol

import psutil
import structlog

from .components import ComponentDescriptor, ComponentRegistry, RenderedComponent
from .errors import ProbeFailure, ProcessStartError
from .shared.paths import ClusterPaths

logger = structlog.get_logger(__name__)

# Tunable defaults, overridable through KubestrapConfig
DEFAULT_START_ATTEMPTS = 3
DEFAULT_BACKOFF_INITIAL = 1.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_GRACE_PERIOD = 10.0
DEFAULT_READINESS_POLL = 0.5


class ComponentState(Enum):
    """Lifecycle state of a supervised component."""

    PENDING = "pending"
    STARTING = "starting"
    READY = "ready"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[ComponentState, frozenset[ComponentState]] = {
    ComponentState.PENDING: frozenset({ComponentState.STARTING}),
    ComponentState.STARTING: frozenset(
        {ComponentState.READY, ComponentState.FAILED, ComponentState.STOPPING}
    ),
    ComponentState.READY: frozenset(
        {ComponentState.DEGRADED, ComponentState.FAILED, ComponentState.STOPPING}
    ),
    ComponentState.DEGRADED: frozenset(
        {ComponentState.READY, ComponentState.FAILED, ComponentState.STOPPING}
    ),
    ComponentState.STOPPING: frozenset({ComponentState.STOPPED}),
    ComponentState.STOPPED: frozenset(),
    ComponentState.FAILED: frozenset(),
}

LIVE_STATES = frozenset({ComponentState.STARTING, ComponentState.READY, ComponentState.DEGRADED})


@dataclass
class SupervisorSettings:
    """Retry, probe and shutdown tuning. All values are tunable, not tuned."""

    start_attempts: int = DEFAULT_START_ATTEMPTS
    backoff_initial: float = DEFAULT_BACKOFF_INITIAL
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    grace_period: float = DEFAULT_GRACE_PERIOD
    readiness_poll: float = DEFAULT_READINESS_POLL


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one readiness or liveness check."""

    healthy: bool
    checked_at: float
    error: str | None = None


@dataclass(frozen=True)
class Transition:
    """A recorded state change. ``seq`` orders transitions across components."""

    seq: int
    component: str
    state: ComponentState
    at: float


@dataclass(frozen=True)
class ProcessInfo:
    """Read-only snapshot of a component handed out by the query interface."""

    name: str
    state: ComponentState
    pid: int | None = None
    started_at: float | None = None
    ready_at: float | None = None
    attempts: int = 0
    consecutive_failures: int = 0
    last_probe: ProbeResult | None = None


class ManagedProcess(Protocol):
    """What the supervisor needs from a spawned process."""

    @property
    def pid(self) -> int: ...

    @property
    def returncode(self) -> int | None: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    async def wait(self, timeout: float) -> bool: ...

    def close(self) -> None: ...


class Launcher(Protocol):
    async def spawn(self, rendered: RenderedComponent, log_path: Path) -> ManagedProcess: ...


class OSProcess:
    """A daemon started with asyncio, signalled together with its children."""

    def __init__(self, process: asyncio.subprocess.Process, log_file: IO[bytes]):
        self._process = process
        self._log_file = log_file

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    def terminate(self) -> None:
        self._signal_tree(signal.SIGTERM)

    def kill(self) -> None:
        self._signal_tree(signal.SIGKILL)

    async def wait(self, timeout: float) -> bool:
        """Wait for exit. Returns False if still running after ``timeout``."""
        try:
            await asyncio.wait_for(self._process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def close(self) -> None:
        if not self._log_file.closed:
            self._log_file.close()

    def _signal_tree(self, sig: signal.Signals) -> None:
        # Runtimes like crio fork helpers (conmon), those must go too
        try:
            parent = psutil.Process(self.pid)
            children = parent.children(recursive=True)
        except psutil.NoSuchProcess:
            return
        for proc in [*children, parent]:
            try:
                proc.send_signal(sig)
            except psutil.NoSuchProcess:
                pass


class SubprocessLauncher:
    """Spawn daemons as child processes in their own session."""

    async def spawn(self, rendered: RenderedComponent, log_path: Path) -> OSProcess:
        # Truncate per attempt so log-pattern readiness never sees a previous attempt
        log_file = open(log_path, "wb")
        try:
            process = await asyncio.create_subprocess_exec(
                rendered.binary,
                *rendered.args,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except BaseException:
            log_file.close()
            raise
        return OSProcess(process, log_file)


def reclaim_mounts(directory: Path) -> list[str]:
    """Unmount every mount point below ``directory``, deepest first.

    Best effort: failures are logged, not raised.
    """
    base = str(directory.resolve())
    mountpoints = [
        p.mountpoint
        for p in psutil.disk_partitions(all=True)
        if p.mountpoint == base or p.mountpoint.startswith(base + "/")
    ]
    unmounted: list[str] = []
    for mountpoint in sorted(set(mountpoints), key=len, reverse=True):
        result = subprocess.run(
            ["umount", mountpoint], capture_output=True, text=True, timeout=10
        )
        if result.returncode == 0:
            unmounted.append(mountpoint)
        else:
            logger.warning("Unable to unmount", mountpoint=mountpoint, error=result.stderr.strip())
    return unmounted


@dataclass
class ProcessHandle:
    """Runtime record of one component. Private to the supervisor."""

    name: str
    state: ComponentState = ComponentState.PENDING
    process: ManagedProcess | None = None
    started_at: float | None = None
    ready_at: float | None = None
    attempts: int = 0
    consecutive_failures: int = 0
    last_probe: ProbeResult | None = None
    probe_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def info(self) -> ProcessInfo:
        return ProcessInfo(
            name=self.name,
            state=self.state,
            pid=self.process.pid if self.process else None,
            started_at=self.started_at,
            ready_at=self.ready_at,
            attempts=self.attempts,
            consecutive_failures=self.consecutive_failures,
            last_probe=self.last_probe,
        )


class ProcessSupervisor:
    """Start, watch and stop the cluster's daemons."""

    def __init__(
        self,
        registry: ComponentRegistry,
        rendered: Mapping[str, RenderedComponent],
        paths: ClusterPaths,
        settings: SupervisorSettings | None = None,
        launcher: Launcher | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        unmounter: Callable[[Path], list[str]] = reclaim_mounts,
    ):
        """Initialize process supervisor.

        Args:
            registry: Component descriptors and dependency graph.
            rendered: Rendered command lines by component name.
            paths: Working directory layout (logs, PID files).
            settings: Retry, probe and shutdown tuning.
            launcher: Spawns processes, defaults to SubprocessLauncher.
            clock: Monotonic time source.
            sleep: Async sleep, injectable to simulate elapsed time.
            unmounter: Reclaims mount points under a state directory.
        """
        self.registry = registry
        self.rendered = rendered
        self.paths = paths
        self.settings = settings or SupervisorSettings()
        self.launcher: Launcher = launcher or SubprocessLauncher()
        self._clock = clock
        self._sleep = sleep
        self._unmounter = unmounter

        self._handles: dict[str, ProcessHandle] = {}
        self._start_order: list[str] = []
        self._transitions: list[Transition] = []
        self._stop_lock = asyncio.Lock()
        self._stopping = False

    # ── Query interface ─────────────────────────────────────────────

    def state(self, name: str) -> ComponentState:
        handle = self._handles.get(name)
        if handle is None:
            self.registry.get(name)
            return ComponentState.PENDING
        return handle.state

    def info(self, name: str) -> ProcessInfo:
        handle = self._handles.get(name)
        if handle is None:
            self.registry.get(name)
            return ProcessInfo(name=name, state=ComponentState.PENDING)
        return handle.info()

    def snapshot(self) -> dict[str, ComponentState]:
        return {name: self.state(name) for name in self.registry.names}

    @property
    def start_order(self) -> list[str]:
        return list(self._start_order)

    @property
    def transitions(self) -> list[Transition]:
        return list(self._transitions)

    def all_ready(self) -> bool:
        return all(state is ComponentState.READY for state in self.snapshot().values())

    def running(self) -> list[str]:
        """Components that still have a live process, in start order."""
        return [name for name in self._start_order if self.state(name) in LIVE_STATES]

    # ── Start ───────────────────────────────────────────────────────

    async def start_all(self) -> None:
        """Start every component, each as soon as its dependencies are READY.

        Raises:
            ProcessStartError: The first component that failed to become ready.
                Components started so far are left for ``stop_all``.
        """
        pending = self.registry.resolve_order()
        running: dict[asyncio.Task, str] = {}
        failure: BaseException | None = None

        try:
            while pending or running:
                if failure is None and not self._stopping:
                    for name in list(pending):
                        descriptor = self.registry.get(name)
                        if all(
                            self.state(dep) is ComponentState.READY
                            for dep in descriptor.depends_on
                        ):
                            pending.remove(name)
                            task = asyncio.create_task(
                                self._start_component(descriptor), name=f"start-{name}"
                            )
                            running[task] = name

                if not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    running.pop(task)
                    if task.cancelled():
                        continue
                    exc = task.exception()
                    if exc is not None and failure is None:
                        failure = exc
                        # Siblings still starting would only be torn down again
                        for other in running:
                            other.cancel()
        finally:
            for task in running:
                task.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)

        if failure is not None:
            raise failure
        if pending:
            raise ProcessStartError(
                "Startup interrupted before all components were started",
                cause=f"not started: {', '.join(pending)}",
            )

    async def _start_component(self, descriptor: ComponentDescriptor) -> None:
        name = descriptor.name
        handle = ProcessHandle(name=name)
        self._handles[name] = handle
        self._transition(handle, ComponentState.STARTING)
        handle.started_at = self._clock()
        self._start_order.append(name)

        delay = self.settings.backoff_initial
        attempts = max(self.settings.start_attempts, 1)
        last_error: str | None = None

        for attempt in range(1, attempts + 1):
            handle.attempts = attempt
            logger.info("Starting component", component=name, attempt=attempt)
            await self._launch(handle, descriptor)

            ready, last_error = await self._wait_ready(handle, descriptor)
            if ready:
                handle.ready_at = self._clock()
                handle.last_probe = ProbeResult(healthy=True, checked_at=handle.ready_at)
                self._transition(handle, ComponentState.READY)
                logger.info("Component ready", component=name, pid=handle.process.pid)
                return

            await self._reclaim(handle, descriptor)
            if attempt < attempts:
                logger.warning(
                    "Component not ready, retrying",
                    component=name,
                    attempt=attempt,
                    max_attempts=attempts,
                    backoff=delay,
                    error=last_error,
                )
                await self._sleep(delay)
                delay *= self.settings.backoff_multiplier

        self._transition(handle, ComponentState.FAILED)
        raise ProcessStartError(
            f"Did not become ready after {attempts} attempt(s)",
            component=name,
            cause=last_error,
            attempts=attempts,
        )

    async def _launch(self, handle: ProcessHandle, descriptor: ComponentDescriptor) -> None:
        rendered = self.rendered[descriptor.name]
        try:
            process = await self.launcher.spawn(rendered, self.paths.log(descriptor.name))
        except (FileNotFoundError, PermissionError) as e:
            # A missing or non-executable binary will not fix itself on retry
            self._transition(handle, ComponentState.FAILED)
            raise ProcessStartError(
                f"Unable to execute '{rendered.binary}'",
                component=descriptor.name,
                cause=str(e),
                attempts=handle.attempts,
            ) from e
        handle.process = process
        self.paths.pid(descriptor.name).write_text(str(process.pid))
        logger.debug("Process spawned", component=descriptor.name, pid=process.pid)

    async def _wait_ready(
        self, handle: ProcessHandle, descriptor: ComponentDescriptor
    ) -> tuple[bool, str | None]:
        deadline = self._clock() + descriptor.ready_timeout
        log_path = self.paths.log(descriptor.name)
        while True:
            returncode = handle.process.returncode if handle.process else None
            if returncode is not None:
                return False, f"exited with status {returncode} before becoming ready"
            if await asyncio.to_thread(descriptor.readiness.check, log_path):
                return True, None
            if self._clock() >= deadline:
                return False, f"not ready within {descriptor.ready_timeout}s"
            await self._sleep(self.settings.readiness_poll)

    # ── Liveness ────────────────────────────────────────────────────

    async def check_liveness(self) -> list[str]:
        """Probe every READY/DEGRADED component once.

        Probes of different components run concurrently; a component with a
        probe already in flight is skipped.

        Returns:
            Components that crossed the failure threshold and were killed.
        """
        handles = [
            h
            for h in self._handles.values()
            if h.state in (ComponentState.READY, ComponentState.DEGRADED)
        ]
        results = await asyncio.gather(*(self._probe(h) for h in handles))
        return [h.name for h, failed in zip(handles, results) if failed]

    async def _probe(self, handle: ProcessHandle) -> bool:
        if handle.probe_lock.locked():
            return False
        async with handle.probe_lock:
            descriptor = self.registry.get(handle.name)
            returncode = handle.process.returncode if handle.process else None
            exited = returncode is not None
            if exited:
                healthy, error = False, f"process exited with status {returncode}"
            else:
                healthy = await asyncio.to_thread(
                    descriptor.liveness_probe.check, self.paths.log(handle.name)
                )
                error = None if healthy else "liveness probe failed"
            handle.last_probe = ProbeResult(healthy=healthy, checked_at=self._clock(), error=error)

            # Teardown may have started while the probe ran
            if handle.state not in (ComponentState.READY, ComponentState.DEGRADED):
                return False

            if healthy:
                if handle.state is ComponentState.DEGRADED:
                    logger.info("Component recovered", component=handle.name)
                    self._transition(handle, ComponentState.READY)
                handle.consecutive_failures = 0
                return False

            handle.consecutive_failures += 1
            failure = ProbeFailure(
                error or "liveness probe failed",
                component=handle.name,
                consecutive=handle.consecutive_failures,
            )
            if exited or handle.consecutive_failures >= self.settings.failure_threshold:
                failure.fatal = True
                logger.error("Component failed", **failure.to_dict())
                await self._reclaim(handle, descriptor)
                self._transition(handle, ComponentState.FAILED)
                return True

            if handle.state is ComponentState.READY:
                self._transition(handle, ComponentState.DEGRADED)
            logger.warning(
                "Component degraded",
                component=handle.name,
                consecutive_failures=handle.consecutive_failures,
                threshold=self.settings.failure_threshold,
            )
            return False

    # ── Stop ────────────────────────────────────────────────────────

    async def stop_all(self) -> list[str]:
        """Stop every live component in reverse start order.

        Idempotent: a second call finds nothing left to stop.

        Returns:
            Components stopped by this call.
        """
        async with self._stop_lock:
            self._stopping = True
            stopped: list[str] = []
            for name in reversed(self._start_order):
                if await self._stop(name):
                    stopped.append(name)
            if stopped:
                logger.info("All components stopped", stopped=stopped)
            return stopped

    async def stop_with_dependents(self, name: str) -> list[str]:
        """Stop everything that depends on ``name``, in reverse start order.

        Used after a steady-state failure; unrelated branches keep running.
        """
        affected = self.registry.dependents(name)
        stopped: list[str] = []
        async with self._stop_lock:
            for candidate in reversed(self._start_order):
                if candidate in affected and await self._stop(candidate):
                    stopped.append(candidate)
        if stopped:
            logger.warning("Stopped dependents of failed component", component=name, stopped=stopped)
        return stopped

    async def _stop(self, name: str) -> bool:
        handle = self._handles.get(name)
        if handle is None or handle.state not in LIVE_STATES:
            return False
        self._transition(handle, ComponentState.STOPPING)
        await self._reclaim(handle, self.registry.get(name))
        self._transition(handle, ComponentState.STOPPED)
        logger.info("Component stopped", component=name)
        return True

    async def _reclaim(self, handle: ProcessHandle, descriptor: ComponentDescriptor) -> None:
        """Terminate the process, then remove its PID file, socket and mounts."""
        process = handle.process
        if process is not None:
            if process.returncode is None:
                process.terminate()
                if not await process.wait(self.settings.grace_period):
                    logger.warning(
                        "Grace period elapsed, killing",
                        component=descriptor.name,
                        pid=process.pid,
                        grace_period=self.settings.grace_period,
                    )
                    process.kill()
                    if not await process.wait(self.settings.grace_period):
                        logger.error(
                            "Process did not exit after SIGKILL",
                            component=descriptor.name,
                            pid=process.pid,
                        )
            process.close()

        self.paths.pid(descriptor.name).unlink(missing_ok=True)
        if descriptor.socket is not None:
            descriptor.socket.unlink(missing_ok=True)
        if descriptor.state_dir is not None and descriptor.state_dir.exists():
            await asyncio.to_thread(self._unmounter, descriptor.state_dir)

    def _transition(self, handle: ProcessHandle, new: ComponentState) -> None:
        if new not in ALLOWED_TRANSITIONS[handle.state]:
            raise RuntimeError(
                f"Invalid transition for {handle.name}: {handle.state.value} -> {new.value}"
            )
        logger.debug(
            "State transition",
            component=handle.name,
            old=handle.state.value,
            new=new.value,
        )
        handle.state = new
        self._transitions.append(
            Transition(
                seq=len(self._transitions),
                component=handle.name,
                state=new,
                at=self._clock(),
            )
        )
