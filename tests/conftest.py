"""Shared test fixtures for kubestrap tests.

This module provides simulated hosts for testing the engine without root
or real daemons:
- FakeClock: Monotonic time that only advances when the code sleeps
- FakeLauncher / FakeProcess: Spawned "daemons" that obey signals on request
- Switch: A readiness/liveness probe whose answer the test controls
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable, Mapping
from pathlib import Path

import pytest

from kubestrap.components import ComponentDescriptor, ComponentRegistry, RenderedComponent
from kubestrap.plan import ClusterPlan, HostFacts, plan_cluster
from kubestrap.supervisor import ProcessSupervisor, SupervisorSettings

# =============================================================================
# Simulated time
# =============================================================================


class FakeClock:
    """Clock and sleep pair. Sleeping advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        # Still yield so other tasks make progress
        await asyncio.sleep(0)


# =============================================================================
# Simulated processes
# =============================================================================

_pids = itertools.count(40000)


class FakeProcess:
    """A spawned daemon. Exits on SIGTERM unless ``stubborn``."""

    def __init__(self, name: str, stubborn: bool = False):
        self.name = name
        self.pid = next(_pids)
        self.returncode: int | None = None
        self.signals: list[str] = []
        self.stubborn = stubborn
        self.closed = False

    def terminate(self) -> None:
        self.signals.append("TERM")
        if not self.stubborn:
            self.returncode = -15

    def kill(self) -> None:
        self.signals.append("KILL")
        self.returncode = -9

    async def wait(self, timeout: float) -> bool:
        await asyncio.sleep(0)
        return self.returncode is not None

    def close(self) -> None:
        self.closed = True

    def crash(self, status: int = 1) -> None:
        self.returncode = status

    @property
    def alive(self) -> bool:
        return self.returncode is None


class FakeLauncher:
    """Records every spawn; behaviour per component is configurable."""

    def __init__(self) -> None:
        self.spawned: list[FakeProcess] = []
        self.missing: set[str] = set()
        self.crash_on_start: set[str] = set()
        self.stubborn: set[str] = set()

    async def spawn(self, rendered: RenderedComponent, log_path: Path) -> FakeProcess:
        if rendered.name in self.missing:
            raise FileNotFoundError(f"No such file or directory: '{rendered.binary}'")
        log_path.write_text(f"starting {rendered.name}\n")
        process = FakeProcess(rendered.name, stubborn=rendered.name in self.stubborn)
        if rendered.name in self.crash_on_start:
            process.crash(2)
        self.spawned.append(process)
        return process

    def processes(self, name: str) -> list[FakeProcess]:
        return [p for p in self.spawned if p.name == name]

    def current(self, name: str) -> FakeProcess:
        return self.processes(name)[-1]

    def alive(self) -> list[str]:
        return [p.name for p in self.spawned if p.alive]


class Switch:
    """Probe whose result the test flips. ``results`` are consumed first."""

    def __init__(self, ready: bool = True):
        self.ready = ready
        self.results: list[bool] = []
        self.calls = 0

    def check(self, log_path: Path | None = None) -> bool:
        self.calls += 1
        if self.results:
            return self.results.pop(0)
        return self.ready


# =============================================================================
# Component graphs
# =============================================================================

# Same shape as the real cluster
CLUSTER_EDGES: dict[str, tuple[str, ...]] = {
    "etcd": (),
    "kube-apiserver": ("etcd",),
    "kube-controller-manager": ("kube-apiserver",),
    "kube-scheduler": ("kube-apiserver",),
    "crio": (),
    "kubelet": ("kube-apiserver", "crio"),
    "kube-proxy": ("kube-apiserver", "kubelet"),
    "coredns": ("kube-proxy",),
}


def _render_stub(d: ComponentDescriptor, ctx) -> tuple[list[str], dict]:
    return [f"--name={d.name}"], {}


class SimulatedCluster:
    """A registry of switch-probed components plus what a supervisor needs."""

    def __init__(self, plan: ClusterPlan, edges: Mapping[str, tuple[str, ...]]):
        self.plan = plan
        self.readiness = {name: Switch() for name in edges}
        self.liveness = {name: Switch() for name in edges}
        for name in edges:
            plan.paths.state(name).mkdir(parents=True, exist_ok=True)
        self.registry = ComponentRegistry(
            ComponentDescriptor(
                name=name,
                binary=f"/usr/bin/{name}",
                renderer=_render_stub,
                readiness=self.readiness[name],
                liveness=self.liveness[name],
                depends_on=deps,
                ready_timeout=5.0,
                state_dir=plan.paths.state(name),
            )
            for name, deps in edges.items()
        )
        self.rendered = {
            name: RenderedComponent(name=name, binary=f"/usr/bin/{name}", args=(f"--name={name}",))
            for name in edges
        }


@pytest.fixture
def host() -> HostFacts:
    """Host with enough CPUs and a valid hostname."""
    return HostFacts(cpu_count=4, hostname="devbox")


@pytest.fixture
def plan(tmp_path: Path, host: HostFacts) -> ClusterPlan:
    """A valid plan rooted in a temporary directory."""
    return plan_cluster("10.10.0.0/16", "10.96.0.0/16", tmp_path / "run", host=host)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def cluster(plan: ClusterPlan) -> SimulatedCluster:
    return SimulatedCluster(plan, CLUSTER_EDGES)


@pytest.fixture
def unmounted() -> list[Path]:
    """Records state directories handed to the unmounter."""
    return []


@pytest.fixture
def make_supervisor(
    cluster: SimulatedCluster,
    launcher: FakeLauncher,
    clock: FakeClock,
    unmounted: list[Path],
) -> Callable[..., ProcessSupervisor]:
    """Build a supervisor over the simulated cluster."""

    def unmounter(directory: Path) -> list[str]:
        unmounted.append(directory)
        return []

    def factory(**settings) -> ProcessSupervisor:
        return ProcessSupervisor(
            cluster.registry,
            cluster.rendered,
            cluster.plan.paths,
            settings=SupervisorSettings(**settings),
            launcher=launcher,
            clock=clock,
            sleep=clock.sleep,
            unmounter=unmounter,
        )

    return factory


@pytest.fixture
def switches() -> dict[str, Switch]:
    """One controllable probe per component of the real cluster."""
    return {name: Switch() for name in CLUSTER_EDGES}
