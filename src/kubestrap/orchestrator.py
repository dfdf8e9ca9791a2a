"""Cluster lifecycle orchestration.

Drives one run end to end: plan, network, certificates, rendering, ordered
start, monitoring and teardown. Teardown runs on every exit path, including
failures half-way through bootstrap.
"""

from __future__ import annotations

import asyncio
import os
import signal
import subprocess
from collections.abc import Awaitable, Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Protocol

import structlog

from .components import (
    KUBECONFIG_IDENTITIES,
    ComponentRegistry,
    RenderContext,
    RenderedComponent,
    certificate_requests,
    default_registry,
)
from .config import KubestrapConfig
from .errors import ConfigError, CryptoError, KubestrapError
from .network import CommandRunner, NetworkPlan, NetworkPlanner
from .pki import CertificateAuthority
from .plan import ClusterPlan, HostFacts, plan_cluster
from .prerequisites import BinaryResolver, PortScanner, check_privileges
from .shared.logging import bind_run, unbind_run
from .shared.paths import ClusterPaths, clear_runtime
from .supervisor import Launcher, ProcessSupervisor

logger = structlog.get_logger(__name__)

DEFAULT_SHELL = "/bin/sh"

RegistryFactory = Callable[..., ComponentRegistry]


class ShellProcess(Protocol):
    @property
    def returncode(self) -> int | None: ...

    async def wait(self) -> int: ...

    def send_signal(self, sig: int) -> None: ...

    def kill(self) -> None: ...


ShellFactory = Callable[[dict[str, str]], Awaitable[ShellProcess]]


def shell_environment(paths: ClusterPaths, plan: ClusterPlan | None = None) -> dict[str, str]:
    """Environment for an interactive shell talking to the cluster."""
    env = dict(os.environ)
    env["KUBECONFIG"] = str(paths.kubeconfig)
    env["KUBESTRAP_ROOT"] = str(paths.root)
    if plan is not None:
        env["KUBESTRAP_APISERVER"] = plan.apiserver_url
    return env


async def _spawn_shell(env: dict[str, str]) -> asyncio.subprocess.Process:
    shell = env.get("SHELL") or DEFAULT_SHELL
    logger.info("Spawning shell, exit it to stop the cluster", shell=shell)
    # Inherits our terminal
    return await asyncio.create_subprocess_exec(shell, env=env)


def attach_shell(root: str | Path) -> int:
    """Spawn a shell against an already-running cluster.

    Args:
        root: The running cluster's working directory.

    Returns:
        The shell's exit status.

    Raises:
        ConfigError: If no cluster was bootstrapped under ``root``.
    """
    plan = ClusterPlan.from_file(Path(root).expanduser().absolute())
    paths = plan.paths
    if not paths.kubeconfig.exists():
        raise ConfigError(f"No kubeconfig at {paths.kubeconfig}", field="root")
    env = shell_environment(paths, plan)
    shell = env.get("SHELL") or DEFAULT_SHELL
    logger.info("Attaching shell", root=str(paths.root), shell=shell)
    return subprocess.run([shell], env=env).returncode


class Orchestrator:
    """Run a cluster until signalled, then tear it down."""

    def __init__(
        self,
        config: KubestrapConfig,
        *,
        host: HostFacts | None = None,
        launcher: Launcher | None = None,
        network_runner: CommandRunner | None = None,
        resolver: BinaryResolver | None = None,
        port_scanner: PortScanner | None = None,
        registry_factory: RegistryFactory = default_registry,
        shell_factory: ShellFactory = _spawn_shell,
        privileges: Callable[[bool], None] = check_privileges,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        unmounter: Callable[[Path], list[str]] | None = None,
    ):
        """Initialize orchestrator.

        Keyword arguments replace host interactions (processes, networking,
        executable lookup) and exist for tests.
        """
        self.config = config
        self.host = host
        self.launcher = launcher
        self.network_runner = network_runner
        self.resolver = resolver or BinaryResolver(config.binaries)
        self.port_scanner = port_scanner or PortScanner()
        self.registry_factory = registry_factory
        self.shell_factory = shell_factory
        self.privileges = privileges
        self._supervisor_options: dict[str, Any] = {}
        if clock is not None:
            self._supervisor_options["clock"] = clock
        if sleep is not None:
            self._supervisor_options["sleep"] = sleep
        if unmounter is not None:
            self._supervisor_options["unmounter"] = unmounter

        self.plan: ClusterPlan | None = None
        self.network: NetworkPlan | None = None
        self.ca: CertificateAuthority | None = None
        self.registry: ComponentRegistry | None = None
        self.rendered: Mapping[str, RenderedComponent] = {}
        self.supervisor: ProcessSupervisor | None = None
        self.error: KubestrapError | None = None
        self.healthy = True

        self._network_planner: NetworkPlanner | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._shutdown: asyncio.Event | None = None
        self._torn_down = False
        self._signals: list[signal.Signals] = []

    # ── Entry points ────────────────────────────────────────────────

    def run(self, shell: bool = False) -> int:
        """Bootstrap, monitor and tear down. Blocks until the run is over.

        Returns:
            0 after a clean, user-initiated shutdown, 1 otherwise.
        """
        return asyncio.run(self.execute(shell=shell))

    async def execute(self, shell: bool = False) -> int:
        self._shutdown = asyncio.Event()
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="kubestrap"
        )
        bind_run(Path(self.config.root).expanduser().absolute())
        installed = self._install_signal_handlers()
        try:
            if not await self._bootstrap_interruptible():
                logger.info("Interrupted during bootstrap")
                return 0
            logger.info("Cluster ready", components=len(self.registry), root=str(self.plan.root))
            if shell:
                self.healthy = await self._run_shell()
            else:
                self.healthy = await self.monitor()
            return 0 if self.healthy else 1
        except KubestrapError as e:
            self.error = e
            self.healthy = False
            logger.error("Fatal error", **e.to_dict())
            return 1
        finally:
            await self.teardown()
            self._remove_signal_handlers(installed)
            unbind_run()

    def request_shutdown(self) -> None:
        """Ask the run to stop. Safe to call repeatedly."""
        if self._shutdown is not None:
            self._shutdown.set()

    # ── Bootstrap ───────────────────────────────────────────────────

    async def _bootstrap_interruptible(self) -> bool:
        """Run bootstrap unless a shutdown request arrives first.

        Returns:
            False if bootstrap was interrupted.
        """
        bootstrap = asyncio.create_task(self.bootstrap(), name="bootstrap")
        stop = asyncio.create_task(self._shutdown.wait(), name="shutdown-wait")
        try:
            await asyncio.wait({bootstrap, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
        if not bootstrap.done():
            bootstrap.cancel()
            await asyncio.gather(bootstrap, return_exceptions=True)
            return False
        bootstrap.result()
        return True

    async def bootstrap(self) -> None:
        """Bring every component to READY.

        Raises:
            KubestrapError: On the first unrecoverable step. Whatever was
                started stays recorded for teardown.
        """
        cfg = self.config
        loop = asyncio.get_running_loop()

        self.plan = plan_cluster(
            cfg.cidr,
            cfg.service_cidr,
            cfg.root,
            nodes=cfg.nodes,
            pods_per_node=cfg.pods_per_node,
            ports=cfg.ports,
            host=self.host,
        )

        self.privileges(cfg.manage_network)
        planner = NetworkPlanner(
            self.plan, runner=self.network_runner, manage_host=cfg.manage_network
        )
        self.network = planner.compute()

        # Resolve executables against the component table, then rebuild with full paths
        registry = self._build_registry(cfg.binaries)
        binaries = self.resolver.resolve_all(registry.names)
        self.registry = self._build_registry(binaries)
        order = self.registry.resolve_order()
        logger.debug("Start order resolved", order=order)

        self.port_scanner.require_free(self.plan)

        # Persisted only once no other cluster holds the ports
        self.plan.to_file()
        logger.info(
            "Cluster planned",
            root=str(self.plan.root),
            cidr=str(self.plan.cluster_cidr),
            service_cidr=str(self.plan.service_cidr),
        )

        planner.write_cni_config(self.network)
        self._network_planner = planner
        await loop.run_in_executor(self._executor, planner.apply, self.network)

        await self._issue_certificates()

        context = RenderContext(
            plan=self.plan,
            network=self.network,
            ca=self.ca,
            addresses=self.registry.addresses(),
        )
        rendered = await asyncio.gather(
            *(loop.run_in_executor(self._executor, d.render, context) for d in self.registry)
        )
        self.rendered = {r.name: r for r in rendered}
        await asyncio.gather(
            *(loop.run_in_executor(self._executor, r.write) for r in self.rendered.values())
        )

        self.supervisor = ProcessSupervisor(
            self.registry,
            self.rendered,
            self.plan.paths,
            settings=cfg.supervisor_settings(),
            launcher=self.launcher,
            **self._supervisor_options,
        )
        await self.supervisor.start_all()

    def _build_registry(self, binaries: Mapping[str, str]) -> ComponentRegistry:
        return self.registry_factory(
            self.plan,
            self.network,
            binaries=binaries,
            ready_timeouts=self.config.ready_timeouts,
            cni_plugin_dir=self.config.cni_plugin_dir,
        )

    async def _issue_certificates(self) -> None:
        cfg = self.config
        loop = asyncio.get_running_loop()
        self.ca = CertificateAuthority(self.plan.paths)
        try:
            await asyncio.wait_for(
                loop.run_in_executor(self._executor, self.ca.initialize),
                timeout=cfg.crypto_timeout,
            )
        except asyncio.TimeoutError:
            raise CryptoError(
                f"Root CA generation timed out after {cfg.crypto_timeout}s"
            ) from None

        requests = certificate_requests(self.plan, self.network)
        await asyncio.to_thread(
            self.ca.issue_all, requests, cfg.max_workers, cfg.crypto_timeout
        )

        server = self.plan.apiserver_url
        paths = self.plan.paths
        self.ca.write_kubeconfig(paths.kubeconfig, "admin", server)
        for identity in KUBECONFIG_IDENTITIES:
            self.ca.write_kubeconfig(paths.component_kubeconfig(identity), identity, server)
        logger.info("Certificates issued", identities=len(self.ca.issued))

    # ── Steady state ────────────────────────────────────────────────

    async def monitor(self) -> bool:
        """Probe components every ``probe_interval`` until shutdown.

        A component that fails for good is killed together with its
        dependents; the rest keep running.

        Returns:
            False if any component failed during the run.
        """
        healthy = True
        interval = self.config.probe_interval
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            for name in await self.supervisor.check_liveness():
                healthy = False
                await self.supervisor.stop_with_dependents(name)

            if not self.supervisor.running():
                logger.error("No components left running")
                break
        return healthy

    async def _run_shell(self) -> bool:
        env = shell_environment(self.plan.paths, self.plan)
        shell = await self.shell_factory(env)
        self._yield_interrupt_to_shell()

        async def end_with_shell() -> None:
            status = await shell.wait()
            logger.info("Shell exited", status=status)
            self.request_shutdown()

        watcher = asyncio.create_task(end_with_shell(), name="shell-wait")
        try:
            return await self.monitor()
        finally:
            if not watcher.done():
                watcher.cancel()
                await asyncio.gather(watcher, return_exceptions=True)
            await self._release_shell(shell)

    async def _release_shell(self, shell: ShellProcess) -> None:
        """Hang up a shell that outlived the run, then kill it after the grace period."""
        if shell.returncode is not None:
            return
        # Interactive shells ignore SIGTERM
        try:
            shell.send_signal(signal.SIGHUP)
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(shell.wait(), timeout=self.config.grace_period)
        except asyncio.TimeoutError:
            logger.warning("Shell did not exit on hangup, killing")
            shell.kill()
            await shell.wait()
        logger.info("Shell closed", status=shell.returncode)

    # ── Teardown ────────────────────────────────────────────────────

    async def teardown(self) -> None:
        """Stop processes, revert networking, clear runtime artifacts.

        Idempotent. Logs and certificates are kept for inspection.
        """
        if self._torn_down:
            return
        self._torn_down = True

        if self.supervisor is not None:
            await self.supervisor.stop_all()
        if self._network_planner is not None:
            await asyncio.to_thread(self._network_planner.teardown)
        if self.supervisor is not None:
            try:
                removed = clear_runtime(self.plan.paths)
                logger.debug("Runtime files removed", count=len(removed))
            except OSError as e:
                logger.warning("Unable to clear runtime directory", error=str(e))
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
        logger.info("Teardown complete")

    # ── Signals ─────────────────────────────────────────────────────

    def _install_signal_handlers(self) -> list[signal.Signals]:
        loop = asyncio.get_running_loop()

        def signal_handler(sig: signal.Signals) -> None:
            logger.info("Received shutdown signal", signal=sig.name)
            self.request_shutdown()

        installed: list[signal.Signals] = []
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, signal_handler, sig)
            except (NotImplementedError, RuntimeError, ValueError):
                logger.debug("Signal handlers unavailable", signal=sig.name)
                continue
            installed.append(sig)
        self._signals = installed
        return installed

    def _yield_interrupt_to_shell(self) -> None:
        """Ctrl-C belongs to the interactive shell once it runs."""
        if signal.SIGINT in self._signals:
            asyncio.get_running_loop().add_signal_handler(signal.SIGINT, lambda: None)

    def _remove_signal_handlers(self, installed: list[signal.Signals]) -> None:
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)
