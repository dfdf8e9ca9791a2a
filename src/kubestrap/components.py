"""Component registry.

Static table of the daemons that make up the cluster: what to run, what it
depends on, how to render its configuration and how to tell that it is up.
"""

from __future__ import annotations

import heapq
import shlex
import socket
import ssl
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Union

import httpx
import structlog
import yaml

from .errors import ConfigError, DependencyCycleError, KubestrapError, RenderError
from .network import NetworkPlan
from .pki import CertificateAuthority, CertificateRequest
from .plan import ClusterPlan

logger = structlog.get_logger(__name__)

PROBE_TIMEOUT = 2.0

RUN_SCRIPT = """#!/usr/bin/env sh
# Replays the command kubestrap used to start {name}
exec {command}
"""


# ── Readiness variants ──────────────────────────────────────────────


@dataclass(frozen=True)
class TcpReadiness:
    """Ready once the port accepts connections."""

    port: int
    host: str = "127.0.0.1"
    timeout: float = PROBE_TIMEOUT

    def check(self, log_path: Path | None = None) -> bool:
        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout):
                return True
        except OSError:
            return False


@dataclass(frozen=True)
class HttpReadiness:
    """Ready once the endpoint answers 200. TLS is verified against the cluster CA."""

    url: str
    ca_file: Path | None = None
    client_cert: Path | None = None
    client_key: Path | None = None
    timeout: float = PROBE_TIMEOUT

    def _verify(self) -> ssl.SSLContext | bool:
        if not self.url.startswith("https"):
            return True
        context = ssl.create_default_context(cafile=str(self.ca_file) if self.ca_file else None)
        if self.client_cert and self.client_key:
            context.load_cert_chain(str(self.client_cert), str(self.client_key))
        return context

    def check(self, log_path: Path | None = None) -> bool:
        try:
            response = httpx.get(self.url, verify=self._verify(), timeout=self.timeout)
        except (httpx.HTTPError, ssl.SSLError, OSError):
            return False
        return response.status_code == 200


@dataclass(frozen=True)
class SocketReadiness:
    """Ready once the unix socket accepts connections."""

    path: Path
    timeout: float = PROBE_TIMEOUT

    def check(self, log_path: Path | None = None) -> bool:
        if not self.path.exists():
            return False
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(str(self.path))
            return True
        except OSError:
            return False
        finally:
            sock.close()


@dataclass(frozen=True)
class LogPatternReadiness:
    """Ready once the daemon has written ``pattern`` to its log."""

    pattern: str

    def check(self, log_path: Path | None = None) -> bool:
        if log_path is None or not log_path.exists():
            return False
        with open(log_path, errors="replace") as f:
            return any(self.pattern in line for line in f)


Readiness = Union[TcpReadiness, HttpReadiness, SocketReadiness, LogPatternReadiness]


# ── Rendering ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class RenderContext:
    """Inputs available to every renderer."""

    plan: ClusterPlan
    network: NetworkPlan
    ca: CertificateAuthority
    addresses: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RenderedComponent:
    """A fully rendered command line plus the files it reads."""

    name: str
    binary: str
    args: tuple[str, ...]
    files: Mapping[Path, str] = field(default_factory=dict)
    run_script: Path | None = None

    @property
    def command(self) -> list[str]:
        return [self.binary, *self.args]

    def write(self) -> None:
        """Write config files and the replay script."""
        for path, content in self.files.items():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        if self.run_script is not None:
            sep = " \\\n    "
            command = sep.join(shlex.quote(part) for part in self.command)
            self.run_script.write_text(RUN_SCRIPT.format(name=self.name, command=command))
            self.run_script.chmod(0o755)


Renderer = Callable[["ComponentDescriptor", RenderContext], tuple[list[str], dict[Path, str]]]


@dataclass(frozen=True)
class ComponentDescriptor:
    """Static description of one daemon."""

    name: str
    binary: str
    renderer: Renderer
    readiness: Readiness
    depends_on: tuple[str, ...] = ()
    liveness: Readiness | None = None
    ready_timeout: float = 30.0
    address: str | None = None
    defaults: Mapping[str, str] = field(default_factory=dict)
    state_dir: Path | None = None
    socket: Path | None = None

    @property
    def liveness_probe(self) -> Readiness:
        return self.liveness or self.readiness

    def render(self, context: RenderContext) -> RenderedComponent:
        """Render args and files from the plan and resolved dependency addresses.

        Raises:
            RenderError: If a referenced dependency value is missing and no
                default exists.
        """
        addresses = dict(self.defaults)
        addresses.update(
            {dep: context.addresses[dep] for dep in self.depends_on if dep in context.addresses}
        )
        scoped = replace(context, addresses=MappingProxyType(addresses))
        try:
            args, files = self.renderer(self, scoped)
        except KeyError as e:
            raise RenderError(
                f"Missing value {e} while rendering configuration",
                component=self.name,
            ) from e
        except KubestrapError:
            raise
        except (TypeError, ValueError, OSError) as e:
            raise RenderError(
                "Unable to render configuration", component=self.name, cause=str(e)
            ) from e
        return RenderedComponent(
            name=self.name,
            binary=self.binary,
            args=tuple(args),
            files=MappingProxyType(files),
            run_script=context.plan.paths.config(self.name, "sh"),
        )


# ── Registry ────────────────────────────────────────────────────────


class ComponentRegistry:
    """Ordered set of component descriptors forming a dependency graph."""

    def __init__(self, descriptors: Iterable[ComponentDescriptor]):
        self._descriptors: dict[str, ComponentDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in self._descriptors:
                raise ConfigError(
                    f"Duplicate component '{descriptor.name}'", field="components"
                )
            self._descriptors[descriptor.name] = descriptor

        for descriptor in self._descriptors.values():
            for dep in descriptor.depends_on:
                if dep not in self._descriptors:
                    raise ConfigError(
                        f"Unknown dependency '{dep}'",
                        component=descriptor.name,
                        field=f"{descriptor.name}.depends_on",
                    )

    def __iter__(self) -> Iterator[ComponentDescriptor]:
        return iter(self._descriptors.values())

    def __len__(self) -> int:
        return len(self._descriptors)

    def __contains__(self, name: object) -> bool:
        return name in self._descriptors

    @property
    def names(self) -> list[str]:
        return list(self._descriptors)

    def get(self, name: str) -> ComponentDescriptor:
        try:
            return self._descriptors[name]
        except KeyError:
            raise ConfigError(f"Unknown component '{name}'", field="components") from None

    def resolve_order(self) -> list[str]:
        """Topological start order, ties broken by registration order.

        Raises:
            DependencyCycleError: Naming the cycle.
        """
        index = {name: i for i, name in enumerate(self._descriptors)}
        remaining = {name: len(set(d.depends_on)) for name, d in self._descriptors.items()}
        dependents: dict[str, list[str]] = {name: [] for name in self._descriptors}
        for name, descriptor in self._descriptors.items():
            for dep in set(descriptor.depends_on):
                dependents[dep].append(name)

        ready = [(index[name], name) for name, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            _, name = heapq.heappop(ready)
            order.append(name)
            for dependent in dependents[name]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, (index[dependent], dependent))

        if len(order) != len(self._descriptors):
            cycle = self.find_cycle()
            raise DependencyCycleError("Component dependencies contain a cycle", cycle=cycle)
        return order

    def find_cycle(self) -> list[str]:
        """Return one dependency cycle as a path ``[a, b, ..., a]``, or []."""
        visiting: list[str] = []
        done: set[str] = set()

        def visit(name: str) -> list[str]:
            if name in visiting:
                return visiting[visiting.index(name) :] + [name]
            if name in done:
                return []
            visiting.append(name)
            for dep in self._descriptors[name].depends_on:
                cycle = visit(dep)
                if cycle:
                    return cycle
            visiting.pop()
            done.add(name)
            return []

        for name in self._descriptors:
            cycle = visit(name)
            if cycle:
                return cycle
        return []

    def dependents(self, name: str) -> set[str]:
        """All components that depend on ``name``, directly or transitively."""
        result: set[str] = set()
        frontier = [name]
        while frontier:
            current = frontier.pop()
            for descriptor in self._descriptors.values():
                if current in descriptor.depends_on and descriptor.name not in result:
                    result.add(descriptor.name)
                    frontier.append(descriptor.name)
        return result

    def addresses(self) -> dict[str, str]:
        """Advertised address of every component that has one."""
        return {d.name: d.address for d in self._descriptors.values() if d.address}

    def render_all(self, context: RenderContext) -> dict[str, RenderedComponent]:
        return {d.name: d.render(context) for d in self._descriptors.values()}


# ── Certificates and kubeconfigs ────────────────────────────────────

KUBECONFIG_IDENTITIES = (
    "admin",
    "kube-controller-manager",
    "kube-scheduler",
    "kubelet",
    "kube-proxy",
    "coredns",
)


def certificate_requests(plan: ClusterPlan, network: NetworkPlan) -> list[CertificateRequest]:
    """Identities every cluster needs, with the SANs their consumers check."""
    local = ("127.0.0.1", "localhost")
    return [
        CertificateRequest(
            name="kube-apiserver",
            sans=(
                str(network.api_service_address),
                *local,
                str(network.bridge_address),
                plan.hostname,
                "kubernetes",
                "kubernetes.default",
                "kubernetes.default.svc",
                "kubernetes.default.svc.cluster.local",
            ),
        ),
        CertificateRequest(name="etcd", sans=local),
        CertificateRequest(name="admin", organization="system:masters"),
        CertificateRequest(
            name="kube-controller-manager",
            sans=local,
            common_name="system:kube-controller-manager",
        ),
        CertificateRequest(
            name="kube-scheduler", sans=local, common_name="system:kube-scheduler"
        ),
        CertificateRequest(
            name="kubelet",
            sans=(*local, plan.hostname, str(network.bridge_address)),
            common_name=f"system:node:{plan.hostname}",
            organization="system:nodes",
        ),
        CertificateRequest(name="kube-proxy", common_name="system:kube-proxy"),
        CertificateRequest(name="coredns", organization="system:masters"),
        CertificateRequest(name="service-account"),
    ]


# ── Renderers ───────────────────────────────────────────────────────


def _yaml(document: dict[str, Any]) -> str:
    return yaml.safe_dump(document, default_flow_style=False, sort_keys=False)


def _render_etcd(d: ComponentDescriptor, ctx: RenderContext) -> tuple[list[str], dict[Path, str]]:
    paths = ctx.plan.paths
    client = f"https://127.0.0.1:{ctx.plan.port('etcd')}"
    peer = f"https://127.0.0.1:{ctx.plan.port('etcd-peer')}"
    cert = ctx.ca.get("etcd")
    args = [
        f"--advertise-client-urls={client}",
        "--client-cert-auth",
        f"--data-dir={paths.state('etcd')}",
        f"--initial-advertise-peer-urls={peer}",
        "--initial-cluster-state=new",
        "--initial-cluster-token=etcd-cluster",
        f"--initial-cluster=etcd={peer}",
        f"--listen-client-urls={client}",
        f"--listen-peer-urls={peer}",
        "--name=etcd",
        "--peer-client-cert-auth",
        f"--cert-file={cert.cert_path}",
        f"--key-file={cert.key_path}",
        f"--peer-cert-file={cert.cert_path}",
        f"--peer-key-file={cert.key_path}",
        f"--peer-trusted-ca-file={ctx.ca.ca_cert_path}",
        f"--trusted-ca-file={ctx.ca.ca_cert_path}",
    ]
    return args, {}


def _render_apiserver(
    d: ComponentDescriptor, ctx: RenderContext
) -> tuple[list[str], dict[Path, str]]:
    cert = ctx.ca.get("kube-apiserver")
    service_account = ctx.ca.get("service-account")
    ca = ctx.ca.ca_cert_path
    args = [
        f"--advertise-address={ctx.network.bridge_address}",
        "--allow-privileged=true",
        "--authorization-mode=Node,RBAC",
        "--bind-address=0.0.0.0",
        f"--client-ca-file={ca}",
        f"--etcd-cafile={ca}",
        f"--etcd-certfile={cert.cert_path}",
        f"--etcd-keyfile={cert.key_path}",
        f"--etcd-servers={ctx.addresses['etcd']}",
        f"--kubelet-certificate-authority={ca}",
        f"--kubelet-client-certificate={cert.cert_path}",
        f"--kubelet-client-key={cert.key_path}",
        f"--secure-port={ctx.plan.port('kube-apiserver')}",
        "--service-account-issuer=https://kubernetes.default.svc.cluster.local",
        f"--service-account-key-file={service_account.cert_path}",
        f"--service-account-signing-key-file={service_account.key_path}",
        f"--service-cluster-ip-range={ctx.plan.service_cidr}",
        f"--tls-cert-file={cert.cert_path}",
        f"--tls-private-key-file={cert.key_path}",
        "--v=2",
    ]
    return args, {}


def _render_controller_manager(
    d: ComponentDescriptor, ctx: RenderContext
) -> tuple[list[str], dict[Path, str]]:
    paths = ctx.plan.paths
    kubeconfig = paths.component_kubeconfig(d.name)
    cert = ctx.ca.get(d.name)
    args = [
        "--allocate-node-cidrs=true",
        "--bind-address=127.0.0.1",
        f"--authentication-kubeconfig={kubeconfig}",
        f"--authorization-kubeconfig={kubeconfig}",
        f"--cluster-cidr={ctx.plan.cluster_cidr}",
        "--cluster-name=kubernetes",
        f"--cluster-signing-cert-file={ctx.ca.ca_cert_path}",
        f"--cluster-signing-key-file={ctx.ca.ca_key_path}",
        f"--kubeconfig={kubeconfig}",
        "--leader-elect=false",
        f"--master={ctx.addresses['kube-apiserver']}",
        "--node-cidr-mask-size=24",
        f"--root-ca-file={ctx.ca.ca_cert_path}",
        f"--secure-port={ctx.plan.port(d.name)}",
        f"--service-account-private-key-file={ctx.ca.get('service-account').key_path}",
        f"--service-cluster-ip-range={ctx.plan.service_cidr}",
        f"--tls-cert-file={cert.cert_path}",
        f"--tls-private-key-file={cert.key_path}",
        "--use-service-account-credentials=true",
        "--v=2",
    ]
    return args, {}


def _render_scheduler(
    d: ComponentDescriptor, ctx: RenderContext
) -> tuple[list[str], dict[Path, str]]:
    paths = ctx.plan.paths
    kubeconfig = paths.component_kubeconfig(d.name)
    config_file = paths.config(d.name)
    cert = ctx.ca.get(d.name)
    config = {
        "apiVersion": "kubescheduler.config.k8s.io/v1",
        "kind": "KubeSchedulerConfiguration",
        "clientConnection": {"kubeconfig": str(kubeconfig)},
        "leaderElection": {"leaderElect": False},
    }
    args = [
        f"--authentication-kubeconfig={kubeconfig}",
        f"--authorization-kubeconfig={kubeconfig}",
        "--bind-address=127.0.0.1",
        f"--config={config_file}",
        f"--master={ctx.addresses['kube-apiserver']}",
        f"--secure-port={ctx.plan.port(d.name)}",
        f"--tls-cert-file={cert.cert_path}",
        f"--tls-private-key-file={cert.key_path}",
        "--v=2",
    ]
    return args, {config_file: _yaml(config)}


def _render_crio(d: ComponentDescriptor, ctx: RenderContext) -> tuple[list[str], dict[Path, str]]:
    paths = ctx.plan.paths
    state = paths.state(d.name)
    args = [
        "--cgroup-manager=cgroupfs",
        f"--cni-config-dir={paths.configs_dir / 'cni'}",
        f"--cni-plugin-dir={ctx.addresses['cni-plugins']}",
        "--conmon-cgroup=pod",
        f"--listen={paths.socket(d.name)}",
        f"--log-dir={paths.logs_dir / 'pods'}",
        f"--root={state / 'storage'}",
        f"--runroot={state / 'run'}",
        f"--version-file={state / 'version'}",
    ]
    return args, {}


def _render_kubelet(
    d: ComponentDescriptor, ctx: RenderContext
) -> tuple[list[str], dict[Path, str]]:
    paths = ctx.plan.paths
    config_file = paths.config(d.name)
    cert = ctx.ca.get(d.name)
    config = {
        "apiVersion": "kubelet.config.k8s.io/v1beta1",
        "kind": "KubeletConfiguration",
        "address": "0.0.0.0",
        "port": ctx.plan.port(d.name),
        "healthzBindAddress": "127.0.0.1",
        "healthzPort": ctx.plan.port("kubelet-healthz"),
        "authentication": {
            "anonymous": {"enabled": False},
            "webhook": {"enabled": True},
            "x509": {"clientCAFile": str(ctx.ca.ca_cert_path)},
        },
        "authorization": {"mode": "Webhook"},
        "cgroupDriver": "cgroupfs",
        "clusterDomain": "cluster.local",
        "clusterDNS": [str(ctx.network.dns_address)],
        "containerRuntimeEndpoint": ctx.addresses["crio"],
        "failSwapOn": False,
        "maxPods": ctx.plan.pods_per_node,
        "podCIDR": str(ctx.network.pod_subnet),
        "tlsCertFile": str(cert.cert_path),
        "tlsPrivateKeyFile": str(cert.key_path),
    }
    args = [
        f"--config={config_file}",
        f"--hostname-override={ctx.plan.hostname}",
        f"--kubeconfig={paths.component_kubeconfig(d.name)}",
        f"--root-dir={paths.state(d.name)}",
        "--v=2",
    ]
    return args, {config_file: _yaml(config)}


def _render_proxy(d: ComponentDescriptor, ctx: RenderContext) -> tuple[list[str], dict[Path, str]]:
    paths = ctx.plan.paths
    config_file = paths.config(d.name)
    config = {
        "apiVersion": "kubeproxy.config.k8s.io/v1alpha1",
        "kind": "KubeProxyConfiguration",
        "clientConnection": {"kubeconfig": str(paths.component_kubeconfig(d.name))},
        "clusterCIDR": str(ctx.plan.cluster_cidr),
        "healthzBindAddress": f"127.0.0.1:{ctx.plan.port('kube-proxy-healthz')}",
        "hostnameOverride": ctx.plan.hostname,
        "metricsBindAddress": f"127.0.0.1:{ctx.plan.port('kube-proxy-metrics')}",
        "mode": "iptables",
    }
    return [f"--config={config_file}"], {config_file: _yaml(config)}


COREFILE = """.:{port} {{
    bind {bind}
    errors
    health 127.0.0.1:{health}
    ready 127.0.0.1:{ready}
    kubernetes cluster.local in-addr.arpa ip6.arpa {{
        kubeconfig {kubeconfig} kubestrap
        pods insecure
        fallthrough in-addr.arpa ip6.arpa
    }}
    forward . /etc/resolv.conf
    cache 30
    loop
    reload
}}
"""


def _render_coredns(
    d: ComponentDescriptor, ctx: RenderContext
) -> tuple[list[str], dict[Path, str]]:
    paths = ctx.plan.paths
    corefile = paths.config(d.name, "Corefile")
    content = COREFILE.format(
        port=ctx.network.dns_port,
        bind=ctx.network.dns_bind_address,
        health=ctx.plan.port("coredns-health"),
        ready=ctx.plan.port("coredns-ready"),
        kubeconfig=paths.component_kubeconfig(d.name),
    )
    return [f"-conf={corefile}"], {corefile: content}


# ── Default table ───────────────────────────────────────────────────

DEFAULT_READY_TIMEOUTS: dict[str, float] = {
    "etcd": 60.0,
    "kube-apiserver": 60.0,
    "kube-controller-manager": 30.0,
    "kube-scheduler": 30.0,
    "crio": 30.0,
    "kubelet": 60.0,
    "kube-proxy": 30.0,
    "coredns": 20.0,
}

DEFAULT_CNI_PLUGIN_DIR = "/opt/cni/bin"


def default_registry(
    plan: ClusterPlan,
    network: NetworkPlan,
    binaries: Mapping[str, str] | None = None,
    ready_timeouts: Mapping[str, float] | None = None,
    cni_plugin_dir: str = DEFAULT_CNI_PLUGIN_DIR,
) -> ComponentRegistry:
    """Build the registry for a single-host cluster.

    Args:
        plan: The cluster plan.
        network: Computed network plan.
        binaries: Explicit executable paths by component name.
        ready_timeouts: Readiness timeout overrides in seconds.
        cni_plugin_dir: Directory holding the CNI plugin binaries.
    """
    binaries = binaries or {}
    timeouts = {**DEFAULT_READY_TIMEOUTS, **(ready_timeouts or {})}
    paths = plan.paths
    ca = paths.ca_cert
    admin_cert, admin_key = paths.cert("admin"), paths.key("admin")

    def https(port_name: str, path: str, client: bool = False) -> HttpReadiness:
        return HttpReadiness(
            url=f"https://127.0.0.1:{plan.port(port_name)}{path}",
            ca_file=ca,
            client_cert=admin_cert if client else None,
            client_key=admin_key if client else None,
        )

    def binary(name: str, default: str | None = None) -> str:
        return binaries.get(name, default or name)

    return ComponentRegistry(
        [
            ComponentDescriptor(
                name="etcd",
                binary=binary("etcd"),
                renderer=_render_etcd,
                readiness=LogPatternReadiness("ready to serve client requests"),
                liveness=TcpReadiness(plan.port("etcd")),
                ready_timeout=timeouts["etcd"],
                address=f"https://127.0.0.1:{plan.port('etcd')}",
                state_dir=paths.state("etcd"),
            ),
            ComponentDescriptor(
                name="kube-apiserver",
                binary=binary("kube-apiserver"),
                renderer=_render_apiserver,
                depends_on=("etcd",),
                readiness=https("kube-apiserver", "/readyz", client=True),
                liveness=https("kube-apiserver", "/livez", client=True),
                ready_timeout=timeouts["kube-apiserver"],
                address=plan.apiserver_url,
            ),
            ComponentDescriptor(
                name="kube-controller-manager",
                binary=binary("kube-controller-manager"),
                renderer=_render_controller_manager,
                depends_on=("kube-apiserver",),
                readiness=https("kube-controller-manager", "/healthz"),
                ready_timeout=timeouts["kube-controller-manager"],
            ),
            ComponentDescriptor(
                name="kube-scheduler",
                binary=binary("kube-scheduler"),
                renderer=_render_scheduler,
                depends_on=("kube-apiserver",),
                readiness=https("kube-scheduler", "/healthz"),
                ready_timeout=timeouts["kube-scheduler"],
            ),
            ComponentDescriptor(
                name="crio",
                binary=binary("crio"),
                renderer=_render_crio,
                readiness=SocketReadiness(paths.socket("crio")),
                ready_timeout=timeouts["crio"],
                address=f"unix://{paths.socket('crio')}",
                defaults={"cni-plugins": cni_plugin_dir},
                state_dir=paths.state("crio"),
                socket=paths.socket("crio"),
            ),
            ComponentDescriptor(
                name="kubelet",
                binary=binary("kubelet"),
                renderer=_render_kubelet,
                depends_on=("kube-apiserver", "crio"),
                readiness=HttpReadiness(
                    f"http://127.0.0.1:{plan.port('kubelet-healthz')}/healthz"
                ),
                ready_timeout=timeouts["kubelet"],
                address=f"https://127.0.0.1:{plan.port('kubelet')}",
                state_dir=paths.state("kubelet"),
            ),
            ComponentDescriptor(
                name="kube-proxy",
                binary=binary("kube-proxy"),
                renderer=_render_proxy,
                depends_on=("kube-apiserver", "kubelet"),
                readiness=LogPatternReadiness("Caches are synced"),
                liveness=HttpReadiness(
                    f"http://127.0.0.1:{plan.port('kube-proxy-healthz')}/healthz"
                ),
                ready_timeout=timeouts["kube-proxy"],
            ),
            ComponentDescriptor(
                name="coredns",
                binary=binary("coredns"),
                renderer=_render_coredns,
                depends_on=("kube-proxy",),
                readiness=HttpReadiness(f"http://127.0.0.1:{plan.port('coredns-ready')}/ready"),
                liveness=HttpReadiness(f"http://127.0.0.1:{plan.port('coredns-health')}/health"),
                ready_timeout=timeouts["coredns"],
                address=f"{network.dns_bind_address}:{network.dns_port}",
            ),
        ]
    )
