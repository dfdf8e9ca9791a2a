"""Unit tests for cluster planning."""

from __future__ import annotations

import ipaddress
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from kubestrap.errors import ConfigError, FilesystemError
from kubestrap.plan import (
    DEFAULT_PORTS,
    ClusterPlan,
    HostFacts,
    plan_cluster,
)
from kubestrap.shared.paths import SUBDIRS


class TestPlanCluster:
    """Tests for plan_cluster validation."""

    def test_valid_plan(self, tmp_path, host):
        """A valid request yields a plan with derived addresses."""
        plan = plan_cluster("10.10.0.0/16", "10.96.0.0/16", tmp_path / "run", host=host)

        assert plan.cluster_cidr == ipaddress.IPv4Network("10.10.0.0/16")
        assert plan.api_service_address == ipaddress.IPv4Address("10.96.0.1")
        assert plan.dns_service_address == ipaddress.IPv4Address("10.96.0.10")
        assert plan.hostname == "devbox"
        assert plan.root.is_absolute()
        assert dict(plan.ports) == DEFAULT_PORTS

    def test_five_node_plan(self, tmp_path, host):
        """A /16 cluster and /20 service network hold a five node plan."""
        plan = plan_cluster("10.0.0.0/16", "10.1.0.0/20", tmp_path, nodes=5, host=host)

        assert plan.nodes == 5
        assert not plan.cluster_cidr.overlaps(plan.service_cidr)

    def test_creates_layout(self, tmp_path, host):
        """The working directory layout is created."""
        root = tmp_path / "nested" / "root"
        plan_cluster("10.10.0.0/16", "10.96.0.0/16", root, host=host)

        for name in SUBDIRS:
            assert (root / name).is_dir()
        assert oct((root / "certs").stat().st_mode & 0o777) == oct(0o700)

    @pytest.mark.parametrize(
        ("cidr", "service_cidr", "field"),
        [
            ("10.0.0.0/16", "10.0.128.0/20", "service_cidr"),
            ("10.0.0.0/8", "10.96.0.0/12", "service_cidr"),
            ("not-a-cidr", "10.96.0.0/16", "cidr"),
            ("10.10.0.1/16", "10.96.0.0/16", "cidr"),
            ("10.10.0.0/16", "10.96.0.0/33", "service_cidr"),
            ("10.10.0.0/25", "10.96.0.0/16", "cidr"),
            ("10.10.0.0/16", "10.96.0.0/29", "service_cidr"),
        ],
    )
    def test_invalid_networks(self, tmp_path, host, cidr, service_cidr, field):
        """Invalid or conflicting networks name the offending field."""
        with pytest.raises(ConfigError) as exc_info:
            plan_cluster(cidr, service_cidr, tmp_path, host=host)
        assert exc_info.value.field == field

    def test_too_many_nodes_for_cidr(self, tmp_path, host):
        """A /23 holds two node subnets, not three."""
        with pytest.raises(ConfigError) as exc_info:
            plan_cluster("10.10.0.0/23", "10.96.0.0/16", tmp_path, nodes=3, host=host)
        assert exc_info.value.field == "cidr"

    def test_zero_nodes(self, tmp_path, host):
        """At least one node is required."""
        with pytest.raises(ConfigError) as exc_info:
            plan_cluster("10.10.0.0/16", "10.96.0.0/16", tmp_path, nodes=0, host=host)
        assert exc_info.value.field == "nodes"

    def test_too_many_pods_per_node(self, tmp_path, host):
        """A /24 node subnet cannot hold 300 pods."""
        with pytest.raises(ConfigError) as exc_info:
            plan_cluster("10.10.0.0/16", "10.96.0.0/16", tmp_path, pods_per_node=300, host=host)
        assert exc_info.value.field == "pods_per_node"

    def test_not_enough_cpus(self, tmp_path):
        """A single CPU is below the minimum."""
        with pytest.raises(ConfigError) as exc_info:
            plan_cluster(
                "10.10.0.0/16",
                "10.96.0.0/16",
                tmp_path,
                host=HostFacts(cpu_count=1, hostname="devbox"),
            )
        assert exc_info.value.field == "cpu_count"

    def test_invalid_hostname(self, tmp_path):
        """Hostnames must be valid DNS names."""
        with pytest.raises(ConfigError) as exc_info:
            plan_cluster(
                "10.10.0.0/16",
                "10.96.0.0/16",
                tmp_path,
                host=HostFacts(cpu_count=4, hostname="dev_box"),
            )
        assert exc_info.value.field == "hostname"

    def test_duplicate_ports(self, tmp_path, host):
        """Two components cannot share a port."""
        with pytest.raises(ConfigError) as exc_info:
            plan_cluster(
                "10.10.0.0/16",
                "10.96.0.0/16",
                tmp_path,
                ports={"kube-apiserver": 2379},
                host=host,
            )
        assert exc_info.value.field == "ports"

    def test_port_override(self, tmp_path, host):
        """Port overrides are merged over the defaults."""
        plan = plan_cluster(
            "10.10.0.0/16", "10.96.0.0/16", tmp_path, ports={"kube-apiserver": 7443}, host=host
        )
        assert plan.port("kube-apiserver") == 7443
        assert plan.apiserver_url == "https://127.0.0.1:7443"
        assert plan.port("etcd") == 2379

    def test_unknown_port(self, plan):
        """Asking for an unassigned port is a ConfigError."""
        with pytest.raises(ConfigError):
            plan.port("nope")

    def test_root_is_a_file(self, tmp_path, host):
        """A file where the root should be blocks the layout."""
        root = tmp_path / "root"
        root.write_text("")
        with pytest.raises(FilesystemError) as exc_info:
            plan_cluster("10.10.0.0/16", "10.96.0.0/16", root, host=host)
        assert exc_info.value.path == str(root)

    def test_subdirectory_is_a_file(self, tmp_path, host):
        """A file in place of a layout directory is reported with its path."""
        root = tmp_path / "root"
        root.mkdir()
        (root / "logs").write_text("")
        with pytest.raises(FilesystemError) as exc_info:
            plan_cluster("10.10.0.0/16", "10.96.0.0/16", root, host=host)
        assert exc_info.value.path.endswith("logs")

    @pytest.mark.skipif(os.geteuid() == 0, reason="root ignores directory permissions")
    def test_root_not_writable(self, tmp_path, host):
        """A read-only parent directory is rejected."""
        parent = tmp_path / "locked"
        parent.mkdir()
        parent.chmod(0o500)
        try:
            with pytest.raises(ConfigError) as exc_info:
                plan_cluster("10.10.0.0/16", "10.96.0.0/16", parent / "run", host=host)
            assert exc_info.value.field == "root"
        finally:
            parent.chmod(0o700)


class TestPlanPersistence:
    """Tests for ClusterPlan.to_file / from_file."""

    def test_round_trip(self, plan):
        """A persisted plan reads back equal."""
        plan.to_file()
        loaded = ClusterPlan.from_file(plan.root)

        assert loaded.cluster_cidr == plan.cluster_cidr
        assert loaded.service_cidr == plan.service_cidr
        assert loaded.hostname == plan.hostname
        assert dict(loaded.ports) == dict(plan.ports)

    def test_missing_plan(self, tmp_path):
        """Attaching to a root without a cluster fails clearly."""
        with pytest.raises(ConfigError) as exc_info:
            ClusterPlan.from_file(tmp_path)
        assert exc_info.value.field == "root"

    def test_malformed_plan(self, tmp_path):
        """A plan missing keys is reported as malformed."""
        (tmp_path / "cluster.yaml").write_text("cluster_cidr: 10.0.0.0/16\n")
        with pytest.raises(ConfigError) as exc_info:
            ClusterPlan.from_file(tmp_path)
        assert "Malformed" in exc_info.value.message


class TestHostFacts:
    """Tests for host detection."""

    def test_detect(self):
        """Hostname is lowercased and CPU count comes from the OS."""
        with patch("socket.gethostname", return_value="DevBox"):
            with patch("os.cpu_count", return_value=8):
                facts = HostFacts.detect()
        assert facts == HostFacts(cpu_count=8, hostname="devbox")

    def test_detect_unknown_cpu_count(self):
        """An unknown CPU count is treated as one."""
        with patch("os.cpu_count", return_value=None):
            assert HostFacts.detect().cpu_count == 1


def test_relative_root_is_made_absolute(tmp_path: Path, host: HostFacts, monkeypatch) -> None:
    """Relative roots are resolved against the working directory."""
    monkeypatch.chdir(tmp_path)
    plan = plan_cluster("10.10.0.0/16", "10.96.0.0/16", "rel", host=host)
    assert plan.root == (tmp_path / "rel").resolve()
