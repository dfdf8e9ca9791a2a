"""Unit tests for host network planning."""

from __future__ import annotations

import ipaddress
import json
import subprocess
from unittest.mock import MagicMock

import pytest

from kubestrap.errors import NetworkError
from kubestrap.network import BRIDGE_NAME, NetworkPlanner
from kubestrap.plan import plan_cluster


class RecordingRunner:
    """Command runner that records commands and fails on request."""

    def __init__(self, fail_on: str | None = None):
        self.commands: list[tuple[str, ...]] = []
        self.fail_on = fail_on

    def __call__(self, command):
        self.commands.append(tuple(command))
        failed = self.fail_on is not None and self.fail_on in command
        return subprocess.CompletedProcess(
            list(command),
            returncode=1 if failed else 0,
            stdout="",
            stderr="RTNETLINK answers: Operation not permitted" if failed else "",
        )


class TestCompute:
    """Tests for NetworkPlanner.compute."""

    def test_addresses(self, plan):
        """Bridge and service addresses derive from the plan."""
        network = NetworkPlanner(plan).compute()

        assert network.pod_subnet == ipaddress.IPv4Network("10.10.0.0/24")
        assert network.bridge_address == ipaddress.IPv4Address("10.10.0.1")
        assert network.api_service_address == ipaddress.IPv4Address("10.96.0.1")
        assert network.dns_address == ipaddress.IPv4Address("10.96.0.10")
        assert network.dns_bind_address == network.bridge_address
        assert str(network.bridge_interface) == "10.10.0.1/24"

    def test_small_service_network(self, tmp_path, host):
        """A /20 service network still yields the well-known offsets."""
        plan = plan_cluster("10.0.0.0/16", "10.1.0.0/20", tmp_path, nodes=5, host=host)
        network = NetworkPlanner(plan).compute()

        assert network.api_service_address == ipaddress.IPv4Address("10.1.0.1")
        assert network.dns_address == ipaddress.IPv4Address("10.1.0.10")
        assert network.pod_subnet.subnet_of(plan.cluster_cidr)

    def test_unmanaged_binds_loopback(self, plan):
        """Without host management DNS is served on loopback."""
        network = NetworkPlanner(plan, manage_host=False).compute()
        assert network.dns_bind_address == ipaddress.IPv4Address("127.0.0.1")

    def test_commands(self, plan):
        """Forwarding, bridge, masquerade and DNS rules are planned."""
        network = NetworkPlanner(plan).compute()
        flat = [" ".join(c.apply) for c in network.commands]

        assert "sysctl -w net.ipv4.ip_forward=1" in flat
        assert f"ip link add {BRIDGE_NAME} type bridge" in flat
        assert any("MASQUERADE" in c and "10.10.0.0/16" in c for c in flat)
        assert any("DNAT" in c and "10.96.0.10/32" in c and "10.10.0.1:53" in c for c in flat)

    def test_cni_config(self, plan):
        """The CNI conflist uses the bridge and the node's pod subnet."""
        planner = NetworkPlanner(plan)
        network = planner.compute()
        path = planner.write_cni_config(network)

        document = json.loads(path.read_text())
        bridge = document["plugins"][0]
        assert bridge["bridge"] == BRIDGE_NAME
        assert bridge["ipam"]["ranges"][0][0]["subnet"] == "10.10.0.0/24"
        assert path.parent == plan.paths.configs_dir / "cni"


class TestApply:
    """Tests for applying and reverting host changes."""

    def test_apply_runs_every_command(self, plan):
        """All planned commands run in order."""
        runner = RecordingRunner()
        planner = NetworkPlanner(plan, runner=runner)
        network = planner.compute()

        planner.apply(network)

        assert runner.commands == [c.apply for c in network.commands]

    def test_failure_rolls_back(self, plan):
        """A failing command raises NetworkError after reverting earlier ones."""
        runner = RecordingRunner(fail_on="MASQUERADE")
        planner = NetworkPlanner(plan, runner=runner)
        network = planner.compute()

        with pytest.raises(NetworkError) as exc_info:
            planner.apply(network)

        assert "Operation not permitted" in exc_info.value.cause
        assert runner.commands[-1] == ("ip", "link", "delete", BRIDGE_NAME)

    def test_teardown_reverses(self, plan):
        """Teardown reverts rules in reverse order, once."""
        runner = RecordingRunner()
        planner = NetworkPlanner(plan, runner=runner)
        network = planner.compute()
        planner.apply(network)
        applied = len(runner.commands)

        planner.teardown()
        planner.teardown()

        reverts = runner.commands[applied:]
        expected = [c.revert for c in reversed(network.commands) if c.revert]
        assert reverts == expected

    def test_teardown_failures_are_not_raised(self, plan):
        """Teardown is best effort."""
        runner = MagicMock(return_value=subprocess.CompletedProcess([], 0, "", ""))
        planner = NetworkPlanner(plan, runner=runner)
        network = planner.compute()
        planner.apply(network)

        runner.side_effect = OSError("gone")
        planner.teardown()

    def test_unmanaged_is_a_no_op(self, plan):
        """With host management disabled nothing runs."""
        runner = RecordingRunner()
        planner = NetworkPlanner(plan, runner=runner, manage_host=False)

        planner.apply(planner.compute())
        planner.teardown()

        assert runner.commands == []
