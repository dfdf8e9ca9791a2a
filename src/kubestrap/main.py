"""CLI main entry point."""

import json
import os
import sys
from pathlib import Path
from typing import Any

import click
import yaml
from rich.console import Console
from rich.table import Table

from .components import default_registry
from .config import LOG_LEVELS, KubestrapConfig, load_config
from .errors import KubestrapError
from .network import NetworkPlanner
from .orchestrator import Orchestrator, attach_shell
from .plan import ClusterPlan
from .shared.logging import configure_logging

console = Console()
err_console = Console(stderr=True)


def _fail(error: KubestrapError) -> None:
    err_console.print(f"[red]Error:[/red] {error}")
    err_console.print(f"[dim]kind: {error.kind}[/dim]")
    raise SystemExit(1)


def _load(ctx: click.Context) -> KubestrapConfig:
    """Load configuration with the group's flags on top."""
    obj = ctx.obj
    try:
        config = load_config(obj.get("config_path"), overrides=obj.get("overrides"))
    except KubestrapError as e:
        _fail(e)
    configure_logging(config.log_level, config.log_file, config.json_logs)
    return config


def _pid_alive(pid_file: Path) -> tuple[bool, int | None]:
    """Check whether the process recorded in ``pid_file`` is alive.

    Returns:
        Tuple of (alive, pid). If there is no readable PID file, pid is None.
    """
    if not pid_file.exists():
        return False, None
    try:
        pid = int(pid_file.read_text().strip())
    except (ValueError, OSError):
        return False, None
    try:
        os.kill(pid, 0)  # Signal 0 = check existence
        return True, pid
    except ProcessLookupError:
        return False, pid
    except PermissionError:
        # Process exists but we can't signal it (different user)
        return True, pid


def component_status(plan: ClusterPlan) -> list[dict[str, Any]]:
    """Liveness of every component according to its PID file."""
    network = NetworkPlanner(plan).compute()
    paths = plan.paths
    rows = []
    for descriptor in default_registry(plan, network):
        alive, pid = _pid_alive(paths.pid(descriptor.name))
        rows.append(
            {
                "component": descriptor.name,
                "pid": pid,
                "alive": alive,
                "log": str(paths.log(descriptor.name)),
            }
        )
    return rows


@click.group(invoke_without_command=True)
@click.option("-r", "--root", type=click.Path(file_okay=False), help="Working directory for this run")
@click.option("--cidr", help="Cluster (pod) network CIDR")
@click.option("--service-cidr", help="Service network CIDR")
@click.option("--nodes", type=int, help="Node count")
@click.option(
    "-l",
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    help="Log level",
)
@click.option("-c", "--config", "config_path", type=click.Path(dir_okay=False), help="Config file path")
@click.option("--json-logs", is_flag=True, default=None, help="Log as JSON")
@click.version_option(package_name="kubestrap")
@click.pass_context
def cli(
    ctx: click.Context,
    root: str | None,
    cidr: str | None,
    service_cidr: str | None,
    nodes: int | None,
    log_level: str | None,
    config_path: str | None,
    json_logs: bool | None,
) -> None:
    """Bootstrap a single-host Kubernetes cluster for development.

    Without a subcommand, starts the cluster and keeps it running until
    interrupted (Ctrl-C or SIGTERM), then tears everything down.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["overrides"] = {
        "root": root,
        "cidr": cidr,
        "service_cidr": service_cidr,
        "nodes": nodes,
        "log_level": log_level,
        "json_logs": json_logs or None,
    }
    if ctx.invoked_subcommand is None:
        ctx.invoke(up, shell=False)


@cli.command()
@click.option("--shell", is_flag=True, help="Spawn a shell once the cluster is ready")
@click.pass_context
def up(ctx: click.Context, shell: bool) -> None:
    """Start the cluster and keep it running.

    With --shell, the cluster lives as long as the shell does.
    """
    config = _load(ctx)
    orchestrator = Orchestrator(config)
    status = orchestrator.run(shell=shell)
    if orchestrator.error is not None:
        _fail(orchestrator.error)
    if status != 0:
        err_console.print("[yellow]Cluster ran unhealthy, see component logs[/yellow]")
    sys.exit(status)


@cli.command()
@click.pass_context
def shell(ctx: click.Context) -> None:
    """Open a shell against a running cluster."""
    config = _load(ctx)
    try:
        status = attach_shell(config.root)
    except KubestrapError as e:
        _fail(e)
    sys.exit(status)


@cli.command()
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def status(ctx: click.Context, json_output: bool) -> None:
    """Show which components of a running cluster are alive."""
    config = _load(ctx)
    try:
        plan = ClusterPlan.from_file(Path(config.root).absolute())
    except KubestrapError as e:
        _fail(e)

    rows = component_status(plan)
    if json_output:
        click.echo(json.dumps(rows, indent=2))
        return

    table = Table(title=f"kubestrap cluster at {plan.root}")
    table.add_column("Component")
    table.add_column("PID", justify="right")
    table.add_column("Status")
    for row in rows:
        state = "[green]running[/green]" if row["alive"] else "[red]stopped[/red]"
        table.add_row(row["component"], str(row["pid"] or "-"), state)
    console.print(table)
    console.print(f"[dim]KUBECONFIG={plan.paths.kubeconfig}[/dim]")


@cli.command("config")
@click.pass_context
def show_config(ctx: click.Context) -> None:
    """Show effective configuration and where each value came from."""
    config = _load(ctx)
    data = {}
    for key in ("root", "cidr", "service_cidr", "nodes", "log_level", "manage_network"):
        value = getattr(config, key)
        data[key] = {"value": str(value) if isinstance(value, Path) else value, "source": config.get_source(key)}
    click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))


def main() -> None:
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
