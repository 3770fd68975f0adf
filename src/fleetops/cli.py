"""Command-line interface for fleetops."""

import asyncio
import json
import logging
import os
import re
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from fleetops import __version__
from fleetops.config import FleetConfig, load_config, save_config
from fleetops.exceptions import CredentialMissingError, FleetOpsError
from fleetops.executor import ExecutionResults, FleetExecutor
from fleetops.inventory import load_inventory, resolve_hosts, resolve_local
from fleetops.logging import LEVEL_NAMES, configure_logging, get_level_from_name, get_level_from_verbosity
from fleetops.logstore import ActivityLogService, clear_database
from fleetops.runners import PRIVILEGE_CREDENTIAL_ENV, LineCallback
from fleetops.types import EffectiveHostConfig, LogLevel, NodeInfo, NodeStatus, SessionStatus
from fleetops.watcher import IdleWatcher

logger = logging.getLogger("fleetops.cli")

_LEVEL_STYLES = {
    LogLevel.DEBUG: "dim",
    LogLevel.INFO: "blue",
    LogLevel.WARN: "yellow",
    LogLevel.ERROR: "red",
}


def format_results_json(
    results: ExecutionResults,
    command: str,
    duration: float,
    session_id: int | None = None,
) -> str:
    """Format execution results as JSON.

    Args:
        results: Execution results from the run
        command: Command that was executed
        duration: Execution duration in seconds
        session_id: Log session the run was recorded in

    Returns:
        JSON string with structured results
    """
    output: dict[str, Any] = {
        "command": command,
        "total_hosts": results.total_hosts,
        "successful": results.successful,
        "failed": results.failed,
        "results": {name: result.to_dict() for name, result in results.results.items()},
        "duration": round(duration, 3),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if session_id is not None:
        output["session_id"] = session_id
    return json.dumps(output, indent=2)


def format_results_text(
    results: ExecutionResults,
    verbose: bool = False,
) -> str:
    """Format execution results as human-readable text.

    Args:
        results: Execution results from the run
        verbose: Whether to include stdout of successful hosts

    Returns:
        Formatted text string
    """
    lines = [
        "",
        "Execution Results:",
        f"Total hosts: {results.total_hosts}",
        f"Successful: {results.successful}",
        f"Failed: {results.failed}",
        "",
    ]

    for host_name, result in results.results.items():
        if result.success and not verbose:
            continue
        status = "OK" if result.success else f"FAILED (exit={result.exit_code})"
        lines.append(f"  {host_name}: {status}")
        if result.stdout and verbose:
            for line in result.stdout.splitlines():
                lines.append(f"    {line}")
        if result.stderr and not result.success:
            for line in result.stderr.splitlines():
                lines.append(f"    {line}")
    if results.failed or verbose:
        lines.append("")

    return "\n".join(lines)


def _select_hosts(inventory_file: str | None, groups: tuple[str, ...]) -> tuple[list[EffectiveHostConfig], str | None]:
    if inventory_file is None:
        if groups:
            raise click.ClickException("--group requires --inventory")
        return [resolve_local()], None

    inv = load_inventory(inventory_file)
    hosts = resolve_hosts(inv, list(groups) if groups else None)
    return hosts, Path(inventory_file).name


def _streaming_callback(host: EffectiveHostConfig) -> LineCallback:
    return LineCallback(
        on_stdout=lambda line: click.echo(f"[{host.name}] {line}"),
        on_stderr=lambda line: click.echo(f"[{host.name}] {line}", err=True),
    )


# Main CLI group
@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """fleetops - Run shell commands across an inventory of hosts."""
    if version:
        click.echo(f"fleetops {__version__}")
        ctx.exit(0)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# Inventory subcommand group
@cli.group()
def inventory() -> None:
    """Inventory management commands."""
    pass


@inventory.command("validate")
@click.option("--inventory", "-i", required=True, help="Inventory file (INI or YAML format)")
def inventory_validate(inventory: str) -> None:
    """Validate an inventory and show the resolved hosts.

    Loads the inventory file and displays:
    - Number of groups and hosts loaded
    - Effective connection settings of every host
    - Warnings found while parsing
    """
    try:
        inv = load_inventory(inventory)
        hosts = {host.name: host for host in resolve_hosts(inv)}
    except FleetOpsError as e:
        raise click.ClickException(str(e))
    except OSError as e:
        raise click.ClickException(f"Cannot read inventory {inventory}: {e}")

    click.echo(f"\nInventory: {inventory}")
    click.echo(f"Loaded {len(hosts)} host(s) from {len(inv.groups)} group(s)\n")

    for group in inv.groups.values():
        host_count = len(group.hosts)
        click.echo(f"  {group.name} ({host_count} host{'s' if host_count != 1 else ''}):")
        for host_name in group.hosts:
            host = hosts[host_name]
            if host.is_local:
                click.echo(f"    - {host_name} (local)")
            else:
                click.echo(f"    - {host_name} ({host.user}@{host.hostname}:{host.port})")

    click.echo("\nValidation:")
    if not inv.warnings:
        click.echo("  All checks passed")
    for warning in inv.warnings:
        click.echo(f"  Warning: {warning}")
    click.echo()


async def _run_command(
    config: FleetConfig,
    hosts: list[EffectiveHostConfig],
    command: str,
    workflow: str,
    inventory_name: str | None,
    privileged: bool,
    stream: bool,
) -> tuple[ExecutionResults, int]:
    env = dict(os.environ)
    if config.credential_env != PRIVILEGE_CREDENTIAL_ENV:
        env[PRIVILEGE_CREDENTIAL_ENV] = env.get(config.credential_env, "")

    service = ActivityLogService(config.db_path, text_log_path=config.text_log_path)
    watcher = IdleWatcher(
        service,
        check_interval=config.check_interval,
        idle_threshold=config.idle_threshold,
        minimum_uptime=config.minimum_uptime,
    )

    async with service:
        watcher.start()
        try:
            session_id = await service.start_session(workflow, inventory_name, node_count=len(hosts))
            fleet = FleetExecutor(
                parallel=config.parallel,
                timeout=config.command_timeout,
                log_service=service,
                env=env,
            )
            try:
                results = await fleet.run(
                    hosts,
                    command,
                    session_id=session_id,
                    privileged=privileged,
                    callback_factory=_streaming_callback if stream else None,
                    label=workflow,
                )
            except BaseException:
                await service.end_session(session_id, SessionStatus.FAILED)
                raise
            status = SessionStatus.COMPLETED if results.is_success() else SessionStatus.FAILED
            await service.end_session(session_id, status)
        finally:
            watcher.stop()
            await watcher.wait_closed()

    return results, session_id


@cli.command("run")
@click.argument("command")
@click.option("--inventory", "-i", help="Inventory file; without one the command runs on localhost")
@click.option("--group", "-g", "groups", multiple=True, help="Limit to hosts in this group (can repeat)")
@click.option("--sudo", is_flag=True, help="Run with sudo, reading the password from $SUDO_PASSWORD (see credential_env)")
@click.option("--timeout", "-t", type=float, help="Per-command timeout in seconds")
@click.option("--parallel", "-p", type=int, help="Number of hosts to run on at once")
@click.option("--workflow", "-w", default="adhoc", show_default=True, help="Workflow name recorded in the log")
@click.option("--db", "db_path", help="Activity log database")
@click.option("--config", "config_file", type=click.Path(dir_okay=False), help="Configuration file (YAML)")
@click.option("--stream/--no-stream", default=False, help="Print output lines as they arrive")
@click.option("--format", "-f", "output_format", type=click.Choice(["text", "json"]),
              default="text", help="Output format (default: text)")
@click.option("-v", "--verbose", count=True,
              help="Increase verbosity (-v info, -vv debug, -vvv trace)")
@click.option("--log-level", type=click.Choice(list(LEVEL_NAMES), case_sensitive=False),
              help="Set log level explicitly (overrides -v)")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Also write logs to this file")
def run(
    command: str,
    inventory: str | None,
    groups: tuple[str, ...],
    sudo: bool,
    timeout: float | None,
    parallel: int | None,
    workflow: str,
    db_path: str | None,
    config_file: str | None,
    stream: bool,
    output_format: str,
    verbose: int,
    log_level: str | None,
    log_file: str | None,
) -> None:
    """Run COMMAND on every selected host.

    Examples:

        fleetops run uptime

        fleetops run -i hosts.ini -g web "systemctl status nginx"

        SUDO_PASSWORD=... fleetops run -i hosts.ini --sudo "apt-get update"
    """
    level = get_level_from_name(log_level) if log_level else get_level_from_verbosity(verbose)
    # For JSON output, suppress console logging to avoid polluting the output
    configure_logging(
        level=logging.CRITICAL if output_format == "json" else level,
        log_file=log_file,
        file_level=level if log_file else None,
    )

    try:
        config = load_config(config_file)
        if timeout is not None:
            config.command_timeout = timeout
        if parallel is not None:
            if parallel < 1:
                raise click.ClickException("--parallel must be at least 1")
            config.parallel = parallel
        if db_path is not None:
            config.db_path = db_path

        hosts, inventory_name = _select_hosts(inventory, groups)
    except FleetOpsError as e:
        raise click.ClickException(str(e))
    except OSError as e:
        raise click.ClickException(f"Cannot read inventory {inventory}: {e}")

    if not hosts:
        raise click.ClickException("No hosts matched the selection")

    start_time = time.perf_counter()
    try:
        results, session_id = asyncio.run(
            _run_command(config, hosts, command, workflow, inventory_name, sudo, stream)
        )
    except CredentialMissingError as e:
        raise click.ClickException(f"{e}. Set it to use --sudo.")
    except FleetOpsError as e:
        raise click.ClickException(str(e))
    duration = time.perf_counter() - start_time

    if output_format == "json":
        click.echo(format_results_json(results, command, duration, session_id))
    else:
        click.echo(format_results_text(results, verbose=(verbose > 0)))
        click.echo(f"Session: {session_id}")

    if not results.is_success():
        if output_format == "json":
            raise SystemExit(1)
        raise click.ClickException(f"{results.failed} host(s) failed execution")


_SINCE_UNITS = {"m": "minutes", "h": "hours", "d": "days", "w": "weeks"}


def parse_since(value: str, now: datetime | None = None) -> datetime:
    """Convert a relative age such as "30m", "12h", "1d" or "2w" to a local time.

    Raises:
        ValueError: If the value is not a number followed by m, h, d or w
    """
    match = re.fullmatch(r"(\d+)([mhdw])", value.strip().lower())
    if not match:
        raise ValueError(f"Invalid age {value!r}; use a number followed by m, h, d or w (e.g. 12h)")
    amount, unit = int(match.group(1)), match.group(2)
    return (now or datetime.now()) - timedelta(**{_SINCE_UNITS[unit]: amount})


def _since_option(ctx: click.Context, param: click.Parameter, value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        return parse_since(value)
    except ValueError as e:
        raise click.BadParameter(str(e), ctx=ctx, param=param)


async def _read_logs(
    db_path: str,
    session_id: int | None,
    actor: str | None,
    min_level: str | None,
) -> tuple[Any, list[Any]]:
    async with ActivityLogService(db_path) as service:
        if session_id is None:
            session_id = await service.latest_session_id()
            if session_id is None:
                return None, []
        session = await service.get_session(session_id)
        if session is None:
            return None, []
        entries = await service.get_logs(session_id, actor_id=actor, min_level=min_level)
    return session, entries


async def _read_sessions(db_path: str, limit: int, **filters: Any) -> list[Any]:
    async with ActivityLogService(db_path) as service:
        return await service.list_sessions(limit, **filters)


async def _read_session_detail(db_path: str, session_id: int | None, nodes: bool) -> Any:
    async with ActivityLogService(db_path) as service:
        if session_id is None:
            session_id = await service.latest_session_id()
            if session_id is None:
                return None
        if nodes:
            if await service.get_session(session_id) is None:
                return None
            return await service.get_nodes(session_id)
        return await service.get_summary(session_id)


def _sessions_table(sessions: list[Any]) -> Table:
    table = Table(title="Sessions")
    for column in ("ID", "Workflow", "Inventory", "Nodes", "Status", "Created", "Ended"):
        table.add_column(column)
    for s in sessions:
        table.add_row(
            str(s.id), s.workflow_name, s.inventory_name or "-", str(s.node_count),
            s.status.value, s.created_at, s.ended_at or "-",
        )
    return table


def _nodes_table(nodes: list[NodeInfo]) -> Table:
    table = Table(title="Nodes")
    table.add_column("Node")
    table.add_column("Status")
    table.add_column("Logs", justify="right")
    table.add_column("Reason", overflow="fold")
    for node in nodes:
        status = node.status.value if node.status else "-"
        style = "red" if node.status == NodeStatus.FAILED else None
        table.add_row(node.node_id, status, str(node.log_count), node.reason or "", style=style)
    return table


@cli.command("logs")
@click.option("--db", "db_path", help="Activity log database")
@click.option("--session", "-s", "session_id", type=int, help="Session id (default: latest)")
@click.option("--actor", "-a", help="Only show entries from this host")
@click.option("--level", "-l", "min_level", type=click.Choice(["debug", "info", "warn", "error"], case_sensitive=False),
              help="Minimum level to show")
@click.option("--summary", is_flag=True, help="Show a summary of the session instead of its entries")
@click.option("--list-nodes", is_flag=True, help="List the nodes of the session with their outcome")
@click.option("--list", "list_sessions", is_flag=True, help="List recent sessions instead")
@click.option("--workflow", "-w", help="With --list: only sessions of this workflow")
@click.option("--inventory", "-i", help="With --list: only sessions run against this inventory")
@click.option("--since", callback=_since_option, help="With --list: only sessions newer than this age (30m, 12h, 1d, 2w)")
@click.option("--limit", default=20, show_default=True, help="Number of sessions to list")
def logs(
    db_path: str | None,
    session_id: int | None,
    actor: str | None,
    min_level: str | None,
    summary: bool,
    list_nodes: bool,
    list_sessions: bool,
    workflow: str | None,
    inventory: str | None,
    since: datetime | None,
    limit: int,
) -> None:
    """Show activity logs recorded by previous runs.

    Examples:

        fleetops logs --list --workflow deploy --since 1d

        fleetops logs -s 12 --summary

        fleetops logs -s 12 --level error
    """
    if summary and list_nodes:
        raise click.UsageError("--summary and --list-nodes cannot be combined")
    try:
        db_path = db_path or load_config().db_path
    except FleetOpsError as e:
        raise click.ClickException(str(e))
    if db_path != ":memory:" and not Path(db_path).expanduser().exists():
        raise click.ClickException(f"Log database not found: {db_path}")

    console = Console()
    try:
        if list_sessions:
            sessions = asyncio.run(
                _read_sessions(db_path, limit, workflow=workflow, inventory=inventory, since=since)
            )
            console.print(_sessions_table(sessions))
            return

        if summary or list_nodes:
            detail = asyncio.run(_read_session_detail(db_path, session_id, nodes=list_nodes))
            if detail is None:
                raise click.ClickException("No matching session found")
            if summary:
                click.echo(detail.format_text())
            else:
                console.print(_nodes_table(detail))
                click.echo(f"Total: {len(detail)} node(s)")
            return

        session, entries = asyncio.run(_read_logs(db_path, session_id, actor, min_level))
    except FleetOpsError as e:
        raise click.ClickException(str(e))

    if session is None:
        raise click.ClickException("No matching session found")

    table = Table(title=f"Session {session.id}: {session.workflow_name} ({session.status.value})")
    table.add_column("Time")
    table.add_column("Level")
    table.add_column("Host")
    table.add_column("Label")
    table.add_column("Message", overflow="fold")
    table.add_column("Exit", justify="right")
    for entry in entries:
        table.add_row(
            entry.timestamp,
            entry.level.value,
            entry.actor_id,
            entry.label or "",
            entry.message,
            "" if entry.exit_code is None else str(entry.exit_code),
            style=_LEVEL_STYLES[entry.level],
        )
    console.print(table)


@cli.command("db-clear")
@click.option("--db", "db_path", help="Activity log database (default: from configuration)")
@click.option("--force", "--yes", "-y", "force", is_flag=True, help="Delete without asking for confirmation")
def db_clear(db_path: str | None, force: bool) -> None:
    """Delete the activity log database and its WAL files.

    No fleetops run may be using the database at the time.
    """
    try:
        db_path = db_path or load_config().db_path
    except FleetOpsError as e:
        raise click.ClickException(str(e))
    if db_path == ":memory:":
        raise click.ClickException("An in-memory database has nothing to clear")

    if not force:
        click.confirm(f"Delete all activity logs in {db_path}?", abort=True)

    try:
        deleted = clear_database(db_path)
    except OSError as e:
        raise click.ClickException(f"Cannot delete {db_path}: {e}")

    if not deleted:
        click.echo("No database files found")
    for path in deleted:
        click.echo(f"Deleted: {path}")


# Config subcommand group
@cli.group("config")
def config_group() -> None:
    """Configuration commands."""
    pass


@config_group.command("show")
@click.option("--config", "config_file", type=click.Path(dir_okay=False), help="Configuration file (YAML)")
def config_show(config_file: str | None) -> None:
    """Show the effective configuration after file and environment overrides."""
    try:
        config = load_config(config_file)
    except FleetOpsError as e:
        raise click.ClickException(str(e))
    click.echo(config.format_text())


@config_group.command("init")
@click.option("--config", "config_file", type=click.Path(dir_okay=False),
              help="File to write (default: $FLEETOPS_CONFIG or ~/.fleetops/config.yml)")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def config_init(config_file: str | None, force: bool) -> None:
    """Write a configuration file holding the default settings."""
    try:
        path = save_config(FleetConfig(), config_file, overwrite=force)
    except FleetOpsError as e:
        raise click.ClickException(f"{e} (use --force to overwrite)" if not force else str(e))
    except OSError as e:
        raise click.ClickException(f"Cannot write configuration: {e}")
    click.echo(f"Wrote {path}")


def main() -> None:
    """Package entry point for the fleetops command-line interface."""
    cli()


if __name__ == "__main__":
    cli()
