"""fleetops - Run shell commands across a fleet described by an inventory.

Resolves per-host connection settings from an INI or YAML inventory, runs
commands locally or over SSH with streaming output and optional sudo, and
records every run in a session-scoped activity log that shuts itself down
when idle.

Quick Start:
    from fleetops import ActivityLogService, FleetExecutor, load_inventory, resolve_hosts

    hosts = resolve_hosts(load_inventory("hosts.ini"), ["web"])
    async with ActivityLogService("logs.db") as service:
        session_id = await service.start_session("restart-nginx", node_count=len(hosts))
        fleet = FleetExecutor(parallel=5, log_service=service)
        results = await fleet.run(hosts, "systemctl restart nginx", session_id=session_id)
"""

__version__ = "0.1.0"

from fleetops.exceptions import (
    ConfigurationError,
    CredentialMissingError,
    FleetOpsError,
    FormatError,
    LogServiceError,
)
from fleetops.executor import ExecutionResults, FleetExecutor
from fleetops.inventory import (
    Inventory,
    load_inventory,
    load_localhost,
    parse,
    resolve,
    resolve_group,
    resolve_hosts,
    resolve_local,
)
from fleetops.logstore import ActivityLogService, ServiceState, clear_database
from fleetops.runners import (
    CommandExecutor,
    LineCallback,
    LocalCommandExecutor,
    OutputCallback,
    RemoteCommandExecutor,
    create_executor,
)
from fleetops.types import (
    CommandResult,
    EffectiveHostConfig,
    LogLevel,
    NodeInfo,
    NodeStatus,
    SessionStatus,
    SessionSummary,
)
from fleetops.watcher import IdleWatcher

__all__ = [
    "__version__",
    "ActivityLogService",
    "CommandExecutor",
    "CommandResult",
    "ConfigurationError",
    "CredentialMissingError",
    "EffectiveHostConfig",
    "ExecutionResults",
    "FleetExecutor",
    "FleetOpsError",
    "FormatError",
    "IdleWatcher",
    "Inventory",
    "LineCallback",
    "LocalCommandExecutor",
    "LogLevel",
    "LogServiceError",
    "NodeInfo",
    "NodeStatus",
    "OutputCallback",
    "RemoteCommandExecutor",
    "ServiceState",
    "SessionStatus",
    "SessionSummary",
    "clear_database",
    "create_executor",
    "load_inventory",
    "load_localhost",
    "parse",
    "resolve",
    "resolve_group",
    "resolve_hosts",
    "resolve_local",
]
