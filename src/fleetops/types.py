"""Type definitions for fleetops.

This module defines the core data types shared by the inventory resolver,
the command executors and the activity log service. All records are plain
dataclasses; the ones that describe finished facts are frozen.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from getpass import getuser
from typing import Any

# Sentinel exit codes for results that did not come from the command itself
TIMEOUT_EXIT_CODE = -1
SPAWN_FAILURE_EXIT_CODE = 127
TRANSPORT_FAILURE_EXIT_CODE = 255


def process_owner() -> str:
    """Name of the user running this process, "unknown" if it cannot be found."""
    try:
        return getuser()
    except (OSError, KeyError):
        return "unknown"


@dataclass(frozen=True)
class EffectiveHostConfig:
    """Connection parameters for one host after variable resolution.

    Derived from an inventory by merging global, group and host variables;
    never stored back into the inventory.

    Attributes:
        name: Host identifier as written in the inventory
        hostname: Address to connect to (after any host-rename override)
        user: Login user (default: process owner)
        port: SSH port (default: 22)
        identity_file: Private key reference, if any
        local_mode: True if commands run on the control host without SSH
        vars: The merged variable mapping the config was derived from

    Example:
        >>> config = EffectiveHostConfig(name="web01", hostname="10.0.0.5")
        >>> config.port
        22
        >>> config.is_local
        False
    """

    name: str
    hostname: str
    user: str = field(default_factory=process_owner)
    port: int = 22
    identity_file: str | None = None
    local_mode: bool = False
    vars: dict[str, str] = field(default_factory=dict, compare=False)

    @property
    def is_local(self) -> bool:
        """Check if this host uses local execution (no SSH)."""
        return self.local_mode

    @property
    def is_remote(self) -> bool:
        """Check if this host uses remote execution (SSH)."""
        return not self.local_mode

    def get_var(self, key: str, default: Any = None) -> Any:
        """Get a merged variable by key with optional default."""
        return self.vars.get(key, default)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a single command invocation.

    Created once per invocation and never mutated. Execution-layer failures
    (timeouts, spawn errors, transport errors) are also reported as results,
    using the sentinel exit codes defined in this module.

    Attributes:
        stdout: Captured standard output, lines joined with newlines
        stderr: Captured standard error, lines joined with newlines
        exit_code: Process exit status or a sentinel code

    Example:
        >>> CommandResult(stdout="ok", stderr="", exit_code=0).success
        True
        >>> CommandResult(stdout="", stderr="", exit_code=42).success
        False
    """

    stdout: str
    stderr: str
    exit_code: int

    @property
    def success(self) -> bool:
        """True if the command exited with status 0."""
        return self.exit_code == 0

    @property
    def timed_out(self) -> bool:
        """True if the command was killed by its timeout."""
        return self.exit_code == TIMEOUT_EXIT_CODE

    @classmethod
    def failure(cls, message: str, exit_code: int, stdout: str = "") -> "CommandResult":
        """Create a non-success result carrying an execution-layer message."""
        return cls(stdout=stdout, stderr=message, exit_code=exit_code)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "success": self.success,
        }


class LogLevel(str, Enum):
    """Severity of an activity log entry, ordered DEBUG < ERROR."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"

    @property
    def rank(self) -> int:
        return _LEVEL_RANKS[self]

    @classmethod
    def parse(cls, value: "str | LogLevel") -> "LogLevel":
        """Parse a level name, accepting WARNING as an alias of WARN."""
        if isinstance(value, LogLevel):
            return value
        name = value.strip().upper()
        if name == "WARNING":
            name = "WARN"
        return cls(name)


_LEVEL_RANKS = {
    LogLevel.DEBUG: 10,
    LogLevel.INFO: 20,
    LogLevel.WARN: 30,
    LogLevel.ERROR: 40,
}


class SessionStatus(str, Enum):
    """Lifecycle status of a workflow session."""

    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class Session:
    """One workflow run as recorded by the activity log service.

    Attributes:
        id: Session id assigned by the store
        workflow_name: Name of the workflow that was run
        created_at: ISO-8601 creation timestamp
        inventory_name: Inventory the run targeted, if any
        node_count: Number of hosts in the run
        status: Current session status
        ended_at: ISO-8601 end timestamp, None while running
    """

    id: int
    workflow_name: str
    created_at: str
    inventory_name: str | None = None
    node_count: int = 0
    status: SessionStatus = SessionStatus.RUNNING
    ended_at: str | None = None


@dataclass(frozen=True)
class LogEntry:
    """A single append-only activity log record.

    Attributes:
        id: Store-assigned id; increases in write-arrival order
        session_id: Session the entry belongs to
        timestamp: ISO-8601 write timestamp
        actor_id: Node or actor that produced the entry
        label: Workflow step label (may be None)
        level: Severity
        message: Free-form message text
        exit_code: Exit code for action entries
        duration_ms: Action duration for action entries
    """

    id: int
    session_id: int
    timestamp: str
    actor_id: str
    label: str | None
    level: LogLevel
    message: str
    exit_code: int | None = None
    duration_ms: int | None = None

    def format_text(self) -> str:
        """Format the entry as a single human-readable line."""
        text = f"[{self.timestamp}] {self.level.value:<5} {self.actor_id}"
        if self.label:
            text += f" [{self.label}]"
        text += f" {self.message}"
        if self.exit_code:
            text += f" (exit={self.exit_code})"
        if self.duration_ms is not None:
            text += f" [{self.duration_ms}ms]"
        return text


class NodeStatus(str, Enum):
    """Final outcome recorded for one node in a session."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass(frozen=True)
class NodeInfo:
    """A node that took part in a session.

    Attributes:
        node_id: Actor id the node logged under
        status: Recorded outcome, None if the node never reported one
        log_count: Number of entries the node wrote
        reason: Failure reason for failed nodes
    """

    node_id: str
    status: NodeStatus | None = None
    log_count: int = 0
    reason: str | None = None


@dataclass(frozen=True)
class SessionSummary:
    """Aggregated view of one session.

    Attributes:
        session: The session record
        success_count: Nodes marked successful
        failed_count: Nodes marked failed
        failed_nodes: Ids of the failed nodes in the order they were recorded
        total_entries: Number of log entries in the session
        error_count: Number of ERROR entries in the session
    """

    session: Session
    success_count: int = 0
    failed_count: int = 0
    failed_nodes: tuple[str, ...] = ()
    total_entries: int = 0
    error_count: int = 0

    @property
    def duration_seconds(self) -> float | None:
        """Wall time between creation and end, None while running."""
        if self.session.ended_at is None:
            return None
        started = datetime.fromisoformat(self.session.created_at)
        ended = datetime.fromisoformat(self.session.ended_at)
        return (ended - started).total_seconds()

    def format_text(self) -> str:
        """Format the summary as a multi-line report."""
        session = self.session
        lines = [f"Session #{session.id}: {session.workflow_name}"]
        if session.inventory_name:
            lines.append(f"  Inventory: {session.inventory_name}")
        lines.append(f"  Started:   {session.created_at}")
        lines.append(f"  Ended:     {session.ended_at or 'N/A'}")
        duration = self.duration_seconds
        if duration is not None:
            minutes, seconds = divmod(int(duration), 60)
            lines.append(f"  Duration:  {minutes}m {seconds}s")
        lines.append(f"  Nodes:     {session.node_count}")
        lines.append(f"  Status:    {session.status.value}")
        lines.append("")
        lines.append("  Results:")
        lines.append(f"    SUCCESS: {self.success_count} nodes")
        failed = f"    FAILED:  {self.failed_count} nodes"
        if self.failed_nodes:
            failed += f" ({', '.join(self.failed_nodes)})"
        lines.append(failed)
        lines.append("")
        lines.append(f"  Log lines: {self.total_entries} ({self.error_count} errors)")
        return "\n".join(lines)


@dataclass
class WatcherState:
    """Mutable state of the idle watcher, owned by the watcher alone.

    Attributes:
        running: Whether the periodic check is scheduled
        started_at: Clock reading when the watcher started
        last_activity_at: Clock reading of the last activity the watcher saw
    """

    running: bool = False
    started_at: float = 0.0
    last_activity_at: float = 0.0
