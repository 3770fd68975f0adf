"""Activity log service for fleetops.

Stores workflow sessions, their log entries and the final outcome of each
node in SQLite through aiosqlite.
One service instance is created by the process entry point and passed to
every component that logs; there is no global accessor.

Writes from concurrently running host tasks are serialized by a single
asyncio.Lock, so entries within a session are ordered by write arrival.
Entry writes are best-effort: a failing write is logged and dropped, and
never interrupts the command execution that produced it.

Example:
    async with ActivityLogService("~/.fleetops/logs.db") as service:
        session_id = await service.start_session("deploy", node_count=3)
        await service.log(session_id, "web01", "install", LogLevel.INFO, "starting")
        await service.end_session(session_id, SessionStatus.COMPLETED)
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Callable, TextIO

import aiosqlite

from .exceptions import LogServiceError
from .types import (
    CommandResult,
    LogEntry,
    LogLevel,
    NodeInfo,
    NodeStatus,
    Session,
    SessionStatus,
    SessionSummary,
)

logger = logging.getLogger(__name__)

MEMORY_DB = ":memory:"

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    workflow_name TEXT NOT NULL,
    inventory_name TEXT,
    node_count INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'RUNNING',
    created_at TEXT NOT NULL,
    ended_at TEXT
);

CREATE TABLE IF NOT EXISTS logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id INTEGER NOT NULL,
    timestamp TEXT NOT NULL,
    actor_id TEXT NOT NULL,
    label TEXT,
    level TEXT NOT NULL,
    message TEXT NOT NULL,
    exit_code INTEGER,
    duration_ms INTEGER,
    FOREIGN KEY (session_id) REFERENCES sessions(id)
);

CREATE TABLE IF NOT EXISTS node_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id INTEGER NOT NULL,
    node_id TEXT NOT NULL,
    status TEXT NOT NULL,
    reason TEXT,
    FOREIGN KEY (session_id) REFERENCES sessions(id),
    UNIQUE (session_id, node_id)
);

CREATE INDEX IF NOT EXISTS idx_logs_session ON logs(session_id);
CREATE INDEX IF NOT EXISTS idx_logs_actor ON logs(session_id, actor_id);
"""

_SESSION_COLUMNS = "id, workflow_name, created_at, inventory_name, node_count, status, ended_at"

# Level names accepted in "log-<level>" labels
_LABEL_LEVELS = {
    "SEVERE": LogLevel.ERROR,
    "ERROR": LogLevel.ERROR,
    "WARNING": LogLevel.WARN,
    "WARN": LogLevel.WARN,
    "INFO": LogLevel.INFO,
    "CONFIG": LogLevel.DEBUG,
    "FINE": LogLevel.DEBUG,
    "FINER": LogLevel.DEBUG,
    "FINEST": LogLevel.DEBUG,
    "DEBUG": LogLevel.DEBUG,
}


class ServiceState(str, Enum):
    """Lifecycle state of an ActivityLogService."""

    UNINITIALIZED = "UNINITIALIZED"
    ACTIVE = "ACTIVE"
    SHUTTING_DOWN = "SHUTTING_DOWN"
    STOPPED = "STOPPED"


def level_for_action(label: str | None, exit_code: int) -> LogLevel:
    """Derive the level of an action entry.

    A label of the form ``log-<level>`` selects the level explicitly;
    otherwise exit code 0 maps to INFO and anything else to ERROR.
    """
    if label and label.startswith("log-"):
        level = _LABEL_LEVELS.get(label[4:].upper())
        if level is not None:
            return level
    return LogLevel.INFO if exit_code == 0 else LogLevel.ERROR


def _now_iso() -> str:
    return datetime.now().isoformat(timespec="milliseconds")


class ActivityLogService:
    """Session-scoped activity log backed by SQLite.

    Besides storing entries, the service exposes the counters the idle
    watcher decides on: open client connections, activity since the last
    check, idle time and uptime. Counters are plain attribute reads and
    can be queried at any time while writers are appending.

    Attributes:
        db_path: SQLite database path, or ":memory:"
        text_log_path: Optional file each accepted entry is mirrored to
        state: Current lifecycle state
    """

    def __init__(
        self,
        db_path: str | Path = MEMORY_DB,
        clock: Callable[[], float] = time.monotonic,
        text_log_path: str | Path | None = None,
    ) -> None:
        self.db_path = str(db_path) if db_path == MEMORY_DB else str(Path(db_path).expanduser())
        self.text_log_path = Path(text_log_path).expanduser() if text_log_path else None
        self.state = ServiceState.UNINITIALIZED

        self._clock = clock
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._text_log: TextIO | None = None

        self._started_at = 0.0
        self._last_activity_at = 0.0
        self._activity_count = 0
        self._seen_activity_count = 0
        self._open_connections = 0

    # Lifecycle

    async def start(self) -> None:
        """Open the database and create the schema.

        Raises:
            LogServiceError: If the service was already stopped or the
                database cannot be opened
        """
        if self.state == ServiceState.ACTIVE:
            return
        if self.state != ServiceState.UNINITIALIZED:
            raise LogServiceError(f"Cannot start log service in state {self.state.value}")

        if self.db_path != MEMORY_DB:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = await aiosqlite.connect(self.db_path)
            if self.db_path != MEMORY_DB:
                await self._conn.execute("PRAGMA journal_mode=WAL;")
            await self._conn.executescript(SCHEMA)
            await self._conn.commit()
        except (aiosqlite.Error, OSError) as e:
            logger.error(f"Failed to open log database {self.db_path}: {e}")
            if self._conn is not None:
                await self._conn.close()
                self._conn = None
            raise LogServiceError(f"Failed to open log database {self.db_path}: {e}") from e

        if self.text_log_path is not None:
            self.text_log_path.parent.mkdir(parents=True, exist_ok=True)
            self._text_log = self.text_log_path.open("a", encoding="utf-8")

        now = self._clock()
        self._started_at = now
        self._last_activity_at = now
        self.state = ServiceState.ACTIVE
        logger.info(f"Log service started ({self.db_path})")

    async def stop(self) -> None:
        """Release the database connection and text log.

        Calling stop() on a service that is stopping or stopped is a no-op.
        """
        if self.state in (ServiceState.SHUTTING_DOWN, ServiceState.STOPPED):
            logger.debug("Log service already stopped")
            return
        if self.state == ServiceState.UNINITIALIZED:
            self.state = ServiceState.STOPPED
            return

        self.state = ServiceState.SHUTTING_DOWN
        async with self._lock:
            if self._conn is not None:
                try:
                    await self._conn.close()
                except aiosqlite.Error as e:
                    logger.error(f"Error closing log database: {e}")
                self._conn = None
            if self._text_log is not None:
                self._text_log.close()
                self._text_log = None
        self.state = ServiceState.STOPPED
        logger.info("Log service stopped")

    async def __aenter__(self) -> "ActivityLogService":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()

    @property
    def is_running(self) -> bool:
        return self.state == ServiceState.ACTIVE

    # Counters

    @asynccontextmanager
    async def client(self) -> AsyncIterator["ActivityLogService"]:
        """Register an open client connection for the duration of the block."""
        self._open_connections += 1
        try:
            yield self
        finally:
            self._open_connections -= 1

    @property
    def open_connection_count(self) -> int:
        return self._open_connections

    def has_new_activity(self) -> bool:
        """True if a session, entry or node outcome was written since the last call."""
        changed = self._activity_count != self._seen_activity_count
        self._seen_activity_count = self._activity_count
        return changed

    def idle_seconds(self) -> float:
        """Seconds since the last write or session creation."""
        if self.state == ServiceState.UNINITIALIZED:
            return 0.0
        return max(0.0, self._clock() - self._last_activity_at)

    def uptime_seconds(self) -> float:
        if self.state == ServiceState.UNINITIALIZED:
            return 0.0
        return max(0.0, self._clock() - self._started_at)

    def _record_activity(self) -> None:
        self._activity_count += 1
        self._last_activity_at = self._clock()

    # Sessions

    def _require_connection(self) -> aiosqlite.Connection:
        if self.state != ServiceState.ACTIVE or self._conn is None:
            raise LogServiceError(f"Log service is not active (state: {self.state.value})")
        return self._conn

    async def start_session(
        self,
        workflow_name: str,
        inventory_name: str | None = None,
        node_count: int = 0,
    ) -> int:
        """Create a session and return its id.

        Raises:
            LogServiceError: If the service is not active or the insert fails
        """
        async with self._lock:
            conn = self._require_connection()
            try:
                cursor = await conn.execute(
                    "INSERT INTO sessions (workflow_name, inventory_name, node_count, status, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (workflow_name, inventory_name, node_count, SessionStatus.RUNNING.value, _now_iso()),
                )
                await conn.commit()
            except (aiosqlite.Error, ValueError) as e:
                raise LogServiceError(f"Failed to create session for {workflow_name}: {e}") from e
            session_id = cursor.lastrowid
            self._record_activity()

        logger.info(f"Started session {session_id} for workflow {workflow_name}")
        return session_id

    async def end_session(self, session_id: int, status: SessionStatus = SessionStatus.COMPLETED) -> None:
        """Mark a session as finished.

        Raises:
            LogServiceError: If the service is not active or the update fails
        """
        async with self._lock:
            conn = self._require_connection()
            try:
                await conn.execute(
                    "UPDATE sessions SET status = ?, ended_at = ? WHERE id = ?",
                    (SessionStatus(status).value, _now_iso(), session_id),
                )
                await conn.commit()
            except (aiosqlite.Error, ValueError) as e:
                raise LogServiceError(f"Failed to end session {session_id}: {e}") from e
        logger.info(f"Ended session {session_id} with status {SessionStatus(status).value}")

    # Entries

    async def log(
        self,
        session_id: int,
        actor_id: str,
        label: str | None,
        level: LogLevel | str,
        message: str,
    ) -> int | None:
        """Append an entry to a session.

        Best-effort: returns the entry id, or None if the entry was dropped.
        """
        return await self._write(session_id, actor_id, label, LogLevel.parse(level), message)

    async def log_action(
        self,
        session_id: int,
        actor_id: str,
        label: str | None,
        result: CommandResult,
        duration_ms: int,
    ) -> int | None:
        """Append the outcome of a command as an entry.

        The level is derived from the label and exit code, see
        :func:`level_for_action`. Best-effort like :meth:`log`.
        """
        level = level_for_action(label, result.exit_code)
        message = "\n".join(part for part in (result.stdout, result.stderr) if part)
        return await self._write(
            session_id, actor_id, label, level, message,
            exit_code=result.exit_code, duration_ms=duration_ms,
        )

    async def _write(
        self,
        session_id: int,
        actor_id: str,
        label: str | None,
        level: LogLevel,
        message: str,
        exit_code: int | None = None,
        duration_ms: int | None = None,
    ) -> int | None:
        timestamp = _now_iso()
        try:
            async with self._lock:
                if self.state != ServiceState.ACTIVE or self._conn is None:
                    logger.debug(f"Dropping log entry from {actor_id}: service is {self.state.value}")
                    return None
                cursor = await self._conn.execute(
                    "INSERT INTO logs (session_id, timestamp, actor_id, label, level, message, exit_code, duration_ms) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (session_id, timestamp, actor_id, label, level.value, message, exit_code, duration_ms),
                )
                await self._conn.commit()
                self._record_activity()
                entry = LogEntry(
                    id=cursor.lastrowid,
                    session_id=session_id,
                    timestamp=timestamp,
                    actor_id=actor_id,
                    label=label,
                    level=level,
                    message=message,
                    exit_code=exit_code,
                    duration_ms=duration_ms,
                )
                self._mirror(entry)
        except Exception as e:
            logger.error(f"Failed to write log entry for {actor_id} in session {session_id}: {e}")
            return None
        return entry.id

    def _mirror(self, entry: LogEntry) -> None:
        if self._text_log is None:
            return
        self._text_log.write(entry.format_text() + "\n")
        self._text_log.flush()

    # Node results

    async def mark_node_success(self, session_id: int, node_id: str) -> None:
        """Record that a node finished its work in a session.

        Best-effort like :meth:`log`. A later mark for the same node
        replaces the earlier one.
        """
        await self._write_node_result(session_id, node_id, NodeStatus.SUCCESS, None)

    async def mark_node_failed(self, session_id: int, node_id: str, reason: str | None = None) -> None:
        """Record that a node failed in a session. Best-effort like :meth:`log`."""
        await self._write_node_result(session_id, node_id, NodeStatus.FAILED, reason)

    async def _write_node_result(
        self, session_id: int, node_id: str, status: NodeStatus, reason: str | None
    ) -> None:
        try:
            async with self._lock:
                if self.state != ServiceState.ACTIVE or self._conn is None:
                    logger.debug(f"Dropping node result for {node_id}: service is {self.state.value}")
                    return
                await self._conn.execute(
                    "INSERT OR REPLACE INTO node_results (session_id, node_id, status, reason) "
                    "VALUES (?, ?, ?, ?)",
                    (session_id, node_id, status.value, reason),
                )
                await self._conn.commit()
                self._record_activity()
        except Exception as e:
            logger.error(f"Failed to record result for {node_id} in session {session_id}: {e}")
            return
        logger.debug(f"Node {node_id} in session {session_id}: {status.value}")

    # Queries

    async def get_logs(
        self,
        session_id: int,
        actor_id: str | None = None,
        min_level: LogLevel | str | None = None,
    ) -> list[LogEntry]:
        """Entries of a session in write-arrival order.

        Args:
            session_id: Session to read
            actor_id: Only entries from this actor
            min_level: Only entries at or above this level
        """
        conn = self._require_connection()
        query = (
            "SELECT id, session_id, timestamp, actor_id, label, level, message, exit_code, duration_ms "
            "FROM logs WHERE session_id = ?"
        )
        params: list[Any] = [session_id]
        if actor_id is not None:
            query += " AND actor_id = ?"
            params.append(actor_id)
        if min_level is not None:
            threshold = LogLevel.parse(min_level).rank
            levels = [level.value for level in LogLevel if level.rank >= threshold]
            query += f" AND level IN ({', '.join('?' for _ in levels)})"
            params.extend(levels)
        query += " ORDER BY id"

        async with conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [
            LogEntry(
                id=row[0],
                session_id=row[1],
                timestamp=row[2],
                actor_id=row[3],
                label=row[4],
                level=LogLevel.parse(row[5]),
                message=row[6],
                exit_code=row[7],
                duration_ms=row[8],
            )
            for row in rows
        ]

    async def get_actors(self, session_id: int) -> list[str]:
        """Distinct actors that logged in a session, in order of first entry."""
        conn = self._require_connection()
        async with conn.execute(
            "SELECT actor_id FROM logs WHERE session_id = ? GROUP BY actor_id ORDER BY MIN(id)",
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def get_session(self, session_id: int) -> Session | None:
        conn = self._require_connection()
        async with conn.execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?",
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return self._session_from_row(row) if row else None

    async def list_sessions(
        self,
        limit: int = 20,
        workflow: str | None = None,
        inventory: str | None = None,
        since: datetime | None = None,
    ) -> list[Session]:
        """Most recent sessions first.

        Args:
            limit: Maximum number of sessions returned
            workflow: Only sessions of this workflow
            inventory: Only sessions run against this inventory
            since: Only sessions created at or after this local time
        """
        conn = self._require_connection()
        conditions: list[str] = []
        params: list[Any] = []
        if workflow is not None:
            conditions.append("workflow_name = ?")
            params.append(workflow)
        if inventory is not None:
            conditions.append("inventory_name = ?")
            params.append(inventory)
        if since is not None:
            conditions.append("created_at >= ?")
            params.append(since.isoformat(timespec="milliseconds"))

        query = f"SELECT {_SESSION_COLUMNS} FROM sessions"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        async with conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [self._session_from_row(row) for row in rows]

    async def latest_session_id(self) -> int | None:
        conn = self._require_connection()
        async with conn.execute("SELECT MAX(id) FROM sessions") as cursor:
            row = await cursor.fetchone()
        return row[0] if row else None

    async def get_nodes(self, session_id: int) -> list[NodeInfo]:
        """Nodes of a session with their recorded outcome and entry count.

        Nodes that logged come first, in order of their first entry; nodes
        with a recorded outcome but no entries follow.
        """
        conn = self._require_connection()
        async with conn.execute(
            "SELECT actor_id, COUNT(*) FROM logs WHERE session_id = ? GROUP BY actor_id",
            (session_id,),
        ) as cursor:
            counts = {row[0]: row[1] for row in await cursor.fetchall()}
        async with conn.execute(
            "SELECT node_id, status, reason FROM node_results WHERE session_id = ? ORDER BY id",
            (session_id,),
        ) as cursor:
            results = {row[0]: (NodeStatus(row[1]), row[2]) for row in await cursor.fetchall()}

        node_ids = await self.get_actors(session_id)
        node_ids += [node_id for node_id in results if node_id not in counts]
        return [
            NodeInfo(
                node_id=node_id,
                status=results.get(node_id, (None, None))[0],
                log_count=counts.get(node_id, 0),
                reason=results.get(node_id, (None, None))[1],
            )
            for node_id in node_ids
        ]

    async def get_summary(self, session_id: int) -> SessionSummary | None:
        """Aggregate node outcomes and entry counts of a session.

        Returns:
            The summary, or None if the session does not exist
        """
        session = await self.get_session(session_id)
        if session is None:
            return None

        conn = self._require_connection()
        async with conn.execute(
            "SELECT node_id, status FROM node_results WHERE session_id = ? ORDER BY id",
            (session_id,),
        ) as cursor:
            node_rows = await cursor.fetchall()
        async with conn.execute(
            "SELECT COUNT(*), COALESCE(SUM(level = ?), 0) FROM logs WHERE session_id = ?",
            (LogLevel.ERROR.value, session_id),
        ) as cursor:
            total_entries, error_count = await cursor.fetchone()

        failed_nodes = tuple(node_id for node_id, status in node_rows if status == NodeStatus.FAILED.value)
        return SessionSummary(
            session=session,
            success_count=len(node_rows) - len(failed_nodes),
            failed_count=len(failed_nodes),
            failed_nodes=failed_nodes,
            total_entries=total_entries,
            error_count=error_count,
        )

    @staticmethod
    def _session_from_row(row: Any) -> Session:
        return Session(
            id=row[0],
            workflow_name=row[1],
            created_at=row[2],
            inventory_name=row[3],
            node_count=row[4],
            status=SessionStatus(row[5]),
            ended_at=row[6],
        )

    def __repr__(self) -> str:
        return f"ActivityLogService({self.db_path!r}, state={self.state.value})"


def clear_database(db_path: str | Path) -> list[Path]:
    """Delete a log database file together with its WAL side files.

    The database must not be open in a running service.

    Returns:
        The files that were deleted; empty if none existed
    """
    path = Path(db_path).expanduser()
    deleted = []
    for candidate in (path, path.with_name(path.name + "-wal"), path.with_name(path.name + "-shm")):
        if candidate.exists():
            candidate.unlink()
            deleted.append(candidate)
            logger.info(f"Deleted {candidate}")
    return deleted
