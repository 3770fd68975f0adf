"""Tests for the activity log service."""

import asyncio
from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from conftest import FakeClock
from fleetops.exceptions import LogServiceError
from fleetops.logstore import ActivityLogService, ServiceState, clear_database, level_for_action
from fleetops.types import CommandResult, LogLevel, NodeInfo, NodeStatus, SessionStatus


@pytest_asyncio.fixture
async def service(fake_clock):
    service = ActivityLogService(clock=fake_clock)
    await service.start()
    yield service
    await service.stop()


class TestLifecycle:
    """Tests for start/stop state transitions."""

    @pytest.mark.asyncio
    async def test_initial_state(self):
        service = ActivityLogService()
        assert service.state == ServiceState.UNINITIALIZED
        assert not service.is_running

    @pytest.mark.asyncio
    async def test_start_activates(self):
        service = ActivityLogService()
        await service.start()
        try:
            assert service.state == ServiceState.ACTIVE
            assert service.is_running
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        """Test that stopping twice is not an error and stays stopped."""
        service = ActivityLogService()
        await service.start()

        await service.stop()
        assert service.state == ServiceState.STOPPED
        await service.stop()
        assert service.state == ServiceState.STOPPED
        assert not service.is_running

    @pytest.mark.asyncio
    async def test_stop_before_start(self):
        service = ActivityLogService()
        await service.stop()
        assert service.state == ServiceState.STOPPED

    @pytest.mark.asyncio
    async def test_cannot_restart_after_stop(self):
        service = ActivityLogService()
        await service.start()
        await service.stop()
        with pytest.raises(LogServiceError):
            await service.start()

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self):
        service = ActivityLogService()
        await service.start()
        await service.start()
        assert service.is_running
        await service.stop()

    @pytest.mark.asyncio
    async def test_async_context_manager(self):
        async with ActivityLogService() as service:
            assert service.is_running
        assert service.state == ServiceState.STOPPED

    @pytest.mark.asyncio
    async def test_file_database_persists(self, tmp_path):
        db_path = tmp_path / "nested" / "logs.db"
        async with ActivityLogService(db_path) as service:
            session_id = await service.start_session("deploy")
            await service.log(session_id, "web01", None, LogLevel.INFO, "hello")

        async with ActivityLogService(db_path) as service:
            entries = await service.get_logs(session_id)
        assert [e.message for e in entries] == ["hello"]


class TestSessions:
    """Tests for session records."""

    @pytest.mark.asyncio
    async def test_start_session(self, service):
        session_id = await service.start_session("deploy", "hosts.ini", node_count=3)
        session = await service.get_session(session_id)

        assert session.workflow_name == "deploy"
        assert session.inventory_name == "hosts.ini"
        assert session.node_count == 3
        assert session.status == SessionStatus.RUNNING
        assert session.ended_at is None
        assert session.created_at

    @pytest.mark.asyncio
    async def test_end_session(self, service):
        session_id = await service.start_session("deploy")
        await service.end_session(session_id, SessionStatus.FAILED)

        session = await service.get_session(session_id)
        assert session.status == SessionStatus.FAILED
        assert session.ended_at is not None

    @pytest.mark.asyncio
    async def test_unknown_session(self, service):
        assert await service.get_session(999) is None

    @pytest.mark.asyncio
    async def test_list_sessions_newest_first(self, service):
        ids = [await service.start_session(f"wf{i}") for i in range(5)]

        sessions = await service.list_sessions(limit=3)

        assert [s.id for s in sessions] == list(reversed(ids))[:3]
        assert await service.latest_session_id() == ids[-1]

    @pytest.mark.asyncio
    async def test_latest_session_empty(self, service):
        assert await service.latest_session_id() is None

    @pytest.mark.asyncio
    async def test_start_session_requires_active_service(self):
        service = ActivityLogService()
        with pytest.raises(LogServiceError):
            await service.start_session("deploy")

    @pytest.mark.asyncio
    async def test_list_sessions_filters(self, service):
        await service.start_session("deploy", "prod.ini")
        await service.start_session("deploy", "staging.ini")
        await service.start_session("backup", "prod.ini")

        deploys = await service.list_sessions(workflow="deploy")
        prod = await service.list_sessions(inventory="prod.ini")
        prod_deploys = await service.list_sessions(workflow="deploy", inventory="prod.ini")

        assert [s.inventory_name for s in deploys] == ["staging.ini", "prod.ini"]
        assert [s.workflow_name for s in prod] == ["backup", "deploy"]
        assert len(prod_deploys) == 1

    @pytest.mark.asyncio
    async def test_list_sessions_since(self, service):
        await service.start_session("deploy")

        assert len(await service.list_sessions(since=datetime.now() - timedelta(minutes=5))) == 1
        assert await service.list_sessions(since=datetime.now() + timedelta(hours=1)) == []

    @pytest.mark.asyncio
    async def test_closed_connection_raises_service_error(self, service):
        """Test that a connection closed underneath an active service surfaces as LogServiceError."""
        session_id = await service.start_session("deploy")
        await service._conn.close()

        with pytest.raises(LogServiceError, match="Failed to create session"):
            await service.start_session("deploy")
        with pytest.raises(LogServiceError, match=f"Failed to end session {session_id}"):
            await service.end_session(session_id)


class TestLogEntries:
    """Tests for writing and reading entries."""

    @pytest.mark.asyncio
    async def test_log_and_read_back(self, service):
        session_id = await service.start_session("deploy")
        entry_id = await service.log(session_id, "web01", "install", LogLevel.WARN, "disk low")

        entries = await service.get_logs(session_id)

        assert len(entries) == 1
        entry = entries[0]
        assert entry.id == entry_id
        assert entry.actor_id == "web01"
        assert entry.label == "install"
        assert entry.level == LogLevel.WARN
        assert entry.message == "disk low"

    @pytest.mark.asyncio
    async def test_level_accepts_strings(self, service):
        session_id = await service.start_session("deploy")
        await service.log(session_id, "web01", None, "warning", "msg")
        entries = await service.get_logs(session_id)
        assert entries[0].level == LogLevel.WARN

    @pytest.mark.asyncio
    async def test_concurrent_writes_keep_arrival_order(self, service):
        """Test that concurrent writers are serialized without losing entries."""
        session_id = await service.start_session("deploy")

        async def writer(actor):
            for i in range(20):
                await service.log(session_id, actor, None, LogLevel.INFO, f"{actor}-{i}")

        await asyncio.gather(*(writer(f"web0{n}") for n in range(5)))

        entries = await service.get_logs(session_id)
        assert len(entries) == 100
        ids = [e.id for e in entries]
        assert ids == sorted(ids)
        for n in range(5):
            messages = [e.message for e in entries if e.actor_id == f"web0{n}"]
            assert messages == [f"web0{n}-{i}" for i in range(20)]

    @pytest.mark.asyncio
    async def test_filter_by_actor(self, service):
        session_id = await service.start_session("deploy")
        await service.log(session_id, "web01", None, LogLevel.INFO, "a")
        await service.log(session_id, "web02", None, LogLevel.INFO, "b")

        entries = await service.get_logs(session_id, actor_id="web02")
        assert [e.message for e in entries] == ["b"]

    @pytest.mark.asyncio
    async def test_filter_by_min_level(self, service):
        session_id = await service.start_session("deploy")
        for level in LogLevel:
            await service.log(session_id, "web01", None, level, level.value)

        entries = await service.get_logs(session_id, min_level=LogLevel.WARN)
        assert [e.level for e in entries] == [LogLevel.WARN, LogLevel.ERROR]

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(self, service):
        first = await service.start_session("one")
        second = await service.start_session("two")
        await service.log(first, "web01", None, LogLevel.INFO, "first")
        await service.log(second, "web01", None, LogLevel.INFO, "second")

        assert [e.message for e in await service.get_logs(first)] == ["first"]
        assert [e.message for e in await service.get_logs(second)] == ["second"]

    @pytest.mark.asyncio
    async def test_get_actors(self, service):
        """Test the distinct-actors query in order of first entry."""
        session_id = await service.start_session("deploy")
        for actor in ["web02", "web01", "web02", "db01"]:
            await service.log(session_id, actor, None, LogLevel.INFO, "x")
        other = await service.start_session("other")
        await service.log(other, "cache01", None, LogLevel.INFO, "x")

        assert await service.get_actors(session_id) == ["web02", "web01", "db01"]

    @pytest.mark.asyncio
    async def test_log_after_stop_is_dropped(self, fake_clock):
        """Test that writes after stop are best-effort and do not raise."""
        service = ActivityLogService(clock=fake_clock)
        await service.start()
        session_id = await service.start_session("deploy")
        await service.stop()

        assert await service.log(session_id, "web01", None, LogLevel.INFO, "late") is None

    @pytest.mark.asyncio
    async def test_log_before_start_is_dropped(self):
        service = ActivityLogService()
        assert await service.log(1, "web01", None, LogLevel.INFO, "early") is None


class TestLogAction:
    """Tests for command outcome entries."""

    @pytest.mark.asyncio
    async def test_success_is_info(self, service):
        session_id = await service.start_session("deploy")
        result = CommandResult(stdout="done", stderr="", exit_code=0)

        await service.log_action(session_id, "web01", "install", result, duration_ms=120)

        entry = (await service.get_logs(session_id))[0]
        assert entry.level == LogLevel.INFO
        assert entry.exit_code == 0
        assert entry.duration_ms == 120
        assert entry.message == "done"

    @pytest.mark.asyncio
    async def test_failure_is_error(self, service):
        session_id = await service.start_session("deploy")
        result = CommandResult(stdout="", stderr="not found", exit_code=127)

        await service.log_action(session_id, "web01", None, result, duration_ms=5)

        entry = (await service.get_logs(session_id))[0]
        assert entry.level == LogLevel.ERROR
        assert entry.exit_code == 127
        assert entry.message == "not found"

    def test_level_from_label(self):
        assert level_for_action("log-warning", 0) == LogLevel.WARN
        assert level_for_action("log-SEVERE", 0) == LogLevel.ERROR
        assert level_for_action("log-fine", 1) == LogLevel.DEBUG
        assert level_for_action("log-info", 1) == LogLevel.INFO

    def test_level_from_exit_code(self):
        assert level_for_action("install", 0) == LogLevel.INFO
        assert level_for_action("install", 2) == LogLevel.ERROR
        assert level_for_action("log-bogus", 2) == LogLevel.ERROR
        assert level_for_action(None, 0) == LogLevel.INFO


class TestCounters:
    """Tests for the counters the idle watcher reads."""

    @pytest.mark.asyncio
    async def test_client_connection_count(self, service):
        assert service.open_connection_count == 0
        async with service.client():
            assert service.open_connection_count == 1
            async with service.client():
                assert service.open_connection_count == 2
        assert service.open_connection_count == 0

    @pytest.mark.asyncio
    async def test_client_released_on_error(self, service):
        with pytest.raises(RuntimeError):
            async with service.client():
                raise RuntimeError("boom")
        assert service.open_connection_count == 0

    @pytest.mark.asyncio
    async def test_has_new_activity(self, service):
        assert service.has_new_activity() is False

        session_id = await service.start_session("deploy")
        assert service.has_new_activity() is True
        assert service.has_new_activity() is False

        await service.log(session_id, "web01", None, LogLevel.INFO, "x")
        assert service.has_new_activity() is True

    @pytest.mark.asyncio
    async def test_idle_and_uptime(self, service, fake_clock):
        fake_clock.advance(50)
        assert service.uptime_seconds() == 50
        assert service.idle_seconds() == 50

        await service.start_session("deploy")
        fake_clock.advance(10)
        assert service.idle_seconds() == 10
        assert service.uptime_seconds() == 60

    def test_counters_before_start(self):
        service = ActivityLogService(clock=FakeClock())
        assert service.idle_seconds() == 0.0
        assert service.uptime_seconds() == 0.0


class TestTextLog:
    """Tests for the plain-text mirror."""

    @pytest.mark.asyncio
    async def test_entries_are_mirrored(self, tmp_path):
        text_log = tmp_path / "logs" / "activity.log"
        async with ActivityLogService(text_log_path=text_log) as service:
            session_id = await service.start_session("deploy")
            await service.log(session_id, "web01", "install", LogLevel.INFO, "starting")
            await service.log(session_id, "web02", None, LogLevel.ERROR, "failed")

        lines = text_log.read_text().splitlines()
        assert len(lines) == 2
        assert lines[0].startswith("[")
        assert lines[0].endswith("] INFO  web01 [install] starting")
        assert lines[1].endswith("] ERROR web02 failed")

    @pytest.mark.asyncio
    async def test_mirror_matches_entry_format(self, tmp_path):
        text_log = tmp_path / "activity.log"
        async with ActivityLogService(text_log_path=text_log) as service:
            session_id = await service.start_session("deploy")
            result = CommandResult(stdout="", stderr="unit not found", exit_code=5)
            await service.log_action(session_id, "web01", "restart", result, duration_ms=42)
            entries = await service.get_logs(session_id)

        assert text_log.read_text().splitlines() == [entry.format_text() for entry in entries]
        assert entries[0].format_text().endswith("] ERROR web01 [restart] unit not found (exit=5) [42ms]")


class TestNodeResults:
    """Tests for per-node outcomes and session summaries."""

    @pytest.mark.asyncio
    async def test_mark_and_list_nodes(self, service):
        session_id = await service.start_session("deploy", node_count=3)
        await service.log(session_id, "web02", None, LogLevel.INFO, "starting")
        await service.log(session_id, "web01", None, LogLevel.INFO, "starting")
        await service.log(session_id, "web01", None, LogLevel.ERROR, "disk full")
        await service.mark_node_success(session_id, "web02")
        await service.mark_node_failed(session_id, "web01", "disk full")
        await service.mark_node_failed(session_id, "web03", "connection refused")

        nodes = await service.get_nodes(session_id)

        assert nodes == [
            NodeInfo("web02", NodeStatus.SUCCESS, log_count=1),
            NodeInfo("web01", NodeStatus.FAILED, log_count=2, reason="disk full"),
            NodeInfo("web03", NodeStatus.FAILED, log_count=0, reason="connection refused"),
        ]

    @pytest.mark.asyncio
    async def test_node_without_result(self, service):
        session_id = await service.start_session("deploy")
        await service.log(session_id, "web01", None, LogLevel.INFO, "still running")

        assert await service.get_nodes(session_id) == [NodeInfo("web01", None, log_count=1)]

    @pytest.mark.asyncio
    async def test_later_mark_replaces_earlier(self, service):
        session_id = await service.start_session("deploy")
        await service.mark_node_failed(session_id, "web01", "timeout")
        await service.mark_node_success(session_id, "web01")

        [node] = await service.get_nodes(session_id)
        assert node.status == NodeStatus.SUCCESS
        assert node.reason is None

    @pytest.mark.asyncio
    async def test_mark_after_stop_is_dropped(self, fake_clock):
        service = ActivityLogService(clock=fake_clock)
        await service.start()
        session_id = await service.start_session("deploy")
        await service.stop()

        await service.mark_node_success(session_id, "web01")
        assert service.state == ServiceState.STOPPED

    @pytest.mark.asyncio
    async def test_marking_counts_as_activity(self, service):
        session_id = await service.start_session("deploy")
        assert service.has_new_activity()
        assert not service.has_new_activity()

        await service.mark_node_success(session_id, "web01")

        assert service.has_new_activity()

    @pytest.mark.asyncio
    async def test_summary(self, service):
        session_id = await service.start_session("deploy", "hosts.ini", node_count=3)
        await service.log(session_id, "web01", None, LogLevel.INFO, "ok")
        await service.log(session_id, "web02", None, LogLevel.ERROR, "boom")
        await service.log(session_id, "web03", None, LogLevel.ERROR, "boom")
        await service.mark_node_success(session_id, "web01")
        await service.mark_node_failed(session_id, "web02", "boom")
        await service.mark_node_failed(session_id, "web03", "boom")
        await service.end_session(session_id, SessionStatus.FAILED)

        summary = await service.get_summary(session_id)

        assert summary.session.id == session_id
        assert summary.session.status == SessionStatus.FAILED
        assert summary.success_count == 1
        assert summary.failed_count == 2
        assert summary.failed_nodes == ("web02", "web03")
        assert summary.total_entries == 3
        assert summary.error_count == 2
        assert summary.duration_seconds >= 0

    @pytest.mark.asyncio
    async def test_summary_of_empty_session(self, service):
        session_id = await service.start_session("deploy")

        summary = await service.get_summary(session_id)

        assert summary.success_count == 0
        assert summary.total_entries == 0
        assert summary.error_count == 0
        assert summary.duration_seconds is None

    @pytest.mark.asyncio
    async def test_summary_unknown_session(self, service):
        assert await service.get_summary(42) is None


class TestClearDatabase:
    """Tests for clear_database."""

    @pytest.mark.asyncio
    async def test_removes_database_and_side_files(self, tmp_path):
        db_path = tmp_path / "logs.db"
        async with ActivityLogService(db_path) as service:
            await service.start_session("deploy")
        (tmp_path / "logs.db-wal").write_text("")
        (tmp_path / "logs.db-shm").write_text("")
        (tmp_path / "other.db").write_text("")

        deleted = clear_database(db_path)

        assert deleted == [db_path, tmp_path / "logs.db-wal", tmp_path / "logs.db-shm"]
        assert [p.name for p in tmp_path.iterdir()] == ["other.db"]

    def test_nothing_to_delete(self, tmp_path):
        assert clear_database(tmp_path / "absent.db") == []

    @pytest.mark.asyncio
    async def test_fresh_database_after_clear(self, tmp_path):
        db_path = tmp_path / "logs.db"
        async with ActivityLogService(db_path) as service:
            await service.start_session("deploy")
        clear_database(db_path)

        async with ActivityLogService(db_path) as service:
            assert await service.list_sessions() == []
