"""Tests for StatusCache polling and the published snapshot."""

import asyncio
from unittest.mock import MagicMock

import pytest

from console_manager.models import (
    InstanceRecord,
    InstanceStatus,
    InstanceStrategy,
    ProcessCategory,
    ProcessScan,
    ProcessSnapshot,
    RawProcess,
)
from console_manager.status_cache import collect_system_stats, compute_state_hash

PROJECT = "/home/user/project"
CLIENT = "/home/user/.local/bin/claude"


@pytest.fixture
def cache(engine):
    return engine.status_cache


def tmux_scan():
    rows = [
        RawProcess(300, 50, 100, "pts/4", 0.0, 1024, "-bash"),
        RawProcess(301, 300, 90, "pts/4", 3.0, 4096, CLIENT),
    ]
    return ProcessScan(rows=rows, pane_map={300: "work"}, ancestry={r.pid: r.ppid for r in rows})


class TestRefresh:
    @pytest.mark.asyncio
    async def test_empty_system(self, cache, engine):
        snapshot = await cache.refresh()

        assert snapshot.summary["total_processes"] == 0
        assert snapshot.managed == []
        assert snapshot.state_hash
        assert cache.state_hash == snapshot.state_hash
        assert cache.snapshot() is snapshot
        assert engine.holder.refreshed_at is not None

    @pytest.mark.asyncio
    async def test_concurrent_refresh_is_skipped(self, cache, mock_inspector):
        cache._refreshing = True

        assert await cache.refresh() is None
        mock_inspector.scan.assert_not_called()

    @pytest.mark.asyncio
    async def test_refresh_flag_cleared_after_error(self, cache, mock_inspector):
        mock_inspector.scan.side_effect = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await cache.refresh()

        assert not cache._refreshing

    @pytest.mark.asyncio
    async def test_classified_processes_published(self, cache, mock_inspector):
        mock_inspector.scan.return_value = tmux_scan()
        mock_inspector.read_cwd.return_value = PROJECT
        cache.spawn_background = MagicMock(side_effect=lambda coro: coro.close())

        snapshot = await cache.refresh()

        [process] = cache.processes()
        assert process.pid == 301
        assert process.category == ProcessCategory.UNMANAGED_TMUX
        assert snapshot.summary["unmanaged"] == 1
        assert snapshot.summary["by_category"] == {"unmanaged-tmux": 1}

    @pytest.mark.asyncio
    async def test_unidentified_tmux_pane_scheduled_once(self, cache, mock_inspector):
        mock_inspector.scan.return_value = tmux_scan()
        mock_inspector.read_cwd.return_value = PROJECT
        scheduled = []

        def spawn(coro):
            scheduled.append(coro)
            coro.close()

        cache.spawn_background = spawn
        cache.identifier.last_attempt.clear()

        await cache.refresh()
        cache.identifier.last_attempt[301] = float("inf")
        await cache.refresh()

        assert len(scheduled) == 1

    @pytest.mark.asyncio
    async def test_deep_audit_every_n_cycles(self, cache):
        cache.orchestrator = MagicMock()
        cache.orchestrator.reconcile_drift.return_value = 0
        cache.audit_every = 3

        for _ in range(6):
            await cache.refresh()

        assert cache.orchestrator.deep_health_audit.call_count == 2
        assert cache.orchestrator.cleanup.call_count == 6

    @pytest.mark.asyncio
    async def test_orchestrator_passes_run_in_worker_threads(self, cache):
        on_loop = {}

        def tracked(name, value):
            def call(*args):
                try:
                    asyncio.get_running_loop()
                    on_loop[name] = True
                except RuntimeError:
                    on_loop[name] = False
                return value
            return call

        cache.orchestrator = MagicMock()
        cache.orchestrator.cleanup.side_effect = tracked("cleanup", 0)
        cache.orchestrator.reconcile_drift.side_effect = tracked("reconcile_drift", 0)
        cache.orchestrator.deep_health_audit.side_effect = tracked("deep_health_audit", [])
        cache.audit_every = 1

        await cache.refresh()

        assert on_loop == {"cleanup": False, "reconcile_drift": False, "deep_health_audit": False}

    @pytest.mark.asyncio
    async def test_shell_servers_included(self, cache, engine):
        record = InstanceRecord(
            pid=777,
            port=7704,
            session_id="shell-1",
            project_path=PROJECT,
            strategy=InstanceStrategy.DIRECT,
            status=InstanceStatus.RUNNING,
        )
        engine.registry.upsert(record)

        snapshot = await cache.refresh()

        [shell] = cache.processes()
        assert shell.category == ProcessCategory.SHELL_SERVER
        assert shell.server_port == 7704
        assert snapshot.summary["total_managed"] == 1
        assert snapshot.managed[0]["session_id"] == "shell-1"

    @pytest.mark.asyncio
    async def test_dead_shell_retired(self, cache, engine, mock_inspector):
        record = InstanceRecord(
            pid=777, port=7704, session_id="shell-1", project_path=PROJECT,
            status=InstanceStatus.RUNNING,
        )
        engine.registry.upsert(record)
        cache.orchestrator = MagicMock()
        cache.orchestrator.reconcile_drift.return_value = 0
        mock_inspector.is_alive.return_value = False

        await cache.refresh()

        assert cache.processes() == []
        assert engine.registry.get(record.id).status == InstanceStatus.DEAD

    @pytest.mark.asyncio
    async def test_server_rows_kept_for_orchestrator(self, cache, engine, mock_inspector):
        rows = [RawProcess(100, 1, 5, "?", 0.0, 0, "ttyd -p 7690 -W bash")]
        mock_inspector.scan.return_value = ProcessScan(rows=rows, ancestry={100: 1})

        await cache.refresh()

        assert [r.pid for r in engine.holder.server_rows] == [100]

    @pytest.mark.asyncio
    async def test_run_polls_until_cancelled(self, cache, engine):
        cache.interval_seconds = 0.01

        task = asyncio.create_task(cache.run())
        await asyncio.sleep(0.1)
        task.cancel()
        await task

        assert engine.holder.refreshed_at is not None

    @pytest.mark.asyncio
    async def test_run_survives_refresh_errors(self, cache, mock_inspector):
        cache.interval_seconds = 0.01
        mock_inspector.scan.side_effect = RuntimeError("boom")

        task = asyncio.create_task(cache.run())
        await asyncio.sleep(0.05)

        assert not task.done()
        task.cancel()
        await task


class TestReadApi:
    def test_running_session_map(self, cache, engine):
        first = ProcessSnapshot(pid=1, session_id="a")
        engine.holder.processes = [first, ProcessSnapshot(pid=2, session_id="a"), ProcessSnapshot(pid=3)]

        assert cache.running_session_map() == {"a": first}
        assert cache.is_session_running("a")
        assert not cache.is_session_running("b")
        assert cache.session_process("a") is first


def test_state_hash_tracks_visible_changes():
    processes = [ProcessSnapshot(pid=1, session_id="a")]
    managed = [{"pid": 9, "port": 7700, "session_id": "a"}]

    base = compute_state_hash(processes, managed)

    assert compute_state_hash(list(processes), list(managed)) == base
    assert compute_state_hash([ProcessSnapshot(pid=1, session_id="b")], managed) != base
    assert compute_state_hash(processes, []) != base
    assert len(base) == 12


def test_collect_system_stats(tmp_path):
    stats = collect_system_stats("Test CPU", str(tmp_path))

    assert stats.cpu_model == "Test CPU"
    assert stats.cpu_count > 0
    assert stats.total_memory_mb > 0
    assert 0 <= stats.disk_usage_percent <= 100
