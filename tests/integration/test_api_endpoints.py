"""Integration tests for API endpoints."""

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from console_manager.models import (
    InstanceRecord,
    InstanceStatus,
    InstanceStrategy,
    ProcessSnapshot,
    StartErrorCode,
    StartResult,
)
from console_manager.server import create_app

PROJECT = "/home/user/project"
SESSION_ID = "abcdef12-1111-2222-3333-444455556666"


@pytest.fixture
def sample_record():
    """A running tmux-backed instance."""
    return InstanceRecord(
        pid=4321,
        port=7700,
        session_id=SESSION_ID,
        project_path=PROJECT,
        strategy=InstanceStrategy.TMUX,
        status=InstanceStatus.RUNNING,
        started_at=datetime(2024, 1, 15, 10, 0, 0),
        tmux_session_name="claude-abcdef12",
    )


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_health_endpoint(self, test_client):
        """GET /health returns healthy status."""
        response = test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_no_engine_returns_503(self):
        """Endpoints needing the engine fail cleanly without one."""
        client = TestClient(create_app())
        response = client.get("/processes")
        assert response.status_code == 503


class TestProcessEndpoints:
    def test_snapshot_before_first_refresh(self, test_client):
        response = test_client.get("/processes")

        assert response.status_code == 200
        data = response.json()
        assert data["processes"] == []
        assert data["state_hash"] == ""

    def test_refresh_publishes_snapshot(self, test_client):
        response = test_client.post("/processes/refresh")

        assert response.status_code == 200
        data = response.json()
        assert data["refreshed"] is True
        assert data["snapshot"]["summary"]["total_processes"] == 0
        assert "cpu_count" in data["snapshot"]["system_stats"]

        assert test_client.get("/processes").json()["state_hash"] == data["snapshot"]["state_hash"]

    def test_running_sessions(self, test_client, engine):
        engine.holder.processes = [ProcessSnapshot(pid=42, session_id=SESSION_ID)]

        response = test_client.get("/processes/running-sessions")

        data = response.json()
        assert list(data["sessions"]) == [SESSION_ID]
        assert data["sessions"][SESSION_ID]["pid"] == 42

    def test_kill_unknown_process_refused(self, test_client, mock_inspector):
        response = test_client.post("/processes/999/kill")

        assert response.status_code == 200
        assert response.json()["success"] is False
        mock_inspector.kill_process_tree.assert_not_called()


class TestConsoleEndpoints:
    def test_console_status(self, test_client):
        response = test_client.get(f"/sessions/{SESSION_ID}/console", params={"project_path": PROJECT})

        assert response.status_code == 200
        data = response.json()
        assert data["session_id"] == SESSION_ID
        assert data["can_start"] is True
        assert data["active_record"] is None

    def test_console_status_requires_project_path(self, test_client):
        response = test_client.get(f"/sessions/{SESSION_ID}/console")
        assert response.status_code == 422

    def test_start_console_passes_options(self, test_client, engine):
        engine.orchestrator.start = AsyncMock(return_value=StartResult(
            success=True, port=7700, pid=4321, url="http://localhost:7700",
        ))

        response = test_client.post(
            f"/sessions/{SESSION_ID}/console",
            json={"project_path": PROJECT, "force": True, "existing_tmux_session": "work"},
        )

        assert response.status_code == 200
        assert response.json()["url"] == "http://localhost:7700"
        session_id, project_path, options = engine.orchestrator.start.call_args.args
        assert (session_id, project_path) == (SESSION_ID, PROJECT)
        assert options.force is True
        assert options.existing_tmux_session == "work"
        assert options.resume is True

    def test_start_console_error_code(self, test_client, engine):
        engine.orchestrator.start = AsyncMock(return_value=StartResult(
            success=False, error="No available ports", error_code=StartErrorCode.PORT_EXHAUSTED,
        ))

        response = test_client.post(f"/sessions/{SESSION_ID}/console", json={"project_path": PROJECT})

        assert response.json()["error_code"] == "port_exhausted"

    def test_start_console_end_to_end(self, test_client, engine):
        process = MagicMock()
        process.pid = 5555
        with patch("console_manager.lifecycle.shutil.which", return_value="/usr/bin/ttyd"), \
                patch("console_manager.lifecycle.subprocess.Popen", return_value=process), \
                patch("console_manager.lifecycle.is_port_open", new=AsyncMock(return_value=True)), \
                patch("console_manager.lifecycle.check_http", new=AsyncMock(return_value=True)):
            response = test_client.post(f"/sessions/{SESSION_ID}/console", json={"project_path": PROJECT})

        data = response.json()
        assert data["success"] is True, data
        assert data["port"] == 7700
        assert data["pid"] == 5555

        active = test_client.get("/instances/active").json()["instances"]
        assert [r["pid"] for r in active] == [5555]

    def test_stop_console_is_idempotent(self, test_client, engine, sample_record, mock_inspector):
        engine.registry.upsert(sample_record)

        first = test_client.delete(f"/sessions/{SESSION_ID}/console")
        second = test_client.delete(f"/sessions/{SESSION_ID}/console")

        assert first.json()["success"] is True
        assert second.json()["success"] is True
        mock_inspector.kill_process_tree.assert_called_once_with(4321)

    def test_kills_run_outside_event_loop(self, test_client, engine, sample_record, mock_inspector):
        engine.registry.upsert(sample_record)
        engine.holder.processes = [ProcessSnapshot(pid=42, session_id=SESSION_ID)]
        on_loop = []

        def kill(pid, *args):
            try:
                asyncio.get_running_loop()
                on_loop.append(True)
            except RuntimeError:
                on_loop.append(False)
            return [pid]

        mock_inspector.kill_process_tree.side_effect = kill

        test_client.delete(f"/sessions/{SESSION_ID}/console")
        test_client.post(f"/sessions/{SESSION_ID}/kill")

        assert on_loop == [False, False]

    def test_console_health(self, test_client, engine, sample_record):
        engine.registry.upsert(sample_record)

        response = test_client.get(f"/sessions/{SESSION_ID}/console/health")

        assert response.status_code == 200
        assert response.json()["healthy"] is True

    def test_kill_session(self, test_client, engine, sample_record):
        engine.registry.upsert(sample_record)
        engine.holder.processes = [ProcessSnapshot(pid=42, session_id=SESSION_ID)]

        response = test_client.post(f"/sessions/{SESSION_ID}/kill")

        data = response.json()
        assert data["success"] is True
        assert sorted(data["killed"]) == [42, 4321]


class TestInstanceEndpoints:
    def test_list_instances(self, test_client, engine, sample_record):
        engine.registry.upsert(sample_record)

        data = test_client.get("/instances").json()

        assert [r["id"] for r in data["instances"]] == [sample_record.id]
        assert data["instances"][0]["strategy"] == "tmux"

    def test_filter_by_status(self, test_client, engine, sample_record):
        engine.registry.upsert(sample_record)

        assert test_client.get("/instances", params={"status": "dead"}).json()["instances"] == []
        running = test_client.get("/instances", params={"status": "running"}).json()["instances"]
        assert len(running) == 1

    def test_invalid_status(self, test_client):
        response = test_client.get("/instances", params={"status": "bogus"})
        assert response.status_code == 400

    def test_session_instances(self, test_client, engine, sample_record):
        engine.registry.upsert(sample_record)

        data = test_client.get(f"/sessions/{SESSION_ID}/instances").json()

        assert len(data["instances"]) == 1
        assert test_client.get("/sessions/other/instances").json()["instances"] == []


class TestShellEndpoints:
    def test_start_shell(self, test_client, engine):
        engine.orchestrator.start_shell = AsyncMock(return_value=StartResult(success=True, port=7701, pid=77))

        response = test_client.post(
            "/shells", json={"shell_session_id": "1", "project_path": PROJECT, "shell_path": "/bin/zsh"},
        )

        assert response.json()["port"] == 7701
        engine.orchestrator.start_shell.assert_awaited_once_with("1", PROJECT, shell_path="/bin/zsh", port=None)


class TestMaintenanceEndpoints:
    def test_reconcile(self, test_client, engine):
        record = InstanceRecord(
            pid=1, port=7700, session_id="a", project_path=PROJECT,
            strategy=InstanceStrategy.TMUX, status=InstanceStatus.RUNNING, tmux_session_name="claude-a",
        )
        engine.registry.upsert(record)
        engine.holder.processes = [ProcessSnapshot(pid=2, session_id="b", tmux_session_name="claude-a")]

        response = test_client.post("/maintenance/reconcile")

        assert response.json() == {"updated": 1}
        assert engine.registry.active_for_session("b") is record

    def test_audit(self, test_client, engine, sample_record, mock_tmux):
        engine.registry.upsert(sample_record)
        mock_tmux.list_sessions.return_value = []

        response = test_client.post("/maintenance/audit")

        assert response.json() == {"marked_dead": [sample_record.id]}
