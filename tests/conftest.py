"""Shared pytest fixtures for Console Manager tests."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from console_manager.conversation_logs import ConversationLogs
from console_manager.engine import ConsoleEngine
from console_manager.instance_registry import InstanceRegistry, JsonRegistryStore
from console_manager.models import ProcessScan
from console_manager.process_inspector import ProcessInspector
from console_manager.server import create_app
from console_manager.status_cache import SnapshotHolder
from console_manager.tmux_controller import TmuxController


@pytest.fixture
def mock_tmux() -> MagicMock:
    """
    Mock TmuxController for testing without a tmux server.

    Returns:
        MagicMock with common tmux methods configured
    """
    mock = MagicMock(spec=TmuxController)
    mock.is_available.return_value = True
    mock.session_exists.return_value = True
    mock.list_sessions.return_value = []
    mock.list_panes.return_value = {}
    mock.is_pane_dead.return_value = False
    mock.pane_commands.return_value = ["claude"]
    mock.capture_pane.return_value = "Mock tmux output with enough visible content"
    mock.create_hosted_session.return_value = True
    mock.kill_session.return_value = True
    return mock


@pytest.fixture
def mock_inspector() -> MagicMock:
    """Mock ProcessInspector reporting an empty, healthy system."""
    mock = MagicMock(spec=ProcessInspector)
    mock.scan.return_value = ProcessScan()
    mock.is_alive.return_value = True
    mock.listening_ports.return_value = set()
    mock.read_cmdline.return_value = None
    mock.read_cwd.return_value = None
    mock.kill_process_tree.side_effect = lambda pid, *args: [pid]
    return mock


@pytest.fixture
def conversations_dir(tmp_path: Path) -> Path:
    path = tmp_path / "projects"
    path.mkdir()
    return path


@pytest.fixture
def test_config(tmp_path: Path, conversations_dir: Path) -> dict:
    """Config pointing every path at a temp dir, with short timeouts."""
    return {
        "paths": {
            "conversations_dir": str(conversations_dir),
            "wrapper_log": str(tmp_path / "pid-session-map.log"),
            "registry_file": str(tmp_path / "instances.json"),
        },
        "terminal_server": {
            "base_port": 7700,
            "port_range": 5,
            "client_binary": "/home/user/.local/bin/claude",
        },
        "timeouts": {
            "lifecycle": {
                "start_lock_wait_seconds": 0.2,
                "port_poll_interval_seconds": 0.01,
                "port_bind_timeout_seconds": 0.1,
                "health_timeout_seconds": 0.1,
                "tmux_ready_timeout_seconds": 0.1,
            },
        },
    }


@pytest.fixture
def temp_registry_file(tmp_path: Path) -> Path:
    return tmp_path / "instances.json"


@pytest.fixture
def registry(temp_registry_file: Path) -> InstanceRegistry:
    return InstanceRegistry(JsonRegistryStore(str(temp_registry_file)))


@pytest.fixture
def logs(test_config: dict) -> ConversationLogs:
    return ConversationLogs(config=test_config)


@pytest.fixture
def holder() -> SnapshotHolder:
    return SnapshotHolder()


@pytest.fixture
def engine(test_config: dict, mock_tmux: MagicMock, mock_inspector: MagicMock) -> ConsoleEngine:
    """ConsoleEngine wired to mocked tmux and process inspection."""
    return ConsoleEngine(test_config, tmux=mock_tmux, inspector=mock_inspector)


@pytest.fixture
def test_client(engine: ConsoleEngine) -> TestClient:
    """
    Create a FastAPI TestClient for testing API endpoints.

    Args:
        engine: ConsoleEngine fixture to inject into app

    Returns:
        TestClient configured with the app and engine
    """
    app = create_app(engine=engine)
    return TestClient(app)
