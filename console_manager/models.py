"""Data models for the console manager."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any
import uuid


class ProcessCategory(Enum):
    """How a client process is being served."""
    DIRECT_SERVER = "ttyd"                 # Child of a ttyd we can see
    MULTIPLEXED_SERVER = "ttyd-tmux"       # In a tmux pane that a ttyd is attached to
    SHELL_SERVER = "ttyd-shell"            # Plain shell served by ttyd
    WRAPPER = "wrapper"                    # Tracked in the wrapper pid log
    UNMANAGED_TERMINAL = "unmanaged-terminal"
    UNMANAGED_TMUX = "unmanaged-tmux"      # User's own tmux, no ttyd attached
    UNKNOWN = "unknown"


class ProcessSource(Enum):
    """Where a session is being displayed."""
    CONSOLE_TAB = "console-tab"
    FULL_WINDOW = "full-window"
    EXTERNAL_TERMINAL = "external-terminal"
    UNKNOWN = "unknown"


class InstanceStrategy(Enum):
    """Spawn strategy of a terminal server."""
    DIRECT = "direct"      # Exclusive single connection, exits on disconnect
    TMUX = "tmux"          # Shared tmux pane, survives viewer disconnects
    FALLBACK = "fallback"  # Direct spawn capped to one client (no tmux available)


class InstanceStatus(Enum):
    """Lifecycle status of a terminal server launch."""
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    DEAD = "dead"

    @property
    def is_active(self) -> bool:
        return self in (InstanceStatus.STARTING, InstanceStatus.RUNNING)

    @property
    def is_terminal(self) -> bool:
        return self in (InstanceStatus.STOPPED, InstanceStatus.DEAD)


# Allowed status transitions. Terminal states have no exits.
INSTANCE_TRANSITIONS = {
    InstanceStatus.STARTING: {InstanceStatus.RUNNING, InstanceStatus.STOPPED, InstanceStatus.DEAD},
    InstanceStatus.RUNNING: {InstanceStatus.STOPPED, InstanceStatus.DEAD},
    InstanceStatus.STOPPED: set(),
    InstanceStatus.DEAD: set(),
}


class StartErrorCode(Enum):
    """Why a start() call failed."""
    PORT_EXHAUSTED = "port_exhausted"
    SERVER_BINARY_MISSING = "server_binary_missing"
    SAFETY_VIOLATION = "safety_violation"
    SPAWN_HEALTH_FAILURE = "spawn_health_failure"
    CONCURRENT_START = "concurrent_start"
    STOPPED_DURING_START = "stopped_during_start"
    TMUX_SESSION_MISSING = "tmux_session_missing"
    SPAWN_ERROR = "spawn_error"


@dataclass
class RawProcess:
    """One row of the OS process table."""
    pid: int
    ppid: int
    elapsed_seconds: int
    tty: str
    cpu_percent: float
    memory_rss_kb: int
    command: str

    @property
    def executable(self) -> str:
        """Basename of the first command word."""
        first = self.command.split(" ", 1)[0] if self.command else ""
        return first.rsplit("/", 1)[-1]


@dataclass
class ProcessScan:
    """Result of one inspector pass over the OS and tmux."""
    rows: List[RawProcess] = field(default_factory=list)
    pane_map: Dict[int, str] = field(default_factory=dict)   # pane pid -> tmux session name
    ancestry: Dict[int, int] = field(default_factory=dict)   # pid -> parent pid


@dataclass
class ProcessSnapshot:
    """A client process believed to run or serve a logical session."""
    pid: int
    category: ProcessCategory = ProcessCategory.UNKNOWN
    source: ProcessSource = ProcessSource.UNKNOWN
    session_id: Optional[str] = None
    project_path: Optional[str] = None
    started_at: Optional[datetime] = None
    tty: Optional[str] = None
    tmux_session_name: Optional[str] = None
    has_attached_server: Optional[bool] = None
    server_port: Optional[int] = None
    cmdline: str = ""
    cpu_percent: float = 0.0
    memory_rss_kb: int = 0
    needs_identification: bool = False

    @property
    def is_tmux(self) -> bool:
        return self.category in (ProcessCategory.UNMANAGED_TMUX, ProcessCategory.MULTIPLEXED_SERVER)

    @property
    def is_server_managed(self) -> bool:
        return self.category in (ProcessCategory.DIRECT_SERVER, ProcessCategory.MULTIPLEXED_SERVER)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "pid": self.pid,
            "session_id": self.session_id,
            "project_path": self.project_path,
            "category": self.category.value,
            "source": self.source.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "tty": self.tty,
            "tmux_session_name": self.tmux_session_name,
            "has_attached_server": self.has_attached_server,
            "server_port": self.server_port,
            "cmdline": self.cmdline,
            "cpu_percent": self.cpu_percent,
            "memory_rss_kb": self.memory_rss_kb,
        }


@dataclass
class InstanceRecord:
    """A persisted terminal server launch."""
    pid: int
    port: int
    session_id: str
    project_path: str
    strategy: InstanceStrategy = InstanceStrategy.DIRECT
    status: InstanceStatus = InstanceStatus.STARTING
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=datetime.now)
    stopped_at: Optional[datetime] = None
    last_validated_at: Optional[datetime] = None
    tty: Optional[str] = None
    tmux_session_name: Optional[str] = None
    backing_pid: Optional[int] = None  # Client process the server is displaying

    @property
    def url(self) -> str:
        return f"http://localhost:{self.port}"

    def to_dict(self) -> dict:
        """Convert record to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "pid": self.pid,
            "port": self.port,
            "session_id": self.session_id,
            "project_path": self.project_path,
            "strategy": self.strategy.value,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "stopped_at": self.stopped_at.isoformat() if self.stopped_at else None,
            "last_validated_at": self.last_validated_at.isoformat() if self.last_validated_at else None,
            "tty": self.tty,
            "tmux_session_name": self.tmux_session_name,
            "backing_pid": self.backing_pid,
        }

    def to_public_dict(self) -> dict:
        """Shape exposed in status snapshots."""
        return {
            "pid": self.pid,
            "port": self.port,
            "session_id": self.session_id,
            "project_path": self.project_path,
            "started_at": self.started_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "InstanceRecord":
        """Create record from dictionary."""
        # Older files used "type" for the strategy
        strategy = data.get("strategy") or data.get("type") or "direct"
        return cls(
            id=data["id"],
            pid=data["pid"],
            port=data["port"],
            session_id=data["session_id"],
            project_path=data.get("project_path", ""),
            strategy=InstanceStrategy(strategy),
            status=InstanceStatus(data["status"]),
            started_at=datetime.fromisoformat(data["started_at"]),
            stopped_at=datetime.fromisoformat(data["stopped_at"]) if data.get("stopped_at") else None,
            last_validated_at=(
                datetime.fromisoformat(data["last_validated_at"]) if data.get("last_validated_at") else None
            ),
            tty=data.get("tty"),
            tmux_session_name=data.get("tmux_session_name"),
            backing_pid=data.get("backing_pid"),
        )


@dataclass
class IdentificationResult:
    """Which conversation a tmux pane is displaying, with confidence."""
    session_id: str
    confidence: float
    match_details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "confidence": self.confidence,
            "match_details": self.match_details,
        }


@dataclass
class SystemStats:
    """Host CPU, memory and disk usage."""
    cpu_count: int = 0
    cpu_model: str = "unknown"
    load_avg_1: float = 0.0
    load_avg_5: float = 0.0
    load_avg_15: float = 0.0
    cpu_usage_percent: float = 0.0
    total_memory_mb: int = 0
    used_memory_mb: int = 0
    free_memory_mb: int = 0
    memory_usage_percent: float = 0.0
    total_disk_gb: int = 0
    used_disk_gb: int = 0
    free_disk_gb: int = 0
    disk_usage_percent: float = 0.0

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class StatusSnapshot:
    """Pre-computed read model served by the status cache."""
    managed: List[dict] = field(default_factory=list)
    processes: List[ProcessSnapshot] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)
    process_status: Dict[str, Any] = field(default_factory=dict)
    system_stats: SystemStats = field(default_factory=SystemStats)
    state_hash: str = ""

    def to_dict(self) -> dict:
        return {
            "managed": self.managed,
            "processes": [p.to_dict() for p in self.processes],
            "summary": self.summary,
            "process_status": self.process_status,
            "system_stats": self.system_stats.to_dict(),
            "state_hash": self.state_hash,
        }


@dataclass
class ActiveInstance:
    """A non-managed process already serving a session."""
    pid: int
    source: ProcessSource
    message: str
    can_connect: bool = False
    connect_url: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "source": self.source.value,
            "message": self.message,
            "can_connect": self.can_connect,
            "connect_url": self.connect_url,
        }


@dataclass
class SessionStatusReport:
    """Whether a terminal server can safely be started for a session."""
    session_id: str
    project_path: str
    has_running_process: bool = False
    processes: List[ProcessSnapshot] = field(default_factory=list)
    active_record: Optional[InstanceRecord] = None
    active_instance: Optional[ActiveInstance] = None
    can_start: bool = True
    warnings: List[str] = field(default_factory=list)
    url: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "project_path": self.project_path,
            "has_running_process": self.has_running_process,
            "processes": [p.to_dict() for p in self.processes],
            "active_record": self.active_record.to_dict() if self.active_record else None,
            "active_instance": self.active_instance.to_dict() if self.active_instance else None,
            "can_start": self.can_start,
            "warnings": self.warnings,
            "url": self.url,
        }


@dataclass
class StartOptions:
    """Caller intent for start()."""
    port: Optional[int] = None
    resume: bool = True
    direct_mode: bool = False          # Full TTY access, single client (needed for --chrome)
    force: bool = False                # Bypass non-fatal safety checks
    existing_tmux_session: Optional[str] = None
    existing_tmux_pane: Optional[str] = None
    fork_session: bool = False
    precomputed_status: Optional[SessionStatusReport] = None


@dataclass
class StartResult:
    """Outcome of start()."""
    success: bool
    port: Optional[int] = None
    pid: Optional[int] = None
    url: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[StartErrorCode] = None
    warning: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "port": self.port,
            "pid": self.pid,
            "url": self.url,
            "error": self.error,
            "error_code": self.error_code.value if self.error_code else None,
            "warning": self.warning,
        }


@dataclass
class StopResult:
    """Outcome of stop()."""
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"success": self.success, "error": self.error}


@dataclass
class KillResult:
    """Outcome of kill_all() / kill_process()."""
    success: bool
    killed: List[int] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"success": self.success, "killed": self.killed, "errors": self.errors}
