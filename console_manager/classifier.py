"""Classification of client processes by how they are being served."""

import re
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set
import logging

from .conversation_logs import ConversationLogs
from .models import (
    IdentificationResult,
    ProcessCategory,
    ProcessSnapshot,
    ProcessSource,
    RawProcess,
)
from .process_inspector import ProcessInspector, build_children_map, collect_descendants

logger = logging.getLogger(__name__)

PORT_RE = re.compile(r"-p\s+(\d+)")
TMUX_TARGET_RE = re.compile(r"tmux\s+(?:attach(?:-session)?|new-session)\s+-t\s+(\S+)")
RESUME_RE = re.compile(r"--resume\s+([a-f0-9-]{36})", re.IGNORECASE)
RESTART_LOOP_RE = re.compile(r"^bash\s+-c\s")

MAX_ANCESTOR_HOPS = 10
MAX_SERVER_DEPTH = 6

IdentificationLookup = Callable[[int], Optional[IdentificationResult]]


def parse_server_port(command: str) -> Optional[int]:
    match = PORT_RE.search(command)
    return int(match.group(1)) if match else None


def parse_server_tmux_target(command: str) -> Optional[str]:
    """tmux session a terminal server attaches to, from its command line."""
    match = TMUX_TARGET_RE.search(command)
    if not match:
        return None
    # Trailing shell separators from `... -t name \; set-option ...`
    return match.group(1).rstrip(";\\'\"")


def extract_resume_session_id(cmdline: str) -> Optional[str]:
    match = RESUME_RE.search(cmdline)
    return match.group(1) if match else None


def find_server_pids(rows: Iterable[RawProcess], server_binary: str = "ttyd") -> Set[int]:
    """Pids whose executable basename is the terminal server binary."""
    return {row.pid for row in rows if row.executable == server_binary}


def is_tty_device(tty: Optional[str]) -> bool:
    return bool(tty) and (tty.startswith("pts/") or tty.startswith("tty"))


def find_tmux_session_for_pid(
    pid: int, ancestry: Dict[int, int], pane_map: Dict[int, str], max_hops: int = MAX_ANCESTOR_HOPS
) -> Optional[str]:
    """Walk up the parent chain until a tmux pane pid is found."""
    current = pid
    for _ in range(max_hops + 1):
        if current in pane_map:
            return pane_map[current]
        parent = ancestry.get(current)
        if parent is None or parent <= 1:
            return None
        current = parent
    return None


class ProcessClassifier:
    """Turns raw process rows into ProcessSnapshots."""

    def __init__(
        self,
        inspector: ProcessInspector,
        logs: ConversationLogs,
        config: Optional[dict] = None,
        identification_lookup: Optional[IdentificationLookup] = None,
    ):
        self.inspector = inspector
        self.logs = logs
        self.config = config or {}
        self.identification_lookup = identification_lookup

        server = self.config.get("terminal_server", {})
        self.server_binary = server.get("binary", "ttyd")
        self.client_name = server.get("client_name", "claude")
        self.client_path_marker = server.get("client_path_marker", "/bin/claude")

    def is_candidate_command(self, command: str) -> bool:
        """Whether a ps command line looks like the interactive client itself."""
        if "claude-wrapper" in command or "/bin/bash" in command:
            return False
        # Our own restart-loop shells mention the client in their arguments
        if RESTART_LOOP_RE.match(command) and "EXIT_CODE" in command:
            return False
        if self.client_name not in command:
            return False
        if "--chrome-native-host" in command or "-mcp" in command:
            return False
        if "tmux new-session" in command or "tmux attach" in command:
            return False
        return True

    def server_maps(self, rows: List[RawProcess], server_pids: Set[int]):
        """
        Build terminal server lookup tables.

        Returns:
            (server pid -> port, served tmux session -> port)
        """
        ports: Dict[int, Optional[int]] = {}
        served_tmux: Dict[str, Optional[int]] = {}
        for row in rows:
            if row.pid not in server_pids:
                continue
            port = parse_server_port(row.command)
            ports[row.pid] = port
            target = parse_server_tmux_target(row.command)
            if target:
                served_tmux.setdefault(target, port)
        return ports, served_tmux

    def classify(
        self,
        rows: List[RawProcess],
        pane_map: Dict[int, str],
        ancestry: Dict[int, int],
        server_pids: Optional[Set[int]] = None,
    ) -> List[ProcessSnapshot]:
        """
        Classify every candidate client process.

        Args:
            rows: Process table rows
            pane_map: tmux pane pid -> session name
            ancestry: pid -> parent pid
            server_pids: Terminal server pids (derived from rows when omitted)

        Returns:
            One ProcessSnapshot per candidate
        """
        if server_pids is None:
            server_pids = find_server_pids(rows, self.server_binary)

        server_ports, served_tmux = self.server_maps(rows, server_pids)
        children = build_children_map(ancestry)
        descendant_port: Dict[int, Optional[int]] = {}
        for server_pid, port in server_ports.items():
            for child in collect_descendants(server_pid, children, MAX_SERVER_DEPTH):
                descendant_port.setdefault(child, port)

        wrapper_sessions = self.logs.read_wrapper_log()
        now = datetime.now()
        snapshots: List[ProcessSnapshot] = []

        for row in rows:
            if row.pid in server_pids or not self.is_candidate_command(row.command):
                continue

            cmdline = self.inspector.read_cmdline(row.pid) or row.command
            project_path = self.inspector.read_cwd(row.pid)

            # A command without the real binary path is only trusted inside a project with logs
            if self.client_path_marker not in cmdline:
                if not project_path or not self.logs.has_project_dir(project_path):
                    continue

            snapshot = ProcessSnapshot(
                pid=row.pid,
                project_path=project_path,
                started_at=now - timedelta(seconds=row.elapsed_seconds),
                tty=None if row.tty in ("?", "-", "") else row.tty,
                cmdline=cmdline,
                cpu_percent=row.cpu_percent,
                memory_rss_kb=row.memory_rss_kb,
                session_id=extract_resume_session_id(cmdline),
            )
            self._categorize(snapshot, row, pane_map, ancestry, served_tmux, descendant_port, wrapper_sessions)
            self._resolve_session_id(snapshot, wrapper_sessions)
            snapshots.append(snapshot)

        return snapshots

    def _categorize(
        self,
        snapshot: ProcessSnapshot,
        row: RawProcess,
        pane_map: Dict[int, str],
        ancestry: Dict[int, int],
        served_tmux: Dict[str, int],
        descendant_port: Dict[int, int],
        wrapper_sessions: Dict[int, str],
    ) -> None:
        tmux_session = find_tmux_session_for_pid(row.pid, ancestry, pane_map)
        if tmux_session:
            snapshot.tmux_session_name = tmux_session
            if tmux_session in served_tmux:
                snapshot.category = ProcessCategory.MULTIPLEXED_SERVER
                snapshot.source = ProcessSource.CONSOLE_TAB
                snapshot.server_port = served_tmux[tmux_session]
                snapshot.has_attached_server = True
            else:
                snapshot.category = ProcessCategory.UNMANAGED_TMUX
                snapshot.source = ProcessSource.EXTERNAL_TERMINAL
                snapshot.has_attached_server = False
            return

        served_by = row.pid if row.pid in descendant_port else row.ppid
        if served_by in descendant_port:
            snapshot.category = ProcessCategory.DIRECT_SERVER
            snapshot.source = ProcessSource.CONSOLE_TAB
            snapshot.server_port = descendant_port[served_by]
            return

        if row.pid in wrapper_sessions:
            snapshot.category = ProcessCategory.WRAPPER
            snapshot.source = ProcessSource.FULL_WINDOW
            return

        if is_tty_device(snapshot.tty):
            snapshot.category = ProcessCategory.UNMANAGED_TERMINAL
            snapshot.source = ProcessSource.EXTERNAL_TERMINAL
            return

        if "--chrome" in snapshot.cmdline:
            snapshot.category = ProcessCategory.UNMANAGED_TERMINAL
            snapshot.source = ProcessSource.FULL_WINDOW
            return

        snapshot.category = ProcessCategory.UNKNOWN

    def _resolve_session_id(self, snapshot: ProcessSnapshot, wrapper_sessions: Dict[int, str]) -> None:
        """Fill the session id from lower-precedence sources when the command line has none."""
        if snapshot.session_id:
            return

        wrapped = wrapper_sessions.get(snapshot.pid)
        if wrapped:
            snapshot.session_id = wrapped
            return

        if snapshot.is_tmux:
            cached = self.identification_lookup(snapshot.pid) if self.identification_lookup else None
            if cached:
                snapshot.session_id = cached.session_id
            else:
                snapshot.needs_identification = True
            return

        if (
            snapshot.category == ProcessCategory.UNMANAGED_TERMINAL
            and snapshot.project_path
            and snapshot.started_at
        ):
            snapshot.session_id = self.logs.find_closest_log(snapshot.project_path, snapshot.started_at)
