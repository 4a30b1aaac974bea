"""Starting, stopping and reconciling terminal servers for sessions."""

import asyncio
import os
import shutil
import subprocess
import time
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union
import logging

import httpx

from .classifier import extract_resume_session_id, parse_server_port
from .conversation_logs import ConversationLogs
from .instance_registry import InstanceRegistry
from .models import (
    ActiveInstance,
    InstanceRecord,
    InstanceStatus,
    InstanceStrategy,
    KillResult,
    ProcessCategory,
    ProcessSnapshot,
    ProcessSource,
    SessionStatusReport,
    StartErrorCode,
    StartOptions,
    StartResult,
    StopResult,
)
from .process_inspector import ProcessInspector
from .session_identifier import SessionIdentifier
from .status_cache import SnapshotHolder
from .tmux_controller import TmuxController

logger = logging.getLogger(__name__)

PLACEHOLDER_SESSION_IDS = ("unknown", "unmanaged")
SHELL_SESSION_PREFIX = "shell-"
INSTALL_HINT = "ttyd is not installed. Install with: sudo apt install ttyd (or brew install ttyd)"

SOURCE_LABELS = {
    ProcessSource.CONSOLE_TAB: "Console Tab",
    ProcessSource.FULL_WINDOW: "Full Window",
    ProcessSource.EXTERNAL_TERMINAL: "External Terminal",
}


async def is_port_open(port: int, host: str = "127.0.0.1", timeout: float = 0.5) -> bool:
    """Check whether something accepts TCP connections on a port."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def check_http(port: int, timeout: float = 2.0) -> bool:
    """Check that a terminal server answers its index page with 200."""
    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(f"http://127.0.0.1:{port}/", timeout=timeout)
        return response.status_code == 200
    except httpx.HTTPError as e:
        logger.debug(f"HTTP check on port {port} failed: {e}")
        return False


async def poll_until(
    check: Callable[[], Union[bool, Awaitable[bool]]], interval: float, timeout: float
) -> bool:
    """Call check every interval until it is truthy or timeout elapses."""
    deadline = time.monotonic() + timeout
    while True:
        result = check()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return True
        if time.monotonic() >= deadline:
            return False
        await asyncio.sleep(interval)


def tmux_session_name_for(session_id: str) -> str:
    return f"claude-{session_id[:8]}"


def start_lock_key(session_id: str, project_path: str) -> str:
    """Placeholder session ids only identify a start within one project."""
    if session_id in PLACEHOLDER_SESSION_IDS:
        return f"{session_id}:{project_path}"
    return session_id


def build_restart_loop(client: str, session_id: str, resume: bool = True, fork: bool = False) -> str:
    """
    Shell command run in a hosted tmux pane.

    The first run resumes (or forks) the session. If that fails within three
    seconds a fresh session is started instead. Whenever the client exits the
    loop waits for Enter and starts it again, so the pane never closes.
    """
    fresh = client
    prompt = 'echo ""; echo "[Claude exited with code $EXIT_CODE. Press Enter to restart, or Ctrl+C to exit]"'
    if not (resume or fork):
        return f"bash -c 'while true; do {fresh}; EXIT_CODE=$?; {prompt}; read; done'"

    first = f"{client} --resume {session_id}"
    if fork:
        first += " --fork-session"
    return (
        "bash -c '"
        f"START=$(date +%s); {first}; EXIT_CODE=$?; END=$(date +%s); ELAPSED=$((END - START)); "
        "if [ $EXIT_CODE -ne 0 ] && [ $ELAPSED -lt 3 ]; then "
        'echo ""; echo "[Could not resume session. Starting fresh Claude session...]"; echo ""; '
        f"{fresh}; EXIT_CODE=$?; fi; "
        f"while true; do {prompt}; read; {fresh}; EXIT_CODE=$?; done'"
    )


def build_viewer_command(tmux_session: str, pane: Optional[str] = None) -> str:
    """
    Command a terminal server runs to show a tmux session.

    Each viewer gets its own linked session so clients size independently;
    the linked session destroys itself when the viewer disconnects.
    """
    select = f"tmux select-pane -t '{pane}' 2>/dev/null; " if pane else ""
    return f"{select}tmux new-session -t {tmux_session} \\; set-option destroy-unattached on"


class TerminalServerManager:
    """Lifecycle orchestration of ttyd instances serving sessions."""

    def __init__(
        self,
        inspector: ProcessInspector,
        tmux: TmuxController,
        registry: InstanceRegistry,
        logs: ConversationLogs,
        identifier: SessionIdentifier,
        holder: SnapshotHolder,
        config: Optional[dict] = None,
    ):
        self.inspector = inspector
        self.tmux = tmux
        self.registry = registry
        self.logs = logs
        self.identifier = identifier
        self.holder = holder
        self.config = config or {}

        server = self.config.get("terminal_server", {})
        self.server_binary = server.get("binary", "ttyd")
        self.client_binary = os.path.expanduser(server.get("client_binary", "~/.local/bin/claude"))
        self.client_args: List[str] = list(server.get("client_args", ["--dangerously-skip-permissions"]))
        self.client_options: Dict[str, str] = dict(server.get("client_options", {}))
        self.client_name = server.get("client_name", "claude")
        self.base_port = server.get("base_port", 7681)
        self.port_range = server.get("port_range", 100)
        self.default_shell = server.get("shell", os.environ.get("SHELL", "/bin/bash"))

        timeouts = self.config.get("timeouts", {}).get("lifecycle", {})
        self.start_lock_wait_seconds = timeouts.get("start_lock_wait_seconds", 2)
        self.port_poll_interval_seconds = timeouts.get("port_poll_interval_seconds", 0.05)
        self.port_bind_timeout_seconds = timeouts.get("port_bind_timeout_seconds", 3)
        self.http_timeout_seconds = timeouts.get("http_timeout_seconds", 2)
        self.health_timeout_seconds = timeouts.get("health_timeout_seconds", 2)
        self.tmux_ready_timeout_seconds = timeouts.get("tmux_ready_timeout_seconds", 2)
        self.client_grace_seconds = timeouts.get("client_grace_seconds", 60)

        self._starting: Set[str] = set()
        self._allocating_ports: Set[int] = set()

    # ------------------------------------------------------------------
    # Status

    def _record_alive(self, record: InstanceRecord) -> bool:
        if not self.inspector.is_alive(record.pid):
            return False
        if record.strategy == InstanceStrategy.TMUX and record.tmux_session_name:
            return self.tmux.session_exists(record.tmux_session_name)
        return True

    def _adopt_running_server(self, session_id: str, project_path: str) -> Optional[InstanceRecord]:
        """Register a terminal server started outside this engine that resumes the session."""
        for row in self.holder.server_rows:
            if extract_resume_session_id(row.command) != session_id:
                continue
            port = parse_server_port(row.command)
            if port is None:
                continue
            record = InstanceRecord(
                pid=row.pid,
                port=port,
                session_id=session_id,
                project_path=project_path,
                strategy=InstanceStrategy.DIRECT,
                status=InstanceStatus.RUNNING,
            )
            if self.registry.upsert(record):
                logger.info(f"Adopted running terminal server pid {row.pid} on port {port} for {session_id}")
                return record
        return None

    def _describe_external(self, process: ProcessSnapshot) -> ActiveInstance:
        if process.category == ProcessCategory.UNMANAGED_TMUX:
            label = f"User Tmux ({process.tmux_session_name or 'unknown'})"
        else:
            label = SOURCE_LABELS.get(process.source, "another instance")

        can_connect = (
            process.server_port is not None
            or bool(process.has_attached_server)
            or process.category == ProcessCategory.UNMANAGED_TMUX
        )
        connect_url = f"http://localhost:{process.server_port}" if process.server_port else None
        message = (
            f"External session detected in {label} (PID {process.pid}), not managed by console manager. "
        )
        if can_connect:
            message += "You can connect to it via the web console."
        else:
            message += "Only one instance of a session can run at a time to prevent file corruption."

        return ActiveInstance(
            pid=process.pid,
            source=process.source,
            message=message,
            can_connect=can_connect,
            connect_url=connect_url,
        )

    def get_status(self, session_id: str, project_path: str) -> SessionStatusReport:
        """
        Decide whether a terminal server can safely be started for a session.

        Reads the latest snapshot only; never triggers a scan.

        Args:
            session_id: Logical session
            project_path: Project the session belongs to

        Returns:
            SessionStatusReport
        """
        processes = self.holder.processes
        report = SessionStatusReport(session_id=session_id, project_path=project_path)

        record = self.registry.active_for_session(session_id)
        if record and not self._record_alive(record):
            logger.info(f"Active instance {record.id} for {session_id} is gone, marking dead")
            self.registry.mark_dead(record.id)
            record = None
        if record is None:
            record = self._adopt_running_server(session_id, project_path)
        report.active_record = record

        session_processes = [p for p in processes if p.session_id == session_id]
        blocked_by_external = False
        if session_processes and record is None:
            external = next((p for p in session_processes if not p.is_server_managed), None)
            if external:
                report.active_instance = self._describe_external(external)
                if not report.active_instance.can_connect:
                    blocked_by_external = True
                    report.warnings.append(report.active_instance.message)

        project_processes = [p for p in processes if p.project_path == project_path]
        unmanaged = [
            p for p in project_processes
            if p.category == ProcessCategory.UNKNOWN and p.session_id != session_id
        ]
        if unmanaged:
            pids = ", ".join(str(p.pid) for p in unmanaged)
            report.warnings.append(
                f"Found {len(unmanaged)} unmanaged Claude process(es). PIDs: {pids}. "
                f"These may cause session file corruption if a new session is started."
            )

        if not session_id.startswith(SHELL_SESSION_PREFIX) and not self.logs.log_exists(project_path, session_id):
            report.warnings.append(f"No conversation log found for session {session_id}")

        report.processes = session_processes or project_processes
        report.has_running_process = bool(session_processes or project_processes)
        report.can_start = not blocked_by_external and not unmanaged and record is None
        if record:
            report.url = record.url
        elif report.active_instance:
            report.url = report.active_instance.connect_url
        return report

    # ------------------------------------------------------------------
    # Start

    def find_available_port(self) -> Optional[int]:
        """First port in range not listening, not reserved and not held by an active record."""
        taken = self.inspector.listening_ports() | self._allocating_ports | self.registry.active_ports()
        for port in range(self.base_port, self.base_port + self.port_range):
            if port not in taken:
                return port
        return None

    def _terminal_option_args(self) -> List[str]:
        args: List[str] = []
        for key, value in self.client_options.items():
            args.extend(["-t", f"{key}={value}"])
        return args

    def _client_args(
        self, session_id: str, resume: bool, fork: bool, extra: Optional[List[str]] = None
    ) -> List[str]:
        args = [self.client_binary] + self.client_args + (extra or [])
        if fork:
            args.extend(["--resume", session_id, "--fork-session"])
        elif resume:
            args.extend(["--resume", session_id])
        return args

    def _spawn(self, args: List[str]) -> subprocess.Popen:
        cmd = [self.server_binary] + args
        logger.debug(f"Spawning: {' '.join(cmd)}")
        return subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )

    def _detect_unmanaged_tmux(self, session_id: str, project_path: str) -> Optional[ProcessSnapshot]:
        """
        Pick an existing tmux pane to attach to instead of creating one.

        Prefers a pane already running the session, else any pane in the
        project. Among several, panes without an attached server come first,
        then the newest. The tie-break is best-effort.
        """
        tmux_processes = [
            p for p in self.holder.processes
            if p.category == ProcessCategory.UNMANAGED_TMUX and p.tmux_session_name
        ]
        candidates = [p for p in tmux_processes if p.session_id == session_id]
        if not candidates:
            candidates = [p for p in tmux_processes if p.project_path == project_path]
        if not candidates:
            return None

        candidates.sort(key=lambda p: (
            bool(p.has_attached_server),
            -(p.started_at.timestamp() if p.started_at else 0),
        ))
        return candidates[0]

    def _ensure_hosted_tmux_session(
        self, name: str, session_id: str, project_path: str, options: StartOptions
    ) -> bool:
        """Create the hosting tmux session unless a live one already exists."""
        if self.tmux.session_exists(name):
            if self.tmux.is_pane_dead(name) is False:
                return True
            logger.info(f"tmux session {name} has a dead pane, recreating")
            self.tmux.kill_session(name)

        client = " ".join([self.client_binary] + self.client_args)
        command = build_restart_loop(
            client, session_id, resume=options.resume, fork=options.fork_session
        )
        if not self.tmux.create_hosted_session(name, project_path, command):
            return False
        self.tmux.declare_terminal_features()
        return True

    async def start(
        self, session_id: str, project_path: str, options: Optional[StartOptions] = None
    ) -> StartResult:
        """
        Start (or return) the terminal server for a session.

        Only one start per session runs at a time. A concurrent caller waits
        briefly and then reports whatever the first caller produced.

        Args:
            session_id: Logical session
            project_path: Working directory for the client
            options: StartOptions

        Returns:
            StartResult with port, pid and url on success
        """
        options = options or StartOptions()
        lock_key = start_lock_key(session_id, project_path)

        if lock_key in self._starting:
            logger.info(f"Start already in progress for {lock_key}, waiting")
            await asyncio.sleep(self.start_lock_wait_seconds)
            record = self.registry.active_for_session(session_id)
            if record:
                return StartResult(success=True, port=record.port, pid=record.pid, url=record.url)
            return self._already_starting()

        self._starting.add(lock_key)
        held = [lock_key]
        reserved: List[int] = []
        try:
            return await self._start_locked(session_id, project_path, options, reserved, held)
        finally:
            for key in held:
                self._starting.discard(key)
            for port in reserved:
                self._allocating_ports.discard(port)

    @staticmethod
    def _already_starting() -> StartResult:
        return StartResult(
            success=False,
            error="Session is currently being started by another request",
            error_code=StartErrorCode.CONCURRENT_START,
        )

    async def _start_locked(
        self,
        session_id: str,
        project_path: str,
        options: StartOptions,
        reserved: List[int],
        held: List[str],
    ) -> StartResult:
        status = options.precomputed_status or await asyncio.to_thread(self.get_status, session_id, project_path)

        record = status.active_record or self.registry.active_for_session(session_id)
        if record:
            return StartResult(success=True, port=record.port, pid=record.pid, url=record.url)

        warning = None
        if not status.can_start:
            reason = " ".join(status.warnings) or "Session is already running elsewhere"
            if not options.force:
                return StartResult(success=False, error=reason, error_code=StartErrorCode.SAFETY_VIOLATION)
            warning = f"Force-starting terminal server despite: {reason}"
            logger.warning(warning)

        port = options.port or await asyncio.to_thread(self.find_available_port)
        if port is None:
            return StartResult(
                success=False,
                error=f"No available ports in {self.base_port}-{self.base_port + self.port_range - 1}",
                error_code=StartErrorCode.PORT_EXHAUSTED,
            )
        self._allocating_ports.add(port)
        reserved.append(port)

        if shutil.which(self.server_binary) is None:
            return StartResult(success=False, error=INSTALL_HINT, error_code=StartErrorCode.SERVER_BINARY_MISSING)

        existing_tmux = options.existing_tmux_session
        existing_pane = options.existing_tmux_pane
        backing_pid = None
        if not existing_tmux and not options.direct_mode and options.resume:
            detected = self._detect_unmanaged_tmux(session_id, project_path)
            if detected:
                existing_tmux = detected.tmux_session_name
                backing_pid = detected.pid
                logger.info(
                    f"Auto-detected existing tmux session '{existing_tmux}' for {project_path} (PID {detected.pid})"
                )
                if session_id in PLACEHOLDER_SESSION_IDS:
                    identified = await self.identifier.identify(
                        existing_tmux, project_path, detected.started_at or datetime.now()
                    )
                    if identified:
                        session_id = identified.session_id
                        logger.info(
                            f"Identified session '{session_id}' for tmux '{existing_tmux}' "
                            f"(confidence {identified.confidence:.0%})"
                        )
                        if session_id in self._starting:
                            return self._already_starting()
                        self._starting.add(session_id)
                        held.append(session_id)
                        record = self.registry.active_for_session(session_id)
                        if record:
                            return StartResult(success=True, port=record.port, pid=record.pid, url=record.url)

        options_args = self._terminal_option_args()
        tmux_name: Optional[str] = None
        if options.direct_mode:
            strategy = InstanceStrategy.DIRECT
            args = ["-p", str(port), "-o"] + options_args + ["-w", project_path]
            # --chrome needs the client to own the TTY
            args += self._client_args(session_id, options.resume, options.fork_session, extra=["--chrome"])
        elif existing_tmux:
            strategy = InstanceStrategy.TMUX
            tmux_name = existing_tmux
            if not await asyncio.to_thread(self.tmux.session_exists, tmux_name):
                return StartResult(
                    success=False,
                    error=f"tmux session '{tmux_name}' not found",
                    error_code=StartErrorCode.TMUX_SESSION_MISSING,
                )
            await asyncio.to_thread(self.tmux.declare_terminal_features)
            args = ["-p", str(port)] + options_args + ["-w", project_path]
            args += ["bash", "-c", build_viewer_command(tmux_name, existing_pane)]
        elif self.tmux.is_available():
            strategy = InstanceStrategy.TMUX
            tmux_name = tmux_session_name_for(session_id)
            created = await asyncio.to_thread(
                self._ensure_hosted_tmux_session, tmux_name, session_id, project_path, options
            )
            if not created:
                return StartResult(
                    success=False,
                    error=f"Failed to create tmux session '{tmux_name}'",
                    error_code=StartErrorCode.SPAWN_ERROR,
                )
            await poll_until(
                lambda: asyncio.to_thread(self.tmux.session_exists, tmux_name),
                0.2,
                self.tmux_ready_timeout_seconds,
            )
            args = ["-p", str(port)] + options_args + ["-w", project_path]
            args += ["bash", "-c", build_viewer_command(tmux_name)]
        else:
            strategy = InstanceStrategy.FALLBACK
            args = ["-p", str(port), "-m", "1"] + options_args + ["-w", project_path]
            args += self._client_args(session_id, options.resume, options.fork_session)

        try:
            process = self._spawn(args)
        except OSError as e:
            logger.error(f"Failed to spawn terminal server for {session_id}: {e}")
            return StartResult(success=False, error=f"Failed to spawn ttyd: {e}", error_code=StartErrorCode.SPAWN_ERROR)

        record = InstanceRecord(
            pid=process.pid,
            port=port,
            session_id=session_id,
            project_path=project_path,
            strategy=strategy,
            status=InstanceStatus.STARTING,
            tmux_session_name=tmux_name,
            backing_pid=backing_pid,
        )
        if not self.registry.upsert(record):
            await asyncio.to_thread(self._kill_quietly, process.pid)
            return StartResult(
                success=False,
                error="Another instance became active for this session",
                error_code=StartErrorCode.CONCURRENT_START,
            )
        logger.info(f"Spawned {strategy.value} terminal server pid {process.pid} on port {port} for {session_id}")

        port_ready = await poll_until(
            lambda: is_port_open(port), self.port_poll_interval_seconds, self.port_bind_timeout_seconds
        )
        error = None if port_ready else "port not bound"
        if error is None:
            error = await self._verify_health(port, tmux_name)

        if error:
            logger.error(f"Terminal server for {session_id} is not healthy: {error}")
            await asyncio.to_thread(self._kill_quietly, process.pid)
            self.registry.mark_dead(record.id)
            return StartResult(
                success=False,
                error=f"ttyd started but terminal is not healthy: {error}",
                error_code=StartErrorCode.SPAWN_HEALTH_FAILURE,
            )

        if not self.registry.mark_running(record.id):
            return await self._abandon_start(record, process.pid)
        return StartResult(success=True, port=port, pid=process.pid, url=record.url, warning=warning)

    async def _abandon_start(self, record: InstanceRecord, pid: int) -> StartResult:
        """Kill a server whose record was stopped or marked dead while it was starting."""
        logger.warning(
            f"Instance {record.id} for {record.session_id} became {record.status.value} while starting, "
            f"killing pid {pid}"
        )
        await asyncio.to_thread(self._kill_quietly, pid)
        return StartResult(
            success=False,
            error=f"Terminal server was {record.status.value} before it finished starting",
            error_code=StartErrorCode.STOPPED_DURING_START,
        )

    async def _tmux_has_content(self, tmux_name: str) -> bool:
        content = await asyncio.to_thread(self.tmux.capture_pane, tmux_name, False)
        return bool(content) and len("".join(content.split())) > 10

    async def _verify_health(self, port: int, tmux_name: Optional[str]) -> Optional[str]:
        """
        Probe a freshly bound server.

        Returns:
            None when healthy, else a reason
        """
        if not await check_http(port, self.http_timeout_seconds):
            return "HTTP check failed"
        if tmux_name is None:
            return None
        if not await asyncio.to_thread(self.tmux.session_exists, tmux_name):
            return f"tmux session '{tmux_name}' does not exist"
        rendered = await poll_until(
            lambda: self._tmux_has_content(tmux_name), 0.2, self.health_timeout_seconds
        )
        if not rendered:
            return f"tmux session '{tmux_name}' rendered no content"
        return None

    def _kill_quietly(self, pid: int) -> None:
        try:
            self.inspector.kill_process_tree(pid)
        except OSError as e:
            logger.warning(f"Failed to kill process tree {pid}: {e}")

    async def start_shell(
        self,
        shell_session_id: str,
        project_path: str,
        shell_path: Optional[str] = None,
        port: Optional[int] = None,
    ) -> StartResult:
        """
        Serve a plain shell in the project directory.

        Tracked like any other instance under a ``shell-`` session id.
        """
        if not shell_session_id.startswith(SHELL_SESSION_PREFIX):
            shell_session_id = f"{SHELL_SESSION_PREFIX}{shell_session_id}"

        existing = self.registry.active_for_session(shell_session_id)
        if existing and self.inspector.is_alive(existing.pid):
            return StartResult(success=True, port=existing.port, pid=existing.pid, url=existing.url)
        if existing:
            self.registry.mark_dead(existing.id)

        if shutil.which(self.server_binary) is None:
            return StartResult(success=False, error=INSTALL_HINT, error_code=StartErrorCode.SERVER_BINARY_MISSING)

        port = port or await asyncio.to_thread(self.find_available_port)
        if port is None:
            return StartResult(success=False, error="No available ports", error_code=StartErrorCode.PORT_EXHAUSTED)

        self._allocating_ports.add(port)
        try:
            args = ["-p", str(port)] + self._terminal_option_args() + ["-w", project_path]
            args.append(shell_path or self.default_shell)
            try:
                process = self._spawn(args)
            except OSError as e:
                return StartResult(success=False, error=f"Failed to spawn ttyd: {e}", error_code=StartErrorCode.SPAWN_ERROR)

            record = InstanceRecord(
                pid=process.pid,
                port=port,
                session_id=shell_session_id,
                project_path=project_path,
                strategy=InstanceStrategy.DIRECT,
            )
            self.registry.upsert(record)

            if not await poll_until(
                lambda: is_port_open(port), self.port_poll_interval_seconds, self.port_bind_timeout_seconds
            ):
                await asyncio.to_thread(self._kill_quietly, process.pid)
                self.registry.mark_dead(record.id)
                return StartResult(
                    success=False,
                    error="ttyd failed to start - port not bound",
                    error_code=StartErrorCode.SPAWN_HEALTH_FAILURE,
                )

            if not self.registry.mark_running(record.id):
                return await self._abandon_start(record, process.pid)
            logger.info(f"Started shell server {shell_session_id} on port {port}")
            return StartResult(success=True, port=port, pid=process.pid, url=record.url)
        finally:
            self._allocating_ports.discard(port)

    # ------------------------------------------------------------------
    # Stop / kill

    def stop(self, session_id: str) -> StopResult:
        """
        Stop the session's terminal server.

        Stopping a session with no tracked instance succeeds without doing anything.
        """
        record = self.registry.active_for_session(session_id)
        if not record:
            return StopResult(success=True)

        self.registry.mark_stopped(record.id)
        try:
            self.inspector.kill_process_tree(record.pid)
        except OSError as e:
            logger.error(f"Failed to stop terminal server {record.pid} for {session_id}: {e}")
            return StopResult(success=False, error=str(e))

        logger.info(f"Stopped terminal server {record.pid} for {session_id}")
        return StopResult(success=True)

    def _kill_into(self, pid: int, result: KillResult) -> None:
        try:
            result.killed.extend(self.inspector.kill_process_tree(pid))
        except OSError as e:
            result.errors.append(f"PID {pid}: {e}")

    def kill_all(self, session_id: str) -> KillResult:
        """Kill the session's terminal server and every client process running it."""
        result = KillResult(success=True)

        record = self.registry.active_for_session(session_id)
        if record:
            self.registry.mark_stopped(record.id)
            self._kill_into(record.pid, result)

        for process in self.holder.processes:
            if process.session_id == session_id and process.pid not in result.killed:
                self._kill_into(process.pid, result)

        result.success = not result.errors
        logger.info(f"Killed {len(result.killed)} process(es) for {session_id}")
        return result

    def kill_process(self, pid: int) -> KillResult:
        """Kill one process, provided it is a known client or terminal server."""
        known = {p.pid for p in self.holder.processes} | {r.pid for r in self.holder.server_rows}
        if pid not in known:
            return KillResult(success=False, errors=[f"PID {pid} is not a known Claude-related process"])

        result = KillResult(success=True)
        for record in self.registry.active():
            if record.pid == pid:
                self.registry.mark_stopped(record.id)
        self._kill_into(pid, result)
        result.success = not result.errors
        return result

    # ------------------------------------------------------------------
    # Health and reconciliation

    def check_session_health(self, session_id: str) -> dict:
        """
        Check that the session's instance is alive and still the one serving it.

        Returns:
            Dict with healthy flag and reason
        """
        record = self.registry.active_for_session(session_id)
        if not record:
            return {"healthy": False, "reason": "no active instance"}
        if not self.inspector.is_alive(record.pid):
            return {"healthy": False, "reason": f"terminal server {record.pid} is not running"}

        if record.strategy == InstanceStrategy.TMUX and record.tmux_session_name:
            name = record.tmux_session_name
            if not self.tmux.session_exists(name):
                return {"healthy": False, "reason": f"tmux session '{name}' is gone"}

            in_grace = datetime.now() - record.started_at < timedelta(seconds=self.client_grace_seconds)
            commands = self.tmux.pane_commands(name)
            if not in_grace and not any(self.client_name in c for c in commands):
                return {"healthy": False, "reason": f"tmux session '{name}' is not running {self.client_name}"}

            for process in self.holder.processes:
                if (
                    process.session_id == session_id
                    and process.tmux_session_name
                    and process.tmux_session_name != name
                    and process.started_at
                    and process.started_at > record.started_at
                ):
                    return {
                        "healthy": False,
                        "reason": f"session is now running in tmux '{process.tmux_session_name}' (PID {process.pid})",
                    }

        return {"healthy": True, "reason": None}

    def reconcile_drift(self, processes: List[ProcessSnapshot]) -> int:
        """
        Re-point tmux records whose pane now shows a different session.

        Returns:
            Number of records updated
        """
        identified: Dict[str, str] = {}
        for process in processes:
            if process.tmux_session_name and process.session_id:
                identified.setdefault(process.tmux_session_name, process.session_id)

        updated = 0
        for record in self.registry.active():
            if record.strategy != InstanceStrategy.TMUX or not record.tmux_session_name:
                continue
            current = identified.get(record.tmux_session_name)
            if not current or current == record.session_id:
                continue
            logger.info(
                f"Drift: tmux {record.tmux_session_name} now shows {current}, "
                f"was {record.session_id}; updating instance {record.id}"
            )
            if self.registry.reassign_session(record.id, current):
                updated += 1
        return updated

    def deep_health_audit(self) -> List[str]:
        """
        Verify every active tmux record against one list of live tmux sessions.

        Records whose server died are marked dead. Records whose tmux session
        vanished have their server terminated and are marked dead.

        Returns:
            Ids of records marked dead
        """
        tmux_records = [
            r for r in self.registry.active()
            if r.strategy == InstanceStrategy.TMUX and r.tmux_session_name
        ]
        if not tmux_records:
            return []

        live_sessions = set(self.tmux.list_sessions())
        dead: List[str] = []
        for record in tmux_records:
            if not self.inspector.is_alive(record.pid):
                self.registry.mark_dead(record.id)
                dead.append(record.id)
            elif record.tmux_session_name not in live_sessions:
                logger.warning(
                    f"tmux session {record.tmux_session_name} for instance {record.id} is gone, terminating server"
                )
                self._kill_quietly(record.pid)
                self.registry.mark_dead(record.id)
                dead.append(record.id)

        if dead:
            logger.info(f"Deep audit marked {len(dead)} instance(s) dead")
        return dead

    def cleanup(self) -> int:
        """Re-validate liveness of every active record."""
        return len(self.registry.validate_all_active(self.inspector.is_alive))

    # ------------------------------------------------------------------
    # Listing

    def recent_instances(self, limit: int = 50) -> List[InstanceRecord]:
        return self.registry.recent(limit)

    def active_instances(self) -> List[InstanceRecord]:
        return self.registry.active()

    def instances_by_status(self, status: InstanceStatus) -> List[InstanceRecord]:
        return self.registry.by_status(status)

    def instances_for_session(self, session_id: str) -> List[InstanceRecord]:
        return self.registry.by_session(session_id)
