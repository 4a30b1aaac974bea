"""OS process table, /proc and socket inspection."""

import os
import re
import signal
import subprocess
from collections import deque
from typing import Dict, List, Optional, Set
import logging

from .models import ProcessScan, RawProcess
from .tmux_controller import TmuxController

logger = logging.getLogger(__name__)

PS_FIELDS = "pid=,ppid=,etimes=,tty=,%cpu=,rss=,args="
LISTEN_PORT_RE = re.compile(r":(\d+)\s")


class ScanUnavailable(Exception):
    """A system command needed for a scan could not be run."""


def parse_ps_output(output: str) -> List[RawProcess]:
    """Parse `ps -o pid=,ppid=,etimes=,tty=,%cpu=,rss=,args=` output into rows."""
    rows: List[RawProcess] = []
    for line in output.splitlines():
        parts = line.split(None, 6)
        if len(parts) < 7:
            continue
        try:
            rows.append(RawProcess(
                pid=int(parts[0]),
                ppid=int(parts[1]),
                elapsed_seconds=int(parts[2]),
                tty=parts[3],
                cpu_percent=float(parts[4]),
                memory_rss_kb=int(parts[5]),
                command=parts[6].strip(),
            ))
        except ValueError:
            continue
    return rows


def build_children_map(ancestry: Dict[int, int]) -> Dict[int, List[int]]:
    children: Dict[int, List[int]] = {}
    for pid, ppid in ancestry.items():
        children.setdefault(ppid, []).append(pid)
    return children


def collect_descendants(
    root: int, children: Dict[int, List[int]], max_depth: Optional[int] = None
) -> List[int]:
    """
    Breadth-first walk below root.

    Args:
        root: Pid to start from (not included in the result)
        children: Parent pid -> child pids
        max_depth: Stop descending past this many levels (None for unbounded)

    Returns:
        Descendant pids in breadth-first order
    """
    found: List[int] = []
    seen = {root}
    queue = deque([(root, 0)])
    while queue:
        pid, depth = queue.popleft()
        if max_depth is not None and depth >= max_depth:
            continue
        for child in children.get(pid, []):
            if child in seen:
                continue
            seen.add(child)
            found.append(child)
            queue.append((child, depth + 1))
    return found


class ProcessInspector:
    """Reads processes, their ancestry and listening ports from the OS."""

    def __init__(self, tmux: TmuxController, config: Optional[dict] = None):
        self.tmux = tmux
        self.config = config or {}

        timeouts = self.config.get("timeouts", {}).get("inspector", {})
        self.ps_timeout_seconds = timeouts.get("ps_timeout_seconds", 5)
        self.ss_timeout_seconds = timeouts.get("ss_timeout_seconds", 3)

    def _run(self, *args: str, timeout: float) -> str:
        """Run a system command and return stdout, raising ScanUnavailable on failure."""
        try:
            result = subprocess.run(list(args), capture_output=True, text=True, timeout=timeout, check=True)
        except FileNotFoundError as e:
            raise ScanUnavailable(f"{args[0]} not installed") from e
        except subprocess.TimeoutExpired as e:
            raise ScanUnavailable(f"{args[0]} timed out after {timeout}s") from e
        except subprocess.CalledProcessError as e:
            raise ScanUnavailable(f"{args[0]} exited with {e.returncode}") from e
        except OSError as e:
            raise ScanUnavailable(f"{args[0]} failed: {e}") from e
        return result.stdout

    def read_process_table(self) -> List[RawProcess]:
        """One pass over the full process table, empty on failure."""
        try:
            output = self._run("ps", "-eww", "-o", PS_FIELDS, timeout=self.ps_timeout_seconds)
        except ScanUnavailable as e:
            logger.warning(f"Process scan unavailable: {e}")
            return []
        return parse_ps_output(output)

    def scan(self) -> ProcessScan:
        """
        Read processes and tmux panes once.

        Returns:
            ProcessScan with rows, pane pid -> session map and pid -> ppid map.
            Each part is empty when its source is unavailable.
        """
        rows = self.read_process_table()
        ancestry = {row.pid: row.ppid for row in rows}
        pane_map = self.tmux.list_panes()
        return ProcessScan(rows=rows, pane_map=pane_map, ancestry=ancestry)

    def read_cmdline(self, pid: int) -> Optional[str]:
        """Full command line from /proc, None when unavailable."""
        try:
            with open(f"/proc/{pid}/cmdline", "rb") as f:
                raw = f.read()
        except OSError:
            return None
        return raw.replace(b"\x00", b" ").decode("utf-8", errors="replace").strip()

    def read_cwd(self, pid: int) -> Optional[str]:
        """Working directory from /proc, None when unavailable."""
        try:
            return os.readlink(f"/proc/{pid}/cwd")
        except OSError:
            return None

    def listening_ports(self) -> Set[int]:
        """TCP ports currently in LISTEN state."""
        try:
            output = self._run("ss", "-tln", timeout=self.ss_timeout_seconds)
        except ScanUnavailable as e:
            logger.debug(f"Listening port scan unavailable: {e}")
            return set()
        return {int(m) for m in LISTEN_PORT_RE.findall(output)}

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but owned by someone else
            return True
        return True

    def kill_process_tree(self, pid: int, sig: int = signal.SIGTERM) -> List[int]:
        """
        Signal every descendant of pid, then pid itself.

        Processes that have already exited are skipped silently.

        Args:
            pid: Root of the tree
            sig: Signal to send

        Returns:
            Pids that were signalled

        Raises:
            PermissionError: The root process belongs to another user
        """
        ancestry = {row.pid: row.ppid for row in self.read_process_table()}
        descendants = collect_descendants(pid, build_children_map(ancestry))

        signalled: List[int] = []
        # Deepest first so parents cannot respawn children mid-kill
        for child in reversed(descendants):
            try:
                os.kill(child, sig)
                signalled.append(child)
            except ProcessLookupError:
                continue
            except PermissionError:
                logger.warning(f"Not permitted to signal descendant {child} of {pid}")

        try:
            os.kill(pid, sig)
            signalled.append(pid)
        except ProcessLookupError:
            logger.debug(f"Process {pid} already exited")

        if signalled:
            logger.info(f"Sent signal {sig} to {len(signalled)} process(es) in tree of {pid}")
        return signalled
