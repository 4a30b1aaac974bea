"""Background polling and the pre-computed status snapshot."""

import asyncio
import hashlib
import json
import os
import platform
from collections import Counter
from datetime import datetime
from typing import Callable, Coroutine, Dict, List, Optional
import logging

import psutil

from .classifier import ProcessClassifier, find_server_pids
from .instance_registry import InstanceRegistry
from .models import (
    ProcessCategory,
    ProcessSnapshot,
    ProcessSource,
    RawProcess,
    StatusSnapshot,
    SystemStats,
)
from .process_inspector import ProcessInspector
from .session_identifier import SessionIdentifier

logger = logging.getLogger(__name__)

UNMANAGED_CATEGORIES = (
    ProcessCategory.UNMANAGED_TERMINAL,
    ProcessCategory.UNMANAGED_TMUX,
    ProcessCategory.UNKNOWN,
)

SpawnBackground = Callable[[Coroutine], asyncio.Task]


class SnapshotHolder:
    """Latest classification results, shared read-only with the orchestrator."""

    def __init__(self):
        self.processes: List[ProcessSnapshot] = []
        self.server_rows: List[RawProcess] = []
        self.snapshot = StatusSnapshot()
        self.refreshed_at: Optional[datetime] = None

    def update(self, processes: List[ProcessSnapshot], server_rows: List[RawProcess], snapshot: StatusSnapshot):
        # Rebinding whole lists keeps readers from seeing a half-built result
        self.processes = processes
        self.server_rows = server_rows
        self.snapshot = snapshot
        self.refreshed_at = datetime.now()


def _read_cpu_model() -> str:
    try:
        with open("/proc/cpuinfo") as f:
            for line in f:
                if line.startswith("model name"):
                    return line.split(":", 1)[1].strip()
    except OSError:
        pass
    return platform.processor() or "unknown"


def collect_system_stats(cpu_model: str = "unknown", disk_path: str = "/") -> SystemStats:
    """Host CPU, memory and disk usage via psutil."""
    stats = SystemStats(cpu_count=psutil.cpu_count() or os.cpu_count() or 0, cpu_model=cpu_model)
    try:
        stats.load_avg_1, stats.load_avg_5, stats.load_avg_15 = (round(v, 2) for v in psutil.getloadavg())
        stats.cpu_usage_percent = psutil.cpu_percent(interval=None)

        mem = psutil.virtual_memory()
        stats.total_memory_mb = mem.total // (1024 * 1024)
        stats.used_memory_mb = (mem.total - mem.available) // (1024 * 1024)
        stats.free_memory_mb = mem.available // (1024 * 1024)
        stats.memory_usage_percent = mem.percent

        disk = psutil.disk_usage(disk_path)
        stats.total_disk_gb = disk.total // (1024 ** 3)
        stats.used_disk_gb = disk.used // (1024 ** 3)
        stats.free_disk_gb = disk.free // (1024 ** 3)
        stats.disk_usage_percent = disk.percent
    except (OSError, psutil.Error) as e:
        logger.debug(f"System stats partially unavailable: {e}")
    return stats


def compute_state_hash(processes: List[ProcessSnapshot], managed: List[dict]) -> str:
    """Short hash that changes whenever the visible state changes."""
    state = {
        "processes": sorted(
            (p.pid, p.category.value, p.session_id or "", int(p.cpu_percent), p.memory_rss_kb // 1024)
            for p in processes
        ),
        "managed": sorted((m["pid"], m["port"], m["session_id"]) for m in managed),
    }
    return hashlib.md5(json.dumps(state).encode()).hexdigest()[:12]


class StatusCache:
    """Polls the OS on a timer and serves the latest StatusSnapshot."""

    def __init__(
        self,
        inspector: ProcessInspector,
        classifier: ProcessClassifier,
        identifier: SessionIdentifier,
        orchestrator,
        registry: InstanceRegistry,
        holder: SnapshotHolder,
        spawn_background: SpawnBackground,
        config: Optional[dict] = None,
    ):
        self.inspector = inspector
        self.classifier = classifier
        self.identifier = identifier
        self.orchestrator = orchestrator
        self.registry = registry
        self.holder = holder
        self.spawn_background = spawn_background
        self.config = config or {}

        cache_config = self.config.get("status_cache", {})
        self.interval_seconds = cache_config.get("interval_seconds", 1.0)
        self.audit_every = cache_config.get("deep_audit_every", 15)
        self.disk_path = cache_config.get("disk_path", "/")

        self._refreshing = False
        self._cycle = 0
        self._cpu_model = _read_cpu_model()
        # First cpu_percent call always reports 0.0
        psutil.cpu_percent(interval=None)

    @property
    def state_hash(self) -> str:
        return self.holder.snapshot.state_hash

    def snapshot(self) -> StatusSnapshot:
        return self.holder.snapshot

    def processes(self) -> List[ProcessSnapshot]:
        return self.holder.processes

    def stats(self) -> SystemStats:
        return self.holder.snapshot.system_stats

    def running_session_map(self) -> Dict[str, ProcessSnapshot]:
        """Session id -> first process running it."""
        running: Dict[str, ProcessSnapshot] = {}
        for process in self.holder.processes:
            if process.session_id:
                running.setdefault(process.session_id, process)
        return running

    def is_session_running(self, session_id: str) -> bool:
        return session_id in self.running_session_map()

    def session_process(self, session_id: str) -> Optional[ProcessSnapshot]:
        return self.running_session_map().get(session_id)

    def _schedule_identification(self, processes: List[ProcessSnapshot]) -> int:
        scheduled = 0
        for process in processes:
            if not (process.needs_identification and process.tmux_session_name and process.project_path):
                continue
            if not self.identifier.should_attempt(process.pid):
                continue
            self.spawn_background(self.identifier.identify_for_pid(
                process.pid,
                process.tmux_session_name,
                process.project_path,
                process.started_at or datetime.now(),
            ))
            scheduled += 1
        return scheduled

    def _shell_processes(self) -> List[ProcessSnapshot]:
        """Active shell servers as ttyd-shell entries; dead ones are retired."""
        shells: List[ProcessSnapshot] = []
        for record in self.registry.active():
            if not record.session_id.startswith("shell-"):
                continue
            if not self.inspector.is_alive(record.pid):
                self.registry.mark_dead(record.id)
                continue
            shells.append(ProcessSnapshot(
                pid=record.pid,
                category=ProcessCategory.SHELL_SERVER,
                source=ProcessSource.CONSOLE_TAB,
                session_id=record.session_id,
                project_path=record.project_path,
                started_at=record.started_at,
                server_port=record.port,
                cmdline=f"ttyd -p {record.port}",
            ))
        return shells

    def _build_snapshot(self, processes: List[ProcessSnapshot], stats: SystemStats) -> StatusSnapshot:
        managed = [r.to_public_dict() for r in self.registry.active()]
        by_category = Counter(p.category.value for p in processes)
        running_sessions = sorted({p.session_id for p in processes if p.session_id})
        return StatusSnapshot(
            managed=managed,
            processes=processes,
            summary={
                "total_managed": len(managed),
                "total_processes": len(processes),
                "unmanaged": sum(1 for p in processes if p.category in UNMANAGED_CATEGORIES),
                "by_category": dict(by_category),
            },
            process_status={
                "total": len(processes),
                "running_sessions": running_sessions,
                "refreshed_at": datetime.now().isoformat(),
                "interval_seconds": self.interval_seconds,
            },
            system_stats=stats,
            state_hash=compute_state_hash(processes, managed),
        )

    async def refresh(self) -> Optional[StatusSnapshot]:
        """
        Run one poll cycle and publish a new snapshot.

        A call made while another cycle is in flight is skipped.

        Returns:
            The new snapshot, or None if skipped
        """
        if self._refreshing:
            logger.debug("Refresh already in progress, skipping")
            return None

        self._refreshing = True
        try:
            await asyncio.to_thread(self.orchestrator.cleanup)

            scan = await asyncio.to_thread(self.inspector.scan)
            server_pids = find_server_pids(scan.rows, self.classifier.server_binary)
            processes = await asyncio.to_thread(
                self.classifier.classify, scan.rows, scan.pane_map, scan.ancestry, server_pids
            )

            self.identifier.purge({row.pid for row in scan.rows})
            self._schedule_identification(processes)
            await asyncio.to_thread(self.orchestrator.reconcile_drift, processes)

            self._cycle += 1
            if self._cycle % self.audit_every == 0:
                await asyncio.to_thread(self.orchestrator.deep_health_audit)

            processes = processes + self._shell_processes()
            stats = await asyncio.to_thread(collect_system_stats, self._cpu_model, self.disk_path)

            snapshot = self._build_snapshot(processes, stats)
            server_rows = [row for row in scan.rows if row.pid in server_pids]
            self.holder.update(processes, server_rows, snapshot)
            return snapshot
        finally:
            self._refreshing = False

    async def run(self):
        """Poll until cancelled."""
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.refresh()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Status refresh failed: {e}")
