"""Composition root: builds every component once and owns background work."""

import asyncio
from typing import Coroutine, Optional, Set
import logging

from .classifier import ProcessClassifier
from .conversation_logs import ConversationLogCache, ConversationLogs, JsonlConversationLogCache
from .instance_registry import DEFAULT_MAX_RECORDS, InstanceRegistry, JsonRegistryStore, RegistryStore
from .lifecycle import TerminalServerManager
from .process_inspector import ProcessInspector
from .session_identifier import SessionIdentifier
from .status_cache import SnapshotHolder, StatusCache
from .tmux_controller import TmuxController

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY_FILE = "~/.console-manager/instances.json"


class ConsoleEngine:
    """
    Explicit context holding every component.

    Components are wired leaves first: tmux and process inspection, log
    access, classification and identification, the registry, the lifecycle
    orchestrator and finally the status cache that drives polling.
    """

    def __init__(
        self,
        config: Optional[dict] = None,
        tmux: Optional[TmuxController] = None,
        inspector: Optional[ProcessInspector] = None,
        store: Optional[RegistryStore] = None,
        log_cache: Optional[ConversationLogCache] = None,
    ):
        self.config = config or {}
        paths = self.config.get("paths", {})

        self.tmux = tmux or TmuxController(config=self.config)
        self.inspector = inspector or ProcessInspector(self.tmux, config=self.config)
        self.logs = ConversationLogs(config=self.config)
        self.log_cache = log_cache or JsonlConversationLogCache()

        self.identifier = SessionIdentifier(self.tmux, self.logs, self.log_cache, config=self.config)
        self.classifier = ProcessClassifier(
            self.inspector,
            self.logs,
            config=self.config,
            identification_lookup=self.identifier.get_cached,
        )

        self.registry = InstanceRegistry(
            store or JsonRegistryStore(paths.get("registry_file", DEFAULT_REGISTRY_FILE)),
            max_records=self.config.get("registry", {}).get("max_records", DEFAULT_MAX_RECORDS),
        )
        self.holder = SnapshotHolder()
        self.orchestrator = TerminalServerManager(
            self.inspector,
            self.tmux,
            self.registry,
            self.logs,
            self.identifier,
            self.holder,
            config=self.config,
        )
        self.status_cache = StatusCache(
            self.inspector,
            self.classifier,
            self.identifier,
            self.orchestrator,
            self.registry,
            self.holder,
            spawn_background=self.spawn_background,
            config=self.config,
        )

        self._background: Set[asyncio.Task] = set()
        self._poll_task: Optional[asyncio.Task] = None

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background task {task.get_name()} failed: {error!r}")

    def spawn_background(self, coro: Coroutine) -> asyncio.Task:
        """Run a coroutine detached; failures are logged, never raised."""
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    async def start(self):
        """Load persisted state, run a first refresh and start polling."""
        self.registry.load(self.inspector.is_alive)
        try:
            await self.status_cache.refresh()
        except Exception as e:
            logger.error(f"Initial status refresh failed: {e}")
        self._poll_task = asyncio.create_task(self.status_cache.run())
        logger.info(f"Console engine started (polling every {self.status_cache.interval_seconds}s)")

    async def stop(self):
        """Cancel polling and any in-flight background work."""
        tasks = list(self._background)
        if self._poll_task:
            tasks.append(self._poll_task)
            self._poll_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
        logger.info("Console engine stopped")
