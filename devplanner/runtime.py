"""
Process wiring.

Runtime builds every service exactly once and runs the asyncio event loop
that the core lives on in a background thread. Synchronous callers (the Flask
request handlers) submit coroutines with run().
"""
import asyncio
import logging
import threading
from typing import Any, Awaitable, Optional

import uvicorn

from .bridge import BoardService
from .config import Config
from .events import EventBroadcaster
from .files import FileService
from .history import HistoryPersistence, HistoryService
from .locks import KeyedLock
from .projects import PreferencesService, ProjectService
from .store import CardStore
from .watcher import FileWatcher
from .ws import create_ws_app

logger = logging.getLogger(__name__)


class Runtime:
    """Owns the core event loop and the service graph."""

    def __init__(self, config: Config):
        self.config = config
        workspace = config.workspace_path

        project_locks = KeyedLock("project lock")
        self.store = CardStore(workspace, project_locks=project_locks)
        self.projects = ProjectService(workspace, project_locks=project_locks)
        self.preferences = PreferencesService(workspace)
        self.files = FileService(workspace, project_locks=project_locks)
        self.broadcaster = EventBroadcaster(
            heartbeat_enabled=config.heartbeat_enabled,
            heartbeat_interval=config.heartbeat_interval_secs,
            ping_timeout=config.ping_timeout_secs,
        )
        self.history = HistoryService(
            HistoryPersistence(
                workspace,
                max_events=config.history_persist_max_events,
                archive_max_events=config.history_archive_max_events,
            ),
            broadcaster=self.broadcaster,
            max_events=config.history_max_events,
            debounce_secs=config.history_debounce_secs,
            write_threshold=config.history_write_threshold,
        )
        self.board = BoardService(self.store, self.projects, self.preferences, self.broadcaster,
                                  self.history, self.files)
        self.watcher = FileWatcher(
            workspace, self.store, self.broadcaster,
            debounce_ms=config.debounce_ms,
            move_window_ms=config.move_window_ms,
        )

        self.loop = asyncio.new_event_loop()
        self._thread: Optional[threading.Thread] = None
        self._ws_server: Optional[uvicorn.Server] = None
        self._ws_task: Optional[asyncio.Task] = None
        self._watching = False

    # ── Lifecycle ────────────────────────────────────────────

    def start(self, serve_websockets: bool = True, watch: bool = True) -> None:
        if self._thread is not None:
            raise RuntimeError("Runtime already started")
        self._thread = threading.Thread(target=self._run_loop, name="devplanner-core", daemon=True)
        self._thread.start()
        self.run(self._start_services(serve_websockets, watch))
        logger.info(f"Core started (workspace={self.config.workspace_path})")

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    async def _start_services(self, serve_websockets: bool, watch: bool) -> None:
        if watch:
            self.watcher.start()
            self._watching = True
        if serve_websockets:
            ws_config = uvicorn.Config(
                create_ws_app(self.broadcaster),
                host=self.config.host,
                port=self.config.ws_port,
                log_level=self.config.log_level.lower(),
            )
            self._ws_server = uvicorn.Server(ws_config)
            self._ws_task = self.loop.create_task(self._ws_server.serve())
            logger.info(f"WebSocket server on ws://{self.config.host}:{self.config.ws_port}/api/ws")

    def run(self, coro: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        """Run a coroutine on the core loop from another thread and wait for it."""
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return future.result(timeout)

    def stop(self) -> None:
        if self._thread is None:
            return
        try:
            self.run(self._shutdown(), timeout=30)
        finally:
            self.loop.call_soon_threadsafe(self.loop.stop)
            self._thread.join(timeout=10)
            self._thread = None
            self.loop.close()
            logger.info("Core stopped")

    async def _shutdown(self) -> None:
        if self._watching:
            self.watcher.stop()
            self._watching = False
        await self.history.flush_all()
        if self._ws_server is not None:
            self._ws_server.should_exit = True
            await self._ws_task
            self._ws_server = None
            self._ws_task = None
        await self.broadcaster.close()
