"""
Workspace watcher: turns out-of-band edits into board events.

Pipeline per filesystem notification:
  1. Filter     only card files, _order.json and _project.json; editor scratch
                files are ignored
  2. Debounce   per path, coalescing bursts of writes from one save
  3. Classify   project / project+lane / project+lane+card
  4. Moves      a vanished card is held as a pending delete; if the same slug
                shows up in another lane within the window it is a move
  5. Emit       card:updated / card:moved / card:deleted / lane:reordered /
                project:updated

watchdog's observer thread only hands relative paths to the event loop; all
timers and processing live on the loop.
"""
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Dict, Optional, Set, Union

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .constants import CARD_SUFFIX, ORDER_FILE, PROJECT_FILE
from .errors import NotFoundError
from .events import EventBroadcaster, EventType
from .store import CardStore, read_json

logger = logging.getLogger(__name__)

SCRATCH_MARKERS = (".tmp", ".swp", "~", ".bak")


@dataclass(frozen=True)
class ChangeTarget:
    """What a changed path refers to."""
    project_slug: str
    lane: Optional[str] = None
    card_slug: Optional[str] = None
    filename: str = ""

    @property
    def kind(self) -> str:
        if self.card_slug is not None:
            return "card"
        if self.lane is not None:
            return "order"
        return "project"


@dataclass
class PendingDelete:
    slug: str
    lane: str
    since: float
    timer: asyncio.TimerHandle


# ── Path rules ───────────────────────────────────────────────


def is_relevant(rel_path: str) -> bool:
    name = PurePath(rel_path).name
    if any(marker in name for marker in SCRATCH_MARKERS):
        return False
    return name.endswith(CARD_SUFFIX) or name in (PROJECT_FILE, ORDER_FILE)


def classify(rel_path: str) -> Optional[ChangeTarget]:
    """
    <project>/_project.json          -> project
    <project>/<lane>/_order.json     -> project + lane
    <project>/<lane>/<slug>.md       -> project + lane + card
    <project>/_files/<name>          -> None (attachments)
    anything else                    -> None
    """
    parts = PurePath(rel_path).parts
    if len(parts) == 2 and parts[1] == PROJECT_FILE:
        return ChangeTarget(project_slug=parts[0], filename=parts[1])
    if len(parts) == 3 and not parts[1].startswith("_"):
        project, lane, name = parts
        if name == ORDER_FILE:
            return ChangeTarget(project_slug=project, lane=lane, filename=name)
        if name.endswith(CARD_SUFFIX) and len(name) > len(CARD_SUFFIX):
            return ChangeTarget(project_slug=project, lane=lane,
                                card_slug=name[:-len(CARD_SUFFIX)], filename=name)
    return None


# ── watchdog glue ────────────────────────────────────────────


class WorkspaceHandler(FileSystemEventHandler):
    """Forwards relative paths from the observer thread to the loop."""

    def __init__(self, watcher: "FileWatcher"):
        self.watcher = watcher

    def on_any_event(self, fs_event):
        if fs_event.is_directory or fs_event.event_type not in ("created", "modified", "deleted", "moved"):
            return
        paths = [fs_event.src_path]
        if fs_event.event_type == "moved":
            paths.append(fs_event.dest_path)
        for path in paths:
            rel = self.watcher.relative(path)
            if rel is not None:
                self.watcher.notify(rel)


class FileWatcher:
    """Watches the workspace tree and replays disk edits as board events."""

    def __init__(self, workspace: Union[str, Path], store: CardStore, broadcaster: EventBroadcaster,
                 debounce_ms: int = 100, move_window_ms: int = 500):
        self.workspace = Path(workspace)
        self.store = store
        self.broadcaster = broadcaster
        self.debounce = debounce_ms / 1000
        self.move_window = move_window_ms / 1000

        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._observer: Optional[Observer] = None
        self._debounce_timers: Dict[str, asyncio.TimerHandle] = {}
        self._pending_deletes: Dict[str, PendingDelete] = {}
        self._tasks: Set[asyncio.Task] = set()

    # ── Lifecycle ────────────────────────────────────────────

    def start(self) -> None:
        """Start observing. Must be called from the event loop thread."""
        self.loop = asyncio.get_running_loop()
        self._observer = Observer()
        self._observer.schedule(WorkspaceHandler(self), str(self.workspace), recursive=True)
        self._observer.start()
        logger.info(f"Watching workspace: {self.workspace}")

    def stop(self) -> None:
        for timer in self._debounce_timers.values():
            timer.cancel()
        self._debounce_timers.clear()
        for pending in self._pending_deletes.values():
            pending.timer.cancel()
        self._pending_deletes.clear()
        for task in list(self._tasks):
            task.cancel()

        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
            logger.info("Workspace watcher stopped")

    @property
    def pending_deletes(self) -> Dict[str, PendingDelete]:
        return dict(self._pending_deletes)

    async def drain(self) -> None:
        """Wait for every in-flight processing task."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Notification intake ──────────────────────────────────

    def relative(self, path: str) -> Optional[str]:
        try:
            return Path(path).relative_to(self.workspace).as_posix()
        except ValueError:
            return None

    def notify(self, rel_path: str) -> None:
        """Thread-safe entry point used by the observer."""
        if self.loop is None or self.loop.is_closed():
            return
        self.loop.call_soon_threadsafe(self.schedule, rel_path)

    def schedule(self, rel_path: str) -> None:
        """Filter and debounce; runs on the loop."""
        if not is_relevant(rel_path):
            return
        loop = asyncio.get_running_loop()
        timer = self._debounce_timers.pop(rel_path, None)
        if timer is not None:
            timer.cancel()
        self._debounce_timers[rel_path] = loop.call_later(self.debounce, self._debounced, rel_path)

    def _debounced(self, rel_path: str) -> None:
        self._debounce_timers.pop(rel_path, None)
        self._spawn(self.handle_change(rel_path))

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Watcher processing failed: {task.exception()!r}")

    # ── Processing ───────────────────────────────────────────

    async def handle_change(self, rel_path: str) -> None:
        if not is_relevant(rel_path):
            return
        target = classify(rel_path)
        if target is None:
            logger.debug(f"Ignoring unrecognised path: {rel_path}")
            return

        if target.kind == "card":
            await self._handle_card(target)
        elif target.kind == "order":
            await self._handle_order(target)
        else:
            await self._handle_project(target)

    async def _handle_card(self, target: ChangeTarget) -> None:
        project, lane, slug = target.project_slug, target.lane, target.card_slug
        path = self.workspace / project / lane / target.filename
        key = f"{project}:{slug}"

        if not await asyncio.to_thread(path.is_file):
            self._arm_pending_delete(key, slug, lane)
            return

        pending = self._pending_deletes.pop(key, None)
        if pending is not None:
            pending.timer.cancel()
            if pending.lane != lane:
                logger.info(f"Detected move: {project}/{slug} {pending.lane} -> {lane}")
                await self.broadcaster.emit(EventType.CARD_MOVED, project, {
                    "slug": slug, "sourceLane": pending.lane, "targetLane": lane,
                })
                return
            # Same lane: the file was replaced (editor save-by-rename)

        try:
            card = await self.store.read_card(project, lane, slug)
        except NotFoundError:
            return
        except Exception as e:
            logger.warning(f"Could not read changed card {project}/{lane}/{slug}: {e}")
            return
        await self.broadcaster.emit(EventType.CARD_UPDATED, project, {"card": card.summary().to_dict()})

    def _arm_pending_delete(self, key: str, slug: str, lane: str) -> None:
        loop = asyncio.get_running_loop()
        previous = self._pending_deletes.pop(key, None)
        if previous is not None:
            previous.timer.cancel()
        timer = loop.call_later(self.move_window, self._move_window_expired, key)
        self._pending_deletes[key] = PendingDelete(slug=slug, lane=lane, since=loop.time(), timer=timer)

    def _move_window_expired(self, key: str) -> None:
        pending = self._pending_deletes.pop(key, None)
        if pending is not None:
            project = key.split(":", 1)[0]
            self._spawn(self._confirm_delete(project, pending))

    async def _confirm_delete(self, project: str, pending: PendingDelete) -> None:
        """
        The window closed with no reappearance seen. The card may still have
        been written elsewhere before it vanished here (API moves write the
        target first), so look it up once more.
        """
        try:
            lane = await self.store.locate_card(project, pending.slug)
        except NotFoundError:
            lane = None

        if lane is None:
            logger.info(f"Card deleted on disk: {project}/{pending.lane}/{pending.slug}")
            await self.broadcaster.emit(EventType.CARD_DELETED, project, {
                "slug": pending.slug, "lane": pending.lane,
            })
        elif lane != pending.lane:
            await self.broadcaster.emit(EventType.CARD_MOVED, project, {
                "slug": pending.slug, "sourceLane": pending.lane, "targetLane": lane,
            })

    async def _handle_order(self, target: ChangeTarget) -> None:
        path = self.workspace / target.project_slug / target.lane / ORDER_FILE
        try:
            order = await asyncio.to_thread(read_json, path)
        except FileNotFoundError:
            return
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read order file {path}: {e}")
            return
        if not isinstance(order, list):
            logger.warning(f"Order file is not a list: {path}")
            return
        await self.broadcaster.emit(EventType.LANE_REORDERED, target.project_slug, {
            "lane": target.lane, "order": order,
        })

    async def _handle_project(self, target: ChangeTarget) -> None:
        path = self.workspace / target.project_slug / PROJECT_FILE
        try:
            config = await asyncio.to_thread(read_json, path)
        except FileNotFoundError:
            return
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read project config {path}: {e}")
            return
        await self.broadcaster.emit(EventType.PROJECT_UPDATED, target.project_slug, {
            "slug": target.project_slug, "config": config,
        })
