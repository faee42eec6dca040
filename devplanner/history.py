"""
Activity history per project.

HistoryService      newest-first in-memory log (capped), lazy-loaded from disk
HistoryPersistence  <project>/_history.json with rotation into
                    <project>/_history.archive.json

Writes are debounced: a record arms a timer that is re-armed on every new
record, and a flush is forced once enough records are pending.
"""
import asyncio
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .constants import HISTORY_ARCHIVE_FILE, HISTORY_FILE
from .events import EventBroadcaster, EventType
from .schema import HistoryAction, HistoryEvent, utc_now
from .store import read_json, write_json

logger = logging.getLogger(__name__)

HISTORY_FORMAT_VERSION = "1.0"


class HistoryPersistence:
    """JSON files for history, with size-bounded rotation."""

    def __init__(self, workspace: Union[str, Path], max_events: int = 500, archive_max_events: int = 1000):
        self.workspace = Path(workspace)
        self.max_events = max_events
        self.archive_max_events = archive_max_events

    def history_path(self, project_slug: str) -> Path:
        return self.workspace / project_slug / HISTORY_FILE

    def archive_path(self, project_slug: str) -> Path:
        return self.workspace / project_slug / HISTORY_ARCHIVE_FILE

    def _read_events(self, path: Path) -> List[HistoryEvent]:
        try:
            data = read_json(path)
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring corrupt history file {path}: {e}")
            return []
        events = data.get("events") if isinstance(data, dict) else None
        if not isinstance(events, list):
            return []
        return [HistoryEvent.from_dict(e) for e in events if isinstance(e, dict)]

    def _write_events(self, path: Path, events: List[HistoryEvent], last_rotation: str) -> None:
        write_json(path, {
            "version": HISTORY_FORMAT_VERSION,
            "events": [e.to_dict() for e in events],
            "lastRotation": last_rotation,
        })

    async def load_history(self, project_slug: str) -> List[HistoryEvent]:
        return await asyncio.to_thread(self._read_events, self.history_path(project_slug))

    async def load_archive(self, project_slug: str) -> List[HistoryEvent]:
        return await asyncio.to_thread(self._read_events, self.archive_path(project_slug))

    def _append(self, project_slug: str, new_events: List[HistoryEvent]) -> None:
        if not (self.workspace / project_slug).is_dir():
            logger.debug(f"Project {project_slug} is gone, dropping {len(new_events)} history events")
            return

        existing = self._read_events(self.history_path(project_slug))
        seen = {e.id for e in new_events}
        events = list(new_events) + [e for e in existing if e.id not in seen]
        now = utc_now()

        if len(events) > self.max_events:
            overflow = events[self.max_events:]
            events = events[:self.max_events]
            archive = overflow + self._read_events(self.archive_path(project_slug))
            self._write_events(self.archive_path(project_slug), archive[:self.archive_max_events], now)
            logger.info(f"Rotated {len(overflow)} history events for {project_slug} into archive")

        self._write_events(self.history_path(project_slug), events, now)

    async def append_events(self, project_slug: str, new_events: List[HistoryEvent]) -> None:
        """Prepend new_events (newest first) to the stored history."""
        await asyncio.to_thread(self._append, project_slug, new_events)

    async def delete_history(self, project_slug: str) -> None:
        def unlink_all() -> None:
            self.history_path(project_slug).unlink(missing_ok=True)
            self.archive_path(project_slug).unlink(missing_ok=True)

        await asyncio.to_thread(unlink_all)


class HistoryService:
    """Records activity events, serves recent ones, schedules persistence."""

    def __init__(self, persistence: HistoryPersistence, broadcaster: Optional[EventBroadcaster] = None,
                 max_events: int = 50, debounce_secs: float = 5.0, write_threshold: int = 10):
        self.persistence = persistence
        self.broadcaster = broadcaster
        self.max_events = max_events
        self.debounce_secs = debounce_secs
        self.write_threshold = write_threshold

        self._events: Dict[str, List[HistoryEvent]] = {}
        self._loaded: set = set()
        self._unsaved: Dict[str, List[HistoryEvent]] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._flushing: set = set()
        self._write_lock = asyncio.Lock()

    async def _ensure_loaded(self, project_slug: str) -> None:
        if project_slug in self._loaded:
            return
        self._loaded.add(project_slug)
        stored = await self.persistence.load_history(project_slug)
        current = self._events.get(project_slug, [])
        ids = {e.id for e in current}
        merged = current + [e for e in stored if e.id not in ids]
        self._events[project_slug] = merged[:self.max_events]

    async def record_event(self, project_slug: str, action: str, description: str,
                           metadata: Optional[Dict[str, Any]] = None) -> HistoryEvent:
        if action not in HistoryAction.all_actions():
            raise ValueError(f"Unknown history action: {action}")
        event = HistoryEvent(
            id=str(uuid.uuid4()),
            project_slug=project_slug,
            timestamp=utc_now(),
            action=action,
            description=description,
            metadata=dict(metadata or {}),
        )
        await self._ensure_loaded(project_slug)

        events = self._events.setdefault(project_slug, [])
        events.insert(0, event)
        del events[self.max_events:]

        self._unsaved.setdefault(project_slug, []).insert(0, event)
        self._schedule_persist(project_slug)
        return event

    async def record_and_broadcast(self, project_slug: str, action: str, description: str,
                                   metadata: Optional[Dict[str, Any]] = None) -> HistoryEvent:
        event = await self.record_event(project_slug, action, description, metadata)
        if self.broadcaster is not None:
            await self.broadcaster.emit(EventType.HISTORY_EVENT, project_slug, event.to_dict())
        return event

    async def get_events(self, project_slug: str, limit: int = 10) -> List[HistoryEvent]:
        await self._ensure_loaded(project_slug)
        return list(self._events.get(project_slug, [])[:max(limit, 0)])

    async def clear_events(self, project_slug: str) -> None:
        self._cancel_timer(project_slug)
        self._events.pop(project_slug, None)
        self._unsaved.pop(project_slug, None)
        self._loaded.discard(project_slug)
        # A flush that already took its batch must land before the delete.
        for task in list(self._flushing):
            await task
        async with self._write_lock:
            await self.persistence.delete_history(project_slug)

    # ── Persistence scheduling ───────────────────────────────

    def _schedule_persist(self, project_slug: str) -> None:
        loop = asyncio.get_running_loop()
        self._cancel_timer(project_slug)
        if len(self._unsaved.get(project_slug, [])) >= self.write_threshold:
            self._start_flush(project_slug)
            return
        self._timers[project_slug] = loop.call_later(
            self.debounce_secs, self._start_flush, project_slug
        )

    def _start_flush(self, project_slug: str) -> None:
        self._timers.pop(project_slug, None)
        task = asyncio.get_running_loop().create_task(self.flush(project_slug))
        self._flushing.add(task)
        task.add_done_callback(self._flushing.discard)

    def _cancel_timer(self, project_slug: str) -> None:
        timer = self._timers.pop(project_slug, None)
        if timer is not None:
            timer.cancel()

    async def flush(self, project_slug: str) -> None:
        self._cancel_timer(project_slug)
        pending = self._unsaved.pop(project_slug, None)
        if not pending:
            return
        async with self._write_lock:
            try:
                await self.persistence.append_events(project_slug, pending)
                logger.debug(f"Persisted {len(pending)} history events for {project_slug}")
            except OSError as e:
                logger.error(f"Failed to persist history for {project_slug}: {e}")

    async def flush_all(self) -> None:
        """Write everything pending. Called on shutdown."""
        for project_slug in list(self._unsaved):
            await self.flush(project_slug)
        for task in list(self._flushing):
            await task


def describe_action(action: str, title: str, **details: Any) -> str:
    """Human-readable one-liner for a history entry."""
    if action == HistoryAction.CARD_CREATED:
        return f'Card "{title}" created in {details.get("lane")}'
    if action == HistoryAction.CARD_MOVED:
        return f'Card "{title}" moved from {details.get("source_lane")} to {details.get("target_lane")}'
    if action == HistoryAction.CARD_UPDATED:
        return f'Card "{title}" updated'
    if action == HistoryAction.CARD_ARCHIVED:
        return f'Card "{title}" archived'
    if action == HistoryAction.CARD_DELETED:
        return f'Card "{title}" deleted'
    if action == HistoryAction.TASK_ADDED:
        return f'Task "{details.get("task")}" added to "{title}"'
    if action == HistoryAction.TASK_COMPLETED:
        return f'Task "{details.get("task")}" completed on "{title}"'
    if action == HistoryAction.TASK_UNCOMPLETED:
        return f'Task "{details.get("task")}" reopened on "{title}"'
    if action == HistoryAction.FILE_UPLOADED:
        if details.get("card"):
            return f'File "{title}" added to "{details["card"]}"'
        return f'File "{title}" uploaded'
    if action == HistoryAction.FILE_UPDATED:
        return f'File "{title}" description updated'
    if action == HistoryAction.FILE_DELETED:
        return f'File "{title}" deleted'
    if action == HistoryAction.FILE_ASSOCIATED:
        return f'File "{title}" linked to "{details.get("card")}"'
    if action == HistoryAction.FILE_DISASSOCIATED:
        return f'File "{title}" unlinked from "{details.get("card")}"'
    return f"{action}: {title}"
