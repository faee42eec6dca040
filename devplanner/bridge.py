"""
Board service: routes API operations to the store, then fans out the
matching WebSocket event and records a history entry.

Every public method is a coroutine running on the core event loop.
"""
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .constants import Lane
from .events import EventBroadcaster, EventType
from .files import FileEntry, FileService
from .history import HistoryService, describe_action
from .projects import PreferencesService, ProjectService, ProjectSummary
from .schema import (
    Card,
    CardStatus,
    CardSummary,
    HistoryAction,
    HistoryEvent,
    ProjectConfig,
    TaskItem,
    parse_timestamp,
)
from .store import CardStore

logger = logging.getLogger(__name__)


class BoardService:
    """Store operations, event broadcast and history recording."""

    def __init__(self, store: CardStore, projects: ProjectService, preferences: PreferencesService,
                 broadcaster: EventBroadcaster, history: HistoryService, files: FileService):
        self.store = store
        self.projects = projects
        self.preferences = preferences
        self.broadcaster = broadcaster
        self.history = history
        self.files = files

    async def _record(self, project_slug: str, action: str, card: Card, **details: Any) -> None:
        metadata = {"cardSlug": card.slug, "cardTitle": card.frontmatter.title, "lane": card.lane}
        metadata.update({k: v for k, v in details.items() if k not in ("source_lane", "target_lane", "task")})
        if "task" in details:
            metadata["taskText"] = details["task"]
        if "source_lane" in details:
            metadata["sourceLane"] = details["source_lane"]
            metadata["targetLane"] = details["target_lane"]
        description = describe_action(action, card.frontmatter.title, lane=card.lane, **details)
        await self.history.record_and_broadcast(project_slug, action, description, metadata)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Projects
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def list_projects(self, include_archived: bool = False) -> List[ProjectSummary]:
        return await self.projects.list_projects(include_archived)

    async def get_project(self, project_slug: str) -> ProjectConfig:
        return await self.projects.get_project(project_slug)

    async def create_project(self, name: str, description: Optional[str] = None,
                             prefix: Optional[str] = None) -> ProjectSummary:
        return await self.projects.create_project(name, description, prefix)

    async def update_project(self, project_slug: str, updates: Dict[str, Any]) -> ProjectConfig:
        config = await self.projects.update_project(project_slug, updates)
        await self.broadcaster.emit(EventType.PROJECT_UPDATED, project_slug,
                                    {"slug": project_slug, "config": config.to_dict()})
        return config

    async def archive_project(self, project_slug: str) -> ProjectConfig:
        return await self.update_project(project_slug, {"archived": True})

    async def delete_project(self, project_slug: str) -> None:
        await self.projects.delete_project(project_slug)
        await self.history.clear_events(project_slug)
        await self.broadcaster.emit(EventType.PROJECT_DELETED, project_slug, {"slug": project_slug})
        self.broadcaster.disconnect_project(project_slug)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Cards
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def list_cards(self, project_slug: str, lane: Optional[str] = None,
                         since: Optional[str] = None, stale_days: Optional[float] = None) -> List[CardSummary]:
        return await self.store.list_cards(project_slug, lane=lane, since=since, stale_days=stale_days)

    async def get_card(self, project_slug: str, card_slug: str) -> Card:
        return await self.store.get_card(project_slug, card_slug)

    async def create_card(self, project_slug: str, data: Dict[str, Any]) -> Card:
        card = await self.store.create_card(project_slug, data)
        await self.broadcaster.emit(EventType.CARD_CREATED, project_slug, {"card": card.summary().to_dict()})
        await self._record(project_slug, HistoryAction.CARD_CREATED, card)
        return card

    async def update_card(self, project_slug: str, card_slug: str, patch: Dict[str, Any]) -> Card:
        card = await self.store.update_card(project_slug, card_slug, patch)
        await self.broadcaster.emit(EventType.CARD_UPDATED, project_slug, {"card": card.summary().to_dict()})
        await self._record(project_slug, HistoryAction.CARD_UPDATED, card, changedFields=sorted(patch))
        return card

    async def move_card(self, project_slug: str, card_slug: str, target_lane: str,
                        position: Optional[int] = None) -> Card:
        source_lane = await self.store.locate_card(project_slug, card_slug)
        card = await self.store.move_card(project_slug, card_slug, target_lane, position)
        source_lane = source_lane or card.lane

        data: Dict[str, Any] = {"slug": card_slug, "sourceLane": source_lane, "targetLane": target_lane}
        if position is not None:
            data["position"] = position
        await self.broadcaster.emit(EventType.CARD_MOVED, project_slug, data)

        if source_lane != target_lane:
            action = HistoryAction.CARD_ARCHIVED if target_lane == Lane.ARCHIVE else HistoryAction.CARD_MOVED
            await self._record(project_slug, action, card, source_lane=source_lane, target_lane=target_lane)
        return card

    async def archive_card(self, project_slug: str, card_slug: str) -> Card:
        return await self.move_card(project_slug, card_slug, Lane.ARCHIVE)

    async def delete_card(self, project_slug: str, card_slug: str) -> None:
        card = await self.store.get_card(project_slug, card_slug)
        lane = await self.store.delete_card(project_slug, card_slug)
        await self.files.remove_card_from_all_files(project_slug, card_slug)
        await self.broadcaster.emit(EventType.CARD_DELETED, project_slug, {"slug": card_slug, "lane": lane})
        await self._record(project_slug, HistoryAction.CARD_DELETED, card)

    async def reorder_cards(self, project_slug: str, lane: str, order: List[str]) -> List[str]:
        result = await self.store.reorder_cards(project_slug, lane, order)
        await self.broadcaster.emit(EventType.LANE_REORDERED, project_slug, {"lane": lane, "order": result})
        return result

    # ── Tasks ────────────────────────────────────────────────

    async def add_task(self, project_slug: str, card_slug: str, text: str) -> TaskItem:
        task = await self.store.add_task(project_slug, card_slug, text)
        card = await self.store.get_card(project_slug, card_slug)
        await self.broadcaster.emit(EventType.CARD_UPDATED, project_slug, {"card": card.summary().to_dict()})
        await self._record(project_slug, HistoryAction.TASK_ADDED, card, task=task.text, taskIndex=task.index)
        return task

    async def set_task_checked(self, project_slug: str, card_slug: str, index: int, checked: bool) -> TaskItem:
        task = await self.store.set_task_checked(project_slug, card_slug, index, checked)
        card = await self.store.get_card(project_slug, card_slug)
        progress = card.summary().task_progress
        await self.broadcaster.emit(EventType.TASK_TOGGLED, project_slug, {
            "cardSlug": card_slug,
            "taskIndex": index,
            "checked": task.checked,
            "taskProgress": progress.to_dict(),
        })
        action = HistoryAction.TASK_COMPLETED if task.checked else HistoryAction.TASK_UNCOMPLETED
        await self._record(project_slug, action, card, task=task.text, taskIndex=task.index)
        return task

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Files
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def _record_file(self, project_slug: str, action: str, filename: str,
                           card: Optional[Card] = None, card_slug: Optional[str] = None) -> None:
        metadata: Dict[str, Any] = {"filename": filename}
        if card is not None:
            card_slug = card.slug
            metadata["cardTitle"] = card.frontmatter.title
        if card_slug is not None:
            metadata["cardSlug"] = card_slug
        label = card.frontmatter.title if card is not None else card_slug
        description = describe_action(action, filename, card=label)
        await self.history.record_and_broadcast(project_slug, action, description, metadata)

    async def list_files(self, project_slug: str) -> List[FileEntry]:
        return await self.files.list_files(project_slug)

    async def get_file(self, project_slug: str, filename: str) -> FileEntry:
        return await self.files.get_file(project_slug, filename)

    async def list_card_files(self, project_slug: str, card_slug: str) -> List[FileEntry]:
        await self.store.get_card(project_slug, card_slug)
        return await self.files.list_card_files(project_slug, card_slug)

    async def get_file_content(self, project_slug: str, filename: str) -> str:
        return await self.files.get_file_content(project_slug, filename)

    async def file_path(self, project_slug: str, filename: str) -> Path:
        return await self.files.file_path(project_slug, filename)

    async def add_file(self, project_slug: str, original_name: str, data: bytes,
                       description: str = "") -> FileEntry:
        entry = await self.files.add_file(project_slug, original_name, data, description)
        await self.broadcaster.emit(EventType.FILE_ADDED, project_slug, {"file": entry.to_dict()})
        await self._record_file(project_slug, HistoryAction.FILE_UPLOADED, entry.filename)
        return entry

    async def update_file_description(self, project_slug: str, filename: str, description: str) -> FileEntry:
        entry = await self.files.update_file_description(project_slug, filename, description)
        await self.broadcaster.emit(EventType.FILE_UPDATED, project_slug, {"file": entry.to_dict()})
        await self._record_file(project_slug, HistoryAction.FILE_UPDATED, filename)
        return entry

    async def delete_file(self, project_slug: str, filename: str) -> List[str]:
        associated = await self.files.delete_file(project_slug, filename)
        await self.broadcaster.emit(EventType.FILE_DELETED, project_slug, {"filename": filename})
        await self._record_file(project_slug, HistoryAction.FILE_DELETED, filename)
        return associated

    async def associate_file(self, project_slug: str, filename: str, card_slug: str) -> FileEntry:
        card = await self.store.get_card(project_slug, card_slug)
        entry = await self.files.associate_file(project_slug, filename, card_slug)
        await self.broadcaster.emit(EventType.FILE_ASSOCIATED, project_slug,
                                    {"filename": filename, "cardSlug": card_slug})
        await self._record_file(project_slug, HistoryAction.FILE_ASSOCIATED, filename, card=card)
        return entry

    async def disassociate_file(self, project_slug: str, filename: str, card_slug: str) -> FileEntry:
        entry = await self.files.disassociate_file(project_slug, filename, card_slug)
        await self.broadcaster.emit(EventType.FILE_DISASSOCIATED, project_slug,
                                    {"filename": filename, "cardSlug": card_slug})
        await self._record_file(project_slug, HistoryAction.FILE_DISASSOCIATED, filename, card_slug=card_slug)
        return entry

    async def add_file_to_card(self, project_slug: str, card_slug: str, filename: str, content: str,
                               description: str = "") -> FileEntry:
        config = await self.projects.get_project(project_slug)
        card = await self.store.get_card(project_slug, card_slug)
        entry = await self.files.add_file_to_card(
            project_slug, card_slug, filename, content, description,
            prefix=config.prefix, card_number=card.frontmatter.card_number,
        )
        await self.broadcaster.emit(EventType.FILE_ADDED, project_slug, {"file": entry.to_dict()})
        await self.broadcaster.emit(EventType.FILE_ASSOCIATED, project_slug,
                                    {"filename": entry.filename, "cardSlug": card_slug})
        await self._record_file(project_slug, HistoryAction.FILE_UPLOADED, entry.filename, card=card)
        return entry

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Stats, history, preferences
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def get_stats(self, project_slug: str) -> Dict[str, Any]:
        upcoming = await self.store.list_cards(project_slug, lane=Lane.UPCOMING)
        in_progress = await self.store.list_cards(project_slug, lane=Lane.IN_PROGRESS)
        complete = await self.store.list_cards(project_slug, lane=Lane.COMPLETE)
        stats = compute_stats(upcoming, in_progress, complete)
        return {"slug": project_slug, **stats}

    async def get_history(self, project_slug: str, limit: int = 10) -> List[HistoryEvent]:
        await self.projects.get_project(project_slug)
        return await self.history.get_events(project_slug, limit)

    async def get_preferences(self) -> Dict[str, Any]:
        return await self.preferences.get_preferences()

    async def update_preferences(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        return await self.preferences.update_preferences(updates)


def compute_stats(upcoming: List[CardSummary], in_progress: List[CardSummary],
                  complete: List[CardSummary], now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Board health numbers.

    Completion time is the completed card's `updated` stamp; days in
    progress is updated minus created. Cards with unparseable stamps are
    left out of the time-based figures.
    """
    now = now or datetime.now(timezone.utc)
    week_ago = now - timedelta(days=7)
    month_ago = now - timedelta(days=30)

    last_7 = last_30 = 0
    durations = []
    for card in complete:
        finished = parse_timestamp(card.frontmatter.updated)
        if finished is None:
            continue
        if finished >= week_ago:
            last_7 += 1
        if finished >= month_ago:
            last_30 += 1
        started = parse_timestamp(card.frontmatter.created)
        if started is not None:
            durations.append((finished - started).total_seconds() / 86400)

    avg_days = round(sum(durations) / len(durations), 1) if durations else 0
    return {
        "completionsLast7Days": last_7,
        "completionsLast30Days": last_30,
        "avgDaysInProgress": avg_days,
        "wipCount": len(in_progress),
        "backlogDepth": len(upcoming),
        "blockedCount": sum(1 for c in in_progress if c.frontmatter.status == CardStatus.BLOCKED),
    }
