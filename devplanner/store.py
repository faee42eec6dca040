"""
Card storage backend (Markdown files on disk).

    <workspace>/<project>/_project.json
    <workspace>/<project>/<lane>/_order.json
    <workspace>/<project>/<lane>/<card-slug>.md

Every file read/write goes through asyncio.to_thread so a mutation really
suspends the calling task. Mutations on one card are serialized by a keyed
lock on (project, card); the lane order files and the project card counter
each get their own short-lived lock, never held while waiting for a card lock.
"""
import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from . import markdown
from .constants import ALL_LANES, CARD_SUFFIX, DEFAULT_LANE, ORDER_FILE, PROJECT_FILE, Lane
from .errors import (
    CardNotFoundError,
    LaneNotFoundError,
    OrderConflictError,
    ProjectNotFoundError,
    TaskNotFoundError,
    ValidationError,
)
from .locks import KeyedLock
from .schema import (
    Card,
    CardAssignee,
    CardFrontmatter,
    CardPriority,
    CardStatus,
    CardSummary,
    ProjectConfig,
    TaskItem,
    TaskMeta,
    next_timestamp,
    parse_timestamp,
    slugify,
    utc_now,
)

logger = logging.getLogger(__name__)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Blocking file helpers (run via asyncio.to_thread)
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def read_text(path: Path) -> str:
    with open(path, "r", encoding="utf-8", newline="") as f:
        return f.read()


def write_text(path: Path, text: str) -> None:
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(text)


def read_json(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def write_json(path: Path, data: Any) -> None:
    write_text(path, json.dumps(data, indent=2))


def list_card_files(lane_dir: Path) -> List[str]:
    """Card filenames in a lane directory, alphabetical. Missing dir -> []."""
    if not lane_dir.is_dir():
        return []
    return sorted(
        p.name for p in lane_dir.iterdir()
        if p.name.endswith(CARD_SUFFIX) and p.is_file()
    )


def check_name(value: Any, what: str) -> str:
    """Reject identifiers that could escape their directory."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{what} is required")
    if "/" in value or "\\" in value or value in (".", ".."):
        raise ValidationError(f"Invalid {what}: {value}")
    return value


# Patch key -> (frontmatter attribute, enum class)
_ENUM_PATCH_KEYS = {
    "status": ("status", CardStatus),
    "priority": ("priority", CardPriority),
    "assignee": ("assignee", CardAssignee),
}
_STRING_PATCH_KEYS = {
    "blockedReason": "blocked_reason",
    "dueDate": "due_date",
}


class CardStore:
    """File-backed store for cards, lanes and lane order."""

    def __init__(self, workspace: Union[str, Path], project_locks: Optional[KeyedLock] = None):
        self.workspace = Path(workspace)
        self.card_locks = KeyedLock("card lock")
        self.order_locks = KeyedLock("order lock")
        self.project_locks = project_locks or KeyedLock("project lock")

    # ── Paths ────────────────────────────────────────────────

    def project_dir(self, project_slug: str) -> Path:
        return self.workspace / check_name(project_slug, "project slug")

    def lane_dir(self, project_slug: str, lane: str) -> Path:
        return self.project_dir(project_slug) / check_name(lane, "lane")

    def card_path(self, project_slug: str, lane: str, card_slug: str) -> Path:
        return self.lane_dir(project_slug, lane) / f"{check_name(card_slug, 'card slug')}{CARD_SUFFIX}"

    # ── Project / lane discovery ─────────────────────────────

    async def load_project(self, project_slug: str) -> ProjectConfig:
        """Read _project.json; ProjectNotFoundError if missing or unreadable."""
        path = self.project_dir(project_slug) / PROJECT_FILE
        try:
            data = await asyncio.to_thread(read_json, path)
        except (OSError, ValueError):
            raise ProjectNotFoundError(project_slug)
        if not isinstance(data, dict):
            raise ProjectNotFoundError(project_slug)
        return ProjectConfig.from_dict(data)

    async def lanes(self, project_slug: str, config: Optional[ProjectConfig] = None) -> List[str]:
        """Configured lanes in config order, then other lane dirs on disk."""
        if config is None:
            config = await self.load_project(project_slug)
        configured = list(config.lanes) or list(ALL_LANES)

        def extra_dirs() -> List[str]:
            root = self.project_dir(project_slug)
            return sorted(
                p.name for p in root.iterdir()
                if p.is_dir() and not p.name.startswith((".", "_"))
            )

        on_disk = await asyncio.to_thread(extra_dirs)
        return configured + [d for d in on_disk if d not in configured]

    async def locate_card(self, project_slug: str, card_slug: str) -> Optional[str]:
        """Lane currently holding the card, or None."""
        check_name(card_slug, "card slug")
        for lane in await self.lanes(project_slug):
            path = self.card_path(project_slug, lane, card_slug)
            if await asyncio.to_thread(path.is_file):
                return lane
        return None

    async def _require_lane_of(self, project_slug: str, card_slug: str) -> str:
        lane = await self.locate_card(project_slug, card_slug)
        if lane is None:
            raise CardNotFoundError(card_slug)
        return lane

    # ── Order files ──────────────────────────────────────────

    async def read_order(self, project_slug: str, lane: str) -> List[str]:
        """Raw order file contents; missing or invalid -> []."""
        path = self.lane_dir(project_slug, lane) / ORDER_FILE
        try:
            data = await asyncio.to_thread(read_json, path)
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable order file {path}: {e}")
            return []
        if not isinstance(data, list):
            logger.warning(f"Ignoring malformed order file {path}")
            return []
        return [name for name in data if isinstance(name, str)]

    async def _write_order(self, project_slug: str, lane: str, order: List[str]) -> None:
        path = self.lane_dir(project_slug, lane) / ORDER_FILE
        await asyncio.to_thread(write_json, path, order)

    async def ordered_filenames(self, project_slug: str, lane: str) -> List[str]:
        """Order file entries that exist, then unlisted files alphabetically."""
        order = await self.read_order(project_slug, lane)
        files = await asyncio.to_thread(list_card_files, self.lane_dir(project_slug, lane))
        present = set(files)
        listed = []
        for name in order:
            if name in present and name not in listed:
                listed.append(name)
        return listed + [name for name in files if name not in listed]

    async def _order_remove(self, project_slug: str, lane: str, filename: str) -> None:
        async with self.order_locks.hold((project_slug, lane)):
            order = await self.read_order(project_slug, lane)
            if filename in order:
                await self._write_order(project_slug, lane, [n for n in order if n != filename])

    async def _order_insert(self, project_slug: str, lane: str, filename: str,
                            position: Optional[int] = None) -> None:
        async with self.order_locks.hold((project_slug, lane)):
            order = [n for n in await self.read_order(project_slug, lane) if n != filename]
            if position is not None and 0 <= position <= len(order):
                order.insert(position, filename)
            else:
                order.append(filename)
            await self._write_order(project_slug, lane, order)

    # ── Card file I/O ────────────────────────────────────────

    async def read_card(self, project_slug: str, lane: str, card_slug: str) -> Card:
        """Read one card from a known lane. CardNotFoundError if the file is gone."""
        path = self.card_path(project_slug, lane, card_slug)
        try:
            raw = await asyncio.to_thread(read_text, path)
        except FileNotFoundError:
            raise CardNotFoundError(card_slug)
        frontmatter, body, tasks = markdown.parse(raw)
        return Card(
            slug=card_slug,
            filename=path.name,
            lane=lane,
            frontmatter=frontmatter,
            content=body,
            tasks=tasks,
        )

    async def _write_card(self, project_slug: str, lane: str, card_slug: str,
                          frontmatter: CardFrontmatter, body: str) -> Card:
        path = self.card_path(project_slug, lane, card_slug)
        await asyncio.to_thread(write_text, path, markdown.serialize(frontmatter, body))
        tasks = markdown.parse_tasks(body)
        markdown.merge_task_meta(tasks, frontmatter.task_meta)
        return Card(
            slug=card_slug,
            filename=path.name,
            lane=lane,
            frontmatter=frontmatter,
            content=body,
            tasks=tasks,
        )

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Queries
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def list_cards(self, project_slug: str, lane: Optional[str] = None,
                         since: Union[str, datetime, None] = None,
                         stale_days: Optional[float] = None) -> List[CardSummary]:
        """
        Card summaries in display order.

        since       keep cards updated at or after this instant
        stale_days  keep cards NOT updated within the last N days
        """
        config = await self.load_project(project_slug)
        lanes = [lane] if lane else await self.lanes(project_slug, config)

        since_dt = parse_timestamp(since) if isinstance(since, str) else since
        if isinstance(since, str) and since_dt is None:
            raise ValidationError(f"Invalid timestamp: {since}")
        if since_dt is not None and since_dt.tzinfo is None:
            since_dt = since_dt.replace(tzinfo=timezone.utc)
        stale_cutoff = None
        if stale_days is not None:
            stale_cutoff = datetime.now(timezone.utc) - timedelta(days=stale_days)

        summaries = []
        for lane_name in lanes:
            for filename in await self.ordered_filenames(project_slug, lane_name):
                slug = filename[:-len(CARD_SUFFIX)]
                try:
                    card = await self.read_card(project_slug, lane_name, slug)
                except Exception as e:
                    logger.warning(f"Skipping unreadable card {project_slug}/{lane_name}/{filename}: {e}")
                    continue

                if since_dt is not None or stale_cutoff is not None:
                    updated = parse_timestamp(card.frontmatter.updated)
                    if updated is None:
                        continue
                    if since_dt is not None and updated < since_dt:
                        continue
                    if stale_cutoff is not None and updated >= stale_cutoff:
                        continue

                summaries.append(card.summary())
        return summaries

    async def get_card(self, project_slug: str, card_slug: str) -> Card:
        await self.load_project(project_slug)
        lane = await self._require_lane_of(project_slug, card_slug)
        return await self.read_card(project_slug, lane, card_slug)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Mutations
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    async def create_card(self, project_slug: str, data: Dict[str, Any]) -> Card:
        """
        Create a card from camelCase input (title required; lane, status,
        priority, assignee, tags, blockedReason, dueDate, content optional).
        """
        await self.load_project(project_slug)

        title = data.get("title")
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("Title is required")
        title = title.strip()
        base_slug = slugify(title)
        if not base_slug:
            raise ValidationError(f"Title has no usable characters: {title!r}")

        lane = check_name(data.get("lane") or DEFAULT_LANE, "lane")
        content = data.get("content") or ""
        if not isinstance(content, str):
            raise ValidationError("content must be a string")

        now = utc_now()
        frontmatter = CardFrontmatter(title=title, created=now, updated=now)
        self._apply_fields(frontmatter, data)

        while True:
            slug = await self._free_slug(project_slug, base_slug)
            release = await self.card_locks.acquire((project_slug, slug))
            try:
                # Someone else may have taken the slug while we waited
                if await self.locate_card(project_slug, slug) is not None:
                    continue

                frontmatter.card_number = await self._take_card_number(project_slug)
                lane_dir = self.lane_dir(project_slug, lane)
                await asyncio.to_thread(lane_dir.mkdir, parents=True, exist_ok=True)
                card = await self._write_card(project_slug, lane, slug, frontmatter, content)
                await self._order_insert(project_slug, lane, card.filename)
                logger.info(f"Card created: {project_slug}/{lane}/{slug}")
                return card
            finally:
                release()

    async def _free_slug(self, project_slug: str, base_slug: str) -> str:
        slug = base_slug
        counter = 2
        while await self.locate_card(project_slug, slug) is not None:
            slug = f"{base_slug}-{counter}"
            counter += 1
        return slug

    async def _take_card_number(self, project_slug: str) -> Optional[int]:
        """Assign and bump nextCardNumber. Failures are logged, never raised."""
        path = self.project_dir(project_slug) / PROJECT_FILE
        async with self.project_locks.hold(project_slug):
            try:
                data = await asyncio.to_thread(read_json, path)
                number = data.get("nextCardNumber")
                if not isinstance(number, int) or isinstance(number, bool) or number < 1:
                    number = 1
                data["nextCardNumber"] = number + 1
                data["updated"] = utc_now()
                await asyncio.to_thread(write_json, path, data)
                return number
            except (OSError, ValueError, AttributeError) as e:
                logger.error(f"Failed to update card counter for {project_slug}: {e}")
                return None

    async def update_card(self, project_slug: str, card_slug: str, patch: Dict[str, Any]) -> Card:
        """
        Merge `patch` into the card.

        key present, value non-null -> overwrite
        key present, value null     -> unset
        key absent                  -> untouched
        """
        await self.load_project(project_slug)
        async with self.card_locks.hold((project_slug, card_slug)):
            lane = await self._require_lane_of(project_slug, card_slug)
            card = await self.read_card(project_slug, lane, card_slug)
            frontmatter = card.frontmatter
            body = card.content

            if "title" in patch:
                title = patch["title"]
                if not isinstance(title, str) or not title.strip():
                    raise ValidationError("Title cannot be empty")
                frontmatter.set_field("title", title.strip())
            self._apply_fields(frontmatter, patch)

            if "content" in patch:
                new_body = patch["content"] or ""
                if not isinstance(new_body, str):
                    raise ValidationError("content must be a string")
                body = markdown.replace_body(body, new_body)

            frontmatter.set_field("updated", next_timestamp(frontmatter.updated))
            updated = await self._write_card(project_slug, lane, card_slug, frontmatter, body)
            logger.info(f"Card updated: {project_slug}/{card_slug}")
            return updated

    def _apply_fields(self, frontmatter: CardFrontmatter, patch: Dict[str, Any]) -> None:
        for key, (attr, enum_cls) in _ENUM_PATCH_KEYS.items():
            if key in patch:
                value = patch[key]
                if value is None:
                    frontmatter.clear_field(attr)
                else:
                    frontmatter.set_field(attr, enum_cls.parse(value, key))

        for key, attr in _STRING_PATCH_KEYS.items():
            if key in patch:
                value = patch[key]
                if value is not None and not isinstance(value, str):
                    raise ValidationError(f"{key} must be a string")
                frontmatter.set_field(attr, value)

        if "tags" in patch:
            tags = patch["tags"]
            if tags is None:
                frontmatter.clear_field("tags")
            elif isinstance(tags, list) and all(isinstance(t, str) for t in tags):
                frontmatter.set_field("tags", list(tags))
            else:
                raise ValidationError("tags must be a list of strings")

    async def move_card(self, project_slug: str, card_slug: str, target_lane: str,
                        position: Optional[int] = None) -> Card:
        """Move to target_lane (or reposition within the same lane)."""
        await self.load_project(project_slug)
        check_name(target_lane, "lane")
        if position is not None and (not isinstance(position, int) or isinstance(position, bool)):
            raise ValidationError("position must be an integer")

        async with self.card_locks.hold((project_slug, card_slug)):
            source_lane = await self._require_lane_of(project_slug, card_slug)
            card = await self.read_card(project_slug, source_lane, card_slug)
            card.frontmatter.set_field("updated", next_timestamp(card.frontmatter.updated))

            target_dir = self.lane_dir(project_slug, target_lane)
            await asyncio.to_thread(target_dir.mkdir, parents=True, exist_ok=True)
            moved = await self._write_card(project_slug, target_lane, card_slug,
                                           card.frontmatter, card.content)

            if source_lane != target_lane:
                await self._order_remove(project_slug, source_lane, card.filename)
                source_path = self.card_path(project_slug, source_lane, card_slug)
                await asyncio.to_thread(source_path.unlink, missing_ok=True)

            await self._order_insert(project_slug, target_lane, moved.filename, position)
            logger.info(f"Card moved: {project_slug}/{card_slug} from {source_lane} to {target_lane}")
            return moved

    async def archive_card(self, project_slug: str, card_slug: str) -> Card:
        return await self.move_card(project_slug, card_slug, Lane.ARCHIVE)

    async def delete_card(self, project_slug: str, card_slug: str) -> str:
        """Permanently delete. Returns the lane the card was in."""
        await self.load_project(project_slug)
        async with self.card_locks.hold((project_slug, card_slug)):
            lane = await self._require_lane_of(project_slug, card_slug)
            path = self.card_path(project_slug, lane, card_slug)
            await asyncio.to_thread(path.unlink, missing_ok=True)
            await self._order_remove(project_slug, lane, path.name)
            logger.info(f"Card deleted: {project_slug}/{lane}/{card_slug}")
            return lane

    async def reorder_cards(self, project_slug: str, lane: str, order: List[str]) -> List[str]:
        """Replace a lane's order. Unlisted files are appended alphabetically."""
        await self.load_project(project_slug)
        lane_dir = self.lane_dir(project_slug, lane)
        if not await asyncio.to_thread(lane_dir.is_dir):
            raise LaneNotFoundError(lane)
        if not isinstance(order, list):
            raise ValidationError("order must be a list of filenames")
        for name in order:
            if not isinstance(name, str) or "/" in name or "\\" in name:
                raise ValidationError(f"Invalid filename: {name}")

        async with self.order_locks.hold((project_slug, lane)):
            files = await asyncio.to_thread(list_card_files, lane_dir)
            present = set(files)
            explicit = []
            for name in order:
                if name not in present:
                    raise OrderConflictError(name)
                if name not in explicit:
                    explicit.append(name)
            result = explicit + [name for name in files if name not in explicit]
            await self._write_order(project_slug, lane, result)

        logger.info(f"Lane reordered: {project_slug}/{lane} ({len(result)} cards)")
        return result

    # ── Tasks ────────────────────────────────────────────────

    async def add_task(self, project_slug: str, card_slug: str, text: str) -> TaskItem:
        """Append a checklist item and return it."""
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Task text is required")
        text = text.strip()
        if "\n" in text or "\r" in text:
            raise ValidationError("Task text must be a single line")

        await self.load_project(project_slug)
        async with self.card_locks.hold((project_slug, card_slug)):
            lane = await self._require_lane_of(project_slug, card_slug)
            card = await self.read_card(project_slug, lane, card_slug)
            frontmatter = card.frontmatter

            body = markdown.append_task(card.content, text)
            index = len(markdown.parse_tasks(body)) - 1
            now = next_timestamp(frontmatter.updated)

            ledger = list(frontmatter.task_meta or [])
            while len(ledger) < index:
                ledger.append(TaskMeta())
            entry = TaskMeta(added_at=now, completed_at=None)
            if len(ledger) == index:
                ledger.append(entry)
            else:
                ledger[index] = entry
            frontmatter.set_field("task_meta", ledger)
            frontmatter.set_field("updated", now)

            saved = await self._write_card(project_slug, lane, card_slug, frontmatter, body)
            logger.info(f"Task added: {project_slug}/{card_slug} #{index}")
            return saved.tasks[index]

    async def set_task_checked(self, project_slug: str, card_slug: str,
                               index: int, checked: bool) -> TaskItem:
        """Toggle one checklist item by its current position."""
        if not isinstance(index, int) or isinstance(index, bool) or index < 0:
            raise TaskNotFoundError(index)

        await self.load_project(project_slug)
        async with self.card_locks.hold((project_slug, card_slug)):
            lane = await self._require_lane_of(project_slug, card_slug)
            card = await self.read_card(project_slug, lane, card_slug)
            frontmatter = card.frontmatter

            body = markdown.set_task_checked(card.content, index, bool(checked))
            now = next_timestamp(frontmatter.updated)

            ledger = list(frontmatter.task_meta or [])
            while len(ledger) <= index:
                ledger.append(TaskMeta())
            ledger[index] = TaskMeta(
                added_at=ledger[index].added_at,
                completed_at=now if checked else None,
            )
            frontmatter.set_field("task_meta", ledger)
            frontmatter.set_field("updated", now)

            saved = await self._write_card(project_slug, lane, card_slug, frontmatter, body)
            logger.info(f"Task {'checked' if checked else 'unchecked'}: {project_slug}/{card_slug} #{index}")
            return saved.tasks[index]
