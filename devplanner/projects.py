"""
Project configuration and workspace preferences.

ProjectService      CRUD over <workspace>/<project>/_project.json
PreferencesService  <workspace>/_preferences.json
"""
import asyncio
import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .constants import ALL_LANES, DEFAULT_LANE_CONFIG, ORDER_FILE, PREFERENCES_FILE, PROJECT_FILE
from .errors import (
    PrefixConflictError,
    ProjectExistsError,
    ProjectNotFoundError,
    ValidationError,
)
from .locks import KeyedLock
from .schema import PREFIX_PATTERN, LaneConfig, ProjectConfig, generate_prefix, slugify, utc_now
from .store import check_name, list_card_files, read_json, write_json

logger = logging.getLogger(__name__)

_HEX_COLOR = re.compile(r"^#[0-9a-fA-F]{3,8}$")


@dataclass
class ProjectSummary:
    slug: str
    config: ProjectConfig
    card_counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {"slug": self.slug}
        data.update(self.config.to_dict())
        data["cardCounts"] = dict(self.card_counts)
        return data


class ProjectService:
    """Project CRUD. Shares the per-project lock with the card store's counter."""

    def __init__(self, workspace: Union[str, Path], project_locks: Optional[KeyedLock] = None):
        self.workspace = Path(workspace)
        self.project_locks = project_locks or KeyedLock("project lock")

    def _config_path(self, slug: str) -> Path:
        return self.workspace / check_name(slug, "project slug") / PROJECT_FILE

    def _read_config(self, slug: str) -> Optional[ProjectConfig]:
        try:
            data = read_json(self._config_path(slug))
        except (OSError, ValueError):
            return None
        if not isinstance(data, dict):
            return None
        return ProjectConfig.from_dict(data)

    def _scan(self) -> List[ProjectSummary]:
        if not self.workspace.is_dir():
            return []
        summaries = []
        for entry in sorted(self.workspace.iterdir()):
            if not entry.is_dir() or entry.name.startswith((".", "_")):
                continue
            config = self._read_config(entry.name)
            if config is None:
                continue
            lanes = list(config.lanes) or list(ALL_LANES)
            counts = {lane: len(list_card_files(entry / lane)) for lane in lanes}
            summaries.append(ProjectSummary(slug=entry.name, config=config, card_counts=counts))
        return summaries

    async def _taken_prefixes(self, exclude: Optional[str] = None) -> List[str]:
        summaries = await asyncio.to_thread(self._scan)
        return [s.config.prefix for s in summaries if s.config.prefix and s.slug != exclude]

    async def _validate_prefix(self, prefix: Any, exclude: Optional[str] = None) -> str:
        if not isinstance(prefix, str) or not PREFIX_PATTERN.match(prefix):
            raise ValidationError("Prefix must be 2-4 uppercase letters")
        if prefix in await self._taken_prefixes(exclude):
            raise PrefixConflictError(prefix)
        return prefix

    # ── Queries ──────────────────────────────────────────────

    async def list_projects(self, include_archived: bool = False) -> List[ProjectSummary]:
        """Newest-created first."""
        summaries = await asyncio.to_thread(self._scan)
        if not include_archived:
            summaries = [s for s in summaries if not s.config.archived]
        summaries.sort(key=lambda s: s.config.created, reverse=True)
        return summaries

    async def get_project(self, slug: str) -> ProjectConfig:
        config = await asyncio.to_thread(self._read_config, slug)
        if config is None:
            raise ProjectNotFoundError(slug)
        return config

    # ── Mutations ────────────────────────────────────────────

    async def create_project(self, name: str, description: Optional[str] = None,
                             prefix: Optional[str] = None) -> ProjectSummary:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Project name is required")
        name = name.strip()
        slug = slugify(name)
        if not slug:
            raise ValidationError(f"Project name has no usable characters: {name!r}")

        async with self.project_locks.hold(slug):
            project_dir = self.workspace / slug
            if await asyncio.to_thread(project_dir.exists):
                raise ProjectExistsError(slug)

            if prefix is not None:
                prefix = await self._validate_prefix(prefix)
            else:
                prefix = generate_prefix(name, await self._taken_prefixes())

            now = utc_now()
            config = ProjectConfig(
                name=name,
                description=description,
                created=now,
                updated=now,
                archived=False,
                lanes={lane: LaneConfig.from_dict(cfg) for lane, cfg in DEFAULT_LANE_CONFIG.items()},
                prefix=prefix,
                next_card_number=1,
            )

            def write_tree() -> None:
                project_dir.mkdir(parents=True)
                for lane in config.lanes:
                    (project_dir / lane).mkdir()
                    write_json(project_dir / lane / ORDER_FILE, [])
                write_json(project_dir / PROJECT_FILE, config.to_dict())

            await asyncio.to_thread(write_tree)

        logger.info(f"Project created: {slug} ({prefix})")
        return ProjectSummary(slug=slug, config=config, card_counts={lane: 0 for lane in config.lanes})

    async def update_project(self, slug: str, updates: Dict[str, Any]) -> ProjectConfig:
        """Merge name, description, archived, lanes and prefix; bumps updated."""
        async with self.project_locks.hold(slug):
            config = await self.get_project(slug)

            if "name" in updates:
                name = updates["name"]
                if not isinstance(name, str) or not name.strip():
                    raise ValidationError("Project name cannot be empty")
                config.name = name.strip()
            if "description" in updates:
                description = updates["description"]
                if description is not None and not isinstance(description, str):
                    raise ValidationError("description must be a string")
                config.description = description
            if "archived" in updates:
                if not isinstance(updates["archived"], bool):
                    raise ValidationError("archived must be a boolean")
                config.archived = updates["archived"]
            if "prefix" in updates:
                prefix = updates["prefix"]
                config.prefix = None if prefix is None else await self._validate_prefix(prefix, exclude=slug)
            if "lanes" in updates:
                self._merge_lanes(config, updates["lanes"])

            config.updated = utc_now()
            await asyncio.to_thread(write_json, self._config_path(slug), config.to_dict())

        logger.info(f"Project updated: {slug}")
        return config

    @staticmethod
    def _merge_lanes(config: ProjectConfig, lanes: Any) -> None:
        if not isinstance(lanes, dict):
            raise ValidationError("lanes must be an object")
        for lane, changes in lanes.items():
            check_name(lane, "lane")
            if not isinstance(changes, dict):
                raise ValidationError(f"Invalid lane config for {lane}")
            current = config.lanes.get(lane) or LaneConfig(display_name=lane)
            if "displayName" in changes:
                if not isinstance(changes["displayName"], str) or not changes["displayName"].strip():
                    raise ValidationError("displayName cannot be empty")
                current.display_name = changes["displayName"]
            if "color" in changes:
                if not isinstance(changes["color"], str) or not _HEX_COLOR.match(changes["color"]):
                    raise ValidationError(f"Invalid color: {changes['color']}")
                current.color = changes["color"]
            if "collapsed" in changes:
                current.collapsed = bool(changes["collapsed"])
            config.lanes[lane] = current

    async def archive_project(self, slug: str) -> ProjectConfig:
        return await self.update_project(slug, {"archived": True})

    async def delete_project(self, slug: str) -> None:
        """Remove the project directory and everything in it."""
        await self.get_project(slug)
        async with self.project_locks.hold(slug):
            await asyncio.to_thread(shutil.rmtree, self.workspace / slug)
        logger.warning(f"Project permanently deleted: {slug}")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Preferences
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

DEFAULT_PREFERENCES = {"lastSelectedProject": None}


class PreferencesService:
    """Workspace-level UI preferences."""

    def __init__(self, workspace: Union[str, Path]):
        self.path = Path(workspace) / PREFERENCES_FILE
        self._lock = asyncio.Lock()

    async def get_preferences(self) -> Dict[str, Any]:
        try:
            data = await asyncio.to_thread(read_json, self.path)
        except FileNotFoundError:
            return dict(DEFAULT_PREFERENCES)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable preferences file: {e}")
            return dict(DEFAULT_PREFERENCES)
        prefs = dict(DEFAULT_PREFERENCES)
        if isinstance(data, dict):
            prefs.update(data)
        return prefs

    async def update_preferences(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(updates, dict):
            raise ValidationError("Preferences must be an object")
        last = updates.get("lastSelectedProject")
        if last is not None and not isinstance(last, str):
            raise ValidationError("lastSelectedProject must be a string or null")

        async with self._lock:
            prefs = await self.get_preferences()
            prefs.update(updates)
            await asyncio.to_thread(write_json, self.path, prefs)
        return prefs
