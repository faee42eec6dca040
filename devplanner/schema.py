"""
Card, task and project schema.

A card file is YAML frontmatter + Markdown body. Frontmatter keys on disk are
camelCase (cardNumber, blockedReason, dueDate, taskMeta); the dataclasses here
use snake_case and convert in to_dict() / from_dict().

Unknown frontmatter keys, and known keys holding values we cannot interpret,
are kept verbatim in `extra` so a rewrite never drops them.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ValidationError

logger = logging.getLogger(__name__)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Timestamps
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def format_timestamp(moment: datetime) -> str:
    """ISO-8601 UTC with millisecond precision, e.g. 2025-03-01T09:30:00.000Z"""
    text = moment.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return text.replace("+00:00", "Z")


def utc_now() -> str:
    return format_timestamp(datetime.now(timezone.utc))


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string. Returns None if it isn't one."""
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        moment = datetime.fromisoformat(text)
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def next_timestamp(previous: Optional[str] = None) -> str:
    """Current time, nudged forward so it is strictly after `previous`."""
    now = datetime.now(timezone.utc)
    now = now.replace(microsecond=now.microsecond // 1000 * 1000)
    prev = parse_timestamp(previous)
    if prev is not None and now <= prev:
        now = prev + timedelta(milliseconds=1)
    return format_timestamp(now)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Slugs and prefixes
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def slugify(text: str) -> str:
    """
    "My Card Title!"      -> "my-card-title"
    "API/Endpoints (v2)"  -> "api-endpoints-v2"
    """
    slug = text.lower().strip()
    slug = re.sub(r"[^\w\s-]", " ", slug, flags=re.ASCII)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


PREFIX_PATTERN = re.compile(r"^[A-Z]{2,4}$")


def generate_prefix(name: str, existing: Optional[List[str]] = None) -> str:
    """
    Short uppercase project prefix used in card identifiers (e.g. "DP-12").

    First letter of each word (max 4), or the first two letters of a
    single-word name. On collision, try 2 and 3 letters per word, then
    append a counter.
    """
    taken = set(existing or [])
    words = [w for w in name.strip().split() if w]
    if not words:
        raise ValidationError("Cannot generate a prefix from an empty name")

    if len(words) == 1:
        prefix = words[0][:2].upper()
    else:
        prefix = "".join(w[0].upper() for w in words)[:4]

    if prefix not in taken:
        return prefix

    if len(words) > 1:
        for chars in (2, 3):
            variation = "".join(w[:chars].upper() for w in words)[:4]
            if variation not in taken:
                return variation

    counter = 2
    while f"{prefix}{counter}" in taken:
        counter += 1
    return f"{prefix}{counter}"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Enumerations
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class _ValueEnum(Enum):

    @classmethod
    def parse(cls, value: Any, field_name: str):
        """Validate caller input. Raises ValidationError on unknown values."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(m.value for m in cls)
            raise ValidationError(
                f"Invalid {field_name}: {value!r} (expected one of: {allowed})"
            )


class CardStatus(_ValueEnum):
    IN_PROGRESS = "in-progress"
    BLOCKED = "blocked"
    REVIEW = "review"
    TESTING = "testing"


class CardPriority(_ValueEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CardAssignee(_ValueEnum):
    USER = "user"
    AGENT = "agent"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Cards
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass
class TaskMeta:
    """Timestamp ledger entry for the checklist item at the same position."""
    added_at: Optional[str] = None
    completed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"addedAt": self.added_at, "completedAt": self.completed_at}

    @classmethod
    def from_dict(cls, data: Any) -> "TaskMeta":
        if not isinstance(data, dict):
            return cls()
        return cls(added_at=data.get("addedAt"), completed_at=data.get("completedAt"))


# dataclass attribute -> frontmatter key
_ENUM_FIELDS = {
    "status": ("status", CardStatus),
    "priority": ("priority", CardPriority),
    "assignee": ("assignee", CardAssignee),
}
_STRING_FIELDS = {
    "blocked_reason": "blockedReason",
    "due_date": "dueDate",
}
FRONTMATTER_KEYS = {
    "title": "title",
    "status": "status",
    "priority": "priority",
    "assignee": "assignee",
    "created": "created",
    "updated": "updated",
    "tags": "tags",
    "card_number": "cardNumber",
    "blocked_reason": "blockedReason",
    "due_date": "dueDate",
    "task_meta": "taskMeta",
}


@dataclass
class CardFrontmatter:
    """Structured metadata block at the top of a card file."""

    title: str
    created: str = ""
    updated: str = ""
    status: Optional[CardStatus] = None
    priority: Optional[CardPriority] = None
    assignee: Optional[CardAssignee] = None
    tags: Optional[List[str]] = None
    card_number: Optional[int] = None
    blocked_reason: Optional[str] = None
    due_date: Optional[str] = None
    task_meta: Optional[List[TaskMeta]] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def set_field(self, attr: str, value: Any) -> None:
        """Set a known field; a raw value of the same key in `extra` is dropped."""
        setattr(self, attr, value)
        self.extra.pop(FRONTMATTER_KEYS[attr], None)

    def clear_field(self, attr: str) -> None:
        """Restore a field to unset (not to a default)."""
        self.set_field(attr, None)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"title": self.title}
        for attr in ("status", "priority", "assignee"):
            value = getattr(self, attr)
            if value is not None:
                data[attr] = value.value
        data["created"] = self.created
        data["updated"] = self.updated
        if self.tags is not None:
            data["tags"] = list(self.tags)
        if self.card_number is not None:
            data["cardNumber"] = self.card_number
        if self.blocked_reason is not None:
            data["blockedReason"] = self.blocked_reason
        if self.due_date is not None:
            data["dueDate"] = self.due_date
        if self.task_meta is not None:
            data["taskMeta"] = [m.to_dict() for m in self.task_meta]
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CardFrontmatter":
        """Deserialize. Values that don't fit a known field go to `extra`."""
        known = set(FRONTMATTER_KEYS.values())
        extra = {k: v for k, v in data.items() if k not in known}

        title = data.get("title")
        if title is None:
            title = ""
        elif not isinstance(title, str):
            title = str(title)

        fm = cls(
            title=title,
            created=data.get("created") if isinstance(data.get("created"), str) else "",
            updated=data.get("updated") if isinstance(data.get("updated"), str) else "",
            extra=extra,
        )

        for attr, (key, enum_cls) in _ENUM_FIELDS.items():
            if key not in data or data[key] is None:
                continue
            try:
                setattr(fm, attr, enum_cls(data[key]))
            except ValueError:
                logger.warning(f"Ignoring unknown {key} value: {data[key]!r}")
                extra[key] = data[key]

        for attr, key in _STRING_FIELDS.items():
            value = data.get(key)
            if value is None:
                continue
            if isinstance(value, str):
                setattr(fm, attr, value)
            else:
                extra[key] = value

        tags = data.get("tags")
        if isinstance(tags, list):
            fm.tags = [str(t) for t in tags]
        elif tags is not None:
            extra["tags"] = tags

        number = data.get("cardNumber")
        if isinstance(number, int) and not isinstance(number, bool):
            fm.card_number = number
        elif number is not None:
            extra["cardNumber"] = number

        meta = data.get("taskMeta")
        if isinstance(meta, list):
            fm.task_meta = [TaskMeta.from_dict(m) for m in meta]
        elif meta is not None:
            extra["taskMeta"] = meta

        return fm


@dataclass
class TaskItem:
    """One checklist line. `index` is positional, not a stable identity."""
    index: int
    text: str
    checked: bool
    added_at: Optional[str] = None
    completed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"index": self.index, "text": self.text, "checked": self.checked}
        if self.added_at is not None or self.completed_at is not None:
            data["addedAt"] = self.added_at
            data["completedAt"] = self.completed_at
        return data


@dataclass
class TaskProgress:
    total: int = 0
    checked: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"total": self.total, "checked": self.checked}


@dataclass
class CardSummary:
    """Lightweight projection used in listings and events (no body)."""
    slug: str
    filename: str
    lane: str
    frontmatter: CardFrontmatter
    task_progress: TaskProgress

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slug": self.slug,
            "filename": self.filename,
            "lane": self.lane,
            "frontmatter": self.frontmatter.to_dict(),
            "taskProgress": self.task_progress.to_dict(),
        }


@dataclass
class Card:
    slug: str
    filename: str
    lane: str
    frontmatter: CardFrontmatter
    content: str = ""
    tasks: List[TaskItem] = field(default_factory=list)

    def summary(self) -> CardSummary:
        checked = sum(1 for t in self.tasks if t.checked)
        return CardSummary(
            slug=self.slug,
            filename=self.filename,
            lane=self.lane,
            frontmatter=self.frontmatter,
            task_progress=TaskProgress(total=len(self.tasks), checked=checked),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slug": self.slug,
            "filename": self.filename,
            "lane": self.lane,
            "frontmatter": self.frontmatter.to_dict(),
            "content": self.content,
            "tasks": [t.to_dict() for t in self.tasks],
        }


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Projects
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass
class LaneConfig:
    display_name: str
    color: str = "#6b7280"
    collapsed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"displayName": self.display_name, "color": self.color, "collapsed": self.collapsed}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LaneConfig":
        return cls(
            display_name=data.get("displayName", ""),
            color=data.get("color", "#6b7280"),
            collapsed=bool(data.get("collapsed", False)),
        )


_PROJECT_KEYS = {"name", "description", "created", "updated", "archived", "lanes", "prefix", "nextCardNumber"}


@dataclass
class ProjectConfig:
    """Contents of <project>/_project.json."""
    name: str
    created: str = ""
    updated: str = ""
    archived: bool = False
    lanes: Dict[str, LaneConfig] = field(default_factory=dict)
    description: Optional[str] = None
    prefix: Optional[str] = None
    next_card_number: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name}
        if self.description is not None:
            data["description"] = self.description
        data["created"] = self.created
        data["updated"] = self.updated
        data["archived"] = self.archived
        data["lanes"] = {slug: lane.to_dict() for slug, lane in self.lanes.items()}
        if self.prefix is not None:
            data["prefix"] = self.prefix
        if self.next_card_number is not None:
            data["nextCardNumber"] = self.next_card_number
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectConfig":
        lanes = data.get("lanes") or {}
        number = data.get("nextCardNumber")
        return cls(
            name=data.get("name", ""),
            description=data.get("description"),
            created=data.get("created", ""),
            updated=data.get("updated", ""),
            archived=bool(data.get("archived", False)),
            lanes={slug: LaneConfig.from_dict(cfg or {}) for slug, cfg in lanes.items()},
            prefix=data.get("prefix"),
            next_card_number=number if isinstance(number, int) and not isinstance(number, bool) else None,
            extra={k: v for k, v in data.items() if k not in _PROJECT_KEYS},
        )


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# History
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class HistoryAction:
    """All valid history action values."""
    TASK_ADDED = "task:added"
    TASK_COMPLETED = "task:completed"
    TASK_UNCOMPLETED = "task:uncompleted"
    CARD_CREATED = "card:created"
    CARD_MOVED = "card:moved"
    CARD_UPDATED = "card:updated"
    CARD_ARCHIVED = "card:archived"
    CARD_DELETED = "card:deleted"
    FILE_UPLOADED = "file:uploaded"
    FILE_UPDATED = "file:updated"
    FILE_DELETED = "file:deleted"
    FILE_ASSOCIATED = "file:associated"
    FILE_DISASSOCIATED = "file:disassociated"

    @classmethod
    def all_actions(cls) -> set:
        return {
            v for k, v in vars(cls).items()
            if isinstance(v, str) and not k.startswith("_")
        }


@dataclass
class HistoryEvent:
    id: str
    project_slug: str
    timestamp: str
    action: str
    description: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "projectSlug": self.project_slug,
            "timestamp": self.timestamp,
            "action": self.action,
            "description": self.description,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEvent":
        return cls(
            id=data.get("id", ""),
            project_slug=data.get("projectSlug", ""),
            timestamp=data.get("timestamp", ""),
            action=data.get("action", ""),
            description=data.get("description", ""),
            metadata=data.get("metadata") or {},
        )
