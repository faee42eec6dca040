"""
Card file codec.

A card file is:

    ---
    title: Fix login
    created: '2025-03-01T09:30:00.000Z'
    ...
    ---
    Free-form Markdown body.

    ## Tasks
    - [ ] first
    - [x] second

Everything here is pure (no I/O) so it can be tested against literal strings.
"""
import re
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .constants import TASKS_HEADING
from .errors import TaskNotFoundError
from .schema import CardFrontmatter, TaskItem, TaskMeta, TaskProgress

TASK_LINE = re.compile(r"^\s*-\s+\[([ xX])\]\s+(.+)$")
TASK_MARKER = re.compile(r"^(\s*-\s+\[)([ xX])(\]\s+.+)$")
TASKS_HEADING_LINE = re.compile(r"^## Tasks$", re.MULTILINE)

DELIMITER = "---"


class _FrontmatterLoader(yaml.SafeLoader):
    """SafeLoader that keeps ISO timestamps as strings."""


_FrontmatterLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag != "tag:yaml.org,2002:timestamp"]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


# ── Frontmatter ──────────────────────────────────────────────


def split_frontmatter(raw: str) -> Tuple[Dict[str, Any], str]:
    """Split raw text into (metadata dict, body). No block -> ({}, raw)."""
    if not (raw.startswith(DELIMITER + "\n") or raw.startswith(DELIMITER + "\r\n")):
        return {}, raw

    lines = raw.split("\n")
    for i in range(1, len(lines)):
        if lines[i].rstrip("\r") == DELIMITER:
            block = "\n".join(lines[1:i])
            body = "\n".join(lines[i + 1:])
            data = yaml.load(block, Loader=_FrontmatterLoader) if block.strip() else {}
            if not isinstance(data, dict):
                data = {}
            return data, body

    # Opening delimiter without a closing one: treat the whole thing as body
    return {}, raw


def dump_frontmatter(data: Dict[str, Any]) -> str:
    return yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False)


def serialize(frontmatter: CardFrontmatter, body: str) -> str:
    """Inverse of parse(): frontmatter block followed by the body, verbatim."""
    return f"{DELIMITER}\n{dump_frontmatter(frontmatter.to_dict())}{DELIMITER}\n{body}"


def parse(raw: str) -> Tuple[CardFrontmatter, str, List[TaskItem]]:
    data, body = split_frontmatter(raw)
    frontmatter = CardFrontmatter.from_dict(data)
    tasks = parse_tasks(body)
    merge_task_meta(tasks, frontmatter.task_meta)
    return frontmatter, body, tasks


# ── Tasks ────────────────────────────────────────────────────


def parse_tasks(body: str) -> List[TaskItem]:
    """Checklist lines in document order, zero-indexed."""
    tasks = []
    for line in body.split("\n"):
        match = TASK_LINE.match(line)
        if match:
            tasks.append(TaskItem(
                index=len(tasks),
                text=match.group(2).strip(),
                checked=match.group(1).lower() == "x",
            ))
    return tasks


def merge_task_meta(tasks: List[TaskItem], ledger: Optional[List[TaskMeta]]) -> None:
    if not ledger:
        return
    for task in tasks:
        if task.index < len(ledger):
            meta = ledger[task.index]
            task.added_at = meta.added_at
            task.completed_at = meta.completed_at


def set_task_checked(body: str, index: int, checked: bool) -> str:
    """Flip the marker of the index-th checklist line; every other byte is kept."""
    lines = body.split("\n")
    seen = 0
    for i, line in enumerate(lines):
        match = TASK_MARKER.match(line)
        if not match:
            continue
        if seen == index:
            marker = "x" if checked else " "
            lines[i] = f"{match.group(1)}{marker}{match.group(3)}"
            return "\n".join(lines)
        seen += 1
    raise TaskNotFoundError(index)


def append_task(body: str, text: str) -> str:
    line = f"- [ ] {text}"
    if not body.strip():
        return f"{TASKS_HEADING}\n{line}"
    if TASKS_HEADING_LINE.search(body):
        return f"{body.rstrip()}\n{line}"
    return f"{body.rstrip()}\n\n{TASKS_HEADING}\n{line}"


def task_progress(tasks: List[TaskItem]) -> TaskProgress:
    return TaskProgress(total=len(tasks), checked=sum(1 for t in tasks if t.checked))


# ── Body replacement ─────────────────────────────────────────


def extract_tasks_section(body: str) -> Optional[str]:
    """The '## Tasks' heading and everything after it, or None."""
    match = TASKS_HEADING_LINE.search(body)
    if not match:
        return None
    return body[match.start():]


def replace_body(existing: str, new: str) -> str:
    """
    Replace a card body without losing its checklist.

    If the old body had a tasks section and the new one does not, the old
    section is reattached after the new text.
    """
    section = extract_tasks_section(existing)
    if section is None or TASKS_HEADING_LINE.search(new):
        return new
    if not new.strip():
        return section.lstrip()
    return f"{new.rstrip()}\n\n{section.lstrip()}"
