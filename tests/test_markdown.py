"""
Tests for the card file codec: frontmatter, checklist parsing and patching.
"""
import pytest

from devplanner import markdown
from devplanner.errors import TaskNotFoundError
from devplanner.schema import CardFrontmatter, CardPriority, CardStatus, TaskMeta


CARD = """---
title: Fix login
status: in-progress
created: '2025-03-01T09:30:00.000Z'
updated: 2025-03-02T10:00:00.000Z
tags:
- auth
- bug
---
The login form rejects valid passwords.

## Tasks
- [ ] Reproduce
  - [X] Check logs
- [x] Write test
Not a task: [ ] nope
"""


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Parsing
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_parse_frontmatter_and_body():
    """Frontmatter is typed, body is everything after the closing delimiter"""
    fm, body, tasks = markdown.parse(CARD)
    assert fm.title == "Fix login"
    assert fm.status == CardStatus.IN_PROGRESS
    assert fm.tags == ["auth", "bug"]
    assert body.startswith("The login form")
    assert body.endswith("Not a task: [ ] nope\n")


def test_timestamps_stay_strings():
    """Unquoted ISO timestamps are not turned into datetime objects"""
    fm, _, _ = markdown.parse(CARD)
    assert fm.created == "2025-03-01T09:30:00.000Z"
    assert fm.updated == "2025-03-02T10:00:00.000Z"


def test_parse_without_frontmatter():
    """Text without a leading block is all body"""
    fm, body, tasks = markdown.parse("Just text\n- [ ] one")
    assert fm.title == ""
    assert body == "Just text\n- [ ] one"
    assert [t.text for t in tasks] == ["one"]


def test_parse_tasks_document_order():
    """Indented and upper-case X items count; inline brackets don't"""
    _, _, tasks = markdown.parse(CARD)
    assert [(t.index, t.text, t.checked) for t in tasks] == [
        (0, "Reproduce", False),
        (1, "Check logs", True),
        (2, "Write test", True),
    ]


def test_task_meta_is_merged_by_position():
    fm = CardFrontmatter(
        title="T", created="c", updated="u",
        task_meta=[TaskMeta("2025-01-01T00:00:00.000Z", None)],
    )
    raw = markdown.serialize(fm, "- [ ] a\n- [ ] b")
    _, _, tasks = markdown.parse(raw)
    assert tasks[0].added_at == "2025-01-01T00:00:00.000Z"
    assert tasks[0].completed_at is None
    assert tasks[1].added_at is None


def test_task_progress():
    _, _, tasks = markdown.parse(CARD)
    progress = markdown.task_progress(tasks)
    assert progress.total == 3
    assert progress.checked == 2


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Round trip
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_round_trip_full_card():
    """serialize then parse gives back the same frontmatter and body"""
    fm = CardFrontmatter(
        title="Ship it: v2",
        created="2025-03-01T09:30:00.000Z",
        updated="2025-03-01T09:31:00.000Z",
        status=CardStatus.BLOCKED,
        priority=CardPriority.HIGH,
        tags=["release", "yes"],
        card_number=7,
        blocked_reason="Waiting on review",
        due_date="2025-04-01",
        task_meta=[TaskMeta("2025-03-01T09:30:00.000Z", "2025-03-01T09:31:00.000Z")],
    )
    body = "Intro\n\n---\n\n## Tasks\n- [x] done\n"
    parsed_fm, parsed_body, _ = markdown.parse(markdown.serialize(fm, body))
    assert parsed_fm == fm
    assert parsed_body == body


def test_round_trip_empty_body():
    fm = CardFrontmatter(title="Empty", created="a", updated="b")
    parsed_fm, parsed_body, tasks = markdown.parse(markdown.serialize(fm, ""))
    assert parsed_fm == fm
    assert parsed_body == ""
    assert tasks == []


def test_unknown_keys_survive_rewrite():
    raw = "---\ntitle: T\ncreated: a\nupdated: b\ncustom: keep me\nstatus: someday\n---\nbody"
    fm, body, _ = markdown.parse(raw)
    assert fm.status is None
    assert fm.extra == {"custom": "keep me", "status": "someday"}
    again, _, _ = markdown.parse(markdown.serialize(fm, body))
    assert again.extra == {"custom": "keep me", "status": "someday"}


def test_setting_field_replaces_raw_value():
    fm, _, _ = markdown.parse("---\ntitle: T\nstatus: someday\n---\n")
    fm.set_field("status", CardStatus.REVIEW)
    assert fm.to_dict()["status"] == "review"
    assert "status" not in fm.extra


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Body patching
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_set_task_checked_flips_only_marker():
    body = "Intro [ ] text\n  - [ ] first  \n- [x] second"
    assert markdown.set_task_checked(body, 0, True) == "Intro [ ] text\n  - [x] first  \n- [x] second"
    assert markdown.set_task_checked(body, 1, False) == "Intro [ ] text\n  - [ ] first  \n- [ ] second"


def test_set_task_checked_missing_index():
    with pytest.raises(TaskNotFoundError):
        markdown.set_task_checked("- [ ] only", 1, True)


def test_append_task_to_empty_body():
    assert markdown.append_task("", "First") == "## Tasks\n- [ ] First"


def test_append_task_adds_heading():
    assert markdown.append_task("Description\n\n", "First") == "Description\n\n## Tasks\n- [ ] First"


def test_append_task_under_existing_heading():
    body = "Description\n\n## Tasks\n- [ ] First\n"
    assert markdown.append_task(body, "Second") == "Description\n\n## Tasks\n- [ ] First\n- [ ] Second"


def test_replace_body_reattaches_tasks():
    old = "Old text\n\n## Tasks\n- [x] Alpha\n- [ ] Beta"
    new = markdown.replace_body(old, "New text\n")
    assert new == "New text\n\n## Tasks\n- [x] Alpha\n- [ ] Beta"
    assert [t.checked for t in markdown.parse_tasks(new)] == [True, False]


def test_replace_body_keeps_new_tasks_section():
    old = "Old\n\n## Tasks\n- [ ] Alpha"
    new_body = "New\n\n## Tasks\n- [ ] Gamma"
    assert markdown.replace_body(old, new_body) == new_body


def test_replace_body_with_empty_content():
    old = "Old\n\n## Tasks\n- [ ] Alpha"
    assert markdown.replace_body(old, "") == "## Tasks\n- [ ] Alpha"


def test_replace_body_without_previous_tasks():
    assert markdown.replace_body("Old", "New") == "New"
