"""
Tests for project CRUD, prefixes, slugs and workspace preferences.
"""
import asyncio
import json

import pytest

from devplanner.constants import ALL_LANES
from devplanner.errors import (
    PrefixConflictError,
    ProjectExistsError,
    ProjectNotFoundError,
    ValidationError,
)
from devplanner.projects import PreferencesService
from devplanner.schema import generate_prefix, slugify


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Slugs and prefixes
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@pytest.mark.parametrize("text,expected", [
    ("My Card Title!", "my-card-title"),
    ("  API/Endpoints (v2) ", "api-endpoints-v2"),
    ("snake_case__name", "snake-case-name"),
    ("--dashes--", "dashes"),
    ("!!!", ""),
])
def test_slugify(text, expected):
    assert slugify(text) == expected


def test_generate_prefix():
    assert generate_prefix("Test Project") == "TP"
    assert generate_prefix("One Two Three Four Five") == "OTTF"
    assert generate_prefix("Website") == "WE"


def test_generate_prefix_collisions():
    assert generate_prefix("Tiny Planner", ["TP"]) == "TIPL"
    assert generate_prefix("Tiny Planner", ["TP", "TIPL"]) == "TINP"
    assert generate_prefix("Website", ["WE"]) == "WE2"
    assert generate_prefix("Website", ["WE", "WE2"]) == "WE3"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Project service
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_create_project_layout(projects, workspace):
    summary = asyncio.run(projects.create_project("Test Project", description="Demo"))
    assert summary.slug == "test-project"
    assert summary.config.prefix == "TP"
    assert summary.config.next_card_number == 1

    root = workspace / "test-project"
    data = json.loads((root / "_project.json").read_text())
    assert data["name"] == "Test Project"
    assert data["description"] == "Demo"
    assert data["archived"] is False
    assert list(data["lanes"]) == ALL_LANES
    for lane in ALL_LANES:
        assert json.loads((root / lane / "_order.json").read_text()) == []


def test_duplicate_project_rejected(projects, project):
    with pytest.raises(ProjectExistsError):
        asyncio.run(projects.create_project("test project"))


def test_project_name_required(projects):
    with pytest.raises(ValidationError):
        asyncio.run(projects.create_project("  "))


def test_explicit_prefix_validation(projects, project):
    with pytest.raises(ValidationError):
        asyncio.run(projects.create_project("Other", prefix="toolong"))
    with pytest.raises(PrefixConflictError):
        asyncio.run(projects.create_project("Other", prefix="TP"))
    summary = asyncio.run(projects.create_project("Other", prefix="OTH"))
    assert summary.config.prefix == "OTH"


def test_generated_prefix_avoids_archived_projects(projects, project):
    asyncio.run(projects.archive_project(project))
    summary = asyncio.run(projects.create_project("Tiny Planner"))
    assert summary.config.prefix == "TIPL"


def test_list_projects_sorted_and_filtered(projects, workspace):
    async def scenario():
        await projects.create_project("Older")
        await projects.create_project("Newer")
        await projects.create_project("Hidden")
        await projects.archive_project("hidden")

    asyncio.run(scenario())
    older = workspace / "older" / "_project.json"
    data = json.loads(older.read_text())
    data["created"] = "2020-01-01T00:00:00.000Z"
    older.write_text(json.dumps(data))
    (workspace / "not-a-project").mkdir()

    visible = asyncio.run(projects.list_projects())
    assert [p.slug for p in visible] == ["newer", "older"]
    everything = asyncio.run(projects.list_projects(include_archived=True))
    assert {p.slug for p in everything} == {"older", "newer", "hidden"}


def test_card_counts(projects, store, project):
    asyncio.run(store.create_card(project, {"title": "one"}))
    summary = asyncio.run(projects.list_projects())[0]
    assert summary.to_dict()["cardCounts"]["01-upcoming"] == 1
    assert summary.to_dict()["slug"] == project


def test_update_project(projects, project):
    config = asyncio.run(projects.update_project(project, {
        "name": "Renamed",
        "description": "New",
        "lanes": {"01-upcoming": {"displayName": "Backlog", "collapsed": True}},
    }))
    assert config.name == "Renamed"
    assert config.lanes["01-upcoming"].display_name == "Backlog"
    assert config.lanes["01-upcoming"].color == "#6b7280"
    assert config.lanes["01-upcoming"].collapsed is True

    again = asyncio.run(projects.get_project(project))
    assert again.description == "New"


def test_update_project_rejects_bad_color(projects, project):
    with pytest.raises(ValidationError):
        asyncio.run(projects.update_project(project, {"lanes": {"01-upcoming": {"color": "blue"}}}))


def test_delete_project(projects, project, workspace):
    asyncio.run(projects.delete_project(project))
    assert not (workspace / project).exists()
    with pytest.raises(ProjectNotFoundError):
        asyncio.run(projects.get_project(project))


def test_project_counter_shared_with_store(projects, store, project):
    """Cards created after a project edit still get sequential numbers"""
    async def scenario():
        first = await store.create_card(project, {"title": "one"})
        await projects.update_project(project, {"name": "Edited"})
        second = await store.create_card(project, {"title": "two"})
        return first, second

    first, second = asyncio.run(scenario())
    assert (first.frontmatter.card_number, second.frontmatter.card_number) == (1, 2)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Preferences
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_preferences_defaults_and_update(workspace):
    prefs = PreferencesService(workspace)
    assert asyncio.run(prefs.get_preferences()) == {"lastSelectedProject": None}

    updated = asyncio.run(prefs.update_preferences({"lastSelectedProject": "test-project"}))
    assert updated["lastSelectedProject"] == "test-project"
    stored = json.loads((workspace / "_preferences.json").read_text())
    assert stored == {"lastSelectedProject": "test-project"}


def test_preferences_validation(workspace):
    prefs = PreferencesService(workspace)
    with pytest.raises(ValidationError):
        asyncio.run(prefs.update_preferences({"lastSelectedProject": 5}))
