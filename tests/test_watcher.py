"""
Tests for the workspace watcher: path rules, move detection, event mapping.

Most processing is driven through handle_change()/schedule() directly; one
test runs a real watchdog observer over a rename.
"""
import asyncio
import json
import os

import pytest

from devplanner.constants import Lane
from devplanner.watcher import FileWatcher, classify, is_relevant

from conftest import RecordingBroadcaster

WINDOW_MS = 60


def make_watcher(workspace, store, **kwargs):
    broadcaster = RecordingBroadcaster()
    watcher = FileWatcher(workspace, store, broadcaster,
                          debounce_ms=kwargs.get("debounce_ms", 10), move_window_ms=WINDOW_MS)
    return watcher, broadcaster


async def settle(watcher):
    await asyncio.sleep(WINDOW_MS / 1000 * 3)
    await watcher.drain()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Path rules
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@pytest.mark.parametrize("path,relevant", [
    ("p/01-upcoming/card.md", True),
    ("p/01-upcoming/_order.json", True),
    ("p/_project.json", True),
    ("p/01-upcoming/card.md.swp", False),
    ("p/01-upcoming/.card.md.tmp", False),
    ("p/01-upcoming/card.md~", False),
    ("p/01-upcoming/card.bak.md", False),
    ("p/_history.json", False),
    ("p/notes.txt", False),
])
def test_is_relevant(path, relevant):
    assert is_relevant(path) is relevant


def test_classify():
    assert classify("p/_project.json").kind == "project"
    order = classify("p/02-in-progress/_order.json")
    assert (order.kind, order.project_slug, order.lane) == ("order", "p", "02-in-progress")
    card = classify("p/02-in-progress/fix-bug.md")
    assert (card.kind, card.lane, card.card_slug) == ("card", "02-in-progress", "fix-bug")
    assert classify("p/lane/deeper/card.md") is None
    assert classify("top.md") is None
    assert classify("p/card.md") is None
    assert classify("p/_files/notes.md") is None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Card files
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_move_between_lanes_is_one_event(store, project, workspace):
    """Vanish from 02-in-progress, appear in 03-complete -> card:moved only"""
    asyncio.run(store.create_card(project, {"title": "foo", "lane": Lane.IN_PROGRESS}))
    watcher, broadcaster = make_watcher(workspace, store)

    async def scenario():
        src = workspace / project / Lane.IN_PROGRESS / "foo.md"
        dst = workspace / project / Lane.COMPLETE / "foo.md"
        os.rename(src, dst)
        await watcher.handle_change(f"{project}/{Lane.IN_PROGRESS}/foo.md")
        await asyncio.sleep(WINDOW_MS / 1000 / 3)
        await watcher.handle_change(f"{project}/{Lane.COMPLETE}/foo.md")
        await settle(watcher)

    asyncio.run(scenario())
    assert broadcaster.emitted == [
        ("card:moved", project, {"slug": "foo", "sourceLane": Lane.IN_PROGRESS, "targetLane": Lane.COMPLETE}),
    ]
    assert watcher.pending_deletes == {}


def test_observer_rename_across_lanes(store, project, workspace):
    """A real rename seen through watchdog ends in card:moved, never card:deleted"""
    asyncio.run(store.create_card(project, {"title": "foo", "lane": Lane.IN_PROGRESS}))
    broadcaster = RecordingBroadcaster()
    watcher = FileWatcher(workspace, store, broadcaster, debounce_ms=50, move_window_ms=300)

    async def scenario():
        watcher.start()
        try:
            await asyncio.sleep(0.2)
            os.rename(workspace / project / Lane.IN_PROGRESS / "foo.md",
                      workspace / project / Lane.COMPLETE / "foo.md")
            for _ in range(30):
                await asyncio.sleep(0.1)
                if "card:moved" in broadcaster.types() and not watcher.pending_deletes:
                    break
            await watcher.drain()
        finally:
            watcher.stop()

    asyncio.run(scenario())
    assert "card:deleted" not in broadcaster.types()
    moves = [e for e in broadcaster.emitted if e[0] == "card:moved"]
    assert moves == [
        ("card:moved", project, {"slug": "foo", "sourceLane": Lane.IN_PROGRESS, "targetLane": Lane.COMPLETE}),
    ]


def test_delete_after_window(store, project, workspace):
    asyncio.run(store.create_card(project, {"title": "doomed"}))
    watcher, broadcaster = make_watcher(workspace, store)

    async def scenario():
        (workspace / project / Lane.UPCOMING / "doomed.md").unlink()
        await watcher.handle_change(f"{project}/{Lane.UPCOMING}/doomed.md")
        assert broadcaster.emitted == []
        await settle(watcher)

    asyncio.run(scenario())
    assert broadcaster.emitted == [("card:deleted", project, {"slug": "doomed", "lane": Lane.UPCOMING})]


def test_same_lane_reappearance_is_update(store, project, workspace):
    """Editors that save by delete+recreate produce card:updated, not delete"""
    asyncio.run(store.create_card(project, {"title": "draft"}))
    watcher, broadcaster = make_watcher(workspace, store)
    path = workspace / project / Lane.UPCOMING / "draft.md"

    async def scenario():
        text = path.read_text()
        path.unlink()
        await watcher.handle_change(f"{project}/{Lane.UPCOMING}/draft.md")
        path.write_text(text.replace("title: draft", "title: draft v2"))
        await watcher.handle_change(f"{project}/{Lane.UPCOMING}/draft.md")
        await settle(watcher)

    asyncio.run(scenario())
    assert broadcaster.types() == ["card:updated"]
    card = broadcaster.emitted[0][2]["card"]
    assert card["frontmatter"]["title"] == "draft v2"
    assert "content" not in card


def test_target_written_before_source_removed(store, project, workspace):
    """Copy-then-delete (how the store moves) still ends in card:moved"""
    asyncio.run(store.create_card(project, {"title": "api"}))
    watcher, broadcaster = make_watcher(workspace, store)

    async def scenario():
        src = workspace / project / Lane.UPCOMING / "api.md"
        dst = workspace / project / Lane.IN_PROGRESS / "api.md"
        dst.write_text(src.read_text())
        await watcher.handle_change(f"{project}/{Lane.IN_PROGRESS}/api.md")
        src.unlink()
        await watcher.handle_change(f"{project}/{Lane.UPCOMING}/api.md")
        await settle(watcher)

    asyncio.run(scenario())
    assert broadcaster.types() == ["card:updated", "card:moved"]
    assert broadcaster.emitted[1][2] == {"slug": "api", "sourceLane": Lane.UPCOMING, "targetLane": Lane.IN_PROGRESS}


def test_edit_emits_summary(store, project, workspace):
    asyncio.run(store.create_card(project, {"title": "edit me", "content": "- [x] a\n- [ ] b"}))
    watcher, broadcaster = make_watcher(workspace, store)
    asyncio.run(watcher.handle_change(f"{project}/{Lane.UPCOMING}/edit-me.md"))

    event_type, slug, data = broadcaster.emitted[0]
    assert (event_type, slug) == ("card:updated", project)
    assert data["card"]["slug"] == "edit-me"
    assert data["card"]["taskProgress"] == {"total": 2, "checked": 1}


def test_unparsable_card_is_ignored(store, project, workspace):
    (workspace / project / Lane.UPCOMING / "broken.md").write_text("---\ntitle: [oops\n---\n")
    watcher, broadcaster = make_watcher(workspace, store)
    asyncio.run(watcher.handle_change(f"{project}/{Lane.UPCOMING}/broken.md"))
    assert broadcaster.emitted == []


def test_stop_cancels_pending_timers(store, project, workspace):
    asyncio.run(store.create_card(project, {"title": "quiet"}))
    watcher, broadcaster = make_watcher(workspace, store)

    async def scenario():
        (workspace / project / Lane.UPCOMING / "quiet.md").unlink()
        await watcher.handle_change(f"{project}/{Lane.UPCOMING}/quiet.md")
        watcher.schedule(f"{project}/{Lane.UPCOMING}/_order.json")
        watcher.stop()
        await settle(watcher)

    asyncio.run(scenario())
    assert broadcaster.emitted == []


def test_debounce_coalesces_bursts(store, project, workspace):
    asyncio.run(store.create_card(project, {"title": "bursty"}))
    watcher, broadcaster = make_watcher(workspace, store, debounce_ms=30)

    async def scenario():
        for _ in range(5):
            watcher.schedule(f"{project}/{Lane.UPCOMING}/bursty.md")
            await asyncio.sleep(0.005)
        watcher.schedule(f"{project}/{Lane.UPCOMING}/bursty.md.swp")
        await asyncio.sleep(0.1)
        await watcher.drain()

    asyncio.run(scenario())
    assert broadcaster.types() == ["card:updated"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Order and project files
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_order_file_change(store, project, workspace):
    (workspace / project / Lane.UPCOMING / "_order.json").write_text(json.dumps(["b.md", "a.md"]))
    watcher, broadcaster = make_watcher(workspace, store)
    asyncio.run(watcher.handle_change(f"{project}/{Lane.UPCOMING}/_order.json"))
    assert broadcaster.emitted == [
        ("lane:reordered", project, {"lane": Lane.UPCOMING, "order": ["b.md", "a.md"]}),
    ]


def test_half_written_order_file_is_skipped(store, project, workspace):
    (workspace / project / Lane.UPCOMING / "_order.json").write_text('["a.md",')
    watcher, broadcaster = make_watcher(workspace, store)
    asyncio.run(watcher.handle_change(f"{project}/{Lane.UPCOMING}/_order.json"))
    assert broadcaster.emitted == []


def test_project_config_change(store, project, workspace):
    watcher, broadcaster = make_watcher(workspace, store)
    asyncio.run(watcher.handle_change(f"{project}/_project.json"))
    event_type, slug, data = broadcaster.emitted[0]
    assert event_type == "project:updated"
    assert data["slug"] == project
    assert data["config"]["name"] == "Test Project"


def test_missing_project_config_is_not_reported(store, workspace):
    watcher, broadcaster = make_watcher(workspace, store)
    asyncio.run(watcher.handle_change("ghost/_project.json"))
    assert broadcaster.emitted == []
