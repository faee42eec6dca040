"""Shared test fixtures for DevPlanner tests."""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import pytest

from devplanner.projects import ProjectService
from devplanner.store import CardStore


class FakeConnection:
    """Stands in for a WebSocket connection; records what it was sent."""

    def __init__(self, fail: bool = False, on_message: Optional[Callable[[Dict[str, Any]], None]] = None):
        self.is_open = True
        self.fail = fail
        self.on_message = on_message
        self.messages: List[Dict[str, Any]] = []
        self.closed_with = None

    async def send(self, text: str) -> None:
        if self.fail:
            raise ConnectionError("socket gone")
        message = json.loads(text)
        self.messages.append(message)
        if self.on_message is not None:
            self.on_message(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.is_open = False
        self.closed_with = (code, reason)

    def events(self, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        found = [m["event"] for m in self.messages if m.get("type") == "event"]
        if event_type is not None:
            found = [e for e in found if e["type"] == event_type]
        return found


class RecordingBroadcaster:
    """Collects emitted events instead of sending them."""

    def __init__(self):
        self.emitted: List[tuple] = []

    async def emit(self, event_type: str, project_slug: str, data: Dict[str, Any]) -> int:
        self.emitted.append((event_type, project_slug, data))
        return 1

    def types(self) -> List[str]:
        return [e[0] for e in self.emitted]


@pytest.fixture
def workspace(tmp_path):
    return tmp_path


@pytest.fixture
def store(workspace):
    return CardStore(workspace)


@pytest.fixture
def projects(workspace, store):
    return ProjectService(workspace, project_locks=store.project_locks)


@pytest.fixture
def project(projects):
    """A fresh project named "Test Project" (slug test-project)."""
    asyncio.run(projects.create_project("Test Project"))
    return "test-project"
