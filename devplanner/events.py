"""
WebSocket event broadcaster.

Keeps the set of connected clients and, per project, the clients subscribed
to it. A connection is anything with:

    is_open            -> bool
    await send(text)   -> None
    await close(code, reason)

Optional heartbeat: every `interval` seconds each client gets {"type": "ping"};
a client that hasn't answered with a pong after `timeout` seconds is closed
and unregistered.
"""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Set

from .schema import utc_now

logger = logging.getLogger(__name__)


class EventType:
    """All valid event types pushed to subscribers."""
    CARD_CREATED = "card:created"
    CARD_UPDATED = "card:updated"
    CARD_MOVED = "card:moved"
    CARD_DELETED = "card:deleted"
    TASK_TOGGLED = "task:toggled"
    LANE_REORDERED = "lane:reordered"
    PROJECT_UPDATED = "project:updated"
    PROJECT_DELETED = "project:deleted"
    HISTORY_EVENT = "history:event"
    FILE_ADDED = "file:added"
    FILE_UPDATED = "file:updated"
    FILE_DELETED = "file:deleted"
    FILE_ASSOCIATED = "file:associated"
    FILE_DISASSOCIATED = "file:disassociated"

    @classmethod
    def all_types(cls) -> set:
        return {
            v for k, v in vars(cls).items()
            if isinstance(v, str) and not k.startswith("_")
        }

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in cls.all_types()


def make_event(event_type: str, project_slug: str, data: Dict[str, Any],
               timestamp: Optional[str] = None) -> Dict[str, Any]:
    """Server -> client envelope."""
    if not EventType.is_valid(event_type):
        raise ValueError(f"Unknown event type: {event_type}")
    return {
        "type": "event",
        "event": {
            "type": event_type,
            "projectSlug": project_slug,
            "timestamp": timestamp or utc_now(),
            "data": data,
        },
    }


PING_MESSAGE = json.dumps({"type": "ping"})
CLOSE_PING_TIMEOUT = 1001


class EventBroadcaster:
    """Client registry + per-project pub/sub."""

    def __init__(self, heartbeat_enabled: bool = False, heartbeat_interval: float = 30.0,
                 ping_timeout: float = 5.0):
        self.heartbeat_enabled = heartbeat_enabled
        self.heartbeat_interval = heartbeat_interval
        self.ping_timeout = ping_timeout

        self._clients: Dict[str, Any] = {}
        self._subscriptions: Dict[str, Set[str]] = {}
        self._pong_timers: Dict[str, asyncio.TimerHandle] = {}
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    # ── Registry ─────────────────────────────────────────────

    def register_client(self, client_id: str, connection: Any) -> None:
        self._clients[client_id] = connection
        logger.info(f"Client registered: {client_id} ({len(self._clients)} connected)")
        if self.heartbeat_enabled and self._heartbeat_task is None:
            self._start_heartbeat()

    def unregister_client(self, client_id: str) -> None:
        self._clients.pop(client_id, None)
        self._cancel_pong_timer(client_id)
        for project_slug in list(self._subscriptions):
            subscribers = self._subscriptions[project_slug]
            subscribers.discard(client_id)
            if not subscribers:
                del self._subscriptions[project_slug]
        logger.info(f"Client unregistered: {client_id} ({len(self._clients)} connected)")
        if not self._clients:
            self._stop_heartbeat()

    def subscribe(self, client_id: str, project_slug: str) -> None:
        if client_id not in self._clients:
            logger.warning(f"Subscribe from unknown client {client_id}")
            return
        self._subscriptions.setdefault(project_slug, set()).add(client_id)
        logger.debug(f"Client {client_id} subscribed to {project_slug}")

    def unsubscribe(self, client_id: str, project_slug: str) -> None:
        subscribers = self._subscriptions.get(project_slug)
        if subscribers is None:
            return
        subscribers.discard(client_id)
        if not subscribers:
            del self._subscriptions[project_slug]
        logger.debug(f"Client {client_id} unsubscribed from {project_slug}")

    def disconnect_project(self, project_slug: str) -> None:
        """Drop every subscription to a project that no longer exists."""
        self._subscriptions.pop(project_slug, None)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def subscriber_count(self, project_slug: str) -> int:
        return len(self._subscriptions.get(project_slug, ()))

    def subscribers(self, project_slug: str) -> List[str]:
        return sorted(self._subscriptions.get(project_slug, ()))

    # ── Delivery ─────────────────────────────────────────────

    async def broadcast(self, project_slug: str, message: Dict[str, Any]) -> int:
        """Send to every open subscriber of the project. Returns the delivery count."""
        subscribers = self._subscriptions.get(project_slug)
        if not subscribers:
            return 0

        text = json.dumps(message)
        delivered = 0
        for client_id in list(subscribers):
            connection = self._clients.get(client_id)
            if connection is None or not connection.is_open:
                continue
            try:
                await connection.send(text)
                delivered += 1
            except Exception as e:
                logger.warning(f"Failed to send to client {client_id}: {e}")
        return delivered

    async def emit(self, event_type: str, project_slug: str, data: Dict[str, Any]) -> int:
        return await self.broadcast(project_slug, make_event(event_type, project_slug, data))

    async def send_to_client(self, client_id: str, message: Dict[str, Any]) -> bool:
        connection = self._clients.get(client_id)
        if connection is None or not connection.is_open:
            return False
        try:
            await connection.send(json.dumps(message))
            return True
        except Exception as e:
            logger.warning(f"Failed to send to client {client_id}: {e}")
            return False

    # ── Heartbeat ────────────────────────────────────────────

    def handle_pong(self, client_id: str) -> None:
        self._cancel_pong_timer(client_id)

    def _start_heartbeat(self) -> None:
        loop = asyncio.get_running_loop()
        self._heartbeat_task = loop.create_task(self._heartbeat_loop())
        logger.info(f"Heartbeat started (every {self.heartbeat_interval}s, timeout {self.ping_timeout}s)")

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
            logger.info("Heartbeat stopped")
        for client_id in list(self._pong_timers):
            self._cancel_pong_timer(client_id)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await self.ping_all()

    async def ping_all(self) -> None:
        loop = asyncio.get_running_loop()
        for client_id, connection in list(self._clients.items()):
            if not connection.is_open or client_id in self._pong_timers:
                continue
            # Timer exists before the ping leaves
            self._pong_timers[client_id] = loop.call_later(
                self.ping_timeout, self._on_pong_timeout, client_id
            )
            try:
                await connection.send(PING_MESSAGE)
            except Exception as e:
                logger.warning(f"Ping to client {client_id} failed: {e}")
                self._cancel_pong_timer(client_id)

    def _on_pong_timeout(self, client_id: str) -> None:
        self._pong_timers.pop(client_id, None)
        connection = self._clients.get(client_id)
        logger.warning(f"Client {client_id} missed heartbeat, disconnecting")
        self.unregister_client(client_id)
        if connection is not None:
            task = asyncio.get_running_loop().create_task(self._close_quietly(client_id, connection))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _close_quietly(client_id: str, connection: Any) -> None:
        try:
            await connection.close(CLOSE_PING_TIMEOUT, "Ping timeout")
        except Exception as e:
            logger.debug(f"Close after ping timeout failed for {client_id}: {e}")

    def _cancel_pong_timer(self, client_id: str) -> None:
        timer = self._pong_timers.pop(client_id, None)
        if timer is not None:
            timer.cancel()

    async def close(self) -> None:
        """Stop the heartbeat and forget every client."""
        self._stop_heartbeat()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._clients.clear()
        self._subscriptions.clear()
