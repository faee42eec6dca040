"""
WebSocket endpoint (/api/ws).

Client -> server:
    {"type": "subscribe",   "projectSlug": s}  -> {"type": "subscribed", ...}
    {"type": "unsubscribe", "projectSlug": s}  -> {"type": "unsubscribed", ...}
    {"type": "ping"}                           -> {"type": "pong"}
    {"type": "pong"}                           -> (heartbeat answer, no reply)

Server -> client: event envelopes from EventBroadcaster, and heartbeat pings.
"""
import json
import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from .events import EventBroadcaster

logger = logging.getLogger(__name__)

UNKNOWN_MESSAGE = "Unknown message type or missing required fields"
INVALID_FORMAT = "Invalid message format"


class WebSocketConnection:
    """Adapts a FastAPI WebSocket to the broadcaster's connection interface."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._closed = False

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send(self, text: str) -> None:
        await self.websocket.send_text(text)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self._closed = True
        await self.websocket.close(code=code, reason=reason)


def handle_client_message(broadcaster: EventBroadcaster, client_id: str, text: str) -> Optional[Dict[str, Any]]:
    """Apply one client message; returns the reply to send back, if any."""
    try:
        message = json.loads(text)
    except ValueError:
        return {"type": "error", "error": INVALID_FORMAT}
    if not isinstance(message, dict):
        return {"type": "error", "error": INVALID_FORMAT}

    kind = message.get("type")
    project_slug = message.get("projectSlug")

    if kind == "subscribe" and isinstance(project_slug, str) and project_slug:
        broadcaster.subscribe(client_id, project_slug)
        return {"type": "subscribed", "projectSlug": project_slug}
    if kind == "unsubscribe" and isinstance(project_slug, str) and project_slug:
        broadcaster.unsubscribe(client_id, project_slug)
        return {"type": "unsubscribed", "projectSlug": project_slug}
    if kind == "ping":
        return {"type": "pong"}
    if kind == "pong":
        broadcaster.handle_pong(client_id)
        return None
    return {"type": "error", "error": UNKNOWN_MESSAGE}


def create_ws_app(broadcaster: EventBroadcaster) -> FastAPI:
    app = FastAPI(title="DevPlanner events")

    @app.websocket("/api/ws")
    async def events_socket(websocket: WebSocket):
        await websocket.accept()
        client_id = str(uuid.uuid4())
        connection = WebSocketConnection(websocket)
        broadcaster.register_client(client_id, connection)
        try:
            while True:
                text = await websocket.receive_text()
                reply = handle_client_message(broadcaster, client_id, text)
                if reply is not None:
                    await connection.send(json.dumps(reply))
        except WebSocketDisconnect:
            logger.debug(f"Client {client_id} disconnected")
        except RuntimeError as e:
            # receive after a server-side close (heartbeat timeout)
            logger.debug(f"Client {client_id} connection closed: {e}")
        finally:
            broadcaster.unregister_client(client_id)

    @app.get("/health")
    async def health():
        return {"status": "ok", "clients": broadcaster.client_count}

    return app
