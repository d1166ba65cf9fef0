"""Side-channel WebSocket hub.

Keeps the map of connected clients and their topic subscriptions. Workflow
runs reach it only through ``broadcast`` and ``send_to_subscribers``.

Client protocol (JSON text frames)::

    -> {"type": "ping"}                      <- {"type": "pong", "timestamp": ...}
    -> {"type": "subscribe", "topic": "t"}   <- {"type": "subscribed", "topic": "t", "workflowId": "t", ...}
    -> {"type": "unsubscribe", "topic": "t"} <- {"type": "unsubscribed", "topic": "t", "workflowId": "t", ...}
    -> anything else                         <- {"type": "error", "message": ...}
"""

import json
import logging
from datetime import datetime
from datetime import timezone
from typing import Any
from typing import Protocol
from uuid import uuid4

logger = logging.getLogger(__name__)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class SocketConnection(Protocol):
    """The subset of ``fastapi.WebSocket`` the hub relies on."""

    async def accept(self) -> None: ...

    async def send_json(self, data: Any) -> None: ...


class SocketHub:
    def __init__(self) -> None:
        self._connections: dict[str, SocketConnection] = {}
        self._subscriptions: dict[str, set[str]] = {}

    async def connect(self, websocket: SocketConnection) -> str:
        """Accept ``websocket``, register it and send the welcome frame. Returns the client id."""
        await websocket.accept()
        client_id = uuid4().hex
        self._connections[client_id] = websocket
        logger.info("WebSocket client connected: %s", client_id)
        try:
            await websocket.send_json(
                {
                    "type": "connection",
                    "clientId": client_id,
                    "message": "WebSocket connection established",
                    "timestamp": _timestamp(),
                }
            )
        except Exception:
            logger.warning("Welcome frame to WebSocket client %s failed", client_id)
            self.disconnect(client_id)
            raise
        return client_id

    def disconnect(self, client_id: str) -> None:
        """Forget the client and drop it from every subscription."""
        self._connections.pop(client_id, None)
        for topic in list(self._subscriptions):
            subscribers = self._subscriptions[topic]
            subscribers.discard(client_id)
            if not subscribers:
                del self._subscriptions[topic]
        logger.info("WebSocket client disconnected: %s", client_id)

    def subscribers(self, topic: str) -> frozenset[str]:
        return frozenset(self._subscriptions.get(topic, ()))

    async def handle_message(self, client_id: str, raw: str) -> None:
        websocket = self._connections.get(client_id)
        if websocket is None:
            logger.warning("Message from unknown WebSocket client %s ignored", client_id)
            return

        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Malformed WebSocket message from %s: %r", client_id, raw[:200])
            await websocket.send_json({"type": "error", "message": "Malformed message"})
            return
        if not isinstance(data, dict):
            await websocket.send_json({"type": "error", "message": "Malformed message"})
            return

        message_type = data.get("type")
        logger.debug("WebSocket message from %s: %s", client_id, message_type)

        if message_type == "ping":
            await websocket.send_json({"type": "pong", "timestamp": _timestamp()})
        elif message_type in ("subscribe", "unsubscribe"):
            topic = data.get("topic") or data.get("workflowId")
            if not isinstance(topic, str) or not topic:
                await websocket.send_json({"type": "error", "message": f"{message_type} requires a topic"})
                return
            if message_type == "subscribe":
                self._subscriptions.setdefault(topic, set()).add(client_id)
                reply = {"type": "subscribed", "message": "Subscribed to workflow updates"}
            else:
                self._unsubscribe(client_id, topic)
                reply = {"type": "unsubscribed", "message": "Unsubscribed from workflow updates"}
            await websocket.send_json({**reply, "topic": topic, "workflowId": topic})
        else:
            await websocket.send_json({"type": "error", "message": "Unknown message type"})

    def _unsubscribe(self, client_id: str, topic: str) -> None:
        subscribers = self._subscriptions.get(topic)
        if subscribers is None:
            return
        subscribers.discard(client_id)
        if not subscribers:
            del self._subscriptions[topic]

    async def _send(self, client_id: str, message: dict[str, Any]) -> bool:
        websocket = self._connections.get(client_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json(message)
        except Exception as e:
            # A dead socket must not break the run that is publishing
            logger.warning("Dropping WebSocket client %s after failed send: %s", client_id, e)
            self.disconnect(client_id)
            return False
        return True

    async def broadcast(self, message: dict[str, Any]) -> int:
        """Send ``message`` to every connected client. Returns the number reached."""
        delivered = 0
        for client_id in list(self._connections):
            if await self._send(client_id, message):
                delivered += 1
        return delivered

    async def send_to_subscribers(self, topic: str, message: dict[str, Any]) -> int:
        """Send ``message`` to the subscribers of ``topic``, tagged with the topic and a timestamp."""
        payload = {**message, "workflowId": topic, "topic": topic, "timestamp": _timestamp()}
        delivered = 0
        for client_id in list(self._subscriptions.get(topic, ())):
            if await self._send(client_id, payload):
                delivered += 1
        return delivered

    def status(self) -> dict[str, Any]:
        return {
            "connections": len(self._connections),
            "subscriptions": {topic: len(clients) for topic, clients in self._subscriptions.items()},
            "timestamp": _timestamp(),
        }
