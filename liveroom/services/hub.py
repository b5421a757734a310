from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import WebSocket


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Subscriber:
    key: str
    meta: Optional[Dict[str, Any]] = None


class RealtimeHub:
    """
    Manages realtime channel subscriptions organized by topic.

    Each topic is one room. A subscriber is a WebSocket connection that
    carries a presence key (the user id) and, once it has tracked itself,
    a presence meta dict. Presence changes are pushed to every subscriber
    as a full state snapshot; broadcast frames are fanned out to every
    subscriber except the sender.

    Attributes:
        topics (Dict[str, Dict[WebSocket, Subscriber]]): Active subscribers
            per topic.
    """

    def __init__(self) -> None:
        self.topics: Dict[str, Dict[WebSocket, Subscriber]] = {}

    async def connect(self, websocket: WebSocket, topic: str, key: str) -> None:
        """
        Accepts a connection, registers it on the topic and confirms the
        subscription.

        The new subscriber receives a ``sync`` presence snapshot straight
        after the ``SUBSCRIBED`` status so it sees who is already present.
        """
        await websocket.accept()
        self.topics.setdefault(topic, {})[websocket] = Subscriber(key=key)
        logger.info("Subscriber %s joined topic %s", key, topic)
        await websocket.send_json({"type": "system", "status": "SUBSCRIBED"})
        await websocket.send_json(self._presence_frame(topic, "sync", key))

    async def disconnect(self, websocket: WebSocket, topic: str) -> None:
        """
        Removes a closed connection. If it had tracked presence the rest of
        the topic is told it left. Empty topics are dropped.
        """
        subscribers = self.topics.get(topic)
        if subscribers is None:
            return
        subscriber = subscribers.pop(websocket, None)
        if not subscribers:
            del self.topics[topic]
        if subscriber is None:
            return
        logger.info("Subscriber %s left topic %s", subscriber.key, topic)
        if subscriber.meta is not None:
            await self.broadcast(topic, self._presence_frame(topic, "leave", subscriber.key))

    def presence_state(self, topic: str) -> Dict[str, List[Dict[str, Any]]]:
        state: Dict[str, List[Dict[str, Any]]] = {}
        for subscriber in self.topics.get(topic, {}).values():
            if subscriber.meta is not None:
                state.setdefault(subscriber.key, []).append(subscriber.meta)
        return state

    async def handle_frame(self, websocket: WebSocket, topic: str, frame: Any) -> None:
        subscriber = self.topics.get(topic, {}).get(websocket)
        if subscriber is None:
            return
        if not isinstance(frame, dict):
            await websocket.send_json({"type": "error", "message": "Frame must be an object"})
            return

        kind = frame.get("type")
        if kind == "track":
            payload = frame.get("payload")
            if not isinstance(payload, dict):
                await websocket.send_json({"type": "error", "message": "track payload must be an object"})
                return
            subscriber.meta = payload
            await self.broadcast(topic, self._presence_frame(topic, "join", subscriber.key))
        elif kind == "untrack":
            if subscriber.meta is None:
                return
            subscriber.meta = None
            await self.broadcast(topic, self._presence_frame(topic, "leave", subscriber.key))
        elif kind == "broadcast":
            message = {
                "type": "broadcast",
                "event": frame.get("event"),
                "payload": frame.get("payload"),
            }
            await self.broadcast(topic, message, exclude=websocket)
        else:
            await websocket.send_json({"type": "error", "message": f"Unknown frame type: {kind}"})

    async def broadcast(
        self, topic: str, message: Dict[str, Any], *, exclude: Optional[WebSocket] = None
    ) -> None:
        """Sends a JSON message to every subscriber of ``topic`` but ``exclude``."""
        for connection in list(self.topics.get(topic, {})):
            if connection is exclude:
                continue
            try:
                await connection.send_json(message)
            except Exception as exc:
                # the receive loop of that connection runs the disconnect cleanup
                logger.warning("Dropping frame for a closed subscriber on %s: %s", topic, exc)

    def _presence_frame(self, topic: str, event: str, key: str) -> Dict[str, Any]:
        return {
            "type": "presence",
            "event": event,
            "key": key,
            "state": self.presence_state(topic),
        }
