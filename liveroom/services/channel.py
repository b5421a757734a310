from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, Union
from urllib.parse import quote

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from .errors import TransportError


logger = logging.getLogger(__name__)

SUBSCRIBED = "SUBSCRIBED"
CHANNEL_ERROR = "CHANNEL_ERROR"
TIMED_OUT = "TIMED_OUT"
CLOSED = "CLOSED"

Handler = Callable[[Any], Union[None, Awaitable[None]]]
StatusCallback = Callable[[str], Union[None, Awaitable[None]]]


class Channel(Protocol):
    """Room-scoped broadcast + presence channel."""

    topic: str

    def on(self, kind: str, event: str, handler: Handler) -> "Channel": ...

    async def subscribe(self, callback: Optional[StatusCallback] = None) -> None: ...

    async def track(self, payload: Dict[str, Any]) -> None: ...

    def presence_state(self) -> Dict[str, List[Dict[str, Any]]]: ...

    async def send(self, event: str, payload: Dict[str, Any]) -> None: ...

    async def unsubscribe(self) -> None: ...


ChannelFactory = Callable[[str, str], Channel]


async def call_handler(handler: Callable[[Any], Any], arg: Any) -> None:
    result = handler(arg)
    if inspect.isawaitable(result):
        await result


class HandlerRegistry:
    """(kind, event) -> handlers, dispatched in registration order."""

    def __init__(self) -> None:
        self._handlers: Dict[Tuple[str, str], List[Handler]] = {}

    def add(self, kind: str, event: str, handler: Handler) -> None:
        self._handlers.setdefault((kind, event), []).append(handler)

    async def fire(self, kind: str, event: str, arg: Any) -> None:
        for handler in list(self._handlers.get((kind, event), [])):
            try:
                await call_handler(handler, arg)
            except Exception:
                logger.exception("Handler for %s/%s failed", kind, event)


class RealtimeChannel:
    """Client side of one hub topic over a WebSocket.

    Inbound frames are dispatched sequentially from a single reader task, so
    broadcast handlers observe messages in the order the hub relayed them.
    """

    def __init__(
        self,
        hub_url: str,
        topic: str,
        presence_key: str,
        *,
        timeout: float = 10.0,
        connect: Callable[[str], Any] = websockets.connect,
    ) -> None:
        self.hub_url = hub_url.rstrip("/")
        self.topic = topic
        self.presence_key = presence_key
        self.timeout = timeout
        self._connect = connect
        self.status: Optional[str] = None
        self._handlers = HandlerRegistry()
        self._presence: Dict[str, List[Dict[str, Any]]] = {}
        self._callback: Optional[StatusCallback] = None
        self._ws: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def url(self) -> str:
        return f"{self.hub_url}/{quote(self.topic, safe='')}?key={quote(self.presence_key, safe='')}"

    def on(self, kind: str, event: str, handler: Handler) -> "RealtimeChannel":
        self._handlers.add(kind, event, handler)
        return self

    async def subscribe(self, callback: Optional[StatusCallback] = None) -> None:
        self._callback = callback
        try:
            self._ws = await asyncio.wait_for(self._connect(self.url), self.timeout)
        except asyncio.TimeoutError as exc:
            await self._set_status(TIMED_OUT)
            raise TransportError(f"Timed out subscribing to {self.topic}") from exc
        except (OSError, InvalidHandshake, InvalidURI) as exc:
            await self._set_status(CHANNEL_ERROR)
            raise TransportError(f"Could not subscribe to {self.topic}: {exc}") from exc
        self._reader = asyncio.create_task(self._read_loop(), name=f"channel-reader:{self.topic}")

    async def track(self, payload: Dict[str, Any]) -> None:
        await self._send_frame({"type": "track", "payload": payload})

    def presence_state(self) -> Dict[str, List[Dict[str, Any]]]:
        return {key: list(metas) for key, metas in self._presence.items()}

    async def send(self, event: str, payload: Dict[str, Any]) -> None:
        await self._send_frame({"type": "broadcast", "event": event, "payload": payload})

    async def unsubscribe(self) -> None:
        if self._closing:
            return
        self._closing = True
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as exc:
                logger.debug("Error closing channel %s: %s", self.topic, exc)
        reader = self._reader
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        self._ws = None
        self.status = CLOSED

    async def _send_frame(self, frame: Dict[str, Any]) -> None:
        if self._ws is None or self._closing:
            raise TransportError(f"Channel {self.topic} is not subscribed")
        try:
            await self._ws.send(json.dumps(frame))
        except ConnectionClosed as exc:
            raise TransportError(f"Channel {self.topic} closed while sending") from exc

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Ignoring malformed frame on %s", self.topic)
                    continue
                await self._dispatch(frame)
        except ConnectionClosed:
            pass
        finally:
            if not self._closing:
                logger.warning("Channel %s closed by the hub", self.topic)
                await self._set_status(CLOSED)

    async def _dispatch(self, frame: Dict[str, Any]) -> None:
        kind = frame.get("type")
        if kind == "system":
            await self._set_status(frame.get("status", ""))
        elif kind == "presence":
            self._presence = frame.get("state") or {}
            await self._handlers.fire("presence", frame.get("event", "sync"), frame.get("key"))
        elif kind == "broadcast":
            await self._handlers.fire("broadcast", frame.get("event", ""), frame.get("payload"))
        elif kind == "error":
            logger.warning("Hub rejected a frame on %s: %s", self.topic, frame.get("message"))

    async def _set_status(self, status: str) -> None:
        self.status = status
        if self._callback is None:
            return
        try:
            await call_handler(self._callback, status)
        except Exception:
            logger.exception("Status callback for %s failed", self.topic)


class WebSocketChannelFactory:
    """Builds ``RealtimeChannel`` instances against one hub URL."""

    def __init__(
        self,
        hub_url: str,
        *,
        timeout: float = 10.0,
        connect: Callable[[str], Any] = websockets.connect,
    ) -> None:
        self.hub_url = hub_url
        self.timeout = timeout
        self.connect = connect

    def __call__(self, topic: str, presence_key: str) -> RealtimeChannel:
        return RealtimeChannel(
            self.hub_url, topic, presence_key, timeout=self.timeout, connect=self.connect
        )
