from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, List, Union

from pydantic import ValidationError

from .channel import Channel, call_handler
from .models import SignalMessage, parse_signal


logger = logging.getLogger(__name__)

SIGNAL_EVENT = "signal"

SignalHandler = Callable[[SignalMessage], Union[None, Awaitable[None]]]


class SignalingRelay:
    """Point-to-point signaling over the room's broadcast channel.

    Every client sees every broadcast; the relay only hands on messages
    whose ``to`` is the local user. Delivery is best-effort with no retry.
    """

    def __init__(self, channel: Channel, local_user_id: str) -> None:
        self.channel = channel
        self.local_user_id = local_user_id
        self._handlers: List[SignalHandler] = []
        channel.on("broadcast", SIGNAL_EVENT, self._on_broadcast)

    def on_message(self, handler: SignalHandler) -> None:
        self._handlers.append(handler)

    async def send(self, message: SignalMessage) -> None:
        logger.debug("Sending %s from %s to %s", message.type, message.sender, message.to)
        await self.channel.send(SIGNAL_EVENT, message.to_payload())

    async def _on_broadcast(self, payload: Any) -> None:
        try:
            message = parse_signal(payload)
        except ValidationError as exc:
            logger.debug("Dropping malformed signal: %s", exc)
            return
        if message.to != self.local_user_id or message.sender == self.local_user_id:
            return
        for handler in list(self._handlers):
            await call_handler(handler, message)
