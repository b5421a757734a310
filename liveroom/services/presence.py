from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Union

from pydantic import ValidationError

from .channel import Channel, call_handler
from .models import PresenceRecord


logger = logging.getLogger(__name__)

PRESENCE_EVENTS = ("sync", "join", "leave")

SnapshotListener = Callable[[Dict[str, PresenceRecord]], Union[None, Awaitable[None]]]


def normalize_presence(state: Dict[str, List[Dict[str, Any]]]) -> Dict[str, PresenceRecord]:
    """Collapse raw channel presence state into ``{user_id: record}``.

    The first meta under each key wins; metas without a valid ``user_id``
    are skipped.
    """
    merged: Dict[str, PresenceRecord] = {}
    for key, metas in state.items():
        if not metas:
            continue
        try:
            record = PresenceRecord.model_validate(metas[0])
        except ValidationError:
            logger.debug("Skipping malformed presence meta under %s", key)
            continue
        if record.user_id:
            merged[record.user_id] = record
    return merged


class PresenceTracker:
    """Publishes a full participant snapshot on every presence change."""

    def __init__(self, channel: Channel, local_record: PresenceRecord) -> None:
        self.channel = channel
        self.local_record = local_record
        self.snapshot: Dict[str, PresenceRecord] = {}
        self._listeners: List[SnapshotListener] = []
        for event in PRESENCE_EVENTS:
            channel.on("presence", event, self._on_presence)

    def subscribe(self, listener: SnapshotListener) -> None:
        self._listeners.append(listener)

    async def publish(self, **changes: Any) -> PresenceRecord:
        """Re-track the local record, applying ``changes`` first.

        The whole record is sent each time so remote clients never see a
        partial meta without ``user_id``.
        """
        if changes:
            self.local_record = self.local_record.model_copy(update=changes)
        await self.channel.track(self.local_record.model_dump())
        return self.local_record

    async def _on_presence(self, _key: Any) -> None:
        self.snapshot = normalize_presence(self.channel.presence_state())
        for listener in list(self._listeners):
            await call_handler(listener, dict(self.snapshot))
