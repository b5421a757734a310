from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set

from .channel import CHANNEL_ERROR, CLOSED, SUBSCRIBED, TIMED_OUT, Channel, ChannelFactory, WebSocketChannelFactory
from .config import Settings
from .errors import (
    HostPrivilegeRequired,
    LiveRoomError,
    MediaPermissionError,
    RoomNotConfigured,
    TransportError,
)
from .media import LocalMedia, LocalStream, MediaFactory, PlayerMediaFactory, on_track_ended
from .models import (
    AnswerSignal,
    IceSignal,
    Identity,
    KickSignal,
    MuteRequestSignal,
    OfferSignal,
    PresenceRecord,
    RoomDescriptor,
    SignalMessage,
    is_host,
    room_topic,
    utc_now_iso,
)
from .peers import PeerConnectionFactory, PeerConnectionManager, PeerState
from .presence import PresenceTracker
from .signaling import SignalingRelay


logger = logging.getLogger(__name__)


class RoomState(str, Enum):
    IDLE = "idle"
    JOINING = "joining"
    ACTIVE = "active"
    LEAVING = "leaving"


@dataclass(slots=True, frozen=True)
class Notice:
    """A transient message for the person in the room."""

    level: str
    message: str


class RoomOrchestrator:
    """Coordinates one client's view of a full-mesh live room.

    Presence snapshots decide who offers to whom (the smaller user id
    always offers), inbound signals are routed to the matching peer
    connection, and the room-level actions below are exposed to the UI.
    Failures never escape as crashes: they become ``Notice`` values and the
    user can always leave and join again.
    """

    def __init__(
        self,
        room: RoomDescriptor,
        identity: Optional[Identity],
        *,
        channel_factory: ChannelFactory,
        media_factory: MediaFactory,
        pc_factory: Optional[PeerConnectionFactory] = None,
        ice_servers: Optional[List[str]] = None,
        topic_prefix: str = "live-class",
        subscribe_timeout: float = 10.0,
        on_notice: Optional[Callable[[Notice], None]] = None,
        on_change: Optional[Callable[[], None]] = None,
    ) -> None:
        self.room = room
        self.identity = identity
        self.channel_factory = channel_factory
        self.pc_factory = pc_factory
        self.ice_servers = ice_servers
        self.topic_prefix = topic_prefix
        self.subscribe_timeout = subscribe_timeout
        self.on_notice = on_notice
        self.on_change = on_change

        self.state = RoomState.IDLE
        self.media = LocalMedia(media_factory)
        self.participants: Dict[str, PresenceRecord] = {}
        self.notices: List[Notice] = []
        self.kicked = False

        self.channel: Optional[Channel] = None
        self.presence: Optional[PresenceTracker] = None
        self.relay: Optional[SignalingRelay] = None
        self.peers: Optional[PeerConnectionManager] = None

        self._tasks: Set[asyncio.Task] = set()
        self._subscribed = asyncio.Event()

    @classmethod
    def from_settings(
        cls, room: RoomDescriptor, identity: Optional[Identity], settings: Settings, **kwargs: Any
    ) -> "RoomOrchestrator":
        return cls(
            room,
            identity,
            channel_factory=WebSocketChannelFactory(
                settings.hub_url, timeout=settings.subscribe_timeout_seconds
            ),
            media_factory=PlayerMediaFactory(settings),
            ice_servers=settings.ice_servers,
            topic_prefix=settings.topic_prefix,
            subscribe_timeout=settings.subscribe_timeout_seconds,
            **kwargs,
        )

    # ---- read-only state for the UI ----

    @property
    def is_host(self) -> bool:
        return is_host(self.identity, self.room)

    @property
    def audio_muted(self) -> bool:
        return self.media.audio_muted

    @property
    def video_off(self) -> bool:
        return self.media.video_off

    @property
    def is_sharing(self) -> bool:
        return self.media.is_sharing

    @property
    def local_stream(self) -> Optional[LocalStream]:
        return self.media.preview

    @property
    def remote_streams(self) -> Dict[str, LocalStream]:
        return self.peers.remote_streams if self.peers is not None else {}

    def connection_count(self) -> int:
        return len(self.peers) if self.peers is not None else 0

    def peer_states(self) -> Dict[str, PeerState]:
        return self.peers.states() if self.peers is not None else {}

    def participant_list(self) -> List[PresenceRecord]:
        return sorted(self.participants.values(), key=lambda record: record.name.lower())

    # ---- lifecycle ----

    async def join(self) -> bool:
        """Capture local media, subscribe to the room and publish presence.

        Returns True once the room is active.
        """
        if self.state is not RoomState.IDLE:
            return self.state is RoomState.ACTIVE
        if self.identity is None:
            self._notify("error", "Sign in to join the room")
            return False
        try:
            topic = room_topic(self.room, self.topic_prefix)
        except RoomNotConfigured as exc:
            self._notify("error", str(exc))
            return False

        self.state = RoomState.JOINING
        self.kicked = False
        self._subscribed.clear()
        self._changed()

        try:
            await self.media.ensure()
        except MediaPermissionError as exc:
            self._notify("error", f"Could not start camera or microphone: {exc}")
            await self._teardown()
            return False
        if self.state is not RoomState.JOINING:
            # left while the capture was starting
            self.media.stop()
            return False

        self._wire(self.channel_factory(topic, self.identity.id))
        try:
            await self.channel.subscribe(self._on_status)
            await asyncio.wait_for(self._subscribed.wait(), self.subscribe_timeout)
        except TransportError as exc:
            self._notify("error", f"Could not connect to the room: {exc}")
            await self._teardown()
            return False
        except asyncio.TimeoutError:
            self._notify("error", "Timed out connecting to the room")
            await self._teardown()
            return False

        if self.state is not RoomState.ACTIVE:
            # still JOINING means the channel reported an error status
            if self.state is RoomState.JOINING:
                self._notify("error", "Could not connect to the room")
                await self._teardown()
            return False
        logger.info("%s joined %s", self.identity.id, topic)
        return True

    async def leave(self) -> None:
        if self.state is RoomState.IDLE:
            return
        await self._teardown()
        self._notify("info", "Left the room")

    # ---- local media ----

    async def toggle_mic(self) -> bool:
        muted = not self.media.audio_muted
        self.media.set_audio_muted(muted)
        await self._publish(audio_muted=muted)
        self._changed()
        return muted

    async def toggle_camera(self) -> bool:
        off = not self.media.video_off
        self.media.set_video_off(off)
        await self._publish(video_off=off)
        self._changed()
        return off

    # ---- host-only actions ----

    async def start_screen_share(self) -> None:
        self._require_host("share the screen")
        if self.media.is_sharing or not self._require_active():
            return
        try:
            track = await self.media.start_share()
        except MediaPermissionError as exc:
            self._notify("error", f"Screen share failed: {exc}")
            return
        if self.state is not RoomState.ACTIVE:
            # left while the display capture was starting
            self.media.stop_share()
            return
        on_track_ended(track, self._on_share_ended)
        replaced = await self.peers.replace_video_track(track)
        logger.info("Screen share started on %d connection(s)", replaced)
        self._changed()

    async def stop_screen_share(self) -> None:
        self._require_host("stop screen sharing")
        if not self.media.is_sharing:
            return
        camera = self.media.stop_share()
        if self.peers is not None and camera is not None:
            await self.peers.replace_video_track(camera)
        self._changed()

    async def kick(self, target_id: str) -> None:
        self._require_host("remove participants")
        if target_id == self.identity.id:
            return
        await self._send_control(KickSignal(sender=self.identity.id, to=target_id))

    async def request_mute(self, target_id: str) -> None:
        self._require_host("ask participants to mute")
        if target_id == self.identity.id:
            return
        await self._send_control(MuteRequestSignal(sender=self.identity.id, to=target_id))

    # ---- channel callbacks ----

    def _wire(self, channel: Channel) -> None:
        self.channel = channel
        self.presence = PresenceTracker(
            channel,
            PresenceRecord(
                user_id=self.identity.id,
                name=self.identity.name,
                role=self.identity.role,
                audio_muted=self.media.audio_muted,
                video_off=self.media.video_off,
            ),
        )
        self.presence.subscribe(self._on_presence)
        self.relay = SignalingRelay(channel, self.identity.id)
        self.relay.on_message(self._on_signal)
        self.peers = PeerConnectionManager(
            self.identity.id,
            self.relay,
            self.media,
            ice_servers=self.ice_servers,
            pc_factory=self.pc_factory,
            on_change=self._changed,
        )

    async def _on_status(self, status: str) -> None:
        if status == SUBSCRIBED:
            if self.state is not RoomState.JOINING:
                return
            self.state = RoomState.ACTIVE
            await self._publish(joined_at=utc_now_iso())
            self._subscribed.set()
            self._changed()
        elif status in (CHANNEL_ERROR, TIMED_OUT, CLOSED):
            if self.state is RoomState.JOINING:
                self._subscribed.set()
            elif self.state is RoomState.ACTIVE:
                self._notify("error", "Lost connection to the room")
                await self._teardown()

    async def _on_presence(self, snapshot: Dict[str, PresenceRecord]) -> None:
        if self.state is not RoomState.ACTIVE:
            return
        me = self.identity.id
        departed = set(self.participants) - set(snapshot)
        self.participants = snapshot

        for peer_id in departed:
            if self.peers.has(peer_id):
                logger.info("%s left, closing connection", peer_id)
            # also drops candidates buffered for a peer we never linked to
            await self.peers.close(peer_id)

        for peer_id in sorted(snapshot):
            if peer_id == me or self.peers.has(peer_id):
                continue
            # the smaller id offers; the other side waits for the offer
            if me < peer_id:
                self.peers.get_or_create(peer_id)
                self._spawn(self._initiate(peer_id), name=f"offer:{peer_id}")
        self._changed()

    async def _initiate(self, peer_id: str) -> None:
        try:
            await self.peers.create_offer(peer_id)
        except LiveRoomError as exc:
            self._notify("error", f"Could not connect to {self._display_name(peer_id)}: {exc}")

    async def _on_signal(self, message: SignalMessage) -> None:
        if self.state is not RoomState.ACTIVE:
            return
        try:
            if isinstance(message, KickSignal):
                await self._on_kicked()
            elif isinstance(message, MuteRequestSignal):
                await self._on_mute_request()
            elif isinstance(message, OfferSignal):
                await self.peers.accept_offer(message.sender, message.sdp)
            elif isinstance(message, AnswerSignal):
                await self.peers.accept_answer(message.sender, message.sdp)
            elif isinstance(message, IceSignal):
                await self.peers.add_candidate(message.sender, message.candidate)
        except LiveRoomError as exc:
            self._notify("error", f"Connection with {self._display_name(message.sender)} failed: {exc}")

    async def _on_kicked(self) -> None:
        self.kicked = True
        await self._teardown()
        self._notify("error", "You were removed from the room")

    async def _on_mute_request(self) -> None:
        self._notify("info", "Host requested you mute your microphone")
        self.media.set_audio_muted(True)
        await self._publish(audio_muted=True)
        self._changed()

    def _on_share_ended(self) -> None:
        # display capture ended outside our control (e.g. the source went away)
        if self.media.is_sharing:
            self._spawn(self.stop_screen_share(), name="stop-share")

    # ---- helpers ----

    async def _publish(self, **changes: Any) -> None:
        if self.presence is None or self.state is not RoomState.ACTIVE:
            return
        try:
            await self.presence.publish(**changes)
        except TransportError as exc:
            self._notify("error", f"Could not update your status: {exc}")

    async def _send_control(self, message: SignalMessage) -> None:
        if not self._require_active():
            return
        try:
            await self.relay.send(message)
        except TransportError as exc:
            self._notify("error", f"Could not reach {self._display_name(message.to)}: {exc}")

    def _require_host(self, action: str) -> None:
        if not self.is_host:
            error = HostPrivilegeRequired(action)
            self._notify("error", str(error))
            raise error

    def _require_active(self) -> bool:
        if self.state is RoomState.ACTIVE:
            return True
        self._notify("error", "Join the room first")
        return False

    def _spawn(self, coro: Coroutine[Any, Any, None], *, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled() or task.exception() is None:
            return
        logger.error("Task %s failed", task.get_name(), exc_info=task.exception())

    async def _teardown(self) -> None:
        """Close every connection, drop the channel and stop every local track.

        Safe to call any number of times.
        """
        self.state = RoomState.LEAVING
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        self._tasks.clear()

        channel, self.channel = self.channel, None
        try:
            if self.peers is not None:
                await self.peers.close_all()
            if channel is not None:
                try:
                    await channel.unsubscribe()
                except Exception as exc:
                    logger.warning("Error leaving channel %s: %s", channel.topic, exc)
        finally:
            self.media.stop()
            self.participants = {}
            self.state = RoomState.IDLE
            # release a join() still waiting for the subscription
            self._subscribed.set()
            self._changed()

    def _display_name(self, user_id: str) -> str:
        record = self.participants.get(user_id)
        return record.name if record is not None else "participant"

    def _notify(self, level: str, message: str) -> None:
        notice = Notice(level=level, message=message)
        self.notices.append(notice)
        logger.log(logging.ERROR if level == "error" else logging.INFO, message)
        if self.on_notice is not None:
            self.on_notice(notice)

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()
