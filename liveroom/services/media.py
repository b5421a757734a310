from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Protocol

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from av import AudioFrame, VideoFrame
from av.error import FFmpegError

from .config import Settings
from .errors import MediaPermissionError


logger = logging.getLogger(__name__)

LIVE = "live"


def blank_frame(frame: Any) -> Any:
    """Return a silent/black frame with the same timing as ``frame``."""
    if isinstance(frame, AudioFrame):
        blank = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
        for plane in blank.planes:
            plane.update(bytes(plane.buffer_size))
        blank.sample_rate = frame.sample_rate
    else:
        blank = VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
        # Y plane to 0, chroma planes to the neutral 128
        for index, plane in enumerate(blank.planes):
            plane.update(bytes([0 if index == 0 else 128]) * plane.buffer_size)
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


class ToggleableTrack(MediaStreamTrack):
    """Capture track with an ``enabled`` switch.

    While disabled the track keeps producing frames, but blank ones, so
    peers see silence/black without any renegotiation.
    """

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True

    async def recv(self) -> Any:
        frame = await self.source.recv()
        if self.enabled:
            return frame
        return blank_frame(frame)

    def stop(self) -> None:
        super().stop()
        self.source.stop()


@dataclass
class LocalStream:
    tracks: List[Any] = field(default_factory=list)

    def audio_tracks(self) -> List[Any]:
        return [track for track in self.tracks if track.kind == "audio"]

    def video_tracks(self) -> List[Any]:
        return [track for track in self.tracks if track.kind == "video"]

    def live_tracks(self) -> List[Any]:
        return [track for track in self.tracks if track.readyState == LIVE]

    def stop(self) -> None:
        for track in self.tracks:
            track.stop()


class MediaFactory(Protocol):
    async def get_user_media(self) -> LocalStream: ...

    async def get_display_media(self) -> LocalStream: ...


class PlayerMediaFactory:
    """Captures devices through ffmpeg via aiortc's ``MediaPlayer``."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    async def get_user_media(self) -> LocalStream:
        camera = await self._open(
            self.settings.camera_device,
            self.settings.camera_format,
            {"video_size": "640x480", "framerate": "30"},
        )
        try:
            microphone = await self._open(self.settings.microphone_device, self.settings.microphone_format)
        except MediaPermissionError:
            release_player(camera)
            raise
        tracks = []
        if microphone.audio is not None:
            tracks.append(ToggleableTrack(microphone.audio))
        if camera.video is not None:
            tracks.append(ToggleableTrack(camera.video))
        if not tracks:
            release_player(camera)
            release_player(microphone)
            raise MediaPermissionError("No camera or microphone track available")
        return LocalStream(tracks)

    async def get_display_media(self) -> LocalStream:
        player = await self._open(
            self.settings.display_device,
            self.settings.display_format,
            {"framerate": "15"},
        )
        if player.video is None:
            release_player(player)
            raise MediaPermissionError("Display capture produced no video track")
        return LocalStream([player.video])

    async def _open(self, device: str, fmt: str, options: Optional[dict] = None) -> MediaPlayer:
        try:
            # MediaPlayer opens the device synchronously
            return await asyncio.to_thread(MediaPlayer, device, format=fmt, options=options or {})
        except (OSError, FFmpegError) as exc:
            raise MediaPermissionError(f"Could not open {device}: {exc}") from exc


def release_player(player: MediaPlayer) -> None:
    """Stop every track of ``player``; the player closes its device once all have stopped."""
    for track in (player.audio, player.video):
        if track is not None:
            track.stop()


def on_track_ended(track: Any, callback: Callable[[], Any]) -> None:
    """Register ``callback`` for the track's ``ended`` event, if it emits one."""
    if hasattr(track, "on"):
        track.on("ended", callback)


class LocalMedia:
    """The single local camera/microphone capture, swappable to a display track.

    The camera stream is shared by the preview and every outbound sender.
    """

    def __init__(self, factory: MediaFactory) -> None:
        self.factory = factory
        self.stream: Optional[LocalStream] = None
        self.display: Optional[LocalStream] = None
        self.audio_muted = False
        self.video_off = False
        self._lock = asyncio.Lock()

    async def ensure(self) -> LocalStream:
        """Start capture on first need; concurrent callers share one capture."""
        async with self._lock:
            if self.stream is None:
                self.stream = await self.factory.get_user_media()
                logger.info("Local capture started with %d track(s)", len(self.stream.tracks))
                self._apply_flags()
        return self.stream

    @property
    def audio_track(self) -> Optional[Any]:
        if self.stream is None:
            return None
        return next(iter(self.stream.audio_tracks()), None)

    @property
    def camera_track(self) -> Optional[Any]:
        if self.stream is None:
            return None
        return next(iter(self.stream.video_tracks()), None)

    @property
    def screen_track(self) -> Optional[Any]:
        if self.display is None:
            return None
        return next(iter(self.display.video_tracks()), None)

    @property
    def is_sharing(self) -> bool:
        return self.display is not None

    @property
    def outgoing_video_track(self) -> Optional[Any]:
        return self.screen_track if self.is_sharing else self.camera_track

    @property
    def preview(self) -> Optional[LocalStream]:
        return self.display if self.is_sharing else self.stream

    def set_audio_muted(self, muted: bool) -> None:
        self.audio_muted = muted
        self._apply_flags()

    def set_video_off(self, off: bool) -> None:
        self.video_off = off
        self._apply_flags()

    async def start_share(self) -> Any:
        display = await self.factory.get_display_media()
        tracks = display.video_tracks()
        if not tracks:
            display.stop()
            raise MediaPermissionError("Display capture produced no video track")
        self.display = display
        self._apply_flags()
        return tracks[0]

    def stop_share(self) -> Optional[Any]:
        """Stop the display capture and return the camera track to send again."""
        display, self.display = self.display, None
        if display is not None:
            display.stop()
        self._apply_flags()
        return self.camera_track

    def stop(self) -> None:
        """Stop every local track, camera and display alike."""
        display, self.display = self.display, None
        stream, self.stream = self.stream, None
        if display is not None:
            display.stop()
        if stream is not None:
            stream.stop()

    def live_track_count(self) -> int:
        count = 0
        for stream in (self.stream, self.display):
            if stream is not None:
                count += len(stream.live_tracks())
        return count

    def _apply_flags(self) -> None:
        if self.stream is None:
            return
        for track in self.stream.audio_tracks():
            track.enabled = not self.audio_muted
        # the camera stays dark while the display is being sent
        for track in self.stream.video_tracks():
            track.enabled = not self.video_off and not self.is_sharing
