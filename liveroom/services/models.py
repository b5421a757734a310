from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .errors import RoomNotConfigured


Role = Literal["student", "teacher", "admin"]
RoomStatus = Literal["scheduled", "live", "ended"]


@dataclass(slots=True)
class Identity:
    id: str
    name: str
    role: str = "student"


@dataclass(slots=True)
class RoomDescriptor:
    id: str
    title: str
    created_by: str
    status: str = "scheduled"
    room_id: Optional[str] = None
    meeting_url: Optional[str] = None
    description: Optional[str] = None
    provider: str = "webrtc"
    starts_at: Optional[str] = None
    ends_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def channel_key(self) -> Optional[str]:
        return self.room_id or self.id or None


def room_topic(room: RoomDescriptor, prefix: str = "live-class") -> str:
    """Build the channel topic, preferring the stable ``room_id``."""
    key = room.channel_key
    if not key:
        raise RoomNotConfigured("Room is not configured")
    return f"{prefix}:{key}"


def is_host(identity: Optional[Identity], room: RoomDescriptor) -> bool:
    if identity is None:
        return False
    return identity.role == "admin" or identity.id == room.created_by


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class PresenceRecord(BaseModel):
    """A participant's published liveness and media status."""

    model_config = ConfigDict(extra="ignore")

    user_id: str
    name: str
    role: str
    joined_at: str = Field(default_factory=utc_now_iso)
    audio_muted: bool = False
    video_off: bool = False


class SessionDescriptionPayload(BaseModel):
    type: Literal["offer", "answer"]
    sdp: str


class IceCandidatePayload(BaseModel):
    # camelCase keeps the payload compatible with browser RTCIceCandidateInit
    candidate: str
    sdpMid: Optional[str] = None
    sdpMLineIndex: Optional[int] = None


class _Signal(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sender: str = Field(alias="from")
    to: str

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class OfferSignal(_Signal):
    type: Literal["offer"] = "offer"
    sdp: SessionDescriptionPayload


class AnswerSignal(_Signal):
    type: Literal["answer"] = "answer"
    sdp: SessionDescriptionPayload


class IceSignal(_Signal):
    type: Literal["ice"] = "ice"
    candidate: IceCandidatePayload


class KickSignal(_Signal):
    type: Literal["kick"] = "kick"


class MuteRequestSignal(_Signal):
    type: Literal["mute_request"] = "mute_request"


SignalMessage = Annotated[
    Union[OfferSignal, AnswerSignal, IceSignal, KickSignal, MuteRequestSignal],
    Field(discriminator="type"),
]

_signal_adapter: TypeAdapter = TypeAdapter(SignalMessage)


def parse_signal(payload: Any) -> SignalMessage:
    """Validate a raw broadcast payload. Raises ``pydantic.ValidationError``."""
    return _signal_adapter.validate_python(payload)
