from __future__ import annotations

import json
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import List, Literal, Optional
from urllib.parse import urlparse

import uvicorn
from fastapi import (
    Body,
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    WebSocket,
    WebSocketDisconnect,
)
from pydantic import BaseModel, Field, field_validator

from .services.config import get_settings, setup_logging
from .services.database import RoomRepository
from .services.hub import RealtimeHub
from .services.models import Identity, RoomDescriptor, is_host, room_topic


ROLES = ("student", "teacher", "admin")

settings = get_settings()
hub = RealtimeHub()
repository = RoomRepository(settings.database_path)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle: startup and shutdown."""
    setup_logging(settings.log_level)
    await repository.initialize()
    yield


app = FastAPI(lifespan=lifespan)


def validate_meeting_url(value: str) -> str:
    value = value.strip()
    if len(value) < 10:
        raise ValueError("Meeting URL is required")
    if len(value) > 2000:
        raise ValueError("URL too long")
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("URL must start with http(s)")
    return value


class RoomCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    meeting_url: Optional[str] = None
    provider: Literal["webrtc", "external"] = "webrtc"

    @field_validator("meeting_url")
    @classmethod
    def _check_meeting_url(cls, value: Optional[str]) -> Optional[str]:
        return validate_meeting_url(value) if value is not None else None


class MeetingUrlRequest(BaseModel):
    meeting_url: str

    @field_validator("meeting_url")
    @classmethod
    def _check_meeting_url(cls, value: str) -> str:
        return validate_meeting_url(value)


def current_identity(
    x_user_id: Optional[str] = Header(None),
    x_user_name: str = Header("Anonymous"),
    x_user_role: str = Header("student"),
) -> Identity:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    if x_user_role not in ROLES:
        raise HTTPException(status_code=400, detail="Unknown role")
    return Identity(id=x_user_id, name=x_user_name, role=x_user_role)


def room_payload(room: RoomDescriptor) -> dict:
    payload = asdict(room)
    payload["topic"] = room_topic(room, settings.topic_prefix)
    return payload


async def load_moderated_room(room_id: str, identity: Identity) -> RoomDescriptor:
    room = await repository.get_room(room_id)
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    if not is_host(identity, room):
        raise HTTPException(status_code=403, detail="You don't have permission to moderate this class")
    return room


@app.get("/health_check")
async def health_check() -> dict:
    return {"status": "online"}


@app.post("/rooms", status_code=201)
async def create_room(
    request: RoomCreateRequest = Body(...), identity: Identity = Depends(current_identity)
) -> dict:
    if identity.role not in ("teacher", "admin"):
        raise HTTPException(status_code=403, detail="Only teachers can schedule live classes")
    room = await repository.create_room(
        title=request.title.strip(),
        created_by=identity.id,
        description=(request.description or "").strip() or None,
        meeting_url=request.meeting_url,
        provider=request.provider,
    )
    return room_payload(room)


@app.get("/rooms")
async def list_rooms(identity: Identity = Depends(current_identity)) -> List[dict]:
    return [room_payload(room) for room in await repository.list_rooms()]


@app.get("/rooms/{room_id}")
async def get_room(room_id: str, identity: Identity = Depends(current_identity)) -> dict:
    room = await repository.get_room(room_id)
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    payload = room_payload(room)
    payload["is_host"] = is_host(identity, room)
    return payload


@app.patch("/rooms/{room_id}/meeting-url")
async def update_meeting_url(
    room_id: str,
    request: MeetingUrlRequest = Body(...),
    identity: Identity = Depends(current_identity),
) -> dict:
    await load_moderated_room(room_id, identity)
    room = await repository.update_meeting_url(room_id, request.meeting_url)
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    return room_payload(room)


@app.post("/rooms/{room_id}/end")
async def end_room(room_id: str, identity: Identity = Depends(current_identity)) -> dict:
    room = await load_moderated_room(room_id, identity)
    if room.status != "ended":
        room = await repository.end_room(room_id)
        if room is None:
            raise HTTPException(status_code=404, detail="Room not found")
    return room_payload(room)


@app.delete("/rooms/{room_id}")
async def delete_room(room_id: str, identity: Identity = Depends(current_identity)) -> dict:
    await load_moderated_room(room_id, identity)
    await repository.delete_room(room_id)
    return {"status": "deleted", "id": room_id}


@app.websocket("/realtime/{topic}")
async def realtime_endpoint(websocket: WebSocket, topic: str, key: str = Query(..., min_length=1)) -> None:
    await hub.connect(websocket, topic, key)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Frame is not valid JSON"})
                continue
            await hub.handle_frame(websocket, topic, frame)
    except WebSocketDisconnect:
        pass
    finally:
        await hub.disconnect(websocket, topic)


def run() -> None:
    uvicorn.run("liveroom.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
