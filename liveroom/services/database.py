from __future__ import annotations

import asyncio
import uuid
from pathlib import Path
from typing import List, Optional

import aiosqlite

from .models import RoomDescriptor, utc_now_iso


ROOM_COLUMNS = (
    "id, room_id, title, description, status, created_by, meeting_url, "
    "provider, starts_at, ends_at, created_at, updated_at"
)


class RoomRepository:
    """Persistent store for live class metadata (title, status, meeting URL)."""

    def __init__(self, db_path: Optional[str | Path] = None) -> None:
        base_path = Path(__file__).resolve().parents[1]
        default_path = base_path / "data" / "liveroom.db"
        self.db_path = Path(db_path) if db_path else default_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            conn = await self._connect()
            try:
                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS live_classes (
                        id TEXT PRIMARY KEY,
                        room_id TEXT,
                        title TEXT NOT NULL,
                        description TEXT,
                        status TEXT NOT NULL DEFAULT 'scheduled',
                        created_by TEXT NOT NULL,
                        meeting_url TEXT,
                        provider TEXT NOT NULL DEFAULT 'webrtc',
                        starts_at TEXT,
                        ends_at TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                await conn.commit()
            finally:
                await conn.close()

            self._initialized = True

    async def create_room(
        self,
        *,
        title: str,
        created_by: str,
        description: Optional[str] = None,
        meeting_url: Optional[str] = None,
        provider: str = "webrtc",
        status: str = "live",
        starts_at: Optional[str] = None,
    ) -> RoomDescriptor:
        now = utc_now_iso()
        room = RoomDescriptor(
            id=str(uuid.uuid4()),
            # only rooms hosted here get a realtime topic of their own
            room_id=uuid.uuid4().hex if provider == "webrtc" else None,
            title=title,
            description=description,
            status=status,
            created_by=created_by,
            meeting_url=meeting_url,
            provider=provider,
            starts_at=starts_at or now,
            created_at=now,
            updated_at=now,
        )
        conn = await self._connect()
        try:
            await conn.execute(
                f"""
                INSERT INTO live_classes ({ROOM_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    room.id,
                    room.room_id,
                    room.title,
                    room.description,
                    room.status,
                    room.created_by,
                    room.meeting_url,
                    room.provider,
                    room.starts_at,
                    room.ends_at,
                    room.created_at,
                    room.updated_at,
                ),
            )
            await conn.commit()
        finally:
            await conn.close()
        return room

    async def get_room(self, room_id: str) -> Optional[RoomDescriptor]:
        conn = await self._connect()
        try:
            cursor = await conn.execute(
                f"SELECT {ROOM_COLUMNS} FROM live_classes WHERE id = ?",
                (room_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
        finally:
            await conn.close()

        return self._row_to_room(row) if row else None

    async def list_rooms(self, *, limit: int = 100) -> List[RoomDescriptor]:
        conn = await self._connect()
        try:
            cursor = await conn.execute(
                f"""
                SELECT {ROOM_COLUMNS}
                FROM live_classes
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (limit,),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        finally:
            await conn.close()

        return [self._row_to_room(row) for row in rows]

    async def update_meeting_url(self, room_id: str, meeting_url: str) -> Optional[RoomDescriptor]:
        await self._update(room_id, "meeting_url = ?", (meeting_url,))
        return await self.get_room(room_id)

    async def end_room(self, room_id: str) -> Optional[RoomDescriptor]:
        now = utc_now_iso()
        await self._update(room_id, "status = 'ended', ends_at = ?", (now,))
        return await self.get_room(room_id)

    async def delete_room(self, room_id: str) -> bool:
        conn = await self._connect()
        try:
            cursor = await conn.execute("DELETE FROM live_classes WHERE id = ?", (room_id,))
            await conn.commit()
            deleted = cursor.rowcount > 0
            await cursor.close()
        finally:
            await conn.close()
        return deleted

    async def _update(self, room_id: str, assignments: str, params: tuple) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                f"UPDATE live_classes SET {assignments}, updated_at = ? WHERE id = ?",
                (*params, utc_now_iso(), room_id),
            )
            await conn.commit()
        finally:
            await conn.close()

    async def _connect(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(self.db_path.as_posix())
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    @staticmethod
    def _row_to_room(row: aiosqlite.Row) -> RoomDescriptor:
        return RoomDescriptor(
            id=row[0],
            room_id=row[1],
            title=row[2],
            description=row[3],
            status=row[4],
            created_by=row[5],
            meeting_url=row[6],
            provider=row[7],
            starts_at=row[8],
            ends_at=row[9],
            created_at=row[10],
            updated_at=row[11],
        )
