"""Pytest configuration and shared fixtures for all tests."""
import os
import tempfile
from pathlib import Path

import pytest

# main.py builds its repository at import time, so point it somewhere disposable first
os.environ.setdefault(
    "LIVEROOM_DATABASE_PATH", str(Path(tempfile.mkdtemp(prefix="liveroom-tests-")) / "liveroom.db")
)

from ..services.database import RoomRepository  # noqa: E402
from ..services.models import Identity, RoomDescriptor  # noqa: E402
from ..services.orchestrator import RoomOrchestrator  # noqa: E402
from .fakes import FakeMediaFactory, FakeRtcNetwork, MemoryNetwork  # noqa: E402


@pytest.fixture
def algebra_room():
    """A live WebRTC class hosted by user ``aaa``."""
    return RoomDescriptor(
        id="class-1",
        room_id="algebra-1",
        title="Algebra I",
        created_by="aaa",
        status="live",
    )


@pytest.fixture
def network():
    """An in-memory realtime hub the orchestrators subscribe through."""
    return MemoryNetwork()


@pytest.fixture
def rtc():
    """Fake peer connections that 'connect' when offer and answer are exchanged."""
    return FakeRtcNetwork()


@pytest.fixture
async def make_room(network, rtc, algebra_room):
    """Build orchestrators sharing one hub; every one of them leaves at teardown."""
    created = []

    def _make(user_id, *, name=None, role="student", room=None, media=None, **kwargs):
        orchestrator = RoomOrchestrator(
            room or algebra_room,
            Identity(id=user_id, name=name or user_id.upper(), role=role),
            channel_factory=network.channel_factory(),
            media_factory=media or FakeMediaFactory(),
            pc_factory=rtc.create,
            subscribe_timeout=1.0,
            **kwargs,
        )
        created.append(orchestrator)
        return orchestrator

    yield _make

    for orchestrator in created:
        await orchestrator.leave()
    await rtc.drain()


@pytest.fixture
async def repo():
    """Create a temporary database for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        repository = RoomRepository(db_path=Path(tmpdir) / "test.db")
        await repository.initialize()
        yield repository
