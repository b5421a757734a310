"""End-to-end room behavior: real hub and channel, fake media and peer connections."""
import asyncio

import pytest

from ..services.errors import HostPrivilegeRequired
from ..services.models import IceCandidatePayload, Identity, PresenceRecord
from ..services.orchestrator import RoomOrchestrator, RoomState
from ..services.peers import PeerState
from .fakes import FakeMediaFactory, settle, wait_until


async def join_all(*rooms):
    for room in rooms:
        assert await room.join() is True


def fully_connected(*rooms):
    expected = len(rooms) - 1
    for room in rooms:
        states = room.peer_states()
        if len(states) != expected:
            return False
        if any(state is not PeerState.CONNECTED for state in states.values()):
            return False
        if len(room.remote_streams) != expected:
            return False
    return True


def messages(room):
    return [notice.message for notice in room.notices]


class TestJoin:
    @pytest.mark.asyncio
    async def test_join_publishes_presence(self, make_room, network):
        """A lone participant becomes active and shows up in presence."""
        host = make_room("aaa", name="Ada", role="teacher")

        assert await host.join() is True
        await wait_until(lambda: "aaa" in host.participants)

        assert host.state is RoomState.ACTIVE
        record = host.participants["aaa"]
        assert record.name == "Ada"
        assert record.role == "teacher"
        assert record.audio_muted is False
        assert record.video_off is False
        assert network.hub.presence_state("live-class:algebra-1")["aaa"][0]["user_id"] == "aaa"
        assert host.connection_count() == 0

    @pytest.mark.asyncio
    async def test_topic_falls_back_to_class_id(self, make_room, network, algebra_room):
        """Without a room_id the class id names the topic."""
        algebra_room.room_id = None
        student = make_room("bbb")

        assert await student.join() is True
        assert student.channel.topic == "live-class:class-1"
        assert "live-class:class-1" in network.hub.topics

    @pytest.mark.asyncio
    async def test_join_without_identity(self, network, rtc, algebra_room):
        room = RoomOrchestrator(
            algebra_room,
            None,
            channel_factory=network.channel_factory(),
            media_factory=FakeMediaFactory(),
            pc_factory=rtc.create,
        )

        assert await room.join() is False
        assert room.state is RoomState.IDLE
        assert network.sockets == []
        assert messages(room) == ["Sign in to join the room"]

    @pytest.mark.asyncio
    async def test_join_unconfigured_room(self, make_room, network, algebra_room):
        algebra_room.room_id = None
        algebra_room.id = ""
        student = make_room("bbb")

        assert await student.join() is False
        assert network.sockets == []
        assert messages(student) == ["Room is not configured"]

    @pytest.mark.asyncio
    async def test_media_denied(self, make_room, network):
        """Denied capture leaves the user idle with a notice and no channel."""
        student = make_room("bbb", media=FakeMediaFactory(deny_camera=True))

        assert await student.join() is False
        assert student.state is RoomState.IDLE
        assert network.sockets == []
        assert any("Could not start camera or microphone" in text for text in messages(student))

    @pytest.mark.asyncio
    async def test_transport_failure_releases_media(self, make_room, network):
        media = FakeMediaFactory()
        student = make_room("bbb", media=media)
        network.refuse = True

        assert await student.join() is False
        assert student.state is RoomState.IDLE
        assert media.live_track_count() == 0
        assert any("Could not connect to the room" in text for text in messages(student))

    @pytest.mark.asyncio
    async def test_rejoin_after_leave(self, make_room):
        student = make_room("bbb")
        await student.join()
        await student.leave()

        assert await student.join() is True
        assert student.state is RoomState.ACTIVE
        assert student.media.live_track_count() == 2


class TestMesh:
    @pytest.mark.asyncio
    async def test_two_participants_connect(self, make_room, network):
        """Only the smaller id offers, and each side gets one remote stream."""
        aaa = make_room("aaa", role="teacher")
        bbb = make_room("bbb")
        await join_all(aaa, bbb)

        await wait_until(lambda: fully_connected(aaa, bbb))

        offers = network.signals("offer")
        assert len(offers) == 1
        assert offers[0]["from"] == "aaa"
        assert offers[0]["to"] == "bbb"
        answers = network.signals("answer")
        assert [(answer["from"], answer["to"]) for answer in answers] == [("bbb", "aaa")]
        assert list(aaa.remote_streams) == ["bbb"]
        assert list(bbb.remote_streams) == ["aaa"]
        assert len(aaa.remote_streams["bbb"].tracks) == 2

    @pytest.mark.asyncio
    async def test_join_order_does_not_change_offerer(self, make_room, network):
        bbb = make_room("bbb")
        aaa = make_room("aaa")
        await join_all(bbb, aaa)

        await wait_until(lambda: fully_connected(aaa, bbb))

        assert [offer["from"] for offer in network.signals("offer")] == ["aaa"]

    @pytest.mark.asyncio
    async def test_three_participants_full_mesh(self, make_room, network):
        rooms = [make_room(user_id) for user_id in ("ccc", "aaa", "bbb")]
        await join_all(*rooms)

        await wait_until(lambda: fully_connected(*rooms))

        pairs = sorted((offer["from"], offer["to"]) for offer in network.signals("offer"))
        assert pairs == [("aaa", "bbb"), ("aaa", "ccc"), ("bbb", "ccc")]

    @pytest.mark.asyncio
    async def test_ice_candidates_reach_the_peer(self, make_room, rtc):
        aaa = make_room("aaa")
        bbb = make_room("bbb")
        await join_all(aaa, bbb)
        await wait_until(lambda: fully_connected(aaa, bbb))

        await wait_until(lambda: all(pc.candidates for pc in rtc.connections))
        offerer_pc = aaa.peers.links["bbb"].pc
        answerer_pc = bbb.peers.links["aaa"].pc
        assert answerer_pc.candidates[0].ip == f"10.0.0.{offerer_pc.uid}"
        assert offerer_pc.candidates[0].ip == f"10.0.0.{answerer_pc.uid}"

    @pytest.mark.asyncio
    async def test_departed_participant_is_closed(self, make_room):
        aaa = make_room("aaa")
        bbb = make_room("bbb")
        await join_all(aaa, bbb)
        await wait_until(lambda: fully_connected(aaa, bbb))
        pc = aaa.peers.links["bbb"].pc

        await bbb.leave()
        await wait_until(lambda: "bbb" not in aaa.participants)

        assert aaa.connection_count() == 0
        assert aaa.remote_streams == {}
        assert pc.closed is True

    @pytest.mark.asyncio
    async def test_departed_peer_drops_buffered_candidates(self, make_room):
        """Candidates held for someone we never linked to go when they leave."""
        host = make_room("aaa")
        await host.join()
        await wait_until(lambda: "aaa" in host.participants)
        host.participants["zzz"] = PresenceRecord(user_id="zzz", name="Z", role="student")
        host.peers.pending_candidates["zzz"] = [
            IceCandidatePayload(candidate="candidate:1 1 udp 1 10.0.0.9 9 typ host")
        ]

        await host._on_presence({"aaa": host.participants["aaa"]})

        assert "zzz" not in host.peers.pending_candidates
        assert host.connection_count() == 0


class TestLeave:
    @pytest.mark.asyncio
    async def test_leave_releases_everything(self, make_room):
        aaa = make_room("aaa")
        bbb = make_room("bbb")
        await join_all(aaa, bbb)
        await wait_until(lambda: fully_connected(aaa, bbb))
        pcs = [link.pc for link in aaa.peers.links.values()]

        await aaa.leave()

        assert aaa.state is RoomState.IDLE
        assert aaa.connection_count() == 0
        assert aaa.media.live_track_count() == 0
        assert aaa.participants == {}
        assert all(pc.closed for pc in pcs)
        assert messages(aaa)[-1] == "Left the room"

    @pytest.mark.asyncio
    async def test_leave_is_idempotent(self, make_room):
        student = make_room("bbb")
        await student.join()

        await student.leave()
        await student.leave()

        assert messages(student).count("Left the room") == 1

    @pytest.mark.asyncio
    async def test_hub_drop_tears_down(self, make_room, network):
        student = make_room("bbb")
        await student.join()

        await network.socket_for("bbb").close()
        await wait_until(lambda: student.state is RoomState.IDLE)

        assert "Lost connection to the room" in messages(student)
        assert student.media.live_track_count() == 0


class TestLocalMedia:
    @pytest.mark.asyncio
    async def test_toggle_mic_twice(self, make_room):
        """Muting is visible to peers and toggling back restores the track."""
        aaa = make_room("aaa")
        bbb = make_room("bbb")
        await join_all(aaa, bbb)
        await wait_until(lambda: fully_connected(aaa, bbb))
        audio = bbb.media.audio_track

        assert await bbb.toggle_mic() is True
        await wait_until(lambda: aaa.participants["bbb"].audio_muted)
        assert audio.enabled is False

        assert await bbb.toggle_mic() is False
        await wait_until(lambda: not aaa.participants["bbb"].audio_muted)
        assert audio.enabled is True
        assert aaa.connection_count() == 1

    @pytest.mark.asyncio
    async def test_toggle_camera(self, make_room):
        aaa = make_room("aaa")
        bbb = make_room("bbb")
        await join_all(aaa, bbb)

        assert await bbb.toggle_camera() is True
        await wait_until(lambda: "bbb" in aaa.participants and aaa.participants["bbb"].video_off)

        assert bbb.media.camera_track.enabled is False
        assert bbb.video_off is True


class TestScreenShare:
    @pytest.mark.asyncio
    async def test_share_keeps_connections(self, make_room):
        """The outgoing video is swapped in place on every connection."""
        host = make_room("aaa", role="teacher")
        students = [make_room("bbb"), make_room("ccc")]
        await join_all(host, *students)
        await wait_until(lambda: fully_connected(host, *students))
        pcs = {peer_id: link.pc for peer_id, link in host.peers.links.items()}

        await host.start_screen_share()

        screen = host.media.screen_track
        assert host.is_sharing is True
        assert screen is not None
        assert host.connection_count() == 2
        assert {peer_id: link.pc for peer_id, link in host.peers.links.items()} == pcs
        for pc in pcs.values():
            video = [sender for sender in pc.getSenders() if sender.track.kind == "video"]
            assert [sender.track for sender in video] == [screen]
            assert pc.connectionState == "connected"
        assert host.media.camera_track.enabled is False
        assert host.local_stream is host.media.display

        await host.stop_screen_share()

        camera = host.media.camera_track
        assert host.is_sharing is False
        assert screen.readyState == "ended"
        assert camera.enabled is True
        for pc in pcs.values():
            video = [sender for sender in pc.getSenders() if sender.track.kind == "video"]
            assert [sender.track for sender in video] == [camera]

    @pytest.mark.asyncio
    async def test_share_ends_with_the_source(self, make_room):
        host = make_room("aaa", role="teacher")
        await host.join()
        await host.start_screen_share()

        host.media.screen_track.stop()
        await wait_until(lambda: not host.is_sharing)

        assert host.media.camera_track.enabled is True

    @pytest.mark.asyncio
    async def test_share_denied(self, make_room):
        host = make_room("aaa", role="teacher", media=FakeMediaFactory(deny_display=True))
        await host.join()

        await host.start_screen_share()

        assert host.is_sharing is False
        assert any("Screen share failed" in text for text in messages(host))

    @pytest.mark.asyncio
    async def test_non_host_cannot_share(self, make_room):
        student = make_room("bbb")
        await student.join()

        with pytest.raises(HostPrivilegeRequired):
            await student.start_screen_share()

        assert student.is_sharing is False
        assert "Only the host can share the screen" in messages(student)

    @pytest.mark.asyncio
    async def test_leave_while_share_is_starting(self, make_room):
        """A display capture that finishes after leave() is stopped, not kept."""
        gate = asyncio.Event()
        media = FakeMediaFactory(display_gate=gate)
        host = make_room("aaa", role="teacher", media=media)
        await host.join()

        share = asyncio.create_task(host.start_screen_share())
        await wait_until(lambda: media.display_requests == 1)
        await host.leave()
        gate.set()
        await share

        assert host.is_sharing is False
        assert host.media.display is None
        assert host.media.live_track_count() == 0
        assert media.live_track_count() == 0


class TestModeration:
    @pytest.mark.asyncio
    async def test_kick(self, make_room, network):
        host = make_room("aaa", role="teacher")
        student = make_room("bbb")
        await join_all(host, student)
        await wait_until(lambda: fully_connected(host, student))

        await host.kick("bbb")
        await wait_until(lambda: student.state is RoomState.IDLE)

        assert student.kicked is True
        assert student.connection_count() == 0
        assert student.media.live_track_count() == 0
        assert "You were removed from the room" in messages(student)
        await wait_until(lambda: "bbb" not in host.participants)
        assert host.connection_count() == 0
        assert [(kick["from"], kick["to"]) for kick in network.signals("kick")] == [("aaa", "bbb")]

    @pytest.mark.asyncio
    async def test_kick_for_someone_else_is_ignored(self, make_room):
        host = make_room("aaa", role="teacher")
        student = make_room("bbb")
        await join_all(host, student)
        await wait_until(lambda: fully_connected(host, student))

        await host.kick("zzz")
        await settle()

        assert student.state is RoomState.ACTIVE
        assert student.kicked is False
        assert student.connection_count() == 1

    @pytest.mark.asyncio
    async def test_host_cannot_kick_self(self, make_room, network):
        host = make_room("aaa", role="teacher")
        await host.join()

        await host.kick("aaa")

        assert host.state is RoomState.ACTIVE
        assert network.signals("kick") == []

    @pytest.mark.asyncio
    async def test_request_mute(self, make_room):
        host = make_room("aaa", role="teacher")
        student = make_room("bbb")
        await join_all(host, student)
        await wait_until(lambda: fully_connected(host, student))

        await host.request_mute("bbb")
        await wait_until(lambda: student.audio_muted)

        assert student.media.audio_track.enabled is False
        assert "Host requested you mute your microphone" in messages(student)
        await wait_until(lambda: host.participants["bbb"].audio_muted)
        # the student stays in control of their microphone
        assert await student.toggle_mic() is False

    @pytest.mark.asyncio
    async def test_non_host_request_mute_sends_nothing(self, make_room, network):
        host = make_room("aaa", role="teacher")
        student = make_room("bbb")
        await join_all(host, student)

        with pytest.raises(HostPrivilegeRequired):
            await student.request_mute("aaa")

        assert network.signals("mute_request") == []
        assert host.audio_muted is False

    @pytest.mark.asyncio
    async def test_admin_is_host_anywhere(self, make_room):
        admin = make_room("zed", role="admin")
        assert admin.is_host is True
        assert make_room("bbb").is_host is False

    @pytest.mark.asyncio
    async def test_moderation_requires_active_room(self, make_room, network):
        host = make_room("aaa", role="teacher")

        await host.kick("bbb")

        assert network.signals() == []
        assert "Join the room first" in messages(host)


class TestNotices:
    @pytest.mark.asyncio
    async def test_callbacks(self, make_room):
        seen = []
        changes = []
        student = make_room("bbb", on_notice=seen.append, on_change=lambda: changes.append(1))

        await student.join()
        await student.leave()

        assert [notice.message for notice in seen] == ["Left the room"]
        assert changes

    @pytest.mark.asyncio
    async def test_participant_list_sorted_by_name(self, make_room):
        rooms = [make_room("aaa", name="zoe"), make_room("bbb", name="Adam")]
        await join_all(*rooms)
        await wait_until(lambda: len(rooms[0].participants) == 2)

        assert [record.name for record in rooms[0].participant_list()] == ["Adam", "zoe"]

    def test_identity_is_kept(self, algebra_room, network, rtc):
        room = RoomOrchestrator(
            algebra_room,
            Identity(id="aaa", name="Ada"),
            channel_factory=network.channel_factory(),
            media_factory=FakeMediaFactory(),
        )
        assert room.state is RoomState.IDLE
        assert room.is_host is True
        assert room.connection_count() == 0
        assert room.remote_streams == {}
