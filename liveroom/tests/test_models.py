import pytest
from pydantic import ValidationError

from ..services.errors import RoomNotConfigured
from ..services.models import (
    AnswerSignal,
    IceSignal,
    Identity,
    KickSignal,
    PresenceRecord,
    RoomDescriptor,
    is_host,
    parse_signal,
    room_topic,
)


def room(**overrides):
    fields = {"id": "class-1", "title": "Algebra I", "created_by": "teacher-1", "room_id": "algebra-1"}
    fields.update(overrides)
    return RoomDescriptor(**fields)


class TestRoomTopic:
    def test_prefers_room_id(self):
        assert room_topic(room()) == "live-class:algebra-1"

    def test_falls_back_to_id(self):
        assert room_topic(room(room_id=None)) == "live-class:class-1"

    def test_custom_prefix(self):
        assert room_topic(room(), "staging-class") == "staging-class:algebra-1"

    def test_missing_key(self):
        with pytest.raises(RoomNotConfigured):
            room_topic(room(id="", room_id=None))


class TestIsHost:
    def test_creator(self):
        assert is_host(Identity(id="teacher-1", name="T", role="teacher"), room())

    def test_admin(self):
        assert is_host(Identity(id="someone", name="A", role="admin"), room())

    def test_other_teacher(self):
        assert not is_host(Identity(id="teacher-2", name="T", role="teacher"), room())

    def test_anonymous(self):
        assert not is_host(None, room())


class TestSignals:
    def test_parse_each_type(self):
        answer = parse_signal(
            {"type": "answer", "from": "bbb", "to": "aaa", "sdp": {"type": "answer", "sdp": "v=0"}}
        )
        ice = parse_signal(
            {
                "type": "ice",
                "from": "aaa",
                "to": "bbb",
                "candidate": {"candidate": "candidate:1 1 udp 1 10.0.0.1 9 typ host", "sdpMLineIndex": 0},
            }
        )
        kick = parse_signal({"type": "kick", "from": "aaa", "to": "bbb"})

        assert isinstance(answer, AnswerSignal)
        assert isinstance(ice, IceSignal)
        assert ice.candidate.sdpMid is None
        assert ice.candidate.sdpMLineIndex == 0
        assert isinstance(kick, KickSignal)

    @pytest.mark.parametrize(
        "payload",
        [
            {"type": "wave", "from": "aaa", "to": "bbb"},
            {"type": "kick", "to": "bbb"},
            {"type": "answer", "from": "bbb", "to": "aaa", "sdp": {"type": "rollback", "sdp": ""}},
            None,
        ],
    )
    def test_rejects_malformed(self, payload):
        with pytest.raises(ValidationError):
            parse_signal(payload)

    def test_payload_uses_from(self):
        payload = KickSignal(sender="aaa", to="bbb").to_payload()
        assert payload == {"type": "kick", "from": "aaa", "to": "bbb"}


class TestPresenceRecord:
    def test_defaults(self):
        record = PresenceRecord(user_id="aaa", name="Ada", role="student")

        assert record.audio_muted is False
        assert record.video_off is False
        assert record.joined_at

    def test_ignores_unknown_fields(self):
        record = PresenceRecord.model_validate(
            {"user_id": "aaa", "name": "Ada", "role": "student", "presence_ref": "x"}
        )
        assert not hasattr(record, "presence_ref")
