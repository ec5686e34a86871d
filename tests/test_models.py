import json
from datetime import datetime, timezone

import pytest

from funken.models import (
    Group,
    GroupNGFilter,
    GroupStatus,
    MemberGroup,
    Message,
    MsgSortDirection,
)

TS = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)


def test_group_document_omits_empty_fields():
    doc = Group(status=GroupStatus.LOCKED).to_document()
    assert doc == {"status": 2, "message_count": 0}


def test_group_member_count_zero_is_kept():
    doc = Group(member_count=0).to_document()
    assert doc["member_count"] == 0
    assert "member_count" not in Group().to_document()


def test_group_round_trip():
    group = Group(
        id="g1",
        created_at=TS,
        updated_at=TS,
        meta={"topic": "x"},
        status=GroupStatus.ACTIVE,
        member_count=3,
        message_count=7,
    )
    assert Group.from_document(group.to_document()) == group


def test_from_document_ignores_unknown_and_normalises_times():
    doc = {"_id": "object", "id": "g2", "created_at": datetime(2024, 5, 1, 12, 30), "status": 2}
    group = Group.from_document(doc)
    assert group.id == "g2"
    assert group.created_at == TS
    assert group.status is GroupStatus.LOCKED


def test_from_document_rejects_unknown_status():
    with pytest.raises(ValueError):
        Group.from_document({"status": 9})


def test_ng_filter_json_names():
    data = json.loads(GroupNGFilter(group_id="g1", title="t", pattern="p").to_json())
    assert data["groupId"] == "g1"
    assert "flags" not in data
    flagged = json.loads(GroupNGFilter(flags="i").to_json())
    assert flagged["flags"] == "i"


def test_zero_time_json_format():
    data = json.loads(MemberGroup(member_id="m1", group_id="g1").to_json())
    assert data["created_at"] == "0001-01-01T00:00:00Z"
    assert data["member_id"] == "m1"


def test_message_document_and_json():
    message = Message(id="m1", message="hi", nickname="nick", ip_address="127.0.0.1")
    doc = message.to_document()
    assert doc["priority"] is False
    assert "group_id" not in doc
    assert "mentions" not in doc
    assert "deleted_at" not in doc
    assert "deleted_at" not in json.loads(message.to_json())


def test_message_deleted_at_round_trip_through_json():
    message = Message(deleted_at=TS, mentions=["a", "b"])
    data = json.loads(message.to_json())
    parsed = datetime.fromisoformat(data["deleted_at"].replace("Z", "+00:00"))
    assert parsed == TS
    assert data["mentions"] == ["a", "b"]
    assert Message.from_document(message.to_document()) == message


def test_sort_direction_values():
    assert MsgSortDirection("desc") is MsgSortDirection.DESC
    assert MsgSortDirection.ASC.value == "asc"