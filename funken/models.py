"""Documents stored by the chat service."""

import json
from dataclasses import MISSING, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Callable, ClassVar, Dict, List, Optional

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)


def _attr(
    bson: str,
    *,
    json_name: Optional[str] = None,
    omitempty: bool = False,
    json_omitempty: bool = False,
    pointer: bool = False,
    default: Any = MISSING,
    default_factory: Any = MISSING,
    decode: Optional[Callable[[Any], Any]] = None,
) -> Any:
    metadata = {
        "bson": bson,
        "json": json_name or bson,
        "omitempty": omitempty,
        "json_omitempty": json_omitempty,
        "pointer": pointer,
        "decode": decode,
    }
    return field(default=default, default_factory=default_factory, metadata=metadata)


def _is_empty(value: Any, pointer: bool) -> bool:
    if value is None:
        return True
    if pointer:
        return False
    if isinstance(value, datetime):
        return value == ZERO_TIME
    if isinstance(value, (bool, int, float)):
        return not value
    if isinstance(value, (str, list, tuple, dict)):
        return len(value) == 0
    return False


def _utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def format_time(value: datetime) -> str:
    """Format a timestamp as RFC 3339 with trailing zeros of the fraction removed."""
    value = _utc(value)
    text = value.replace(microsecond=0).isoformat()
    if value.microsecond:
        fraction = f"{value.microsecond:06d}".rstrip("0")
        text = f"{text[:19]}.{fraction}{text[19:]}"
    if text.endswith("+00:00"):
        text = text[:-6] + "Z"
    return text


def _json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_time(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_value(v) for v in value]
    return value


def _bson_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return list(value)
    if isinstance(value, dict):
        return dict(value)
    return value


def _decode_time(value: Any) -> Any:
    return _utc(value) if isinstance(value, datetime) else value


@dataclass(kw_only=True)
class BaseModel:
    """Fields shared by every stored document."""

    id: str = _attr("id", omitempty=True, default="")
    created_at: datetime = _attr("created_at", omitempty=True, default=ZERO_TIME, decode=_decode_time)
    updated_at: datetime = _attr("updated_at", omitempty=True, default=ZERO_TIME, decode=_decode_time)

    def to_document(self) -> Dict[str, Any]:
        """Return the MongoDB document for this model."""
        document = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.metadata["omitempty"] and _is_empty(value, f.metadata["pointer"]):
                continue
            document[f.metadata["bson"]] = _bson_value(value)
        return document

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "BaseModel":
        """Build a model from a MongoDB document, ignoring unknown keys."""
        values = {}
        for f in fields(cls):
            key = f.metadata["bson"]
            if key not in document:
                continue
            raw = document[key]
            decode = f.metadata["decode"]
            values[f.name] = decode(raw) if decode is not None and raw is not None else raw
        return cls(**values)

    def to_json(self) -> str:
        """Return the JSON representation used by the API."""
        payload = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.metadata["json_omitempty"] and _is_empty(value, f.metadata["pointer"]):
                continue
            payload[f.metadata["json"]] = _json_value(value)
        return json.dumps(payload)


class GroupStatus(IntEnum):
    ACTIVE = 1
    LOCKED = 2


@dataclass(kw_only=True)
class Group(BaseModel):
    collection_name: ClassVar[str] = "groups"

    meta: Optional[Dict[str, Any]] = _attr("meta", omitempty=True, default=None, decode=dict)
    status: GroupStatus = _attr("status", default=GroupStatus.ACTIVE, decode=GroupStatus)
    member_count: Optional[int] = _attr(
        "member_count", omitempty=True, json_omitempty=True, pointer=True, default=None
    )
    message_count: int = _attr("message_count", default=0)


@dataclass(kw_only=True)
class GroupNGFilter(BaseModel):
    collection_name: ClassVar[str] = "group_ng_filters"

    group_id: str = _attr("group_id", json_name="groupId", omitempty=True, default="")
    title: str = _attr("title", default="")
    pattern: str = _attr("pattern", default="")
    flags: str = _attr("flags", omitempty=True, json_omitempty=True, default="")


@dataclass(kw_only=True)
class MemberGroup(BaseModel):
    collection_name: ClassVar[str] = "member_groups"

    member_id: str = _attr("member_id", default="")
    group_id: str = _attr("group_id", default="")


class MsgSortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(kw_only=True)
class Message(BaseModel):
    collection_name: ClassVar[str] = "messages"

    message: str = _attr("message", default="")
    group_id: str = _attr("group_id", omitempty=True, default="")
    sender_id: str = _attr("sender_id", omitempty=True, default="")
    mentions: List[str] = _attr("mentions", omitempty=True, default_factory=list, decode=list)
    priority: bool = _attr("priority", default=False)
    nickname: str = _attr("nickname", default="")
    ip_address: str = _attr("ip_address", default="")
    deleted_at: Optional[datetime] = _attr(
        "deleted_at", omitempty=True, json_omitempty=True, pointer=True, default=None, decode=_decode_time
    )