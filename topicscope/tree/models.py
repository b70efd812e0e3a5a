"""
Data models (dataclasses) for the topic tree.
These are plain Python objects shared by the store, the view helpers, the diff
engine and the API layer.
"""
from dataclasses import dataclass, field
from typing import Any, Optional, Union

# Loosely typed protocol property value. Nested mappings keep insertion order.
PropertyValue = Union[str, int, float, bool, bytes, list, dict, None]


@dataclass
class TopicNode:
    id: str                      # full slash-joined path, e.g. sensors/room1/temp
    name: str                    # last path segment (may be "")
    parent_id: Optional[str]     # None for roots
    children: list[str] = field(default_factory=list)  # sorted child path keys
    expanded: bool = False
    # Summary of the latest message on this exact topic
    last_payload_id: Optional[str] = None
    last_timestamp: Optional[int] = None
    retained: Optional[bool] = None
    qos: Optional[int] = None
    highlighted_until: Optional[int] = None

    @property
    def path(self) -> str:
        return self.id

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "path": self.id,
            "parent_id": self.parent_id,
            "children": list(self.children),
            "expanded": self.expanded,
            "last_payload_id": self.last_payload_id,
            "last_timestamp": self.last_timestamp,
            "retained": self.retained,
            "qos": self.qos,
            "highlighted_until": self.highlighted_until,
        }


@dataclass(frozen=True)
class MessageRecord:
    id: str
    topic: str
    ts: int                      # arrival time, epoch milliseconds
    payload: bytes
    payload_text: Optional[str] = None
    payload_json: Any = None
    is_json: bool = False
    content_type: Optional[str] = None
    properties: Optional[dict[str, PropertyValue]] = None
    retained: bool = False
    qos: int = 0                 # 0 | 1 | 2
    dup: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "topic": self.topic,
            "ts": self.ts,
            "size": len(self.payload),
            "payload_hex": self.payload.hex(),
            "payload_text": self.payload_text,
            "payload_json": self.payload_json if self.is_json else None,
            "is_json": self.is_json,
            "content_type": self.content_type,
            "properties": jsonable(self.properties) if self.properties else None,
            "retained": self.retained,
            "qos": self.qos,
            "dup": self.dup,
        }


@dataclass
class FlattenedItem:
    id: str
    depth: int


def jsonable(value: Any) -> Any:
    """Convert a property value into something json.dumps accepts (bytes -> hex)."""
    if isinstance(value, (bytes, bytearray)):
        return value.hex()
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return value
