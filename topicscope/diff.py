"""
Message comparison.

Four independent, pure comparisons between an older and a newer message:
line-oriented text, structural JSON, byte-level hex, and metadata. Each returns
a result object with `has_changes` and a `to_dict()` for the API layer.
"""
import json
from dataclasses import dataclass, field, asdict
from difflib import SequenceMatcher
from typing import Any, Optional

from topicscope.payload import format_hex_byte, format_json_path
from topicscope.tree.models import MessageRecord, jsonable

_MISSING = object()


# ─────────────────────────────────────────────
# Text diff
# ─────────────────────────────────────────────

@dataclass
class DiffLine:
    type: str            # added | removed | unchanged
    content: str
    old_line_number: Optional[int] = None
    new_line_number: Optional[int] = None


@dataclass
class DiffHunk:
    old_start: int
    old_lines: int
    new_start: int
    new_lines: int
    lines: list[DiffLine] = field(default_factory=list)


@dataclass
class TextDiffResult:
    hunks: list[DiffHunk]
    has_changes: bool
    type: str = "text"

    def to_dict(self) -> dict:
        return asdict(self)


def _split_lines(text: str) -> list[str]:
    # Only "\n" separates lines; "\r" and other breaks stay in the content
    if not text:
        return []
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return lines


def create_text_diff(old_text: str, new_text: str) -> TextDiffResult:
    """
    Line diff with unlimited context: when the texts differ, a single hunk
    carries every line of both inputs. Identical texts produce no hunks.
    """
    old_lines = _split_lines(old_text)
    new_lines = _split_lines(new_text)
    if old_lines == new_lines:
        return TextDiffResult(hunks=[], has_changes=False)

    lines: list[DiffLine] = []
    old_no = new_no = 1
    matcher = SequenceMatcher(None, old_lines, new_lines, autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            for content in old_lines[i1:i2]:
                lines.append(DiffLine("unchanged", content, old_no, new_no))
                old_no += 1
                new_no += 1
            continue
        # replace = delete + insert, removed lines first
        for content in old_lines[i1:i2]:
            lines.append(DiffLine("removed", content, old_line_number=old_no))
            old_no += 1
        for content in new_lines[j1:j2]:
            lines.append(DiffLine("added", content, new_line_number=new_no))
            new_no += 1

    hunk = DiffHunk(
        old_start=1 if old_lines else 0,
        old_lines=len(old_lines),
        new_start=1 if new_lines else 0,
        new_lines=len(new_lines),
        lines=lines,
    )
    return TextDiffResult(
        hunks=[hunk],
        has_changes=any(line.type != "unchanged" for line in lines),
    )


# ─────────────────────────────────────────────
# JSON diff
# ─────────────────────────────────────────────

@dataclass
class JsonChange:
    path: list[str]
    type: str            # added | removed | changed
    old_value: Any = None
    new_value: Any = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["label"] = format_json_path(self.path)
        return data


@dataclass
class JsonDiffResult:
    changes: list[JsonChange]
    has_changes: bool
    type: str = "json"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "has_changes": self.has_changes,
            "changes": [c.to_dict() for c in self.changes],
        }


def _is_container(value: Any) -> bool:
    return isinstance(value, (dict, list))


def _deep_equal(a: Any, b: Any) -> bool:
    # bool is an int subclass; JSON keeps them apart
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(_deep_equal(a[k], b[k]) for k in a)
    if isinstance(a, list) and isinstance(b, list):
        return len(a) == len(b) and all(_deep_equal(x, y) for x, y in zip(a, b))
    if _is_container(a) or _is_container(b):
        return False
    return a == b


def create_json_diff(old_json: Any, new_json: Any) -> JsonDiffResult:
    """
    Recursive comparison by path. Absent values and JSON null are treated
    alike: old missing -> added, new missing -> removed. Array indices
    appear in paths as "[i]".
    """
    changes: list[JsonChange] = []

    def compare(path: list[str], old: Any, new: Any) -> None:
        if old is not _MISSING and new is not _MISSING and _deep_equal(old, new):
            return
        if old is _MISSING or old is None:
            if new is _MISSING or new is None:
                return
            changes.append(JsonChange(path, "added", new_value=new))
            return
        if new is _MISSING or new is None:
            changes.append(JsonChange(path, "removed", old_value=old))
            return

        if not _is_container(old) or not _is_container(new):
            changes.append(JsonChange(path, "changed", old_value=old, new_value=new))
            return

        if isinstance(old, list) and isinstance(new, list):
            for i in range(max(len(old), len(new))):
                compare(
                    path + [f"[{i}]"],
                    old[i] if i < len(old) else _MISSING,
                    new[i] if i < len(new) else _MISSING,
                )
            return

        if isinstance(old, list) or isinstance(new, list):
            changes.append(JsonChange(path, "changed", old_value=old, new_value=new))
            return

        keys = list(old.keys()) + [k for k in new.keys() if k not in old]
        for key in keys:
            compare(path + [str(key)], old.get(key, _MISSING), new.get(key, _MISSING))

    compare([], old_json, new_json)
    return JsonDiffResult(changes=changes, has_changes=bool(changes))


# ─────────────────────────────────────────────
# Hex diff
# ─────────────────────────────────────────────

@dataclass
class HexChange:
    offset: int
    type: str            # added | removed | changed
    old_byte: Optional[int] = None
    new_byte: Optional[int] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["old_hex"] = format_hex_byte(self.old_byte)
        data["new_hex"] = format_hex_byte(self.new_byte)
        return data


@dataclass
class HexDiffResult:
    changes: list[HexChange]
    has_changes: bool
    type: str = "hex"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "has_changes": self.has_changes,
            "changes": [c.to_dict() for c in self.changes],
        }


def create_hex_diff(old_bytes: bytes, new_bytes: bytes) -> HexDiffResult:
    changes: list[HexChange] = []
    old_len, new_len = len(old_bytes), len(new_bytes)
    for offset in range(max(old_len, new_len)):
        if offset >= old_len:
            changes.append(HexChange(offset, "added", new_byte=new_bytes[offset]))
        elif offset >= new_len:
            changes.append(HexChange(offset, "removed", old_byte=old_bytes[offset]))
        elif old_bytes[offset] != new_bytes[offset]:
            changes.append(HexChange(offset, "changed", old_bytes[offset], new_bytes[offset]))
    return HexDiffResult(changes=changes, has_changes=bool(changes))


# ─────────────────────────────────────────────
# Metadata diff
# ─────────────────────────────────────────────

@dataclass
class MetadataDifference:
    field: str
    old_value: Any
    new_value: Any


@dataclass
class MetadataDiffResult:
    differences: list[MetadataDifference]
    has_changes: bool
    type: str = "metadata"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "has_changes": self.has_changes,
            "differences": [
                {"field": d.field, "old_value": jsonable(d.old_value), "new_value": jsonable(d.new_value)}
                for d in self.differences
            ],
        }


def _serialize(value: Any) -> Optional[str]:
    """Stable serialization used as the equality rule for property values."""
    if value is None:
        return None
    return json.dumps(jsonable(value), sort_keys=True, separators=(",", ":"))


def create_metadata_diff(old_msg: MessageRecord, new_msg: MessageRecord) -> MetadataDiffResult:
    differences: list[MetadataDifference] = []

    if old_msg.qos != new_msg.qos:
        differences.append(MetadataDifference("QoS", old_msg.qos, new_msg.qos))
    if old_msg.retained != new_msg.retained:
        differences.append(MetadataDifference("Retained", old_msg.retained, new_msg.retained))
    if bool(old_msg.dup) != bool(new_msg.dup):
        differences.append(MetadataDifference("Duplicate", bool(old_msg.dup), bool(new_msg.dup)))
    if old_msg.content_type != new_msg.content_type:
        differences.append(MetadataDifference(
            "Content Type", old_msg.content_type or "none", new_msg.content_type or "none",
        ))

    old_props = old_msg.properties or {}
    new_props = new_msg.properties or {}
    keys = list(old_props.keys()) + [k for k in new_props.keys() if k not in old_props]
    for key in keys:
        old_val = old_props.get(key)
        new_val = new_props.get(key)
        if _serialize(old_val) != _serialize(new_val):
            differences.append(MetadataDifference(f"Property: {key}", old_val, new_val))

    return MetadataDiffResult(differences=differences, has_changes=bool(differences))


# ─────────────────────────────────────────────
# Whole-message comparison
# ─────────────────────────────────────────────

@dataclass
class MessageComparison:
    text: Optional[TextDiffResult]      # None when either side has no text
    json: Optional[JsonDiffResult]      # None unless both sides parsed as JSON
    hex: HexDiffResult
    metadata: MetadataDiffResult

    @property
    def identical(self) -> bool:
        results = [r for r in (self.text, self.json, self.hex, self.metadata) if r is not None]
        return not any(r.has_changes for r in results)

    def to_dict(self) -> dict:
        return {
            "identical": self.identical,
            "text": self.text.to_dict() if self.text else None,
            "json": self.json.to_dict() if self.json else None,
            "hex": self.hex.to_dict(),
            "metadata": self.metadata.to_dict(),
        }


def compare_messages(old_msg: MessageRecord, new_msg: MessageRecord) -> MessageComparison:
    text = None
    if old_msg.payload_text is not None and new_msg.payload_text is not None:
        text = create_text_diff(old_msg.payload_text, new_msg.payload_text)

    json_result = None
    if old_msg.is_json and new_msg.is_json:
        json_result = create_json_diff(old_msg.payload_json, new_msg.payload_json)

    return MessageComparison(
        text=text,
        json=json_result,
        hex=create_hex_diff(old_msg.payload, new_msg.payload),
        metadata=create_metadata_diff(old_msg, new_msg),
    )
