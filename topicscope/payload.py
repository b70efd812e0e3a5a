"""
Payload decoding for incoming messages.

Classifies raw bytes as text, JSON or binary. Every helper here is pure and
never raises on malformed input: a failed decode simply leaves the
corresponding field empty.
"""
import json
from dataclasses import dataclass
from typing import Any, Optional

# Share of printable characters required before a payload is shown as text
PRINTABLE_RATIO = 0.95


@dataclass
class DecodedPayload:
    text: Optional[str]
    json: Any
    is_json: bool
    is_text: bool
    size: int


def is_likely_json(payload: bytes) -> bool:
    """True when the payload starts and ends with a matching {} or [] pair."""
    if not payload:
        return False
    first, last = payload[0], payload[-1]
    return (first == 0x7B and last == 0x7D) or (first == 0x5B and last == 0x5D)


def to_utf8(payload: bytes) -> Optional[str]:
    try:
        return payload.decode("utf-8", errors="strict")
    except UnicodeDecodeError:
        return None


def try_parse_json(text: str) -> tuple[bool, Any]:
    """
    Returns:
        (True, value)   if text is valid JSON (value may be None for `null`)
        (False, None)   otherwise
    """
    try:
        return True, json.loads(text)
    except ValueError:
        return False, None


def is_printable(text: str) -> bool:
    if not text:
        return False
    printable = sum(1 for ch in text if ord(ch) >= 32 or ch in "\t\n\r")
    return printable / len(text) > PRINTABLE_RATIO


def decode_preview(payload: bytes, content_type: Optional[str] = None) -> DecodedPayload:
    size = len(payload)
    text = to_utf8(payload)

    parsed = None
    is_json = False
    if text is not None and ((content_type and "json" in content_type) or is_likely_json(payload)):
        is_json, parsed = try_parse_json(text)

    is_text = text is not None and is_printable(text)

    return DecodedPayload(
        text=text if is_text else None,
        json=parsed,
        is_json=is_json,
        is_text=is_text,
        size=size,
    )


def format_hex_byte(value: Optional[int]) -> str:
    if value is None:
        return "--"
    return f"{value:02X}"


def format_json_path(path: list[str]) -> str:
    if not path:
        return "(root)"
    return ".".join(path)
