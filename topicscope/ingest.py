"""
Ingestion pipeline: protocol message event -> MessageRecord -> batcher -> store.

The protocol client (see mqtt_client.py) calls `Ingestor.receive` on the event
loop thread for every arriving message.
"""
import asyncio
import logging
import time
import uuid
from collections import deque
from collections.abc import Callable, Mapping
from typing import Any, Optional

from topicscope.batcher import MessageBatcher
from topicscope.config import BATCH_INTERVAL_MS
from topicscope.payload import decode_preview
from topicscope.tree.models import MessageRecord, PropertyValue
from topicscope.tree.store import TopicStore

logger = logging.getLogger(__name__)

# Window used for the messages-per-second figure in stats()
RATE_WINDOW_MS = 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


def _normalize_value(value: Any) -> PropertyValue:
    if value is None or isinstance(value, (str, bool, int, float, bytes)):
        return value
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, Mapping):
        return {str(k): _normalize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_value(v) for v in value]
    return str(value)


def normalize_properties(properties: Any) -> Optional[dict[str, PropertyValue]]:
    """
    Turn protocol properties into an ordered str-keyed dict.

    Accepts a plain mapping or a paho-mqtt `Properties` object (anything with
    `json()`). Empty input yields None.
    """
    if properties is None:
        return None
    if hasattr(properties, "json") and not isinstance(properties, Mapping):
        properties = properties.json()
    if not isinstance(properties, Mapping) or not properties:
        return None
    return {str(k): _normalize_value(v) for k, v in properties.items()}


def _content_type_of(properties: Optional[dict[str, PropertyValue]]) -> Optional[str]:
    if not properties:
        return None
    for key in ("ContentType", "content_type", "contentType"):
        value = properties.get(key)
        if isinstance(value, str):
            return value
    return None


def build_record(
    topic: str,
    payload: bytes,
    qos: int = 0,
    retained: bool = False,
    dup: bool = False,
    properties: Any = None,
    ts: Optional[int] = None,
) -> MessageRecord:
    props = normalize_properties(properties)
    content_type = _content_type_of(props)
    payload = bytes(payload)
    decoded = decode_preview(payload, content_type)
    return MessageRecord(
        id=str(uuid.uuid4()),
        topic=topic,
        ts=ts if ts is not None else _now_ms(),
        payload=payload,
        payload_text=decoded.text,
        payload_json=decoded.json,
        is_json=decoded.is_json,
        content_type=content_type,
        properties=props,
        retained=bool(retained),
        qos=int(qos),
        dup=bool(dup),
    )


class Ingestor:
    """Owns the topic store and the batcher feeding it."""

    def __init__(
        self,
        store: Optional[TopicStore] = None,
        interval_ms: int = BATCH_INTERVAL_MS,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.store = store if store is not None else TopicStore()
        self.batcher = MessageBatcher(self.store.batch_upsert, interval_ms=interval_ms, loop=loop)
        self.paused = False
        self.messages_received = 0
        self.last_message_ts: Optional[int] = None
        self._clock = clock
        self._arrivals: deque[int] = deque()

    def receive(
        self,
        topic: str,
        payload: bytes,
        qos: int = 0,
        retained: bool = False,
        dup: bool = False,
        properties: Any = None,
    ) -> Optional[MessageRecord]:
        """Decode one message and queue it. Returns None while paused."""
        if self.paused:
            return None
        now = self._clock()
        self.messages_received += 1
        self.last_message_ts = now
        self._arrivals.append(now)
        self._trim_arrivals(now)
        record = build_record(topic, payload, qos, retained, dup, properties, ts=now)
        self.batcher.add(record)
        return record

    def _trim_arrivals(self, now: int) -> None:
        while self._arrivals and self._arrivals[0] <= now - RATE_WINDOW_MS:
            self._arrivals.popleft()

    def message_rate(self) -> float:
        """Messages per second over the last RATE_WINDOW_MS."""
        self._trim_arrivals(self._clock())
        return len(self._arrivals) * 1000 / RATE_WINDOW_MS

    def pause(self) -> None:
        self.paused = True
        logger.info("Ingestion paused")

    def resume(self) -> None:
        self.paused = False
        logger.info("Ingestion resumed")

    def flush(self) -> None:
        self.batcher.flush()

    def disconnect(self) -> None:
        """Drop in-flight messages that have not been applied yet."""
        self.batcher.clear()

    def reset(self) -> None:
        self.batcher.clear()
        self.store.clear_all()
        self.messages_received = 0
        self.last_message_ts = None
        self._arrivals.clear()

    def stats(self) -> dict:
        return {
            "messages_received": self.messages_received,
            "messages_stored": self.store.message_count,
            "topics": self.store.node_count,
            "pending": self.batcher.batch_size,
            "paused": self.paused,
            "last_message_ts": self.last_message_ts,
            "message_rate": self.message_rate(),
        }
