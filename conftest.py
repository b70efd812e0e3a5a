"""
Shared pytest configuration for TopicScope unit tests.

Points the profile database at a test-only file before any topicscope module
is imported (config values are read once at import time), and provides small
builders for message records.
"""
import os
import itertools

import pytest

TEST_DB_PATH = os.path.join(os.path.dirname(__file__), "data", "profiles_test.db")
os.environ["TOPICSCOPE_DB"] = TEST_DB_PATH

from topicscope.tree.models import MessageRecord  # noqa: E402
from topicscope.payload import decode_preview  # noqa: E402

_ids = itertools.count(1)


def make_record(topic: str, payload: bytes = b"", msg_id: str | None = None, ts: int | None = None,
                qos: int = 0, retained: bool = False, dup: bool = False,
                content_type: str | None = None, properties: dict | None = None) -> MessageRecord:
    n = next(_ids)
    decoded = decode_preview(payload, content_type)
    return MessageRecord(
        id=msg_id or f"m{n}",
        topic=topic,
        ts=ts if ts is not None else 1_700_000_000_000 + n,
        payload=payload,
        payload_text=decoded.text,
        payload_json=decoded.json,
        is_json=decoded.is_json,
        content_type=content_type,
        properties=properties,
        retained=retained,
        qos=qos,
        dup=dup,
    )


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture(scope="session", autouse=True)
def _cleanup_test_db():
    yield
    for suffix in ("", "-wal", "-shm"):
        path = TEST_DB_PATH + suffix
        if os.path.exists(path):
            try:
                os.remove(path)
            except OSError as e:
                print(f"Warning: Could not remove test database file {path}: {e}")
