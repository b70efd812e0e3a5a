"""
TopicScope main entry point.

Starts a FastAPI HTTP server that:
  1. Exposes the topic tree as a flattened, filterable display list
  2. Serves per-topic message history and message-to-message diffs
  3. Manages stored connection profiles and the live broker session
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from topicscope import config
from topicscope.config import HOST, PORT, APP_VERSION
from topicscope.db.database import get_db, close_db
from topicscope.db import crud
from topicscope.diff import compare_messages
from topicscope.ingest import Ingestor
from topicscope.mqtt_client import MqttSession, SubscriptionSpec
from topicscope.tree.view import visible_items, to_nested

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("topicscope")

ingestor: Optional[Ingestor] = None
session: Optional[MqttSession] = None


def get_ingestor() -> Ingestor:
    global ingestor
    if ingestor is None:
        ingestor = Ingestor(interval_ms=config.BATCH_INTERVAL_MS)
    return ingestor


def get_session() -> MqttSession:
    global session
    if session is None:
        session = MqttSession(get_ingestor())
    return session


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: initialize DB and make sure there is a profile to connect with
    global ingestor, session
    db = await get_db()
    if not await crud.profile_list(db):
        await crud.profile_create_default(db)
    # Message history is never carried across restarts
    ingestor = Ingestor(interval_ms=config.BATCH_INTERVAL_MS)
    session = MqttSession(ingestor)
    logger.info(f"TopicScope running at http://{HOST}:{PORT}")
    yield
    # Shutdown: drop the broker connection and any buffered messages, close DB
    session.disconnect()
    await close_db()


app = FastAPI(
    title="TopicScope",
    description="Browsable topic hierarchy and message diffing for MQTT streams.",
    version=APP_VERSION,
    lifespan=lifespan,
)


# ─────────────────────────────────────────────
# Topic tree
# ─────────────────────────────────────────────

@app.get("/api/tree")
async def api_tree(q: str = "", retained_only: bool = False, changed_in_minutes: float | None = None):
    store = get_ingestor().store
    nodes = store.nodes
    items = visible_items(nodes, q, retained_only, changed_in_minutes)
    return [{"id": it.id, "depth": it.depth, **_node_summary(nodes[it.id])} for it in items]


def _node_summary(node) -> dict:
    return {
        "name": node.name,
        "has_children": bool(node.children),
        "expanded": node.expanded,
        "retained": node.retained,
        "qos": node.qos,
        "last_timestamp": node.last_timestamp,
        "last_payload_id": node.last_payload_id,
        "highlighted_until": node.highlighted_until,
    }


@app.get("/api/tree/nested")
async def api_tree_nested():
    return to_nested(get_ingestor().store.nodes)


@app.post("/api/tree/toggle")
async def api_tree_toggle(node_id: str):
    store = get_ingestor().store
    if not store.toggle_expanded(node_id):
        raise HTTPException(status_code=404, detail=f"Unknown topic node '{node_id}'")
    return {"id": node_id, "expanded": store.nodes[node_id].expanded}


@app.post("/api/tree/expand")
async def api_tree_expand():
    get_ingestor().store.expand_all()
    return {"ok": True}


@app.post("/api/tree/collapse")
async def api_tree_collapse():
    get_ingestor().store.collapse_all()
    return {"ok": True}


@app.post("/api/tree/clear")
async def api_tree_clear():
    get_ingestor().reset()
    return {"ok": True}


# ─────────────────────────────────────────────
# Messages and diffs
# ─────────────────────────────────────────────

class MessageInject(BaseModel):
    topic: str
    payload: str = ""
    encoding: str = "utf-8"      # utf-8 | hex
    qos: int = 0
    retained: bool = False
    dup: bool = False
    properties: dict | None = None


@app.post("/api/messages", status_code=201)
async def api_inject_message(body: MessageInject):
    """Feed a message through the normal pipeline (for simulation scripts)."""
    if body.qos not in (0, 1, 2):
        raise HTTPException(status_code=400, detail="qos must be 0, 1 or 2")
    try:
        payload = bytes.fromhex(body.payload) if body.encoding == "hex" else body.payload.encode("utf-8")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid payload: {e}")
    record = get_ingestor().receive(body.topic, payload, body.qos, body.retained, body.dup, body.properties)
    if record is None:
        return {"queued": False, "paused": True}
    return {"queued": True, "id": record.id}


@app.post("/api/flush")
async def api_flush():
    get_ingestor().flush()
    return {"ok": True}


@app.get("/api/topics/messages")
async def api_topic_messages(topic: str, limit: int = 100):
    store = get_ingestor().store
    if store.get_node(topic) is None:
        raise HTTPException(status_code=404, detail=f"Unknown topic '{topic}'")
    return [m.to_dict() for m in store.history(topic, limit=limit)]


@app.get("/api/messages/{msg_id}")
async def api_message(msg_id: str):
    record = get_ingestor().store.get_message(msg_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Unknown message '{msg_id}'")
    return record.to_dict()


@app.get("/api/diff")
async def api_diff(old_id: str, new_id: str):
    store = get_ingestor().store
    old = store.get_message(old_id)
    new = store.get_message(new_id)
    if old is None or new is None:
        raise HTTPException(status_code=404, detail="One or both messages are no longer stored")
    if old.topic != new.topic:
        raise HTTPException(status_code=400, detail="Messages must belong to the same topic")
    return compare_messages(old, new).to_dict()


@app.get("/api/stats")
async def api_stats():
    stats = get_ingestor().stats()
    stats["status"] = get_session().status
    stats["last_error"] = get_session().last_error
    return stats


# ─────────────────────────────────────────────
# Connection profiles
# ─────────────────────────────────────────────

class ProfileCreate(BaseModel):
    name: str
    url: str
    client_id: str | None = None
    username: str | None = None
    password: str | None = None
    keepalive: int = config.DEFAULT_KEEPALIVE
    clean_start: bool = True
    session_expiry: int | None = None


class ProfileUpdate(BaseModel):
    name: str | None = None
    url: str | None = None
    client_id: str | None = None
    username: str | None = None
    password: str | None = None
    keepalive: int | None = None
    clean_start: bool | None = None
    session_expiry: int | None = None


@app.get("/api/profiles")
async def api_profiles():
    db = await get_db()
    return [p.to_dict() for p in await crud.profile_list(db)]


@app.post("/api/profiles", status_code=201)
async def api_create_profile(body: ProfileCreate):
    db = await get_db()
    try:
        p = await crud.profile_create(db, **body.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return p.to_dict()


@app.get("/api/profiles/{profile_id}")
async def api_profile(profile_id: str):
    db = await get_db()
    p = await crud.profile_get(db, profile_id)
    if p is None:
        raise HTTPException(status_code=404, detail=f"Unknown profile '{profile_id}'")
    return p.to_dict()


@app.patch("/api/profiles/{profile_id}")
async def api_update_profile(profile_id: str, body: ProfileUpdate):
    db = await get_db()
    try:
        p = await crud.profile_update(db, profile_id, **body.model_dump(exclude_unset=True))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if p is None:
        raise HTTPException(status_code=404, detail=f"Unknown profile '{profile_id}'")
    return p.to_dict()


@app.delete("/api/profiles/{profile_id}")
async def api_delete_profile(profile_id: str):
    db = await get_db()
    if not await crud.profile_delete(db, profile_id):
        raise HTTPException(status_code=404, detail=f"Unknown profile '{profile_id}'")
    return {"ok": True}


# ─────────────────────────────────────────────
# Broker session
# ─────────────────────────────────────────────

class Subscription(BaseModel):
    filter: str
    qos: int = 0
    no_local: bool = False
    retain_as_published: bool = False
    retain_handling: int = 0


class ConnectRequest(BaseModel):
    profile_id: str
    subscriptions: list[Subscription] | None = None


@app.post("/api/connect")
async def api_connect(body: ConnectRequest):
    db = await get_db()
    profile = await crud.profile_get(db, body.profile_id)
    if profile is None:
        raise HTTPException(status_code=404, detail=f"Unknown profile '{body.profile_id}'")
    subs = [SubscriptionSpec(**s.model_dump()) for s in body.subscriptions] if body.subscriptions else None
    try:
        await get_session().connect(profile, subs)
    except (OSError, ValueError) as e:
        raise HTTPException(status_code=502, detail=f"Connection failed: {e}")
    return {"status": get_session().status}


@app.post("/api/disconnect")
async def api_disconnect(flush_pending: bool = False):
    get_session().disconnect(flush_pending=flush_pending)
    return {"status": get_session().status}


@app.post("/api/pause")
async def api_pause():
    get_ingestor().pause()
    return {"paused": True}


@app.post("/api/resume")
async def api_resume():
    get_ingestor().resume()
    return {"paused": False}


# ─────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────

class ConfigUpdate(BaseModel):
    BATCH_INTERVAL_MS: int | None = None
    MAX_MESSAGES_STORED: int | None = None
    HIGHLIGHT_MS: int | None = None


@app.get("/api/config")
async def api_get_config():
    return config.get_config_dict()


@app.put("/api/config")
async def api_put_config(body: ConfigUpdate):
    """Persist settings; the batch interval and retention cap apply immediately."""
    data = body.model_dump(exclude_none=True)
    if any(v < 0 for v in data.values()):
        raise HTTPException(status_code=400, detail="Settings must be non-negative")
    config.save_config_dict(data)
    for key, value in data.items():
        setattr(config, key, value)
    ing = get_ingestor()
    if "BATCH_INTERVAL_MS" in data:
        ing.batcher.interval_ms = data["BATCH_INTERVAL_MS"]
    if "MAX_MESSAGES_STORED" in data:
        ing.store.max_messages = data["MAX_MESSAGES_STORED"]
        ing.store.evict()
    if "HIGHLIGHT_MS" in data:
        ing.store.highlight_ms = data["HIGHLIGHT_MS"]
    return {"ok": True, "saved": data}


# ─────────────────────────────────────────────
# Health check
# ─────────────────────────────────────────────

@app.get("/health")
async def health():
    return {"status": "ok", "service": "TopicScope"}


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run("topicscope.main:app", host=HOST, port=PORT, reload=True)
