"""
CRUD operations for connection profiles.
All functions are async and receive the aiosqlite connection from the caller.
"""
import uuid
import logging
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

import aiosqlite

from topicscope.db.models import ConnectionProfile
from topicscope.config import DEFAULT_BROKER_URL, DEFAULT_CLIENT_ID_PREFIX, DEFAULT_KEEPALIVE

logger = logging.getLogger(__name__)

VALID_SCHEMES = {"mqtt", "mqtts", "tcp", "ssl", "ws", "wss"}
_UPDATABLE = ("name", "url", "client_id", "username", "password", "keepalive", "clean_start", "session_expiry")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_dt(s: str) -> datetime:
    return datetime.fromisoformat(s)


def _validate(name: Optional[str], url: Optional[str], keepalive: Optional[int]) -> None:
    if name is not None and not name.strip():
        raise ValueError("Profile name must not be empty")
    if url is not None:
        scheme = urlparse(url).scheme
        if scheme not in VALID_SCHEMES:
            raise ValueError(f"Invalid broker URL '{url}'. Scheme must be one of {sorted(VALID_SCHEMES)}")
    if keepalive is not None and keepalive < 0:
        raise ValueError("keepalive must be >= 0")


# ─────────────────────────────────────────────
# Profile CRUD
# ─────────────────────────────────────────────

async def profile_create(
    db: aiosqlite.Connection,
    name: str,
    url: str,
    client_id: Optional[str] = None,
    username: Optional[str] = None,
    password: Optional[str] = None,
    keepalive: int = DEFAULT_KEEPALIVE,
    clean_start: bool = True,
    session_expiry: Optional[int] = None,
) -> ConnectionProfile:
    _validate(name, url, keepalive)
    pid = str(uuid.uuid4())
    now = _now()
    await db.execute(
        "INSERT INTO profiles (id, name, url, client_id, username, password, keepalive, clean_start, session_expiry, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (pid, name.strip(), url, client_id, username, password, keepalive, int(clean_start), session_expiry, now),
    )
    await db.commit()
    logger.info(f"Profile created: {pid} '{name}'")
    return ConnectionProfile(
        id=pid, name=name.strip(), url=url, client_id=client_id, username=username,
        password=password, keepalive=keepalive, clean_start=clean_start,
        session_expiry=session_expiry, created_at=_parse_dt(now),
    )


async def profile_get(db: aiosqlite.Connection, profile_id: str) -> Optional[ConnectionProfile]:
    async with db.execute("SELECT * FROM profiles WHERE id = ?", (profile_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_profile(row)


async def profile_list(db: aiosqlite.Connection) -> list[ConnectionProfile]:
    async with db.execute("SELECT * FROM profiles ORDER BY created_at") as cur:
        rows = await cur.fetchall()
    return [_row_to_profile(r) for r in rows]


async def profile_update(db: aiosqlite.Connection, profile_id: str, **updates) -> Optional[ConnectionProfile]:
    """Apply a partial update. Unknown fields raise ValueError; returns None if the id is unknown."""
    unknown = set(updates) - set(_UPDATABLE)
    if unknown:
        raise ValueError(f"Unknown profile fields: {sorted(unknown)}")
    _validate(updates.get("name"), updates.get("url"), updates.get("keepalive"))

    if updates:
        if updates.get("name") is not None:
            updates["name"] = updates["name"].strip()
        if "clean_start" in updates:
            updates["clean_start"] = int(bool(updates["clean_start"]))
        columns = [c for c in _UPDATABLE if c in updates]
        assignments = ", ".join(f"{c} = ?" for c in columns)
        params = [updates[c] for c in columns] + [profile_id]
        async with db.execute(f"UPDATE profiles SET {assignments} WHERE id = ?", params) as cur:
            updated = cur.rowcount
        await db.commit()
        if updated == 0:
            return None
        logger.info(f"Profile updated: {profile_id} ({', '.join(columns)})")
    return await profile_get(db, profile_id)


async def profile_delete(db: aiosqlite.Connection, profile_id: str) -> bool:
    async with db.execute("DELETE FROM profiles WHERE id = ?", (profile_id,)) as cur:
        deleted = cur.rowcount
    await db.commit()
    if deleted:
        logger.info(f"Profile deleted: {profile_id}")
    return deleted > 0


async def profile_create_default(db: aiosqlite.Connection) -> ConnectionProfile:
    client_id = f"{DEFAULT_CLIENT_ID_PREFIX}{uuid.uuid4().hex[:8]}"
    return await profile_create(
        db, "Default", DEFAULT_BROKER_URL,
        client_id=client_id, keepalive=DEFAULT_KEEPALIVE, clean_start=True,
    )


def _row_to_profile(row: aiosqlite.Row) -> ConnectionProfile:
    return ConnectionProfile(
        id=row["id"],
        name=row["name"],
        url=row["url"],
        client_id=row["client_id"],
        username=row["username"],
        password=row["password"],
        keepalive=row["keepalive"],
        clean_start=bool(row["clean_start"]),
        session_expiry=row["session_expiry"],
        created_at=_parse_dt(row["created_at"]),
    )
