"""
Data models (dataclasses) for persisted records.
Only connection profiles are stored; message history lives in memory.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class ConnectionProfile:
    id: str
    name: str
    url: str                        # mqtt://, mqtts://, ws:// or wss://
    client_id: Optional[str]
    username: Optional[str]
    password: Optional[str]         # stored as given
    keepalive: int                  # seconds
    clean_start: bool
    session_expiry: Optional[int]   # seconds (MQTT v5)
    created_at: datetime

    def to_dict(self, include_password: bool = False) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "client_id": self.client_id,
            "username": self.username,
            "keepalive": self.keepalive,
            "clean_start": self.clean_start,
            "session_expiry": self.session_expiry,
            "created_at": self.created_at.isoformat(),
        }
        if include_password:
            data["password"] = self.password
        return data
