"""
TopicScope Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# SQLite database file (connection profiles only; messages are never persisted)
_repo_default_db = BASE_DIR / "data" / "profiles.db"
_user_default_db = Path.home() / ".topicscope" / "profiles.db"

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        config_data = {}

if os.getenv("TOPICSCOPE_DB"):
    DB_PATH = os.getenv("TOPICSCOPE_DB")
elif _repo_default_db.parent.exists():
    DB_PATH = str(_repo_default_db)
else:
    # Installed package mode normally runs outside repository checkout.
    DB_PATH = str(_user_default_db)

# HTTP server - default to localhost only
HOST = os.getenv("TOPICSCOPE_HOST", config_data.get("HOST", "127.0.0.1"))
PORT = int(os.getenv("TOPICSCOPE_PORT", config_data.get("PORT", "39780")))

# Batch window for coalescing incoming messages (milliseconds). ~120ms keeps the
# display refresh close to 60 Hz without re-rendering on every arrival.
BATCH_INTERVAL_MS = int(os.getenv("TOPICSCOPE_BATCH_INTERVAL_MS", config_data.get("BATCH_INTERVAL_MS", "120")))

# Global message cap. Oldest records are evicted once the store grows past it.
MAX_MESSAGES_STORED = int(os.getenv("TOPICSCOPE_MAX_MESSAGES", config_data.get("MAX_MESSAGES_STORED", "50000")))

# How long a node stays highlighted after receiving a message (milliseconds)
HIGHLIGHT_MS = int(os.getenv("TOPICSCOPE_HIGHLIGHT_MS", config_data.get("HIGHLIGHT_MS", "1500")))

# Tree levels expanded by default when a node is first created
AUTO_EXPAND_DEPTH = int(os.getenv("TOPICSCOPE_AUTO_EXPAND_DEPTH", config_data.get("AUTO_EXPAND_DEPTH", "2")))

# Defaults for the connection profile created on first run
DEFAULT_BROKER_URL = os.getenv("TOPICSCOPE_DEFAULT_BROKER_URL", "wss://test.mosquitto.org:8081/mqtt")
DEFAULT_CLIENT_ID_PREFIX = os.getenv("TOPICSCOPE_DEFAULT_CLIENT_ID_PREFIX", "topicscope_")
DEFAULT_KEEPALIVE = int(os.getenv("TOPICSCOPE_DEFAULT_KEEPALIVE", "60"))

APP_VERSION = "0.1.0"


def get_config_dict():
    return {
        "HOST": HOST,
        "PORT": PORT,
        "BATCH_INTERVAL_MS": BATCH_INTERVAL_MS,
        "MAX_MESSAGES_STORED": MAX_MESSAGES_STORED,
        "HIGHLIGHT_MS": HIGHLIGHT_MS,
        "AUTO_EXPAND_DEPTH": AUTO_EXPAND_DEPTH,
    }


def save_config_dict(new_data: dict):
    config_file = BASE_DIR / "data" / "config.json"
    config_file.parent.mkdir(parents=True, exist_ok=True)

    current = {}
    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            current = json.load(f)

    current.update(new_data)
    with open(config_file, "w", encoding="utf-8") as f:
        json.dump(current, f, indent=2)
