"""
AgentRelay Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# SQLite database file
_repo_default_db = BASE_DIR / "data" / "relay.db"
_user_default_db = Path.home() / ".agentrelay" / "relay.db"

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        config_data = {}


def _setting(env_name: str, key: str, default):
    """Environment variable, then data/config.json, then the documented default."""
    value = os.getenv(env_name)
    if value is not None and value != "":
        return value
    return config_data.get(key, default)


def _flag(value) -> bool:
    return str(value).lower() in {"1", "true", "yes", "on"}


if os.getenv("AGENTRELAY_DB"):
    DB_PATH = os.getenv("AGENTRELAY_DB")
elif _repo_default_db.parent.exists():
    DB_PATH = str(_repo_default_db)
else:
    # Installed package mode normally runs outside repository checkout.
    DB_PATH = str(_user_default_db)

# HTTP server - default to localhost only
HOST = _setting("AGENTRELAY_HOST", "HOST", "127.0.0.1")
PORT = int(_setting("AGENTRELAY_PORT", "PORT", "39775"))

# Delivery transport: "direct" (terminal pane injection) or "bus" (Redis pub/sub)
TRANSPORT = str(_setting("AGENTRELAY_TRANSPORT", "TRANSPORT", "direct")).lower()

# Direct transport helper. SND_PATH is honoured for compatibility with existing hooks.
SND_PATH = os.getenv("AGENTRELAY_SND_PATH") or os.getenv("SND_PATH") or config_data.get(
    "SND_PATH", str(Path.home() / ".claude" / "scripts" / "snd")
)

# Bus transport endpoint and subject namespace
BUS_URL = _setting("AGENTRELAY_BUS_URL", "BUS_URL", "redis://127.0.0.1:6379/0")
SUBJECT_PREFIX = _setting("AGENTRELAY_SUBJECT_PREFIX", "SUBJECT_PREFIX", "agents")

# Agents whose last presence signal is older than this are stale (seconds)
STALE_SECONDS = int(_setting("AGENTRELAY_STALE_SECONDS", "STALE_SECONDS", "300"))

# Upper bound for a single delivery attempt (seconds)
DELIVERY_TIMEOUT = float(_setting("AGENTRELAY_DELIVERY_TIMEOUT", "DELIVERY_TIMEOUT", "10"))

# Default shared budget for check_messages subscriptions (seconds)
CHECK_TIMEOUT = float(_setting("AGENTRELAY_CHECK_TIMEOUT", "CHECK_TIMEOUT", "5"))
CHECK_MAX_COUNT = int(_setting("AGENTRELAY_CHECK_MAX_COUNT", "CHECK_MAX_COUNT", "20"))

# Presence storage backend: sqlite | memory | redis
PRESENCE_BACKEND = str(_setting("AGENTRELAY_PRESENCE", "PRESENCE", "sqlite")).lower()

# History ledger is on by default for the direct transport only
LEDGER_ENABLED = _flag(_setting("AGENTRELAY_LEDGER", "LEDGER", "1" if TRANSPORT == "direct" else "0"))

# Short-name collisions: "recent" (most recently seen wins) or "strict" (report ambiguity)
NAME_POLICY = str(_setting("AGENTRELAY_NAME_POLICY", "NAME_POLICY", "recent")).lower()

RELAY_VERSION = "0.1.0"


def get_config_dict():
    return {
        "HOST": HOST,
        "PORT": PORT,
        "TRANSPORT": TRANSPORT,
        "SND_PATH": SND_PATH,
        "BUS_URL": BUS_URL,
        "SUBJECT_PREFIX": SUBJECT_PREFIX,
        "STALE_SECONDS": STALE_SECONDS,
        "DELIVERY_TIMEOUT": DELIVERY_TIMEOUT,
        "CHECK_TIMEOUT": CHECK_TIMEOUT,
        "PRESENCE_BACKEND": PRESENCE_BACKEND,
        "LEDGER_ENABLED": LEDGER_ENABLED,
        "NAME_POLICY": NAME_POLICY,
        "VERSION": RELAY_VERSION,
    }

