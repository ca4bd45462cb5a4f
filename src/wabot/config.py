# src/wabot/config.py

import os
from pathlib import Path
from typing import List, Optional
from urllib.parse import quote_plus

from dotenv import load_dotenv

PROJECT_DIR = Path(__file__).resolve().parent.parent.parent
load_dotenv(PROJECT_DIR / ".env")

DATA_DIR = Path(os.getenv("WABOT_DATA_DIR", str(PROJECT_DIR / ".wabot")))

# Connection parameters the credential store needs when DATABASE_URL is unset
STORE_SETTINGS = ["PGHOST", "PGDATABASE", "PGUSER", "PGPASSWORD"]


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_list(name: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, "").split(",") if item.strip()]


class Config:
    # Application Configuration
    TITLE = "WABOT"
    HOST = os.getenv("WABOT_HOST", "0.0.0.0")
    PORT = int(os.getenv("WABOT_PORT") or os.getenv("PORT") or 3000)

    # Session persistence
    SESSION_ID = os.getenv("WABOT_SESSION_ID", "whatsapp")
    AUTH_DIR = os.getenv("WABOT_AUTH_DIR", "./auth_info")

    # Reconnection policy (seconds)
    RECONNECT_DELAY = _env_float("RECONNECT_DELAY", 5.0)
    RECONNECT_ERROR_DELAY = _env_float("RECONNECT_ERROR_DELAY", 10.0)

    # Bot behaviour
    BOT_NAME = os.getenv("BOT_NAME", "My WhatsApp Bot")
    OWNER_NUMBER = os.getenv("OWNER_NUMBER", "1234567890")
    PREFIX = os.getenv("BOT_PREFIX", "!")

    # Admin surface
    ADMIN_API_KEYS = _env_list("ADMIN_API_KEYS")

    # Keep-alive pinger (disabled when no URL is set)
    KEEPALIVE_URL = os.getenv("KEEPALIVE_URL")
    KEEPALIVE_INTERVAL = _env_float("KEEPALIVE_INTERVAL", 60.0)

    @staticmethod
    def missing_store_settings() -> List[str]:
        """Names of store connection settings absent from the environment."""
        if os.getenv("DATABASE_URL"):
            return []
        return [name for name in STORE_SETTINGS if not os.getenv(name)]

    @staticmethod
    def database_url() -> str:
        """
        Build the SQLAlchemy URL of the credential store.

        DATABASE_URL wins when set. Otherwise the PG* variables describe a
        PostgreSQL server; with none of them present a local SQLite file in
        DATA_DIR is used.
        """
        explicit: Optional[str] = os.getenv("DATABASE_URL")
        if explicit:
            # Heroku/Render style URLs use the bare postgres scheme
            if explicit.startswith("postgres://"):
                explicit = "postgresql+psycopg://" + explicit[len("postgres://") :]
            elif explicit.startswith("postgresql://"):
                explicit = "postgresql+psycopg://" + explicit[len("postgresql://") :]
            return explicit

        if not os.getenv("PGHOST"):
            DATA_DIR.mkdir(parents=True, exist_ok=True)
            return f"sqlite:///{DATA_DIR / 'wabot.db'}"

        user = quote_plus(os.getenv("PGUSER", ""))
        password = quote_plus(os.getenv("PGPASSWORD", ""))
        host = os.getenv("PGHOST")
        port = os.getenv("PGPORT") or "5432"
        database = os.getenv("PGDATABASE", "")

        url = f"postgresql+psycopg://{user}:{password}@{host}:{port}/{database}"
        if os.getenv("PGSSL") == "require":
            url += "?sslmode=require"
        return url
