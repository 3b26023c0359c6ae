"""Environment-backed configuration helpers."""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Iterable, List

from dotenv import load_dotenv
from platformdirs import user_data_dir

BASE_DIR = Path(__file__).resolve().parents[2]
DEFAULT_LAVALINK_PORT = 2333
# Only auto-load the .env file when not running under pytest to let tests
# control environment via monkeypatch.
_running_under_pytest = bool(os.getenv("PYTEST_CURRENT_TEST")) or any(
    "pytest" in (arg or "") for arg in sys.argv
)
if not _running_under_pytest:
    load_dotenv(BASE_DIR / ".env")

logger = logging.getLogger("encore.config")


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid %s '%s' - expected integer", name, raw)
        return default
    if value < minimum:
        logger.warning("Invalid %s '%s' - must be >= %s", name, raw, minimum)
        return default
    return value


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid %s '%s' - expected number", name, raw)
        return default
    if value <= minimum:
        logger.warning("Invalid %s '%s' - must be > %s", name, raw, minimum)
        return default
    return value


class Config:
    """Central configuration loaded from environment variables."""

    BASE_DIR = BASE_DIR
    DISCORD_TOKEN = os.getenv("DISCORD_TOKEN") or os.getenv("DISCORD_BOT_TOKEN", "")
    BOT_USERNAME = os.getenv("ENCORE_USERNAME", "Encore")

    LAVALINK_HOST = os.getenv("LAVALINK_HOST", "localhost")
    LAVALINK_PASSWORD = os.getenv("LAVALINK_PASSWORD", "youshallnotpass")
    LAVALINK_PORT = _env_int("LAVALINK_PORT", DEFAULT_LAVALINK_PORT, minimum=1)

    LASTFM_API_KEY = os.getenv("LASTFM_API_KEY", "").strip()

    YT_COOKIES_FILE = os.getenv("YT_COOKIES_FILE") or os.getenv("YTDLP_COOKIES_FILE")

    STATE_DIR = Path(
        os.getenv("ENCORE_STATE_DIR") or user_data_dir("encore", "encore")
    ).expanduser()

    SNAPSHOT_INTERVAL = _env_float("ENCORE_SNAPSHOT_INTERVAL", 1.0)
    SNAPSHOT_STALE_MINUTES = _env_int("ENCORE_SNAPSHOT_STALE_MINUTES", 15, minimum=1)
    RECOVERY_CONCURRENCY = _env_int("ENCORE_RECOVERY_CONCURRENCY", 5, minimum=1)
    AUTOPLAY_LIMIT = _env_int("ENCORE_AUTOPLAY_LIMIT", 10, minimum=1)

    @staticmethod
    def _missing_keys(keys: Iterable[str]) -> List[str]:
        return [key for key in keys if not os.getenv(key)]

    @staticmethod
    def validate() -> None:
        required = ["DISCORD_TOKEN", "LAVALINK_HOST", "LAVALINK_PASSWORD"]
        missing = Config._missing_keys(required)

        if missing:
            joined = ", ".join(missing)
            logger.error("configuration missing required keys: %s", joined)
            sys.exit(1)

        port_value = os.getenv("LAVALINK_PORT", str(Config.LAVALINK_PORT))
        try:
            int(port_value)
        except (TypeError, ValueError):
            logger.error("configuration invalid: LAVALINK_PORT must be an integer")
            sys.exit(1)

        if not Config.LASTFM_API_KEY:
            logger.info("LASTFM_API_KEY not set; autoplay will never find tracks")


def get_lavalink_connection_info() -> tuple[str, int, str, bool]:
    """Return Lavalink connection info using runtime environment overrides."""

    host = os.getenv("LAVALINK_HOST") or Config.LAVALINK_HOST or "127.0.0.1"
    port = Config.LAVALINK_PORT
    port_raw = os.getenv("LAVALINK_PORT")
    if port_raw:
        try:
            port = int(port_raw)
        except ValueError:
            logger.warning(
                "Invalid runtime LAVALINK_PORT '%s'; falling back to %s",
                port_raw,
                port,
            )
    password = os.getenv("LAVALINK_PASSWORD") or Config.LAVALINK_PASSWORD
    secure = os.getenv("LAVALINK_SSL", "false").lower() == "true"
    return host, port, password, secure
