import os
import logging
import configparser
from pathlib import Path
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from async_reply_service.core import AsyncReplyCore
from async_reply_service.api import create_app


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger once for the whole process."""
    log_level = (level or os.getenv("ARS_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format='[%(asctime)s] [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True  # Force reconfiguration to avoid duplicate handlers
    )


def load_settings() -> dict[str, object]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with ARS_):
      ARS_CONFIG - Path to config.ini file (default: config.ini)
      ARS_LOG_LEVEL - Logging level (default: INFO)
      ARS_WEBSITES_DIR - Directory holding <site>/config.json files (default: websites)
      ARS_DB_DIR - Directory for the per-site SQLite databases (default: /data/sites)
      ARS_HOST - Server host (default: 0.0.0.0)
      ARS_PORT - Server port (default: 8000)
      ARS_API_TOKEN - API authentication token
      ARS_POLL_INTERVAL - Seconds between polling cycles (default: 300)
      ARS_NETWORK_TIMEOUT - Timeout for each IMAP/SMTP round-trip in seconds (default: 30)
      ARS_POLLING_ACTIVE - Start polling at startup (default: True)

    Config file sections/keys:
      [tenants] websites_dir
      [storage] db_dir
      [server] host, port, api_token
      [polling] interval_seconds, timeout_seconds, active
      [logging] level
    """
    config_path = Path(os.getenv("ARS_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(config_path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return int(value)

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return float(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    settings = {
        "log_level": get("logging", "level", os.getenv("ARS_LOG_LEVEL", "INFO")),
        "websites_dir": get("tenants", "websites_dir", os.getenv("ARS_WEBSITES_DIR", "websites")),
        "db_dir": get("storage", "db_dir", os.getenv("ARS_DB_DIR", "/data/sites")),
        "http_host": get("server", "host", os.getenv("ARS_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("ARS_PORT", "8000")),
        "api_token": get("server", "api_token", os.getenv("ARS_API_TOKEN")),
        "poll_interval": get_float("polling", "interval_seconds", os.getenv("ARS_POLL_INTERVAL"), default=300.0),
        "network_timeout": get_float("polling", "timeout_seconds", os.getenv("ARS_NETWORK_TIMEOUT"), default=30.0),
        "polling_active": get_bool("polling", "active", os.getenv("ARS_POLLING_ACTIVE"), default=True),
    }

    for key in ("websites_dir", "db_dir"):
        value = settings[key]
        if isinstance(value, str):
            settings[key] = os.path.expanduser(value)
    token = settings.get("api_token")
    if isinstance(token, str):
        token = token.strip() or None
    settings["api_token"] = token
    return settings


def build_service(settings: dict[str, object]) -> AsyncReplyCore:
    return AsyncReplyCore(
        websites_dir=str(settings["websites_dir"]),
        db_dir=str(settings["db_dir"]),
        poll_interval=float(settings["poll_interval"]),
        network_timeout=float(settings["network_timeout"]),
        start_active=bool(settings.get("polling_active")),
    )


if __name__ == "__main__":
    settings = load_settings()
    configure_logging(str(settings["log_level"]))
    # Create service instance but don't start it yet - let uvicorn handle the event loop
    service = build_service(settings)

    # Define lifespan context manager for startup/shutdown events
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: the first polling cycle runs immediately
        await service.start()
        yield
        await service.stop()

    app = create_app(service, api_token=settings.get("api_token"), lifespan=lifespan)

    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
