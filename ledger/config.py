"""App configuration loading helpers."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Mapping

import tomllib

from pydantic import BaseModel

from .models import ConnectionConfig, parse_config

CONFIG_FILE = Path.home() / ".config" / "ledger" / "config.toml"
DATA_DIR = Path.home() / ".local" / "share" / "ledger"
STORAGE_FILENAME = "storage.json"

ENV_URL = "LEDGER_SUPABASE_URL"
ENV_ANON_KEY = "LEDGER_SUPABASE_ANON_KEY"


class DefaultConnectionConfig(BaseModel):
    """Operator-provided backend project stored in config.toml."""

    url: str
    anon_key: str


class AppConfig(BaseModel):
    """Shape of the application configuration file."""

    default_connection: DefaultConnectionConfig | None = None
    backend: str = "supabase"
    storage_dir: str | None = None
    log_level: str = "WARNING"
    watch_interval: float = 1.0

    def env_connection(self, environ: Mapping[str, str] | None = None) -> ConnectionConfig | None:
        """Deploy-time default; environment variables win over the config file."""

        env = os.environ if environ is None else environ
        url = env.get(ENV_URL)
        anon_key = env.get(ENV_ANON_KEY)
        if url and anon_key:
            return parse_config(url, anon_key)
        if self.default_connection is None:
            return None
        return parse_config(self.default_connection.url, self.default_connection.anon_key)

    def storage_path(self) -> Path:
        base = Path(self.storage_dir).expanduser() if self.storage_dir else DATA_DIR
        return base / STORAGE_FILENAME


def load_config() -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    try:
        data = _read_config_file()
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError):
        return AppConfig()
    return AppConfig(**data)


def configure_logging(level: str, filename: Path | None = None) -> None:
    """Install a basic handler for command-line runs."""

    if filename is not None:
        filename.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        filename=filename,
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _read_config_file() -> dict[str, object]:
    with CONFIG_FILE.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    if isinstance(raw, dict):
        log_level = raw.get("log_level")
        if isinstance(log_level, str):
            data["log_level"] = log_level
        backend = raw.get("backend")
        if isinstance(backend, str):
            data["backend"] = backend
        storage_dir = raw.get("storage_dir")
        if isinstance(storage_dir, str):
            data["storage_dir"] = storage_dir
        interval = raw.get("watch_interval")
        if isinstance(interval, (int, float)) and not isinstance(interval, bool) and interval > 0:
            data["watch_interval"] = float(interval)
        default = raw.get("default_connection")
        if isinstance(default, dict):
            url = default.get("url")
            anon_key = default.get("anon_key")
            if isinstance(url, str) and isinstance(anon_key, str):
                data["default_connection"] = DefaultConnectionConfig(url=url, anon_key=anon_key)
    return data


__all__ = [
    "AppConfig",
    "CONFIG_FILE",
    "DefaultConnectionConfig",
    "ENV_ANON_KEY",
    "ENV_URL",
    "configure_logging",
    "load_config",
]
