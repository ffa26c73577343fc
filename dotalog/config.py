from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotalog.opendota import DEFAULT_BASE_URL, DEFAULT_MIN_INTERVAL_SECONDS


DB_PATH_ENV = "DOTALOG_DB_PATH"
PROJECT_ROOT = Path(__file__).resolve().parents[1]


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class Config:
    db_path: str
    opendota_base_url: str = DEFAULT_BASE_URL
    opendota_api_key: Optional[str] = None
    opendota_min_interval: float = DEFAULT_MIN_INTERVAL_SECONDS


def resolve_db_path(raw_path: str) -> str:
    path = Path(raw_path)
    if not path.is_absolute():
        path = PROJECT_ROOT / path
    return str(path)


def load_config(env: Optional[Mapping[str, str]] = None) -> Config:
    """
    Read configuration from the environment.

    Raises:
        ConfigError: ``DOTALOG_DB_PATH`` missing or a numeric setting unparsable
    """
    env = os.environ if env is None else env

    db_path = (env.get(DB_PATH_ENV) or "").strip()
    if not db_path:
        raise ConfigError(f"{DB_PATH_ENV} is not set; point it at the dotalog SQLite database")

    raw_interval = (env.get("OPENDOTA_MIN_INTERVAL") or "").strip()
    try:
        min_interval = float(raw_interval) if raw_interval else DEFAULT_MIN_INTERVAL_SECONDS
    except ValueError:
        raise ConfigError(f"OPENDOTA_MIN_INTERVAL must be a number, got {raw_interval!r}")

    return Config(
        db_path=resolve_db_path(db_path),
        opendota_base_url=(env.get("OPENDOTA_BASE_URL") or "").strip() or DEFAULT_BASE_URL,
        opendota_api_key=(env.get("OPENDOTA_API_KEY") or "").strip() or None,
        opendota_min_interval=min_interval,
    )
