"""Runtime configuration resolved from the environment.

Every tunable lives on :class:`Settings`.  Values are read once and cached by
:func:`get_settings`; tests call ``get_settings.cache_clear()`` after
monkeypatching the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv
from platformdirs import user_data_dir

APP_NAME = "flowiq"

load_dotenv()


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _get_int_env(name: str, default: Optional[int] = None) -> Optional[int]:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


def _normalise_postgres_url(url: str) -> str:
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://") and not url.startswith("postgresql+psycopg://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


@dataclass(frozen=True)
class Settings:
    """Resolved configuration for the application."""

    database_url: str
    data_dir: Path
    storage_dir: Path
    jwt_secret: str
    access_token_expire_minutes: int = 60
    db_echo: bool = False
    db_pool_size: Optional[int] = None
    functions_url: Optional[str] = None
    functions_key: Optional[str] = None
    offline_mode: bool = False
    encryption_key: Optional[str] = None
    max_upload_bytes: int = 10 * 1024 * 1024

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def use_offline_functions(self) -> bool:
        return self.offline_mode or not self.functions_url

    def engine_options(self) -> Dict[str, object]:
        """Return keyword arguments for :func:`sqlalchemy.create_engine`."""

        options: Dict[str, object] = {"echo": self.db_echo}
        if self.is_sqlite:
            options["connect_args"] = {"check_same_thread": False}
        else:
            if self.db_pool_size is not None:
                options["pool_size"] = self.db_pool_size
            options["connect_args"] = {"options": "-c timezone=UTC"}
        return options


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the active settings derived from the environment."""

    data_dir = Path(os.getenv("FLOWIQ_DATA_DIR") or user_data_dir(APP_NAME, APP_NAME))
    url = os.getenv("FLOWIQ_DATABASE_URL") or os.getenv("DATABASE_URL")
    if url:
        url = _normalise_postgres_url(url)
    else:
        data_dir.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{data_dir / 'flowiq.db'}"

    storage_dir = Path(os.getenv("FLOWIQ_STORAGE_DIR") or data_dir / "storage")

    return Settings(
        database_url=url,
        data_dir=data_dir,
        storage_dir=storage_dir,
        jwt_secret=os.getenv("JWT_SECRET", "dev-secret"),
        access_token_expire_minutes=_get_int_env("ACCESS_TOKEN_EXPIRE_MINUTES", 60) or 60,
        db_echo=_env_flag("FLOWIQ_DB_ECHO"),
        db_pool_size=_get_int_env("FLOWIQ_DB_POOL_SIZE"),
        functions_url=os.getenv("FLOWIQ_FUNCTIONS_URL") or None,
        functions_key=os.getenv("FLOWIQ_FUNCTIONS_KEY") or None,
        offline_mode=_env_flag("FLOWIQ_OFFLINE_MODE"),
        encryption_key=os.getenv("FLOWIQ_ENCRYPTION_KEY") or None,
        max_upload_bytes=_get_int_env("FLOWIQ_MAX_UPLOAD_BYTES", 10 * 1024 * 1024) or 10 * 1024 * 1024,
    )


__all__ = ["APP_NAME", "Settings", "get_settings"]
