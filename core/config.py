"""Runtime configuration.

Reads settings from environment variables (optionally loaded from a .env file
at the repository root). Settings are read on each call to get_settings() so
tests and CLI flags can override the environment before a service is built.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


PROJECT_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_DB_PATH = PROJECT_ROOT / "data" / "inventory_sync.db"

_env_loaded = False


def load_env() -> None:
    """Load .env once if it exists."""
    global _env_loaded
    if _env_loaded:
        return
    env_path = PROJECT_ROOT / ".env"
    if env_path.exists():
        load_dotenv(env_path)
    _env_loaded = True


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


@dataclass
class Settings:
    """Process-wide settings for the sync engine."""
    db_path: Path = DEFAULT_DB_PATH

    # Push worker
    push_worker_interval_seconds: int = 120
    push_batch_limit: int = 50
    push_lock_ttl_seconds: int = 300
    movement_retention_days: int = 30

    # Pull / scheduler
    scheduler_interval_seconds: int = 300
    scheduler_concurrency: int = 5
    pull_batch_size: int = 20
    pull_batch_pause_seconds: float = 0.5
    pull_lock_ttl_seconds: int = 900
    pull_recent_push_guard_minutes: int = 5
    scheduled_pull_limit: int = 1000

    # HTTP
    http_timeout_seconds: int = 30

    # Logging
    log_level: str = "INFO"
    log_format: str = "human"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Base64 AES-256 key; credentials are stored as plain JSON when unset
    credentials_key: Optional[str] = None


def get_settings() -> Settings:
    """Build Settings from the current environment."""
    load_env()
    return Settings(
        db_path=Path(os.getenv("SYNC_DB_PATH") or DEFAULT_DB_PATH),
        push_worker_interval_seconds=_int_env("PUSH_WORKER_INTERVAL_SECONDS", 120),
        push_batch_limit=_int_env("PUSH_BATCH_LIMIT", 50),
        push_lock_ttl_seconds=_int_env("PUSH_LOCK_TTL_SECONDS", 300),
        movement_retention_days=_int_env("MOVEMENT_RETENTION_DAYS", 30),
        scheduler_interval_seconds=_int_env("SCHEDULER_INTERVAL_SECONDS", 300),
        scheduler_concurrency=_int_env("SCHEDULER_CONCURRENCY", 5),
        pull_batch_size=_int_env("PULL_BATCH_SIZE", 20),
        pull_batch_pause_seconds=_float_env("PULL_BATCH_PAUSE_SECONDS", 0.5),
        pull_lock_ttl_seconds=_int_env("PULL_LOCK_TTL_SECONDS", 900),
        pull_recent_push_guard_minutes=_int_env("PULL_RECENT_PUSH_GUARD_MINUTES", 5),
        scheduled_pull_limit=_int_env("SCHEDULED_PULL_LIMIT", 1000),
        http_timeout_seconds=_int_env("HTTP_TIMEOUT_SECONDS", 30),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_format=os.getenv("LOG_FORMAT", "human").lower(),
        api_host=os.getenv("API_HOST", "0.0.0.0"),
        api_port=_int_env("API_PORT", 8000),
        credentials_key=os.getenv("CREDENTIALS_KEY") or None,
    )
