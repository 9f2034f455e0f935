"""
Server configuration from environment variables.

Environment variables:
    AGG_DB_PATH: SQLite registry file (default: agg_nodes.db)
    AGG_REMOTE_TIMEOUT: Seconds per remote call (default: 10.0)
    AGG_VIEW_CACHE_TTL: Seconds view/job lists stay fresh (default: 30.0)
    AGG_POLL_CACHE_TTL: Seconds console/pipeline results are reused (default: 3.0)
    AGG_JANITOR_INTERVAL: Seconds between cache sweeps (default: 30.0)
"""

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class Settings:
    db_path: str = "agg_nodes.db"
    remote_timeout: float = 10.0
    view_cache_ttl: float = 30.0
    poll_cache_ttl: float = 3.0
    janitor_interval: float = 30.0


def get_database_path() -> str:
    """
    Get the database path from environment or use default.

    Returns:
        Path to the SQLite database file
    """
    return os.environ.get("AGG_DB_PATH", "agg_nodes.db")


def _positive_float(name: str, default: float) -> float:
    """
    Read a positive float from the environment.

    Invalid or non-positive values log a warning and fall back to default.
    """
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw}, using default {default}")
        return default
    if value <= 0:
        logger.warning(f"Invalid {name}={value}, using default {default}")
        return default
    return value


def get_remote_timeout() -> float:
    return _positive_float("AGG_REMOTE_TIMEOUT", 10.0)


def get_view_cache_ttl() -> float:
    return _positive_float("AGG_VIEW_CACHE_TTL", 30.0)


def get_poll_cache_ttl() -> float:
    return _positive_float("AGG_POLL_CACHE_TTL", 3.0)


def get_janitor_interval() -> float:
    return _positive_float("AGG_JANITOR_INTERVAL", 30.0)


def load_settings() -> Settings:
    """Collect all settings from the environment."""
    return Settings(
        db_path=get_database_path(),
        remote_timeout=get_remote_timeout(),
        view_cache_ttl=get_view_cache_ttl(),
        poll_cache_ttl=get_poll_cache_ttl(),
        janitor_interval=get_janitor_interval(),
    )
