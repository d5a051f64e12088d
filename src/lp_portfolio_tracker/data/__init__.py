"""Packaged defaults and configuration loading."""

from lp_portfolio_tracker.data.loader import (
    ENV_API_URLS,
    ENV_BACKUP_DIR,
    ENV_REDIS_URL,
    ENV_WS_URLS,
    load_defaults,
    load_read_path_config,
)

__all__ = [
    "ENV_API_URLS",
    "ENV_BACKUP_DIR",
    "ENV_REDIS_URL",
    "ENV_WS_URLS",
    "load_defaults",
    "load_read_path_config",
]
