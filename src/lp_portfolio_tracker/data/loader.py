"""Read path configuration loader."""

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from lp_portfolio_tracker.core.config import ReadPathConfig

ENV_API_URLS = "PORTFOLIO_API_URLS"
ENV_REDIS_URL = "PORTFOLIO_REDIS_URL"
ENV_BACKUP_DIR = "PORTFOLIO_BACKUP_DIR"
ENV_WS_URLS = "PORTFOLIO_WS_URLS"

DEFAULTS_PATH = Path(__file__).parent / "endpoints.yaml"


def load_defaults(path: Path | None = None) -> dict[str, Any]:
    """
    Load read path defaults from a YAML file.

    Parameters
    ----------
    path : Path | None
        YAML file to read. Uses the packaged endpoints.yaml if None.

    Returns
    -------
    dict[str, Any]
        Parsed document (empty if the file is empty)

    """
    with open(path or DEFAULTS_PATH, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _from_document(document: dict[str, Any]) -> dict[str, Any]:
    timeouts = document.get("timeouts") or {}
    cache = document.get("cache") or {}
    backup = document.get("backup") or {}
    query = document.get("query") or {}
    updates = document.get("updates") or {}

    fields = {
        "api_urls": document.get("api_urls"),
        "cache_timeout": timeouts.get("cache"),
        "endpoint_timeout": timeouts.get("endpoint"),
        "cache_ttl": cache.get("ttl"),
        "redis_url": cache.get("redis_url"),
        "backup_max_age": backup.get("max_age"),
        "backup_dir": backup.get("dir"),
        "ws_urls": updates.get("urls"),
        "ws_connect_timeout": updates.get("connect_timeout"),
        "ws_max_reconnects": updates.get("max_reconnects"),
        "ws_reconnect_delay": updates.get("reconnect_delay"),
        **{name: query.get(name) for name in (
            "stale_time",
            "gc_time",
            "refetch_interval",
            "max_retries",
            "retry_base_delay",
            "retry_max_delay",
        )},
    }
    return {name: value for name, value in fields.items() if value is not None}


def _from_env(env: Mapping[str, str]) -> dict[str, Any]:
    fields: dict[str, Any] = {}

    for name, variable in (("api_urls", ENV_API_URLS), ("ws_urls", ENV_WS_URLS)):
        urls = env.get(variable, "")
        if urls.strip():
            fields[name] = [url.strip() for url in urls.split(",") if url.strip()]
    if env.get(ENV_REDIS_URL, "").strip():
        fields["redis_url"] = env[ENV_REDIS_URL].strip()
    if env.get(ENV_BACKUP_DIR, "").strip():
        fields["backup_dir"] = Path(env[ENV_BACKUP_DIR].strip()).expanduser()

    return fields


def load_read_path_config(
    path: Path | None = None,
    env: Mapping[str, str] | None = None,
    **overrides: Any,
) -> ReadPathConfig:
    """
    Build the read path configuration.

    Values are layered: YAML file, then environment variables
    (``PORTFOLIO_API_URLS`` and ``PORTFOLIO_WS_URLS`` comma-separated,
    ``PORTFOLIO_REDIS_URL``, ``PORTFOLIO_BACKUP_DIR``), then explicit keyword overrides. Overrides
    set to None are ignored.

    Parameters
    ----------
    path : Path | None
        YAML file to read. Uses the packaged endpoints.yaml if None.
    env : Mapping[str, str] | None
        Environment to read overrides from. Uses ``os.environ`` if None.
    **overrides : Any
        Field values that take precedence over file and environment

    Returns
    -------
    ReadPathConfig
        Validated configuration

    Raises
    ------
    pydantic.ValidationError
        If the resulting configuration is invalid (e.g., no API URLs)

    """
    fields = _from_document(load_defaults(path))
    fields.update(_from_env(os.environ if env is None else env))
    fields.update({name: value for name, value in overrides.items() if value is not None})
    return ReadPathConfig(**fields)
