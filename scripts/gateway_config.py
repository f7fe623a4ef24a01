#!/usr/bin/env python3
"""Gateway configuration

Environment variables:
    ROUTER_GATEWAY_DB_PATH   cache database (default /var/lib/router-gateway/cache.db)
    ROUTERS_CONFIG           YAML file with router descriptors (optional)
    ROUTER_DEFAULT_TIMEOUT   per-operation timeout in seconds (default 10)
    ROUTER_IDLE_TIMEOUT      reconnect sessions idle longer than this (default 300, 0 = never)
    SYNC_TIMEOUT             bulk list timeout in seconds (default 30)
    SYNC_INTERVAL            periodic refresh interval in seconds (default 0 = off)
    RESYNC_AFTER_WRITE       "1" to resync the cached kind after every write
    WEB_HOST / WEB_PORT      API listen address (default 0.0.0.0:3001)

Routers YAML (list, or mapping with a "routers" key):

    routers:
      - id: r1
        host: 192.168.88.1
        port: 8728
        username: api
        password: secret
        timeout: 15
"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import yaml

from routeros_client import DEFAULT_IDLE_TIMEOUT, DEFAULT_TIMEOUT, RouterDescriptor
from sync_engine import DEFAULT_SYNC_TIMEOUT

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "/var/lib/router-gateway/cache.db"
DEFAULT_WEB_PORT = 3001


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name, "").lower().strip()
    if not value:
        return default
    return value in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name, "").strip()
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Invalid {name}={value!r}, using {default}")
        return default


@dataclass
class GatewayConfig:
    db_path: Optional[str] = DEFAULT_DB_PATH
    routers_config: Optional[str] = None
    default_timeout: float = DEFAULT_TIMEOUT
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    sync_timeout: float = DEFAULT_SYNC_TIMEOUT
    sync_interval: float = 0.0
    resync_after_write: bool = False
    web_host: str = "0.0.0.0"
    web_port: int = DEFAULT_WEB_PORT

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        return cls(
            db_path=os.environ.get("ROUTER_GATEWAY_DB_PATH", DEFAULT_DB_PATH),
            routers_config=os.environ.get("ROUTERS_CONFIG") or None,
            default_timeout=_env_float("ROUTER_DEFAULT_TIMEOUT", DEFAULT_TIMEOUT),
            idle_timeout=_env_float("ROUTER_IDLE_TIMEOUT", DEFAULT_IDLE_TIMEOUT),
            sync_timeout=_env_float("SYNC_TIMEOUT", DEFAULT_SYNC_TIMEOUT),
            sync_interval=_env_float("SYNC_INTERVAL", 0.0),
            resync_after_write=_env_bool("RESYNC_AFTER_WRITE"),
            web_host=os.environ.get("WEB_HOST", "0.0.0.0"),
            web_port=int(_env_float("WEB_PORT", DEFAULT_WEB_PORT)),
        )


def load_router_descriptors(path: str, default_timeout: float = DEFAULT_TIMEOUT) -> List[RouterDescriptor]:
    """Read router descriptors from a YAML file.

    Raises:
        FileNotFoundError: file missing
        ValueError: malformed file or entry
    """
    config_path = Path(path)
    with config_path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or []

    if isinstance(data, dict):
        data = data.get("routers") or []
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of routers")

    descriptors = []
    seen = set()
    for i, item in enumerate(data):
        if not isinstance(item, dict):
            raise ValueError(f"{path}: router #{i} is not a mapping")
        if not item.get("timeout"):
            item = {**item, "timeout": default_timeout}
        try:
            descriptor = RouterDescriptor.from_dict(item)
        except (TypeError, ValueError) as e:
            raise ValueError(f"{path}: router #{i}: {e}") from e
        if descriptor.router_id in seen:
            raise ValueError(f"{path}: duplicate router id {descriptor.router_id}")
        seen.add(descriptor.router_id)
        descriptors.append(descriptor)

    logger.info(f"Loaded {len(descriptors)} routers from {path}")
    return descriptors
