"""
SPARQL Gateway - Configuration.
JSON config file merged over built-in defaults. Relative paths resolve
against the directory holding the config file.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

logger = logging.getLogger("sparql_gateway.config")

__all__ = [
    "GatewayConfig",
    "DEFAULTS",
    "CONFIG_ENV",
    "DEFAULT_CONFIG_FILE",
    "load_config",
    "configure_logging",
]

CONFIG_ENV = "SPARQL_GATEWAY_CONFIG"
DEFAULT_CONFIG_FILE = "sparql-gateway.config.json"

DEFAULTS: dict[str, Any] = {
    "store_path": "./triplestore",
    "data_file": "dataset.nq",
    "flush_interval": 1,
    "lock_timeout_seconds": None,
    "batch_size": 1000,
    "max_retry": 5,
    "query_timeout_seconds": 30.0,
    "default_graph": "urn:x-gateway:default",
    "security_enabled": False,
    "allowed_update_roles": ["admin"],
    "update_workers": 1,
    "redelivery_delay_seconds": 1.0,
    "redelivery_backoff_multiplier": 2.0,
    "max_redelivery_delay_seconds": 60.0,
    "failure_directory": "./failures",
    "spool_directory": "./spool",
    "ingest_directory": None,
    "enable_watchdog": True,
    "scan_interval_seconds": 60,
    "prepare_workers": 4,
    "notification_webhook": None,
    "log_level": "INFO",
    "host": "127.0.0.1",
    "port": 8080,
}

_PATH_KEYS = ("store_path", "failure_directory", "spool_directory", "ingest_directory")


@dataclass(frozen=True)
class GatewayConfig:
    store_path: Path | None
    data_file: str
    flush_interval: int
    lock_timeout_seconds: float | None
    batch_size: int
    max_retry: int
    query_timeout_seconds: float | None
    default_graph: str
    security_enabled: bool
    allowed_update_roles: tuple[str, ...]
    update_workers: int
    redelivery_delay_seconds: float
    redelivery_backoff_multiplier: float
    max_redelivery_delay_seconds: float
    failure_directory: Path
    spool_directory: Path | None
    ingest_directory: Path | None
    enable_watchdog: bool
    scan_interval_seconds: float
    prepare_workers: int
    notification_webhook: str | None
    log_level: str
    host: str
    port: int

    @classmethod
    def from_dict(cls, raw: dict, base_dir: Path | None = None) -> GatewayConfig:
        """Build a config from *raw* over DEFAULTS. Unknown keys are ignored with a warning."""
        base_dir = (base_dir or Path.cwd()).resolve()
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(raw) - known)
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))

        merged = {**DEFAULTS, **{k: v for k, v in raw.items() if k in known}}
        for key in _PATH_KEYS:
            merged[key] = _resolve(merged[key], base_dir)
        if merged["failure_directory"] is None:
            raise ValueError("failure_directory must be set")
        merged["allowed_update_roles"] = tuple(merged["allowed_update_roles"] or ())
        if int(merged["batch_size"]) < 1:
            raise ValueError("batch_size must be positive")
        if int(merged["max_retry"]) < 0:
            raise ValueError("max_retry must not be negative")
        return cls(**merged)

    def to_dict(self) -> dict:
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Path):
                value = str(value)
            elif isinstance(value, tuple):
                value = list(value)
            out[f.name] = value
        return out


def _resolve(value: str | Path | None, base_dir: Path) -> Path | None:
    if value is None or value == "":
        return None
    p = Path(value).expanduser()
    if p.is_absolute():
        return p.resolve()
    return (base_dir / p).resolve()


def load_config(path: str | Path | None = None) -> GatewayConfig:
    """
    Load configuration from *path*, else $SPARQL_GATEWAY_CONFIG, else
    ./sparql-gateway.config.json. A missing file yields the defaults.
    """
    if path is None:
        path = os.environ.get(CONFIG_ENV) or DEFAULT_CONFIG_FILE
    cfg_path = Path(path).resolve()
    if cfg_path.exists():
        with open(cfg_path, encoding="utf-8") as f:
            raw = json.load(f)
        logger.debug("Config loaded: %s", cfg_path)
    else:
        raw = {}
        logger.debug("No config at %s, using defaults", cfg_path)
    return GatewayConfig.from_dict(raw, base_dir=cfg_path.parent)


def configure_logging(level: str = "INFO") -> None:
    """Configure the package logger, not the root logger."""
    pkg_logger = logging.getLogger("sparql_gateway")
    pkg_logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    if not pkg_logger.handlers or all(
        isinstance(h, logging.NullHandler) for h in pkg_logger.handlers
    ):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        ))
        pkg_logger.addHandler(handler)
