"""Loading of flow configuration from the environment or from etcd."""

from __future__ import annotations

import base64
import json
import os
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import requests
import yaml

_INT_PATTERN = re.compile(r"[+-]?\d+")


class ConfigError(Exception):
    """Raised when the flow configuration cannot be loaded or is invalid."""


@dataclass(frozen=True)
class AMTConfig:
    """Everything needed to set up one flow."""

    dsn: str = ""
    queue_name: str = ""
    prefetch_count: int = 0


def load_config(file: str) -> AMTConfig:
    """Load and validate the configuration.

    When ``ETCD_URL`` is set, the document stored in etcd under ``file`` is
    used; otherwise the values come from environment variables.
    """
    etcd_url = os.environ.get("ETCD_URL", "")
    if etcd_url:
        if not file:
            raise ConfigError("CONFIG_FILE must be given in Flow parameters")
        try:
            cfg = load_etcd(etcd_url, file)
        except ConfigError as exc:
            raise ConfigError(f"error during LoadEtcd: {exc}") from exc
    else:
        cfg = load_env()

    if not cfg.dsn:
        raise ConfigError("AMT_TRANSPORT_DSN must be set")
    if not cfg.queue_name:
        raise ConfigError("AMT_QUEUE_NAME must be set")
    if cfg.prefetch_count < 1:
        raise ConfigError("AMT_QOS_PREFETCHCOUNT must be > 1")
    return cfg


def load_env() -> AMTConfig:
    """Read the configuration from environment variables; a bad count becomes 0."""
    raw_count = os.environ.get("AMT_QOS_PREFETCHCOUNT", "")
    return AMTConfig(
        dsn=os.environ.get("AMT_TRANSPORT_DSN", ""),
        queue_name=os.environ.get("AMT_QUEUE_NAME", ""),
        prefetch_count=int(raw_count) if _INT_PATTERN.fullmatch(raw_count) else 0,
    )


def load_etcd(etcd_url: str, file: str) -> AMTConfig:
    """Read the document stored in etcd under the key ``file``, typed by its extension."""
    extension = find_extension(file).lower()
    base = etcd_url if "://" in etcd_url else f"http://{etcd_url}"
    try:
        response = requests.post(
            f"{base.rstrip('/')}/v3/kv/range",
            json={"key": base64.b64encode(file.encode()).decode()},
            timeout=10.0,
        )
        response.raise_for_status()
        kvs = response.json().get("kvs")
        if not kvs:
            raise ConfigError(f"Error reading config file: key {file!r} not found")
        text = base64.b64decode(kvs[0].get("value", "")).decode()
        if extension == "json":
            data = json.loads(text)
        elif extension in ("yaml", "yml"):
            data = yaml.safe_load(text)
        elif extension == "toml":
            data = tomllib.loads(text)
        else:
            raise ConfigError(f"Error reading config file: unsupported config type {extension!r}")
    except (requests.RequestException, ValueError, AttributeError, yaml.YAMLError) as exc:
        raise ConfigError(f"Error reading config file: {exc}") from exc

    dsn = _lookup(data, "amt.transport.dsn")
    name = _lookup(data, "amt.queue.name")
    return AMTConfig(
        dsn="" if dsn is None else str(dsn),
        queue_name="" if name is None else str(name),
        prefetch_count=_as_int(_lookup(data, "amt.qos.prefetchcount")),
    )


def find_extension(file: str) -> str:
    """Return the text after the last dot of ``file``."""
    _, dot, tail = file.rpartition(".")
    if not dot:
        raise ConfigError("no extension found in config file: ")
    return tail


def _lookup(data: Any, dotted_key: str) -> Any:
    """Find a nested value, matching each key part case-insensitively."""
    for part in dotted_key.split("."):
        if not isinstance(data, Mapping):
            return None
        data = next((value for key, value in data.items() if str(key).lower() == part), None)
    return data


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0