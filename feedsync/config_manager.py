from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import yaml

from feedsync.models import AppConfig, default_app_config


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def mask_url(url: str) -> str:
    """Hide credentials embedded in a feed URL (userinfo and query tokens)."""
    parts = urlsplit(url)
    netloc = parts.netloc
    if "@" in netloc:
        netloc = "***@" + netloc.rsplit("@", 1)[1]
    query = "***" if parts.query else ""
    return urlunsplit((parts.scheme, netloc, parts.path, query, ""))


def render_config(config: AppConfig) -> str:
    return yaml.safe_dump(config.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False)


class ConfigManager:
    """Reads and writes the feedsync YAML file.

    A missing file is created with defaults on first use, so a fresh install
    can start syncing as soon as feeds are added.
    """

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            self.save(default_app_config())

    def _read_raw(self) -> dict[str, Any]:
        text = self.config_path.read_text(encoding="utf-8")
        data = yaml.safe_load(text)
        return data if isinstance(data, dict) else {}

    def load(self) -> AppConfig:
        with self._lock:
            return AppConfig.from_dict(self._read_raw())

    def save(self, config: AppConfig) -> None:
        text = render_config(config)
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            staging = self.config_path.with_name(self.config_path.name + ".tmp")
            staging.write_text(text, encoding="utf-8")
            try:
                staging.replace(self.config_path)
            except OSError as exc:
                # A bind-mounted config file cannot be swapped; overwrite it in place.
                if exc.errno != errno.EBUSY:
                    raise
                self.config_path.write_text(text, encoding="utf-8")
                staging.unlink(missing_ok=True)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            config = AppConfig.from_dict(_deep_merge(self.load().to_dict(), payload))
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        data = self.load().to_dict()
        for feed in data.get("feeds", []):
            if feed.get("url"):
                feed["url"] = mask_url(feed["url"])
        return data
