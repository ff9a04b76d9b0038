"""
Configuration store for the streaming subsystem.

Persists the remote registry and the cache bounds in config.json. Paths can be
overridden through the environment or a .env file.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from shared.constants import (
    DEFAULT_CONFIG_DIR,
    CONFIG_FILENAME,
    RCLONE_CONFIG_FILENAME,
    LISTINGS_DB_FILENAME,
    ENV_CONFIG_DIR,
    ENV_CACHE_DIR,
    ENV_RCLONE_PATH,
    ENV_HEADLESS,
)
from shared.errors import ConfigError
from shared.models import StreamConfig

logger = logging.getLogger(__name__)

load_dotenv()


def resolve_config_dir(config_dir: Optional[str] = None) -> Path:
    if config_dir:
        return Path(config_dir).expanduser()
    return Path(os.getenv(ENV_CONFIG_DIR) or DEFAULT_CONFIG_DIR).expanduser()


class ConfigStore:
    """Loads and saves StreamConfig; every write replaces the file atomically."""

    def __init__(self, config_dir: Optional[str] = None):
        self.config_dir = resolve_config_dir(config_dir)
        self.path = self.config_dir / CONFIG_FILENAME
        self.lock = threading.RLock()
        self._config: Optional[StreamConfig] = None

    @property
    def rclone_config_path(self) -> Path:
        return self.config_dir / RCLONE_CONFIG_FILENAME

    @property
    def listings_db_path(self) -> Path:
        return self.config_dir / LISTINGS_DB_FILENAME

    def load(self) -> StreamConfig:
        """Load config.json, writing defaults when it does not exist yet."""
        with self.lock:
            if not self.path.exists():
                config = StreamConfig()
                self._write(config)
            else:
                try:
                    with open(self.path, 'r', encoding='utf-8') as f:
                        config = StreamConfig.from_dict(json.load(f))
                except (OSError, ValueError, TypeError) as e:
                    raise ConfigError(f"Could not read {self.path}: {e}")
            self._apply_env(config)
            self._config = config
            return config

    @property
    def config(self) -> StreamConfig:
        with self.lock:
            if self._config is None:
                return self.load()
            return self._config

    def save(self, config: StreamConfig) -> None:
        with self.lock:
            self._write(config)
            self._config = config

    def update(self, **changes: Any) -> StreamConfig:
        """Apply a partial update; None values are ignored."""
        with self.lock:
            data = self.config.to_dict()
            for key, value in changes.items():
                if value is not None:
                    data[key] = value
            config = StreamConfig.from_dict(data)
            self.save(config)
            return config

    def get_remotes(self) -> List[Dict[str, Any]]:
        with self.lock:
            return [dict(r) for r in self.config.remotes]

    def save_remotes(self, remotes: List[Dict[str, Any]]) -> None:
        with self.lock:
            data = self.config.to_dict()
            data['remotes'] = remotes
            self.save(StreamConfig.from_dict(data))

    def _write(self, config: StreamConfig) -> None:
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix('.json.tmp')
            with open(tmp_path, 'w', encoding='utf-8') as f:
                f.write(config.to_json())
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise ConfigError(f"Could not write {self.path}: {e}")

    @staticmethod
    def _apply_env(config: StreamConfig) -> None:
        """Environment wins over the file for machine-specific settings."""
        cache_dir = os.getenv(ENV_CACHE_DIR)
        if cache_dir:
            config.cache_dir = cache_dir
        rclone_path = os.getenv(ENV_RCLONE_PATH)
        if rclone_path:
            config.rclone_path = rclone_path
        if os.getenv(ENV_HEADLESS) == "1":
            config.open_browser = False
