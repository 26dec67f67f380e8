"""Configuration management for pynautica.

Values are resolved from environment variables first, then from the config
file at ``~/.config/pynautica/config`` (``KEY=VALUE`` lines), then from
built-in defaults. Command line options override all of these.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from .exceptions import NauticaConfigError
from .utils import DEFAULT_BASE_URL, DEFAULT_DOWNLOAD_TIMEOUT

logger = logging.getLogger(__name__)

ENV_BASE_URL = "NAUTICA_BASE_URL"
ENV_TIMEOUT = "NAUTICA_TIMEOUT"
ENV_WORKERS = "NAUTICA_WORKERS"
ENV_DEST = "NAUTICA_DEST"

DEFAULT_DEST = "./nautica"
DEFAULT_WORKERS = 1


class Config:
    """Layered configuration for the downloader."""

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize configuration.

        Args:
            config_dir: Directory holding the config file. Defaults to
                       ~/.config/pynautica/
        """
        if config_dir is None:
            config_dir = Path.home() / ".config" / "pynautica"
        self.config_dir = config_dir
        self._file_values: Optional[dict[str, str]] = None

    def get_config_path(self) -> Path:
        """Return the path of the config file."""
        return self.config_dir / "config"

    def _load_file(self) -> dict[str, str]:
        """Read KEY=VALUE pairs from the config file (cached)."""
        if self._file_values is not None:
            return self._file_values

        values: dict[str, str] = {}
        config_path = self.get_config_path()
        if config_path.exists():
            try:
                with open(config_path, encoding="utf-8") as f:
                    for line in f:
                        line = line.strip()
                        if not line or line.startswith("#") or "=" not in line:
                            continue
                        key, value = line.split("=", 1)
                        values[key.strip()] = value.strip().strip('"').strip("'")
            except OSError as e:
                logger.warning(f"Failed to read config file {config_path}: {e}")
        self._file_values = values
        return values

    def _get(self, key: str) -> Optional[str]:
        value = os.environ.get(key)
        if value:
            return value
        return self._load_file().get(key)

    @property
    def base_url(self) -> str:
        """Base URL of the Nautica server."""
        return (self._get(ENV_BASE_URL) or DEFAULT_BASE_URL).rstrip("/")

    @property
    def download_timeout(self) -> float:
        """Per-download timeout in seconds."""
        value = self._get(ENV_TIMEOUT)
        if value is None:
            return DEFAULT_DOWNLOAD_TIMEOUT
        try:
            timeout = float(value)
        except ValueError:
            raise NauticaConfigError(
                f"{ENV_TIMEOUT} must be a number, got {value!r}"
            ) from None
        if timeout <= 0:
            raise NauticaConfigError(f"{ENV_TIMEOUT} must be positive")
        return timeout

    @property
    def workers(self) -> int:
        """Default number of parallel item workers."""
        value = self._get(ENV_WORKERS)
        if value is None:
            return DEFAULT_WORKERS
        try:
            workers = int(value)
        except ValueError:
            raise NauticaConfigError(
                f"{ENV_WORKERS} must be an integer, got {value!r}"
            ) from None
        if workers < 1:
            raise NauticaConfigError(f"{ENV_WORKERS} must be at least 1")
        return workers

    @property
    def dest(self) -> Path:
        """Default destination directory."""
        return Path(self._get(ENV_DEST) or DEFAULT_DEST)

    def save_value(self, key: str, value: str) -> None:
        """Persist a single KEY=VALUE pair to the config file.

        Args:
            key: Configuration key (e.g., NAUTICA_BASE_URL)
            value: Value to store
        """
        values = dict(self._load_file())
        values[key] = value
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.get_config_path(), "w", encoding="utf-8") as f:
            for k, v in sorted(values.items()):
                f.write(f"{k}={v}\n")
        self._file_values = values


config = Config()
