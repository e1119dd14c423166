# boardsync: configuration
# Override via board.yaml, CLI args or BOARDSYNC_* environment variables.

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from .realtime import RetryPolicy

logger = logging.getLogger(__name__)

CONFIG_PATH = Path.cwd() / "board.yaml"


@dataclass
class Settings:
    """Runtime configuration for the board server and clients."""

    # Storage
    db_path: str = "~/.local/share/boardsync/board.db"

    # HTTP API
    host: str = "127.0.0.1"
    port: int = 3000
    api_secret: str = ""           # Empty = writes disabled (503)
    api_url: Optional[str] = None  # Used by BoardApiClient
    request_timeout: float = 5.0

    # Realtime
    max_retries: int = 5
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    subscribe_timeout: float = 10.0

    # View reconciliation
    pending_timeout: float = 10.0

    log_level: str = "INFO"

    def resolve(self):
        """Apply environment overrides and expand ~ in paths."""
        env_db = os.environ.get("BOARDSYNC_DB")
        if env_db:
            self.db_path = env_db
        env_secret = os.environ.get("BOARDSYNC_API_SECRET")
        if env_secret:
            self.api_secret = env_secret
        self.db_path = str(Path(self.db_path).expanduser())

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            timeout=self.subscribe_timeout,
        )

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Settings":
        """Load settings from YAML file, falling back to defaults."""
        cfg_path = Path(path) if path else CONFIG_PATH
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
                settings = cls(**{k: v for k, v in data.items() if hasattr(cls, k)})
            except (OSError, yaml.YAMLError, TypeError, AttributeError) as e:
                logger.warning(f"Ignoring unreadable config {cfg_path}: {e}")
                settings = cls()
        else:
            settings = cls()
        settings.resolve()
        return settings
