"""Configuration management for pydrivesync.

Settings come from environment variables first and fall back to files in
the user's configuration directory (``~/.config/pydrivesync`` by default).
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

APP_NAME = "pydrivesync"

DEFAULT_API_URL = "https://www.googleapis.com/drive/v3"
DEFAULT_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3"

# Seconds between reconciliation passes
DEFAULT_POLL_INTERVAL: float = 30.0

# Timeout for a single remote call in seconds
DEFAULT_TIMEOUT: float = 30.0

DB_FILE_NAME = "sync.db"
LOG_FILE_NAME = "sync.log"


class Config:
    """Resolves configuration paths and credentials."""

    @property
    def config_dir(self) -> Path:
        """Directory holding the sync database, log file and tokens."""
        override = os.environ.get("PYDRIVESYNC_CONFIG_DIR")
        if override:
            return Path(override).expanduser()
        base = os.environ.get("XDG_CONFIG_HOME")
        if base:
            return Path(base) / APP_NAME
        return Path.home() / ".config" / APP_NAME

    @property
    def runtime_dir(self) -> Path:
        """Directory holding daemon PID files."""
        override = os.environ.get("PYDRIVESYNC_RUNTIME_DIR")
        if override:
            return Path(override).expanduser()
        xdg_runtime = os.environ.get("XDG_RUNTIME_DIR")
        if xdg_runtime:
            return Path(xdg_runtime) / APP_NAME
        return self.config_dir / "run"

    @property
    def db_path(self) -> Path:
        return self.config_dir / DB_FILE_NAME

    @property
    def log_path(self) -> Path:
        return self.config_dir / LOG_FILE_NAME

    @property
    def api_url(self) -> str:
        return os.environ.get("PYDRIVESYNC_API_URL", DEFAULT_API_URL).rstrip("/")

    @property
    def upload_url(self) -> str:
        return os.environ.get("PYDRIVESYNC_UPLOAD_URL", DEFAULT_UPLOAD_URL).rstrip(
            "/"
        )

    @property
    def poll_interval(self) -> float:
        return _float_from_env("PYDRIVESYNC_POLL_INTERVAL", DEFAULT_POLL_INTERVAL)

    @property
    def timeout(self) -> float:
        return _float_from_env("PYDRIVESYNC_TIMEOUT", DEFAULT_TIMEOUT)

    def ensure_dir(self) -> Path:
        """Create the configuration directory if needed and return it."""
        directory = self.config_dir
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def get_token_path(self, account: str) -> Path:
        """Path of the token file the auth layer writes for an account."""
        return self.config_dir / "tokens" / f"{account}.json"

    def get_access_token(self, account: Optional[str] = None) -> Optional[str]:
        """Return a bearer access token.

        ``PYDRIVESYNC_ACCESS_TOKEN`` wins; otherwise the account's token file
        is read. The token is issued and refreshed by the authentication
        layer, this module only reads it.

        Args:
            account: Account name (usually an email address)

        Returns:
            Access token or None when nothing is configured
        """
        token = os.environ.get("PYDRIVESYNC_ACCESS_TOKEN")
        if token:
            return token
        if not account:
            return None

        token_path = self.get_token_path(account)
        if not token_path.exists():
            logger.debug(f"No token file at {token_path}")
            return None
        try:
            with open(token_path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read token file {token_path}: {e}")
            return None
        return data.get("access_token") or None


def _float_from_env(name: str, default: float) -> float:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={value!r}")
        return default


config = Config()
