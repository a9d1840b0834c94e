"""
Configuration management for the DirectDrive transfer client.
Handles the API endpoint, download origin, upload tuning and the access token.
"""

from dataclasses import asdict, dataclass, fields
from pathlib import Path
import json
import logging
import os
from typing import Optional

from ddx.core.batch import BatchConfig

logger = logging.getLogger(__name__)


@dataclass
class PortalConfig:
    """Client settings persisted between runs"""
    api_url: str = "http://localhost:5000"  # Backend API root
    download_origin: str = "http://localhost:3000"  # Origin of download pages
    chunk_size: int = BatchConfig.CHUNK_SIZE  # Upload slice size in bytes
    timeout: float = 30.0  # Per-request timeout in seconds
    access_token: Optional[str] = None  # Bearer token of the signed-in user


class ConfigManager:
    """Manages ddx configuration"""

    # Environment variables that take precedence over the file
    ENV_OVERRIDES = {
        "api_url": "DDX_API_URL",
        "download_origin": "DDX_DOWNLOAD_ORIGIN",
        "access_token": "DDX_ACCESS_TOKEN",
    }

    def __init__(self, config_dir: Optional[str] = None):
        """
        Initialize configuration manager

        Args:
            config_dir: Directory holding config.json (default: ~/.config/ddx,
                or $DDX_CONFIG_DIR when set)
        """
        if config_dir is None:
            config_dir = os.environ.get("DDX_CONFIG_DIR") or Path.home() / ".config" / "ddx"
        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / "config.json"
        self.config = PortalConfig()
        self._load_config()

    def _load_config(self):
        """Load configuration from file"""
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)

            if not self.config_file.exists():
                # Create default config
                self._save_config()

            with open(self.config_file, 'r') as f:
                data = json.load(f)

            known = {f.name for f in fields(PortalConfig)}
            self.config = PortalConfig(**{k: v for k, v in data.items() if k in known})
        except (OSError, ValueError, TypeError) as e:
            logger.warning("Failed to load config: %s", e)
            self.config = PortalConfig()

    def _save_config(self):
        """Save configuration to file"""
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, 'w') as f:
                json.dump(asdict(self.config), f, indent=4)
        except OSError as e:
            logger.warning("Failed to save config: %s", e)

    def effective(self) -> PortalConfig:
        """Configuration with environment overrides applied"""
        values = asdict(self.config)
        for key, env_name in self.ENV_OVERRIDES.items():
            if os.environ.get(env_name):
                values[key] = os.environ[env_name]
        return PortalConfig(**values)

    def set_value(self, key: str, value: str):
        """
        Set a configuration key from its string form

        Raises:
            ValueError: If the key is unknown or the value has the wrong type
        """
        types = {f.name: f.type for f in fields(PortalConfig)}
        if key not in types:
            raise ValueError(f"Unknown setting '{key}'. Valid keys: {', '.join(types)}")

        if key == "chunk_size":
            parsed = int(value)
            if parsed <= 0:
                raise ValueError("chunk_size must be positive")
        elif key == "timeout":
            parsed = float(value)
        elif key == "access_token":
            parsed = value or None
        else:
            parsed = value.rstrip("/")

        setattr(self.config, key, parsed)
        self._save_config()

    def set_token(self, token: Optional[str]):
        """Store or clear the access token"""
        self.config.access_token = token or None
        self._save_config()

    def is_authenticated(self) -> bool:
        """True when an access token is available"""
        return bool(self.effective().access_token)
