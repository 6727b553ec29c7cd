"""Application configuration for tabpilot.

Central configuration module powered by Pydantic v2.  Settings are loaded from
environment variables (with ``.env`` file support) and an optional
``config/tabpilot.json`` file.

Key exports:
    AppSettings: Root settings model (instantiate once and pass around).
    default_app_data_root: Platform-specific per-user data directory.
    BASE_DIR / CONFIG_DIR / LOGS_DIR: Canonical project paths.
"""

# pylint: disable=no-member

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------------------------------------------------------------------------
# Base Paths
# ---------------------------------------------------------------------------
BASE_DIR: Path = Path(__file__).parent.parent
"""Project root directory (parent of ``core/``)."""

CONFIG_DIR: Path = BASE_DIR / "config"
"""Directory containing runtime configuration files (proxies, health data)."""

LOGS_DIR: Path = BASE_DIR / "logs"
"""Directory for log output files."""

logger: logging.Logger = logging.getLogger(__name__)


def default_app_data_root() -> str:
    """Return the per-user local application data directory.

    ``%LOCALAPPDATA%`` on Windows, ``~/Library/Application Support`` on
    macOS and ``$XDG_DATA_HOME`` (or ``~/.local/share``) elsewhere.
    """
    if sys.platform == "win32":
        local = os.environ.get("LOCALAPPDATA")
        if local:
            return local
        return str(Path.home() / "AppData" / "Local")
    if sys.platform == "darwin":
        return str(Path.home() / "Library" / "Application Support")
    return os.environ.get(
        "XDG_DATA_HOME", str(Path.home() / ".local" / "share"),
    )


class AppSettings(BaseSettings):
    """Root configuration model for tabpilot.

    All fields can be set via environment variables or a ``.env`` file.
    Values from ``config/tabpilot.json`` are merged during post-init
    for the keys that the environment did not set.

    Section overview:
        * **Core** -- log level.
        * **Engine** -- headless mode, browser channel, launch timeout,
          Accept-Language list.
        * **Storage** -- application data root, product folder, instance
          slot ceiling, download directory.
        * **Script bridge** -- default evaluation timeout.
        * **Input** -- synthetic input settle and pacing delays.
        * **Cookies** -- enumeration wait bound.
        * **Proxy** -- fixed launch proxy, proxy list, rotation, validation.
    """

    # Core
    log_level: str = "INFO"

    # Engine
    headless: bool = True
    # Optional Chromium channel (e.g. "chrome", "msedge"); bundled build if unset
    browser_channel: Optional[str] = None
    # Launch / navigation timeout in ms
    engine_timeout: int = 60000
    accept_language: str = "ja-JP,ja,en-US,en"
    default_url: str = "about:blank"

    # Storage
    app_data_root: str = Field(default_factory=default_app_data_root)
    product_name: str = "tabpilot"
    max_instance_slots: int = 99
    # Where page downloads are saved; see downloads_dir
    download_dir: Optional[str] = None

    # Script bridge
    script_timeout_seconds: float = 30.0

    # Synthetic input pacing (seconds)
    input_move_settle: float = 0.05
    input_press_settle: float = 0.10
    input_focus_settle: float = 0.10
    input_char_delay: float = 0.05

    # Cookies
    # Upper bound on a cookie enumeration before returning what was visited
    cookie_visit_timeout_seconds: float = 10.0

    # Proxy
    # A proxy fixed at launch (host:port[:user:pass]) makes the per-session
    # proxy preference read-only, like a command-line proxy switch.
    launch_proxy: Optional[str] = None
    proxy_bypass_list: List[str] = Field(
        default_factory=lambda: ["localhost", "127.0.0.1", "::1"]
    )
    proxy_list_file: str = str(CONFIG_DIR / "proxies.txt")
    # Options: round_robin, random, health_based
    proxy_rotation_strategy: str = "round_robin"
    proxy_validation_url: str = "https://www.google.com"
    proxy_validation_timeout_seconds: int = 15
    proxy_test_url: str = "https://httpbin.org/ip"
    proxy_apply_settle_seconds: float = 0.5
    proxy_failure_threshold: int = 3
    # Cooldown after repeated failures (seconds)
    proxy_failure_cooldown: int = 300
    proxy_health_file: str = str(CONFIG_DIR / "proxy_health.json")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    def model_post_init(self, __context: Any) -> None:
        """Merge ``config/tabpilot.json`` into the settings instance."""
        self._load_config_file_defaults()

    def _load_config_file_defaults(self) -> None:
        """Load engine and proxy overrides from the config file.

        Reads ``config/tabpilot.json``.  Only keys that were not
        explicitly provided (environment, ``.env`` or constructor)
        are taken from the file, so the environment always wins.
        """
        config_path: Path = CONFIG_DIR / "tabpilot.json"
        if not config_path.exists():
            return

        try:
            data: Dict[str, Any] = json.loads(
                config_path.read_text(encoding="utf-8")
            )
        except Exception as exc:
            logger.warning(
                "Failed to load tabpilot.json: %s", exc
            )
            return

        for section in ("engine_settings", "proxy_settings"):
            values = data.get(section)
            if not isinstance(values, dict):
                continue
            for key, value in values.items():
                if key not in type(self).model_fields:
                    logger.debug(
                        "Ignoring unknown %s key: %s", section, key,
                    )
                    continue
                if key in self.model_fields_set:
                    continue
                try:
                    setattr(self, key, value)
                except Exception as exc:
                    logger.debug(
                        "Skipping invalid %s entry %s: %s",
                        section, key, exc,
                    )

    @property
    def browser_data_dir(self) -> Path:
        """``<app_data_root>/<product>/BrowserData``."""
        return Path(self.app_data_root) / self.product_name / "BrowserData"

    @property
    def downloads_dir(self) -> Path:
        """``download_dir`` when set, else ``<app_data_root>/<product>/Downloads``."""
        if self.download_dir:
            return Path(self.download_dir)
        return Path(self.app_data_root) / self.product_name / "Downloads"
