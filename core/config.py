"""
ycmbridge configuration - paths, defaults, and bridge settings.

All modules import path constants from here. The ~/.ycmbridge/ directory
is the single location for logs and transient state.
"""

import sys
from pathlib import Path
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.errors import ConfigurationError

# ---------------------------------------------------------------------------
# Paths - the ~/.ycmbridge/ directory tree
# ---------------------------------------------------------------------------

BRIDGE_DIR = Path.home() / ".ycmbridge"
LOG_DIR = BRIDGE_DIR / "logs"

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

LOCALHOST = "127.0.0.1"
HMAC_HEADER = "X-Ycm-Hmac"
DEFAULT_SETTINGS_FILE = Path("ycmd") / "default_settings.json"

DEFAULT_IDLE_SUICIDE_SECONDS = 600
DEFAULT_REQUEST_TIMEOUT = 5.0
DEFAULT_STARTUP_TIMEOUT = 10.0
DEFAULT_SETTLE_DELAY = 1.0
DEFAULT_ENABLED_LANGUAGES = ("c", "cpp", "objective-c", "objective-cpp")


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Bridge configuration.

    Frozen so that a snapshot taken when a daemon starts can be compared by
    value against the settings of a later request.
    """

    model_config = SettingsConfigDict(
        env_prefix="YCMBRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # Daemon location
    ycmd_path: str = ""
    python: str = Field(default_factory=lambda: sys.executable)

    # Extra-config handling
    global_extra_config: str = ""
    confirm_extra_conf: bool = True

    # Daemon process
    idle_suicide_seconds: int = DEFAULT_IDLE_SUICIDE_SECONDS
    daemon_options: dict[str, Any] = Field(default_factory=dict)

    # Timing
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    startup_timeout: float = DEFAULT_STARTUP_TIMEOUT
    settle_delay: float = DEFAULT_SETTLE_DELAY
    readiness_probe: bool = True

    # Editor behaviour
    use_imprecise_get_type: bool = False
    enabled_languages: tuple[str, ...] = DEFAULT_ENABLED_LANGUAGES

    debug: bool = False

    def ensure_valid(self) -> None:
        """Raise ConfigurationError if the daemon cannot be started with these settings."""
        if not self.ycmd_path:
            raise ConfigurationError("Invalid ycmd path")
        if not self.global_extra_config:
            raise ConfigurationError("Invalid ycmd global extra config path")

    @property
    def default_settings_path(self) -> Path:
        return Path(self.ycmd_path) / DEFAULT_SETTINGS_FILE


# Editor-side key -> Settings field
_EDITOR_KEY_MAP = {
    "path": "ycmd_path",
    "python": "python",
    "global_extra_config": "global_extra_config",
    "confirm_extra_conf": "confirm_extra_conf",
    "idle_suicide_seconds": "idle_suicide_seconds",
    "daemon_options": "daemon_options",
    "request_timeout": "request_timeout",
    "startup_timeout": "startup_timeout",
    "use_imprecise_get_type": "use_imprecise_get_type",
    "enabled_languages": "enabled_languages",
    "debug": "debug",
}


def load_settings(editor_settings: dict[str, Any] | None = None, **overrides: Any) -> Settings:
    """Build Settings from the editor's ``{"ycmd": {...}}`` section.

    Priority: explicit overrides > editor settings > environment > defaults.
    Unknown editor keys are ignored.
    """
    values: dict[str, Any] = {}
    section = (editor_settings or {}).get("ycmd") or {}
    for key, value in section.items():
        field_name = _EDITOR_KEY_MAP.get(key)
        if field_name is None or value is None:
            continue
        if field_name == "enabled_languages":
            value = tuple(value)
        values[field_name] = value
    values.update(overrides)
    return Settings(**values)


def get_settings() -> Settings:
    """Return settings from the environment only."""
    return Settings()
