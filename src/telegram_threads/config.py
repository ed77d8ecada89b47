"""Configuration management for Telegram Threads.

Configuration sources (no overlap):
- api_id, api_hash  → env vars / .env only
- data_dir          → CLI --data-dir (default ./data)
- host, port        → CLI --host / --port
- settings file     → CLI --settings or {data_dir}/settings.yaml
- thread pipeline knobs (page size, budgets, thresholds) → settings.yaml
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
import yaml


logger = logging.getLogger(__name__)

SETTINGS_HEADER = (
    "# Telegram Threads: runtime settings\n"
    "# These values can be changed via the /settings API endpoint.\n\n"
)


@dataclass
class ThreadSettings:
    """Runtime-tunable knobs of the thread pipeline."""

    history_page_size: int = 100
    max_history_pages: int = 5
    history_message_budget: int = 100
    min_reply_count: int = 2  # roots need strictly more replies than this
    preview_reply_limit: int = 3
    download_priority: int = 1
    chat_limit: int = 100
    max_concurrent_chats: Optional[int] = None  # None = all chats at once
    max_reply_depth: int = 64
    download_media: bool = True


# Default values for runtime-tunable settings
SETTINGS_DEFAULTS = asdict(ThreadSettings())


@dataclass
class ThreadsConfig:
    """Server configuration."""

    # Telegram API credentials (from env vars)
    api_id: str
    api_hash: str

    # Data directory (from CLI)
    data_dir: Path = field(default_factory=lambda: Path("./data"))

    # Server settings (from CLI)
    host: str = "0.0.0.0"
    port: int = 8000

    # Runtime-tunable settings (from settings.yaml)
    settings: ThreadSettings = field(default_factory=ThreadSettings)

    # Internal: path to the active settings.yaml file
    settings_path: Optional[Path] = field(default=None, repr=False)

    def __post_init__(self):
        """Convert string paths and create directories."""
        if isinstance(self.data_dir, str):
            self.data_dir = Path(self.data_dir)
        if isinstance(self.settings_path, str):
            self.settings_path = Path(self.settings_path)

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.media_dir.mkdir(parents=True, exist_ok=True)
        self.sessions_dir.mkdir(parents=True, exist_ok=True)

    @property
    def media_dir(self) -> Path:
        """Directory for downloaded photos and avatars."""
        return self.data_dir / "media"

    @property
    def sessions_dir(self) -> Path:
        """Directory for Telegram session files."""
        return self.data_dir / "sessions"


def load_credentials_from_env() -> dict:
    """
    Load Telegram API credentials from environment variables / .env file.

    Returns:
        Dict with api_id and api_hash (if found).

    Raises:
        ValueError if credentials are missing.
    """
    load_dotenv()

    creds = {}
    if api_id := os.getenv("TELEGRAM_API_ID"):
        creds["api_id"] = api_id
    if api_hash := os.getenv("TELEGRAM_API_HASH"):
        creds["api_hash"] = api_hash

    if "api_id" not in creds or "api_hash" not in creds:
        raise ValueError(
            "Missing Telegram API credentials.\n"
            "Set TELEGRAM_API_ID and TELEGRAM_API_HASH as environment variables\n"
            "or in a .env file in the project root.\n\n"
            "Get credentials at https://my.telegram.org/apps"
        )

    return creds


_TRUE_STRINGS = {"true", "yes", "on", "1"}
_FALSE_STRINGS = {"false", "no", "off", "0", ""}


def _coerce_bool(name: str, value) -> bool:
    # A quoted "false" must not become True
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
        raise ValueError(f"{name}: expected a boolean, got {value!r}")
    return bool(value)


def _coerce(name: str, value):
    """Coerce a raw YAML value to the type of the ThreadSettings field."""
    if name == "max_concurrent_chats":
        return None if value in (None, 0) else int(value)
    if name == "download_media":
        return _coerce_bool(name, value)
    return int(value)


def load_settings(settings_path: Path) -> ThreadSettings:
    """Load runtime-tunable settings from a YAML file."""
    with open(settings_path, "r") as f:
        data = yaml.safe_load(f) or {}

    # Only extract known tunable keys
    known = {f.name for f in fields(ThreadSettings)}
    values = {k: _coerce(k, v) for k, v in data.items() if k in known}
    return ThreadSettings(**values)


def _write_settings(path: Path, data: dict) -> None:
    with open(path, "w") as f:
        f.write(SETTINGS_HEADER)
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def save_settings(config: ThreadsConfig) -> None:
    """
    Persist runtime-tunable settings to settings.yaml.

    Writes only the tunable params, never credentials or paths.
    """
    if not config.settings_path:
        logger.warning("No settings_path set, cannot persist settings")
        return

    _write_settings(config.settings_path, asdict(config.settings))


def resolve_settings_file(
    data_dir: Path, cli_settings_path: Optional[Path] = None
) -> Path:
    """
    Determine which settings.yaml to use and return the canonical path
    (always inside the data directory).

    Behaviour:
    - If --settings is given: copy that file into data_dir/settings.yaml
      (warn if overwriting). Return data_dir/settings.yaml.
    - If --settings is NOT given: look for data_dir/settings.yaml.
      If missing, create one with defaults. Return data_dir/settings.yaml.
    """
    data_dir = Path(data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)
    canonical = data_dir / "settings.yaml"

    if cli_settings_path is not None:
        cli_settings_path = Path(cli_settings_path)
        if not cli_settings_path.exists():
            raise ValueError(
                f"Settings file not found: {cli_settings_path}\n"
                f"Provide a valid path or omit --settings to use defaults."
            )

        if canonical.exists():
            logger.warning(
                "Overwriting existing %s with %s", canonical, cli_settings_path
            )

        shutil.copy2(cli_settings_path, canonical)
        logger.info("Settings imported from %s → %s", cli_settings_path, canonical)
    elif not canonical.exists():
        logger.info("No settings.yaml found in %s, creating with defaults", data_dir)
        _write_settings(canonical, dict(SETTINGS_DEFAULTS))

    logger.info("Using settings file: %s", canonical)
    return canonical
