"""Configuration loading for gitchat."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


@dataclass
class ChatConfig:
    repo_path: str = "."
    log_file: str = "chat.txt"

    @property
    def log_path(self) -> Path:
        return Path(self.repo_path).expanduser() / self.log_file


@dataclass
class SyncConfig:
    """Configuration for syncing the chat log with the remote."""

    interval_seconds: float = 10.0
    git_timeout_seconds: float = 60.0


@dataclass
class ProfileConfig:
    """Where the local display name is kept."""

    path: str = "~/.gitchat/profile.yaml"


@dataclass
class Config:
    chat: ChatConfig = field(default_factory=ChatConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    profile: ProfileConfig = field(default_factory=ProfileConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with GITCHAT_ prefix."""
    return os.environ.get(f"GITCHAT_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Chat overrides
    if repo_path := _get_env("REPO_PATH"):
        config.chat.repo_path = repo_path
    if log_file := _get_env("LOG_FILE"):
        config.chat.log_file = log_file

    # Sync overrides
    if interval := _get_env("SYNC_INTERVAL"):
        config.sync.interval_seconds = float(interval)
    if git_timeout := _get_env("GIT_TIMEOUT"):
        config.sync.git_timeout_seconds = float(git_timeout)

    # Profile overrides
    if profile_path := _get_env("PROFILE_PATH"):
        config.profile.path = profile_path

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses defaults.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "chat" in data:
                chat_data = data["chat"]
                config.chat = ChatConfig(
                    repo_path=str(chat_data.get("repo_path", config.chat.repo_path)),
                    log_file=chat_data.get("log_file", config.chat.log_file),
                )

            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    interval_seconds=float(
                        sync_data.get("interval_seconds", config.sync.interval_seconds)
                    ),
                    git_timeout_seconds=float(
                        sync_data.get("git_timeout_seconds", config.sync.git_timeout_seconds)
                    ),
                )

            if "profile" in data:
                config.profile = ProfileConfig(
                    path=str(data["profile"].get("path", config.profile.path))
                )
        else:
            logger.warning(f"Config file {path} not found, using defaults")

    return _apply_env_overrides(config)


class ProfileStore:
    """Persists the local participant's display name as YAML."""

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.warning(f"Ignoring unreadable profile {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def get_author_name(self) -> str | None:
        """Stored display name, or None if not set yet."""
        name = self._load().get("username")
        if isinstance(name, str) and name.strip():
            return name.strip()
        return None

    def set_author_name(self, name: str) -> None:
        """Store a new display name.

        Raises:
            ValueError: If the name is empty or would break the log format.
        """
        name = name.strip()
        if not name:
            raise ValueError("Display name cannot be empty")
        if ": " in name or "\n" in name or "\r" in name:
            raise ValueError("Display name cannot contain ': ' or line breaks")

        data = self._load()
        data["username"] = name
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False)
        logger.info(f"Display name set to {name}")
