"""
Configuration management for resume-queue.

Handles loading, saving, and updating queue configuration, plus the
environment overrides read from a .env file.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from dotenv import load_dotenv
from pydantic import ValidationError as PydanticValidationError

from resume_queue.atomic import AtomicFileWriter
from resume_queue.backoff import CancelToken
from resume_queue.locking import LOCK_DIR_NAME, LockManager
from resume_queue.models import QueueConfig, QueueSettings, now_iso
from resume_queue.task_queue import TaskQueue


# Default configuration paths
DEFAULT_CONFIG_DIR = Path.home() / ".config" / "resume-queue"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.json"
DEFAULT_QUEUE_DIR = Path.home() / ".local" / "share" / "resume-queue"

# Environment overrides
ENV_QUEUE_DIR = "RESUME_QUEUE_DIR"
ENV_CONFIG_FILE = "RESUME_QUEUE_CONFIG"
ENV_LOG_LEVEL = "RESUME_QUEUE_LOG_LEVEL"

# .env file name, looked up in the working directory first, then the config dir
ENV_FILE_NAME = ".env"


logger = logging.getLogger(__name__)


def env_files() -> Tuple[Path, ...]:
    """.env candidates, resolved against the current working directory."""
    return (Path.cwd() / ENV_FILE_NAME, DEFAULT_CONFIG_DIR / ENV_FILE_NAME)


def load_environment() -> None:
    """Load .env files into os.environ without overriding set variables."""
    for env_file in env_files():
        if env_file.exists():
            load_dotenv(env_file)


def default_config_file() -> Path:
    path = os.environ.get(ENV_CONFIG_FILE)
    return Path(path).expanduser() if path else DEFAULT_CONFIG_FILE


class ConfigManager:
    """
    Manages queue configuration.

    Handles loading configuration from disk, making updates,
    and persisting changes atomically under the config lock.
    """

    def __init__(self, config_file: Optional[Path] = None):
        """
        Initialize configuration manager.

        Args:
            config_file: Path to configuration file. Defaults to
                $RESUME_QUEUE_CONFIG or ~/.config/resume-queue/config.json
        """
        load_environment()
        self.config_file = Path(config_file) if config_file else default_config_file()
        self.config_file.parent.mkdir(parents=True, exist_ok=True)

        self.lock_manager = LockManager(self.config_file.parent / LOCK_DIR_NAME)

        # Load or create default config
        self.config = self._load_config()

    def _load_config(self) -> QueueConfig:
        """Load configuration from file or create default."""
        data = AtomicFileWriter.read_json(self.config_file)

        if data is None:
            if self.config_file.exists():
                logger.warning(f"Unreadable config file {self.config_file}, using defaults")
            return QueueConfig()

        try:
            return QueueConfig.model_validate(data)
        except PydanticValidationError as e:
            logger.warning(f"Invalid config file {self.config_file}, using defaults: {e}")
            return QueueConfig()

    def save_config(self, operation: str = "config_set") -> None:
        """Save configuration atomically with locking."""
        self.config.updated_at = now_iso()
        with self.lock_manager.locked(operation):
            AtomicFileWriter.write_json(self.config_file, self.config.model_dump(mode="json"), indent=2)

    def reload(self) -> None:
        """Reload configuration from disk."""
        self.config = self._load_config()

    # Settings management

    @property
    def settings(self) -> QueueSettings:
        """Settings with environment overrides applied (not persisted)."""
        settings = self.config.settings
        level = os.environ.get(ENV_LOG_LEVEL)
        if level:
            settings = settings.model_copy(update={"log_level": level.upper()})
        return settings

    def update_settings(self, **kwargs: Any) -> QueueSettings:
        """
        Update queue settings.

        Args:
            **kwargs: Settings to update (default_priority, lock_strategy, etc.)

        Raises:
            ValueError: Unknown setting or a value the settings model rejects
        """
        current = self.config.settings.model_dump()
        for key in kwargs:
            if key not in current:
                raise ValueError(f"Unknown setting: {key}")

        try:
            updated = QueueSettings.model_validate({**current, **kwargs})
        except PydanticValidationError as e:
            raise ValueError(f"Invalid setting value: {e.errors()[0].get('msg')}") from e

        self.config.settings = updated
        self.save_config()
        return updated

    def reset(self) -> None:
        """Restore every setting to its default, keeping the paths."""
        self.config.settings = QueueSettings()
        self.save_config("config_reset")

    # Paths

    def set_queue_dir(self, path: str) -> None:
        self.config.queue_dir = str(Path(path).expanduser().resolve())
        self.save_config()

    def set_project_workspace(self, path: str) -> None:
        """
        Set the working directory the executor runs in.

        Raises:
            ValueError: If path doesn't exist or is not a directory
        """
        workspace = Path(path).expanduser().resolve()
        if not workspace.is_dir():
            raise ValueError(f"Project workspace is not a directory: {workspace}")
        self.config.project_workspace = str(workspace)
        self.save_config()

    def resolve_queue_dir(self, override: Optional[Path] = None) -> Path:
        """Queue directory: explicit override, then $RESUME_QUEUE_DIR, then config, then default."""
        if override:
            return Path(override).expanduser()
        env_dir = os.environ.get(ENV_QUEUE_DIR)
        if env_dir:
            return Path(env_dir).expanduser()
        if self.config.queue_dir:
            return Path(self.config.queue_dir)
        return DEFAULT_QUEUE_DIR

    def resolve_workspace(self) -> Path:
        if self.config.project_workspace:
            return Path(self.config.project_workspace)
        return Path.cwd()

    def create_queue(self, queue_dir: Optional[Path] = None, cancel: Optional[CancelToken] = None) -> TaskQueue:
        """Build a TaskQueue for the resolved directory and current settings."""
        return TaskQueue(self.resolve_queue_dir(queue_dir), settings=self.settings, cancel=cancel)

    def as_dict(self) -> Dict[str, Any]:
        return self.config.model_dump(mode="json")


def get_default_config_manager() -> ConfigManager:
    """Get the default configuration manager."""
    return ConfigManager()
