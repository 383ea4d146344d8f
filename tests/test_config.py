"""Tests for resume_queue.config module."""

import json
import pytest

from resume_queue.config import (
    DEFAULT_QUEUE_DIR,
    ENV_CONFIG_FILE,
    ENV_LOG_LEVEL,
    ENV_QUEUE_DIR,
    ConfigManager,
    default_config_file,
    env_files,
)
from resume_queue.task_queue import TaskQueue


@pytest.fixture
def config_file(temp_dir):
    return temp_dir / "config" / "config.json"


class TestConfigManager:
    """Tests for ConfigManager class."""

    def test_creates_default_config(self, config_file):
        """Test that a missing file yields defaults without writing."""
        config_manager = ConfigManager(config_file)
        assert config_manager.config.settings.default_priority == 5
        assert config_manager.config.queue_dir is None
        assert config_file.parent.exists()

    def test_update_settings_persists(self, config_file):
        """Test that updated settings survive a reload."""
        config_manager = ConfigManager(config_file)
        config_manager.update_settings(default_priority=2, retry_placement="front")

        reloaded = ConfigManager(config_file)
        assert reloaded.settings.default_priority == 2
        assert reloaded.settings.retry_placement == "front"
        assert json.loads(config_file.read_text())["settings"]["default_priority"] == 2

    def test_update_unknown_setting(self, config_file):
        """Test that unknown keys are rejected."""
        with pytest.raises(ValueError, match="Unknown setting"):
            ConfigManager(config_file).update_settings(colour="blue")

    def test_update_invalid_value(self, config_file):
        """Test that invalid values are rejected and nothing is saved."""
        config_manager = ConfigManager(config_file)
        with pytest.raises(ValueError, match="Invalid setting value"):
            config_manager.update_settings(default_priority=42)
        assert not config_file.exists()
        assert config_manager.settings.default_priority == 5

    def test_reset(self, config_file):
        """Test that reset restores defaults but keeps paths."""
        config_manager = ConfigManager(config_file)
        config_manager.set_queue_dir(str(config_file.parent / "queue"))
        config_manager.update_settings(default_priority=1)

        config_manager.reset()

        reloaded = ConfigManager(config_file)
        assert reloaded.settings.default_priority == 5
        assert reloaded.config.queue_dir == str((config_file.parent / "queue").resolve())

    def test_invalid_file_falls_back_to_defaults(self, config_file):
        """Test that a corrupt config file is ignored."""
        config_file.parent.mkdir(parents=True)
        config_file.write_text("{ nope")
        assert ConfigManager(config_file).settings.default_priority == 5

        config_file.write_text(json.dumps({"settings": {"default_priority": 99}}))
        assert ConfigManager(config_file).settings.default_priority == 5

    def test_reload(self, config_file):
        """Test that reload picks up changes from another manager."""
        first = ConfigManager(config_file)
        second = ConfigManager(config_file)
        second.update_settings(max_backups=3)

        first.reload()
        assert first.settings.max_backups == 3

    def test_project_workspace(self, config_file, temp_dir):
        """Test setting the executor workspace."""
        config_manager = ConfigManager(config_file)
        config_manager.set_project_workspace(str(temp_dir))
        assert config_manager.resolve_workspace() == temp_dir.resolve()

        with pytest.raises(ValueError):
            config_manager.set_project_workspace(str(temp_dir / "missing"))


class TestEnvironment:
    """Tests for environment overrides."""

    def test_queue_dir_precedence(self, config_file, temp_dir, monkeypatch):
        """Test override, then environment, then config, then default."""
        config_manager = ConfigManager(config_file)
        assert config_manager.resolve_queue_dir() == DEFAULT_QUEUE_DIR

        config_manager.set_queue_dir(str(temp_dir / "from-config"))
        assert config_manager.resolve_queue_dir() == (temp_dir / "from-config").resolve()

        monkeypatch.setenv(ENV_QUEUE_DIR, str(temp_dir / "from-env"))
        assert config_manager.resolve_queue_dir() == temp_dir / "from-env"

        assert config_manager.resolve_queue_dir(temp_dir / "explicit") == temp_dir / "explicit"

    def test_log_level_override(self, config_file, monkeypatch):
        """Test that the environment log level is applied but not saved."""
        monkeypatch.setenv(ENV_LOG_LEVEL, "debug")
        config_manager = ConfigManager(config_file)
        assert config_manager.settings.log_level == "DEBUG"
        assert config_manager.config.settings.log_level == "INFO"

    def test_config_file_from_env(self, temp_dir, monkeypatch):
        """Test that the config path can come from the environment."""
        monkeypatch.setenv(ENV_CONFIG_FILE, str(temp_dir / "env-config.json"))
        assert default_config_file() == temp_dir / "env-config.json"
        assert ConfigManager().config_file == temp_dir / "env-config.json"

    def test_env_file_follows_working_directory(self, config_file, temp_dir, monkeypatch):
        """Test that the .env in the current directory is read, not the one at import time."""
        workdir = temp_dir / "project"
        workdir.mkdir()
        (workdir / ".env").write_text(f"{ENV_LOG_LEVEL}=warning\n")
        # Registered so the loaded value is removed afterwards
        monkeypatch.setenv(ENV_LOG_LEVEL, "")
        monkeypatch.delenv(ENV_LOG_LEVEL)
        monkeypatch.chdir(workdir)

        assert env_files()[0] == workdir.resolve() / ".env"
        assert ConfigManager(config_file).settings.log_level == "WARNING"

    def test_create_queue_uses_settings(self, config_file, temp_dir):
        """Test that the queue is built with the configured settings."""
        config_manager = ConfigManager(config_file)
        config_manager.update_settings(lock_strategy="marker", default_priority=3)

        queue = config_manager.create_queue(temp_dir / "queue")

        assert isinstance(queue, TaskQueue)
        assert queue.queue_dir == temp_dir / "queue"
        assert queue.settings.default_priority == 3
        assert queue.lock_manager.strategy_name == "marker"
