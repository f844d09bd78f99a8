"""Tests for settings and the workspace document."""

import logging
from pathlib import Path

import pytest
import structlog
import yaml

from conftest import DOMAIN, WORKSPACE_ID
from workspace_engine.config import (
    ConfigManager,
    Settings,
    WorkspaceConfig,
    resolve_database_url,
    set_dotted_key,
)
from workspace_engine.errors import FAILED_TO_LOAD_CONFIG, ConfigError
from workspace_engine.logging_config import configure_logging


class TestConfigManager:
    def test_load(self, workspace_config_path, tmp_path):
        config = ConfigManager(workspace_config_path).load()

        assert config.workspace.id == WORKSPACE_ID
        assert config.workspace.domain == DOMAIN
        assert config.workflow.installation_folder == str(tmp_path / "workflows")
        assert config.workflow_environment_variables[0].name == "WF_VAR"
        assert config.identity_provider.realm == "ok"

    def test_unknown_keys_are_kept_on_write(self, workspace_config_path):
        document = yaml.safe_load(workspace_config_path.read_text())
        document["custom"] = {"keep": "me"}
        workspace_config_path.write_text(yaml.safe_dump(document))
        manager = ConfigManager(workspace_config_path)

        manager.update("engine.version", "2.0.0")

        written = yaml.safe_load(workspace_config_path.read_text())
        assert written["custom"] == {"keep": "me"}
        assert written["engine"]["version"] == "2.0.0"
        assert manager.config.engine.version == "2.0.0"

    def test_update_creates_missing_sections(self, tmp_path):
        path = tmp_path / "workspace.yml"
        path.write_text("workspace:\n  id: abc\n")
        manager = ConfigManager(path)

        config = manager.update("workspace.first_time_launched", 2)

        assert config.workspace.first_time_launched == 2
        assert config.workspace.id == "abc"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError) as exc_info:
            ConfigManager(tmp_path / "nope.yml").load()

        assert exc_info.value.code == FAILED_TO_LOAD_CONFIG

    @pytest.mark.parametrize("content", ["- just\n- a list\n", "workspace: [\n", "workspace:\n  first_time_launched: soon\n"])
    def test_invalid_document(self, tmp_path, content):
        path = tmp_path / "workspace.yml"
        path.write_text(content)

        with pytest.raises(ConfigError):
            ConfigManager(path).load()

    def test_empty_document_uses_defaults(self, tmp_path):
        path = tmp_path / "workspace.yml"
        path.write_text("")

        config = ConfigManager(path).load()

        assert config.workflow.production_branch == "production"
        assert config.app.installation_folder == "apps"


def test_set_dotted_key_replaces_scalars():
    document = {"frontend": "1.0"}

    set_dotted_key(document, "frontend.version", "1.2")

    assert document == {"frontend": {"version": "1.2"}}


class TestSettings:
    def test_config_dir_defaults_to_engine_path(self, tmp_path):
        settings = Settings(engine_path=str(tmp_path))

        assert settings.config_dir == tmp_path
        assert settings.workspace_config_path == tmp_path / "workspace.yml"

    def test_volume_path(self, tmp_path):
        settings = Settings(engine_path="/opt/engine", volume_path=str(tmp_path))

        assert settings.workspace_config_path == tmp_path / "workspace.yml"

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("UPDATE_CHECK_INTERVAL_MINUTES", "5")
        monkeypatch.setenv("TASK_RUNNER", "/usr/local/bin/robot")

        settings = Settings()

        assert settings.update_check_interval_minutes == 5
        assert settings.task_runner == "/usr/local/bin/robot"


class TestDatabaseUrl:
    def test_relative_database_path(self, tmp_path):
        settings = Settings(engine_path=str(tmp_path))
        workspace = WorkspaceConfig.model_validate({"database": {"path": "data"}})

        url = resolve_database_url(settings, workspace)

        assert url == f"sqlite:///{tmp_path / 'data' / 'workspace-engine.db'}"

    def test_absolute_database_path(self, tmp_path):
        settings = Settings(engine_path="/opt/engine")
        workspace = WorkspaceConfig.model_validate({"database": {"path": str(tmp_path)}})

        assert resolve_database_url(settings, workspace) == (
            f"sqlite:///{Path(tmp_path) / 'workspace-engine.db'}"
        )

    def test_explicit_url_wins(self, tmp_path):
        settings = Settings(engine_path=str(tmp_path), database_url="postgresql://db/engine")

        assert resolve_database_url(settings, WorkspaceConfig()) == "postgresql://db/engine"


def test_configure_logging_writes_log_file(tmp_path):
    log_file = tmp_path / "engine.log"
    configure_logging(Settings(engine_path=str(tmp_path), log_file=str(log_file), log_format="json"))

    structlog.get_logger().info("engine_started", component="test")
    logging.getLogger("workspace_engine.test").warning("plain message")
    for handler in logging.getLogger().handlers:
        handler.flush()

    content = log_file.read_text()
    assert '"event": "engine_started"' in content
    assert "plain message" in content
    logging.basicConfig(force=True, handlers=[logging.NullHandler()])
    structlog.reset_defaults()
