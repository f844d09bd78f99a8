"""
Configuration management for the workspace engine.

Two layers:

* ``Settings`` - process settings read from the environment / ``.env``.
* ``WorkspaceConfig`` - the hierarchical ``workspace.yml`` document that
  describes the workspace, its install folders and the remote services. It
  is owned by ``ConfigManager`` which applies dotted-key updates and writes
  the document back to disk.
"""

from __future__ import annotations

import logging
import os
import threading
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError
from .schemas import ArtifactRef

logger = logging.getLogger(__name__)

WORKSPACE_CONFIG_FILE = "workspace.yml"
DATABASE_FILE = "workspace-engine.db"


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Application
    app_name: str = Field(default="Workspace Engine")
    debug: bool = Field(default=False)
    environment: str = Field(default="development")

    # API
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8888)

    # Paths
    engine_path: str = Field(
        default_factory=os.getcwd,
        description="Engine installation folder: update staging, supervisor scripts and the wui bundle.",
    )
    volume_path: Optional[str] = Field(
        default=None,
        description="Folder holding workspace.yml. Defaults to engine_path.",
    )

    # Database
    database_url: Optional[str] = Field(
        default=None,
        description="Overrides the sqlite file derived from the workspace document.",
    )

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    log_file: Optional[str] = Field(default="engine.log")
    log_max_bytes: int = Field(default=50 * 1024 * 1024)
    log_backup_count: int = Field(default=3)

    # Self-update
    update_check_enabled: bool = Field(default=True)
    update_check_interval_minutes: int = Field(default=15)

    # Execution
    task_runner: str = Field(default="robot")
    http_timeout_seconds: float = Field(default=30.0)

    @property
    def config_dir(self) -> Path:
        return Path(self.volume_path or self.engine_path)

    @property
    def workspace_config_path(self) -> Path:
        return self.config_dir / WORKSPACE_CONFIG_FILE


@lru_cache
def get_settings() -> Settings:
    """Get application settings."""
    return Settings()


# -- workspace document ----------------------------------------------------


class FrontendSection(BaseModel):
    version: str = ""
    first_time_launched: bool = False


class ComponentSection(BaseModel):
    version: str = ""


class DatabaseSection(BaseModel):
    path: str = "."


class WorkspaceSection(BaseModel):
    id: str = ""
    domain: str = ""
    # 0 - not launched, 1 - startup tasks scheduled, 2 - startup tasks executed
    first_time_launched: int = 0
    type: str = ""


class WorkflowSection(BaseModel):
    installation_folder: str = "workflows"
    production_branch: str = "production"
    git_base_url: str = ""


class AppSection(BaseModel):
    installation_folder: str = "apps"
    production_branch: str = "production"


class EnvironmentVariable(BaseModel):
    name: str
    value: str = ""


class PackageRepoSection(BaseModel):
    token_name: str = ""
    token_value: str = ""
    protocol: str = "https"
    url_base: str = ""


class EndpointSection(BaseModel):
    endpoint: str = ""


class IdentityProviderSection(BaseModel):
    url_base: str = ""
    realm: str = ""


class WorkspaceConfig(BaseModel):
    """Parsed workspace.yml."""

    frontend: FrontendSection = Field(default_factory=FrontendSection)
    engine: ComponentSection = Field(default_factory=ComponentSection)
    guard: ComponentSection = Field(default_factory=ComponentSection)
    database: DatabaseSection = Field(default_factory=DatabaseSection)
    workspace: WorkspaceSection = Field(default_factory=WorkspaceSection)
    workflow: WorkflowSection = Field(default_factory=WorkflowSection)
    app: AppSection = Field(default_factory=AppSection)
    platform_domain: str = ""
    workflow_environment_variables: List[EnvironmentVariable] = Field(
        default_factory=list
    )
    app_environment_variables: List[EnvironmentVariable] = Field(
        default_factory=list
    )
    platform_package_repo: PackageRepoSection = Field(
        default_factory=PackageRepoSection
    )
    workspace_service: EndpointSection = Field(default_factory=EndpointSection)
    account_service: EndpointSection = Field(default_factory=EndpointSection)
    identity_provider: IdentityProviderSection = Field(
        default_factory=IdentityProviderSection
    )
    # installed when the workspace is started for the first time
    apps: List[ArtifactRef] = Field(default_factory=list)


def set_dotted_key(document: Dict[str, Any], key: str, value: Any) -> None:
    """Set ``value`` at ``key`` ("a.b.c") creating intermediate mappings."""
    parts = key.split(".")
    node = document
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


class ConfigManager:
    """Loads workspace.yml and applies dotted-key updates to it."""

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._raw: Dict[str, Any] = {}
        self._config: Optional[WorkspaceConfig] = None

    @property
    def config(self) -> WorkspaceConfig:
        if self._config is None:
            self.load()
        return self._config

    def load(self) -> WorkspaceConfig:
        """Read and validate the document from disk."""
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
        except OSError as e:
            raise ConfigError(f"Failed to read {self.path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse {self.path}: {e}") from e

        if not isinstance(raw, dict):
            raise ConfigError(f"{self.path} must contain a mapping")

        try:
            config = WorkspaceConfig.model_validate(raw)
        except PydanticValidationError as e:
            raise ConfigError(f"Invalid workspace configuration: {e}") from e

        self._raw = raw
        self._config = config
        return config

    def update(self, key: str, value: Any) -> WorkspaceConfig:
        """Set a dotted key, persist the document and reload it."""
        with self._lock:
            if self._config is None:
                self.load()
            set_dotted_key(self._raw, key, value)
            try:
                with self.path.open("w", encoding="utf-8") as fh:
                    yaml.safe_dump(self._raw, fh, default_flow_style=False, sort_keys=False)
            except OSError as e:
                raise ConfigError(f"Failed to write {self.path}: {e}") from e
            logger.info(f"Updated workspace configuration: {key}")
            return self.load()


def resolve_database_url(settings: Settings, workspace: WorkspaceConfig) -> str:
    """Database URL from settings, else the sqlite file under database.path."""
    if settings.database_url:
        return settings.database_url
    db_dir = Path(workspace.database.path)
    if not db_dir.is_absolute():
        db_dir = settings.config_dir / db_dir
    return f"sqlite:///{db_dir / DATABASE_FILE}"
