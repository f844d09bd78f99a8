"""
Engine context.

Everything a component needs (settings, the workspace document, the record
store, the clock and the external capabilities) is carried by one
``EngineContext`` built at startup and handed to each component.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

import httpx
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import ConfigManager, Settings, WorkspaceConfig, get_settings, resolve_database_url
from .db.base import create_db_engine, get_session_local
from .engine.process_runner import ProcessRunner, SubprocessRunner
from .engine.repo_client import GitCliRepoClient, RepoClient
from .integrations.identity import AccountService, IdentityProvider
from .integrations.workspace_service import WorkspaceService


def local_now() -> datetime:
    return datetime.now().astimezone()


@dataclass
class Credentials:
    """Who is calling, and the tokens used on their behalf."""

    bearer_token: str
    personal_token: str = ""
    username: str = ""


@dataclass
class EngineContext:
    settings: Settings
    config_manager: ConfigManager
    session_factory: sessionmaker
    process_runner: ProcessRunner
    repo_client: RepoClient
    identity: IdentityProvider
    accounts: AccountService
    workspace_service: WorkspaceService
    http_client: httpx.Client
    clock: Callable[[], datetime] = field(default=local_now)

    @property
    def workspace(self) -> WorkspaceConfig:
        return self.config_manager.config

    @property
    def db_engine(self) -> Engine:
        return self.session_factory.kw["bind"]

    def session(self) -> Session:
        return self.session_factory()

    def credentials_for(self, bearer_token: str) -> Credentials:
        """Resolve the personal token and username behind a bearer token."""
        return Credentials(
            bearer_token=bearer_token,
            personal_token=self.accounts.get_personal_token(bearer_token),
            username=self.identity.get_username(bearer_token),
        )


def build_context(settings: Optional[Settings] = None) -> EngineContext:
    """Wire the production context from settings and workspace.yml."""
    settings = settings or get_settings()
    config_manager = ConfigManager(settings.workspace_config_path)
    workspace = config_manager.load()

    engine = create_db_engine(resolve_database_url(settings, workspace))
    runner = SubprocessRunner()
    http_client = httpx.Client(timeout=settings.http_timeout_seconds, follow_redirects=True)

    return EngineContext(
        settings=settings,
        config_manager=config_manager,
        session_factory=get_session_local(engine),
        process_runner=runner,
        repo_client=GitCliRepoClient(runner),
        identity=IdentityProvider(workspace.identity_provider, client=http_client),
        accounts=AccountService(workspace.account_service, client=http_client),
        workspace_service=WorkspaceService(workspace.workspace_service, client=http_client),
        http_client=http_client,
    )
