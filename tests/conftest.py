"""Test configuration and fixtures."""

import io
import json
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

import httpx
import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from workspace_engine.config import ConfigManager, Settings
from workspace_engine.context import Credentials, EngineContext
from workspace_engine.db.base import get_session_local, init_database
from workspace_engine.engine.process_runner import ProcessRunner
from workspace_engine.engine.repo_client import RepoClient, RepoHandle
from workspace_engine.errors import RepoError
from workspace_engine.integrations.identity import AccountService, IdentityProvider
from workspace_engine.integrations.workspace_service import WorkspaceService
from workspace_engine.schemas import ArtifactRef

WORKSPACE_ID = "6f1c2b3a-0d4e-4f5a-9b8c-7d6e5f4a3b2c"
DOMAIN = "ws-42.example.com"
PLATFORM_DOMAIN = "platform.example.com"
ACCOUNTS_URL = "https://accounts.example.com/api"
WORKSPACE_SERVICE_URL = "https://wsp.example.com/api"
IDP_URL = "https://idp.example.com"
FIXED_NOW = datetime(2024, 5, 17, 9, 30, 15, tzinfo=timezone.utc)
SUFFIX = "20240517_093015"
BEARER = "Bearer user-jwt"


def workspace_document(tmp_path: Path) -> Dict[str, Any]:
    return {
        "frontend": {"version": "1.0.0", "first_time_launched": False},
        "engine": {"version": "1.0.0"},
        "guard": {"version": "1.0.0"},
        "database": {"path": "."},
        "workspace": {
            "id": WORKSPACE_ID,
            "domain": DOMAIN,
            "first_time_launched": 0,
            "type": "base",
        },
        "workflow": {
            "installation_folder": str(tmp_path / "workflows"),
            "production_branch": "production",
        },
        "app": {
            "installation_folder": str(tmp_path / "apps"),
            "production_branch": "production",
        },
        "platform_domain": PLATFORM_DOMAIN,
        "workflow_environment_variables": [{"name": "WF_VAR", "value": "wf"}],
        "app_environment_variables": [{"name": "APP_VAR", "value": "app"}],
        "platform_package_repo": {
            "token_name": "deploy",
            "token_value": "secret",
            "protocol": "https",
            "url_base": "git.example.com/api/v4",
        },
        "workspace_service": {"endpoint": WORKSPACE_SERVICE_URL},
        "account_service": {"endpoint": ACCOUNTS_URL},
        "identity_provider": {"url_base": IDP_URL, "realm": "ok"},
    }


class FakeRepoClient(RepoClient):
    """Creates the clone directory on disk instead of running git."""

    def __init__(self, refs=None, files=None, fail_clone=False):
        self.refs = refs if refs is not None else [
            "refs/heads/main",
            "refs/remotes/origin/main",
            "refs/remotes/origin/production",
        ]
        self.files = files or {"task.robot": "*** Tasks ***\n"}
        self.fail_clone = fail_clone
        self.clones: List[tuple] = []
        self.checkouts: List[str] = []

    def clone(self, url, dest, username="", token=""):
        if self.fail_clone:
            raise RepoError("git clone failed with status code 128: repository not found")
        dest = Path(dest)
        (dest / ".git").mkdir(parents=True)
        (dest / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
        for name, content in self.files.items():
            (dest / name).write_text(content)
        self.clones.append((url, dest, username, token))
        return RepoHandle(path=dest)

    def list_references(self, repo):
        return list(self.refs)

    def checkout(self, repo, ref):
        self.checkouts.append(ref)


class RunCall:
    def __init__(self, command, args, work_dir, env):
        self.command = command
        self.args = args
        self.work_dir = work_dir
        self.env = env


class FakeProcessRunner(ProcessRunner):
    """Pretends to be the task runner and the package managers.

    ``run`` writes the log/report files the task runner would produce, and
    optionally an output.json. ``capture`` answers from ``capture_results``,
    keyed by argv prefix; unmatched commands succeed with no output.
    """

    def __init__(self, exit_code=0, output_payload=None, capture_results=None, launch_error=None):
        self.exit_code = exit_code
        self.output_payload = output_payload
        self.capture_results = capture_results or {}
        self.launch_error = launch_error
        self.runs: List[RunCall] = []
        self.captured: List[List[str]] = []
        self.secrets_seen: List[tuple] = []
        self.variables_seen: List[Dict[str, Any]] = []

    def run(self, command, args, work_dir=None, env=None):
        args = list(args)
        self.runs.append(RunCall(command, args, work_dir, dict(env or {})))
        if self.launch_error is not None:
            raise self.launch_error
        if "-V" in args:
            variables_file = Path(args[args.index("-V") + 1])
            self.variables_seen.append(yaml.safe_load(variables_file.read_text()))
        if "-l" in args:
            Path(args[args.index("-l") + 1]).write_text("<html>log</html>")
        if "-r" in args:
            Path(args[args.index("-r") + 1]).write_text("<html>report</html>")
        if work_dir is not None and "-r" in args:
            (Path(work_dir) / "output.xml").write_text("<robot/>")
            if self.output_payload is not None:
                (Path(work_dir) / "output.json").write_text(json.dumps(self.output_payload))
        return self.exit_code

    def capture(self, argv, env=None, secrets=()):
        argv = list(argv)
        self.captured.append(argv)
        self.secrets_seen.append(tuple(secrets))
        for prefix, result in self.capture_results.items():
            if tuple(argv[: len(prefix)]) == prefix:
                if isinstance(result, Exception):
                    raise result
                return result
        return 0, ""


class RemoteStub:
    """httpx.MockTransport handler with per-URL canned responses."""

    def __init__(self):
        self.routes: Dict[tuple, Any] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, url: str, status_code: int = 200, **kwargs) -> None:
        self.routes[(method, url)] = lambda: httpx.Response(status_code, **kwargs)

    def add_factory(self, method: str, url: str, factory) -> None:
        self.routes[(method, url)] = factory

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        factory = self.routes.get((request.method, str(request.url)))
        if factory is None:
            return httpx.Response(404, json={"detail": "not found"})
        return factory()

    def requested(self, method: str, url: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and str(r.url) == url]


def make_zip(entries: Dict[str, str]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    return buffer.getvalue()


@pytest.fixture
def remote() -> RemoteStub:
    stub = RemoteStub()
    stub.add(
        "GET",
        f"{ACCOUNTS_URL}/users/current/personaltoken",
        json={"Code": 0, "Message": "personal-token"},
    )
    stub.add(
        "GET",
        f"{IDP_URL}/realms/ok/protocol/openid-connect/userinfo",
        json={"preferred_username": "alice"},
    )
    stub.add(
        "GET",
        f"{IDP_URL}/realms/ok/broker/github/token",
        text="access_token=gh-token&scope=repo&token_type=bearer",
    )
    return stub


@pytest.fixture
def test_engine():
    """In-memory SQLite shared by every session of a test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_database(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def workspace_config_path(tmp_path) -> Path:
    path = tmp_path / "workspace.yml"
    path.write_text(yaml.safe_dump(workspace_document(tmp_path), sort_keys=False))
    return path


@pytest.fixture
def repo_client() -> FakeRepoClient:
    return FakeRepoClient()


@pytest.fixture
def process_runner() -> FakeProcessRunner:
    return FakeProcessRunner()


@pytest.fixture
def ctx(tmp_path, workspace_config_path, test_engine, repo_client, process_runner, remote) -> EngineContext:
    settings = Settings(
        engine_path=str(tmp_path / "engine"),
        volume_path=str(tmp_path),
        log_file=None,
        update_check_enabled=False,
    )
    config_manager = ConfigManager(workspace_config_path)
    workspace = config_manager.load()
    http_client = httpx.Client(transport=httpx.MockTransport(remote))
    context = EngineContext(
        settings=settings,
        config_manager=config_manager,
        session_factory=get_session_local(test_engine),
        process_runner=process_runner,
        repo_client=repo_client,
        identity=IdentityProvider(workspace.identity_provider, client=http_client),
        accounts=AccountService(workspace.account_service, client=http_client),
        workspace_service=WorkspaceService(workspace.workspace_service, client=http_client),
        http_client=http_client,
        clock=lambda: FIXED_NOW,
    )
    yield context
    http_client.close()


@pytest.fixture
def db(ctx):
    session = ctx.session()
    yield session
    session.close()


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(bearer_token=BEARER, personal_token="personal-token", username="alice")


@pytest.fixture
def make_workflow():
    """Factory for the acme/demo workflow reference, with overrides."""

    def _make(**overrides) -> ArtifactRef:
        data: Dict[str, Any] = {
            "id": 42,
            "name": "demo",
            "path": "acme/demo",
            "http_url_to_repo": "https://git.example.com/acme/demo.git",
            "topics": ["type=task", "target=workspace"],
            "parameters": [{"name": "ok_prompt", "actual_values": ["hello"]}],
        }
        data.update(overrides)
        return ArtifactRef.model_validate(data)

    return _make


@pytest.fixture
def make_app():
    """Factory for an app reference, with overrides."""

    def _make(**overrides) -> ArtifactRef:
        data: Dict[str, Any] = {
            "id": 7,
            "name": "notes",
            "path": "acme/notes",
            "http_url_to_repo": "https://git.example.com/acme/notes.git",
            "topics": ["type=app", "target=workspace"],
            "parameters": [{"name": "port", "actual_values": ["8080"]}],
        }
        data.update(overrides)
        return ArtifactRef.model_validate(data)

    return _make


def with_stored_ids(artifact: ArtifactRef, stored_parameters) -> ArtifactRef:
    """Copy parameter ids from stored rows onto ``artifact`` by name."""
    ids = {p.name: p.id for p in stored_parameters}
    for param in artifact.parameters:
        param.id = ids.get(param.name)
    return artifact


def report_url(logs_segment: str) -> str:
    return f"https://{DOMAIN}/{logs_segment}/report_{SUFFIX}.html"
