"""
Lifecycle controller for workflows and apps.

A request for an artifact goes through the same chain for both kinds:
``check_install_if_needed`` (clone on first use, retry after a failed
install, otherwise adopt the stored record), dependency resolution, then an
operation that runs a ``.robot`` file with the task runner and records the
resulting status.

Precondition failures are raised as EngineError. Once an operation has
started, its outcome is returned as an OperationResult so the status is
always persisted before the error reaches the caller.
"""
from __future__ import annotations

import os
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type

import structlog
from sqlalchemy.orm import Session

from ..config import EnvironmentVariable
from ..context import Credentials, EngineContext
from ..db.services import AppService, ArtifactService, ScheduleService, WorkflowService
from ..errors import (
    APP_FAILED_TO_INSTALL,
    APP_INSTALLED,
    APP_OPERATION_STATUSES,
    APP_TO_BE_INSTALLED,
    APP_UNINSTALLED,
    FAILED_TO_EXECUTE_TASK,
    FAILED_TO_INSTALL_WORKFLOW,
    FAILED_TO_PARSE_WORKSPACE_ID,
    INVALID_APP,
    INVALID_AWORKFLOW,
    INVALID_AWORKFLOW_SCHEDULE,
    STATUS_FAILED_TO_SCHEDULE_TASK,
    WORKFLOW_EXECUTED,
    WORKFLOW_INSTALLED,
    WORKFLOW_TARGET_IS_MISSING,
    WORKFLOW_TARGET_IS_NOT_SUPPORTED,
    WORKFLOW_TO_BE_EXECUTED,
    WORKFLOW_TO_BE_SCHEDULED,
    WORKFLOW_TYPE_IS_MISSING,
    WORKFLOW_TYPE_IS_NOT_SUPPORTED,
    ClassificationError,
    EngineError,
    ExecutionError,
    InstallError,
    PersistenceError,
    RepoError,
    ValidationError,
)
from ..integrations.identity import raw_token
from ..schemas import ArtifactRef, ParameterIn
from .dependencies import DependencyReport, DependencyResolver
from .process_runner import ProcessLaunchError, TaskRun, TaskRunResult

logger = structlog.get_logger()

TOKEN_PARAMETER = "token"
PERSONAL_TOKEN_ALIAS = "ok_access_token"
BEARER_TOKEN_ALIAS = "ok_bearerToken"
WORKSPACE_TARGET = "workspace"
# workspace.first_time_launched
NOT_STARTED = 0
STARTUP_SCHEDULED = 1
STARTUP_DONE = 2
CONFIG_WORKFLOW_TYPE = "config-workflow"


def find_topic(topics: List[str], term: str) -> Optional[str]:
    """Value of the first ``term=value`` topic containing ``term``."""
    for topic in topics:
        if term in topic:
            return topic.split("=", 1)[1] if "=" in topic else ""
    return None


@dataclass
class OperationResult:
    """Report URL, error and task output of one lifecycle operation."""

    report: Optional[str] = None
    error: Optional[EngineError] = None
    output: Optional[Dict[str, Any]] = None
    status: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ArtifactController:
    """Install and run logic shared by workflows and apps."""

    kind: str = ""
    service_class: Type[ArtifactService] = ArtifactService
    installed_status: str = ""
    install_failed_status: str = ""
    invalid_code: str = ""
    logs_segment: str = ""
    write_json_variables: bool = False

    def __init__(self, ctx: EngineContext, db: Session):
        self.ctx = ctx
        self.db = db
        self.store = self.service_class(db)
        self.logger = logger.bind(kind=self.kind)

    # -- configuration ---------------------------------------------------

    @property
    def section(self):
        return getattr(self.ctx.workspace, self.kind)

    @property
    def install_root(self) -> Path:
        return Path(self.section.installation_folder)

    @property
    def environment_variables(self) -> List[EnvironmentVariable]:
        return getattr(self.ctx.workspace, f"{self.kind}_environment_variables")

    @property
    def report_base_url(self) -> str:
        return f"https://{self.ctx.workspace.workspace.domain}/{self.logs_segment}"

    def artifact_dir(self, artifact: ArtifactRef) -> Path:
        return self.install_root / artifact.path

    def workspace_id(self) -> str:
        raw = self.ctx.workspace.workspace.id
        try:
            return str(uuid.UUID(raw))
        except (TypeError, ValueError) as e:
            raise ValidationError(
                FAILED_TO_PARSE_WORKSPACE_ID, "Failed to parse workspace Id."
            ) from e

    # -- install ---------------------------------------------------------

    def check_install_if_needed(
        self, artifact: ArtifactRef, credentials: Credentials, status: str
    ):
        """Return the stored record for ``artifact``, installing it if needed."""
        self.workspace_id()
        log = self.logger.bind(external_id=artifact.id, path=artifact.path)

        record = self.store.find_by_external_id(artifact.id)
        if record is None:
            log.info("artifact_not_installed")
            record = self.install(artifact, credentials)
        elif record.status == self.install_failed_status:
            log.info("artifact_install_retry", previous_status=record.status)
            record = self.install(artifact, credentials, existing=record)
        else:
            self.adopt_record(artifact, record)
            self.validate_parameters(artifact, record)

        self.resolve_dependencies(artifact)
        log.info("artifact_ready", artifact_id=record.id, requested_status=status)
        return record

    def adopt_record(self, artifact: ArtifactRef, record) -> None:
        """Overwrite server-of-record fields on the caller's object."""
        artifact.internal_id = record.id
        artifact.path = record.path
        artifact.http_url_to_repo = record.http_url_to_repo
        if not artifact.name:
            artifact.name = record.name

    def validate_parameters(self, artifact: ArtifactRef, record) -> None:
        known = {p.id for p in self.store.list_parameters(record.id)}
        unknown = [p.name for p in artifact.parameters if p.id not in known]
        if unknown:
            raise ValidationError(
                self.invalid_code,
                f"At least one {self.kind} parameter is not valid "
                f"(does not have a correct Id): {', '.join(unknown)}",
            )

    def resolve_dependencies(self, artifact: ArtifactRef) -> DependencyReport:
        resolver = DependencyResolver(
            self.ctx.process_runner, self.ctx.workspace.platform_package_repo
        )
        report = resolver.resolve(self.artifact_dir(artifact))
        if not report.ok:
            self.logger.warning(
                "dependencies_incomplete",
                path=artifact.path,
                failed=[f.name for f in report.hard_failures],
            )
        return report

    def install(self, artifact: ArtifactRef, credentials: Credentials, existing=None):
        """Clone the production branch and record the artifact as installed."""
        dest = self.artifact_dir(artifact)
        try:
            if dest.exists():
                self.logger.info("clone_skipped", dest=str(dest))
            else:
                self._clone(artifact, dest, credentials)
        except RepoError as e:
            raise InstallError(
                self.install_failed_status, f"Failed to install the {self.kind}: {e.message}"
            ) from e

        try:
            record = self._record_install(artifact, existing)
        except PersistenceError as e:
            raise InstallError(
                self.install_failed_status, f"Failed to install the {self.kind}: {e.message}"
            ) from e
        artifact.internal_id = record.id
        self.logger.info("artifact_installed", artifact_id=record.id, dest=str(dest))
        return record

    def _clone(self, artifact: ArtifactRef, dest: Path, credentials: Credentials) -> None:
        repo_client = self.ctx.repo_client
        handle = repo_client.clone(
            artifact.http_url_to_repo,
            dest,
            username=credentials.username,
            token=credentials.personal_token,
        )
        branch = self.section.production_branch
        refs = repo_client.list_references(handle)
        production_ref = next((ref for ref in refs if branch in ref), None)
        if production_ref is None:
            raise RepoError(f"No reference matches the production branch '{branch}'")
        repo_client.checkout(handle, production_ref)
        try:
            shutil.rmtree(dest / ".git")
        except OSError as e:
            raise RepoError(f"Failed to remove version control metadata: {e}") from e

    def _record_install(self, artifact: ArtifactRef, existing):
        values = dict(
            external_id=artifact.id,
            name=artifact.name,
            status=self.installed_status,
            workspace_id=self.workspace_id(),
            timestamp=self.ctx.clock(),
            path=artifact.path,
            http_url_to_repo=artifact.http_url_to_repo,
            type=self.record_type(artifact),
            topics=list(artifact.topics),
        )
        if existing is not None:
            for key, value in values.items():
                setattr(existing, key, value)
            self.store.save(existing)
            self.store.update_parameters(existing.id, artifact.parameters)
            return existing

        record = self.store.model(id=artifact.internal_id or str(uuid.uuid4()), **values)
        self.store.create_installed(record, artifact.parameters)
        return record

    def record_type(self, artifact: ArtifactRef) -> str:
        return artifact.type

    # -- execution -------------------------------------------------------

    def classify(self, artifact: ArtifactRef) -> Tuple[str, str]:
        artifact_type = find_topic(artifact.topics, "type")
        if artifact_type is None:
            raise ClassificationError(WORKFLOW_TYPE_IS_MISSING, "The workflow type is missing.")
        target = find_topic(artifact.topics, "target")
        if target is None:
            raise ClassificationError(WORKFLOW_TARGET_IS_MISSING, "The workflow target is missing.")
        return artifact_type, target

    def check_supported(self, artifact_type: str, target: str, supported_types) -> None:
        if target != WORKSPACE_TARGET:
            raise ClassificationError(
                WORKFLOW_TARGET_IS_NOT_SUPPORTED,
                f"The workflow target {target} is NOT supported.",
            )
        if artifact_type not in supported_types:
            raise ClassificationError(
                WORKFLOW_TYPE_IS_NOT_SUPPORTED,
                f"The workflow type {artifact_type} is NOT supported.",
            )

    def build_environment(
        self, artifact: ArtifactRef, credentials: Credentials
    ) -> Dict[str, str]:
        """Process environment for a task run."""
        env = dict(os.environ)
        env["ok_platform_domain"] = self.ctx.workspace.platform_domain
        env["workspace_id"] = self.ctx.workspace.workspace.id

        token_param = artifact.parameter(TOKEN_PARAMETER)
        if token_param is not None and token_param.actual_values:
            for alias in token_param.actual_values:
                if alias == PERSONAL_TOKEN_ALIAS:
                    env[alias] = credentials.personal_token
                elif alias == BEARER_TOKEN_ALIAS:
                    env[alias] = raw_token(credentials.bearer_token)
                else:
                    env[alias] = self.ctx.identity.get_idp_token(
                        credentials.bearer_token, alias
                    )
            env["username"] = credentials.username

        for variable in self.environment_variables:
            env[variable.name] = variable.value
        return env

    def build_variables(self, artifact: ArtifactRef) -> Dict[str, str]:
        """Contents of the variables file passed to the task runner."""
        variables = {
            param.name: ", ".join(param.actual_values)
            for param in artifact.parameters
            if param.name != TOKEN_PARAMETER
        }
        variables["ok_platform_domain"] = self.ctx.workspace.platform_domain
        variables["apps_folder"] = self.ctx.workspace.app.installation_folder
        variables["workspace_id"] = self.ctx.workspace.workspace.id
        return variables

    def run_task(
        self, artifact: ArtifactRef, credentials: Credentials, robot_file: str, label: str
    ) -> Tuple[TaskRunResult, Optional[ExecutionError]]:
        """Run ``robot_file``; the error is set when the task did not succeed."""
        task_run = TaskRun(
            self.ctx.process_runner,
            self.artifact_dir(artifact),
            self.install_root,
            self.report_base_url,
            self.ctx.clock,
            task_runner=self.ctx.settings.task_runner,
        )
        env = self.build_environment(artifact, credentials)
        try:
            result = task_run.execute(
                robot_file,
                env,
                variables=self.build_variables(artifact),
                with_json=self.write_json_variables,
            )
        except ProcessLaunchError as e:
            self.logger.error("task_launch_failed", path=artifact.path, error=e.message)
            result = TaskRunResult(-1, task_run.name_suffix, task_run.report_url)
            return result, ExecutionError(
                self.failure_code(label),
                f"Failed to {label}. Report: {task_run.report_url}",
                report_url=task_run.report_url,
            )

        if result.succeeded:
            return result, None
        self.logger.warning(
            "task_failed", path=artifact.path, exit_code=result.exit_code, report=result.report_url
        )
        return result, ExecutionError(
            self.failure_code(label),
            f"Failed to {label} with status code: {result.exit_code}. Report: {result.report_url}",
            exit_code=result.exit_code,
            report_url=result.report_url,
        )

    def failure_code(self, label: str) -> str:
        return FAILED_TO_EXECUTE_TASK

    def persist_status(self, artifact: ArtifactRef, record, status: str) -> None:
        record.external_id = artifact.id
        if artifact.name:
            record.name = artifact.name
        record.status = status
        record.workspace_id = self.workspace_id()
        record.timestamp = self.ctx.clock()
        self.store.save(record)
        self.store.update_parameters(record.id, artifact.parameters)


class WorkflowController(ArtifactController):
    """Executes and schedules workflows."""

    kind = "workflow"
    service_class = WorkflowService
    installed_status = WORKFLOW_INSTALLED
    install_failed_status = FAILED_TO_INSTALL_WORKFLOW
    invalid_code = INVALID_AWORKFLOW
    logs_segment = "tasklogs"
    write_json_variables = True

    SUPPORTED_TYPES = ("task", "prompt")
    ROBOT_FILE = "task.robot"

    def execute(
        self, artifact: ArtifactRef, record, credentials: Credentials
    ) -> OperationResult:
        try:
            artifact_type, target = self.classify(artifact)
        except ClassificationError as e:
            return OperationResult(error=e)

        report = None
        output = None
        error: Optional[EngineError] = None
        status = WORKFLOW_EXECUTED
        try:
            self.check_supported(artifact_type, target, self.SUPPORTED_TYPES)
        except ClassificationError as e:
            status, error = e.code, e
        else:
            result, error = self.run_task(artifact, credentials, self.ROBOT_FILE, "execute the task")
            report, output = result.report_url, result.output
            if error is not None:
                status = FAILED_TO_EXECUTE_TASK

        try:
            self.persist_status(artifact, record, status)
        except PersistenceError as e:
            return OperationResult(report=report, error=e, output=output, status=status)
        self.logger.info("workflow_executed", artifact_id=record.id, status=status)
        return OperationResult(report=report, error=error, output=output, status=status)

    def run(self, artifact: ArtifactRef, credentials: Credentials) -> OperationResult:
        """Install if needed, then execute."""
        record = self.check_install_if_needed(artifact, credentials, WORKFLOW_TO_BE_EXECUTED)
        return self.execute(artifact, record, credentials)

    def schedule(self, artifact: ArtifactRef, credentials: Credentials):
        """Install if needed and upsert the workflow's schedule."""
        if artifact.schedule is None:
            raise ValidationError(INVALID_AWORKFLOW_SCHEDULE, "The workflow schedule is missing.")
        try:
            record = self.check_install_if_needed(artifact, credentials, WORKFLOW_TO_BE_SCHEDULED)
        except InstallError as e:
            raise EngineError(STATUS_FAILED_TO_SCHEDULE_TASK, e.message) from e

        try:
            row = ScheduleService(self.db).upsert(record.id, record.name, artifact.schedule)
            self.store.update_parameters(record.id, artifact.parameters)
        except PersistenceError as e:
            raise EngineError(STATUS_FAILED_TO_SCHEDULE_TASK, e.message) from e
        self.logger.info("workflow_scheduled", artifact_id=record.id, start=row.start, end=row.end)
        return row

    def history(self, limit: int = 5) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in self.store.history(limit)]

    def artifact_from_record(self, record) -> ArtifactRef:
        """Rebuild a request for a stored workflow and its last parameters."""
        return ArtifactRef(
            id=record.external_id,
            internal_id=record.id,
            name=record.name,
            path=record.path,
            http_url_to_repo=record.http_url_to_repo,
            topics=list(record.topics or []),
            type=record.type,
            parameters=[
                ParameterIn(**param.to_dict()) for param in self.store.list_parameters(record.id)
            ],
        )

    def run_startup_tasks(self, credentials: Credentials) -> OperationResult:
        """Execute workflows scheduled to start with the workspace, once."""
        if self.ctx.workspace.workspace.first_time_launched == STARTUP_DONE:
            return OperationResult(status="Tasks have already been executed at startup time.")

        last = OperationResult()
        for schedule in ScheduleService(self.db).list_startup():
            record = self.store.get(schedule.workflow_id)
            if record is None:
                continue
            artifact = self.artifact_from_record(record)
            self.resolve_dependencies(artifact)
            result = self.execute(artifact, record, credentials)
            if not result.ok:
                # keep going, report the last failure
                last = result

        self.ctx.config_manager.update("workspace.first_time_launched", STARTUP_DONE)
        return last

    def bootstrap(
        self, workflows: List[ArtifactRef], credentials: Credentials
    ) -> Dict[str, List[str]]:
        """Execute config workflows now and schedule the others.

        A workflow that fails is logged and skipped.
        """
        outcome: Dict[str, List[str]] = {"executed": [], "scheduled": [], "failed": []}
        for workflow in workflows:
            try:
                if workflow.type == CONFIG_WORKFLOW_TYPE:
                    record = self.check_install_if_needed(
                        workflow, credentials, WORKFLOW_TO_BE_EXECUTED
                    )
                    result = self.execute(workflow, record, credentials)
                    outcome["executed" if result.ok else "failed"].append(workflow.path)
                else:
                    self.schedule(workflow, credentials)
                    outcome["scheduled"].append(workflow.path)
            except EngineError as e:
                self.logger.warning(
                    "startup_workflow_failed", path=workflow.path, code=e.code, error=e.message
                )
                outcome["failed"].append(workflow.path)
        return outcome


class AppController(ArtifactController):
    """Installs, starts, stops, executes and uninstalls apps."""

    kind = "app"
    service_class = AppService
    installed_status = APP_INSTALLED
    install_failed_status = APP_FAILED_TO_INSTALL
    invalid_code = INVALID_APP
    logs_segment = "applogs"

    SUPPORTED_TYPES = ("app",)
    INSTALLED_TYPE = "installed"

    def adopt_record(self, artifact, record) -> None:
        super().adopt_record(artifact, record)
        artifact.topics = list(record.topics or [])
        artifact.type = record.type

    def record_type(self, artifact: ArtifactRef) -> str:
        return artifact.type or self.INSTALLED_TYPE

    def failure_code(self, label: str) -> str:
        return f"Failed to {label.split(' ', 1)[0]}"

    def handle(
        self, artifact: ArtifactRef, record, credentials: Credentials, operation: str
    ) -> OperationResult:
        if operation not in APP_OPERATION_STATUSES:
            return OperationResult(
                error=ValidationError(INVALID_APP, f"Unknown app operation: {operation}")
            )
        try:
            artifact_type, target = self.classify(artifact)
        except ClassificationError as e:
            return OperationResult(error=e)

        report = None
        output = None
        error: Optional[EngineError] = None
        status, failed_status = APP_OPERATION_STATUSES[operation]
        try:
            self.check_supported(artifact_type, target, self.SUPPORTED_TYPES)
        except ClassificationError as e:
            status, error = e.code, e
        else:
            result, error = self.run_task(
                artifact, credentials, f"{operation}.robot", f"{operation} the app"
            )
            report, output = result.report_url, result.output
            if error is not None:
                status = failed_status

        try:
            if operation == "uninstall" and status == APP_UNINSTALLED:
                self.store.delete(record)
            else:
                self.persist_status(artifact, record, status)
        except PersistenceError as e:
            return OperationResult(report=report, error=e, output=output, status=status)
        self.logger.info("app_handled", operation=operation, artifact_id=record.id, status=status)
        return OperationResult(report=report, error=error, output=output, status=status)

    def run(self, artifact: ArtifactRef, credentials: Credentials, operation: str) -> OperationResult:
        """Install if needed, then run ``operation``."""
        record = self.check_install_if_needed(artifact, credentials, APP_TO_BE_INSTALLED)
        return self.handle(artifact, record, credentials, operation)

    def install_bundled(self, credentials: Credentials) -> List[str]:
        """Install the apps listed in workspace.yml; failures are logged and skipped."""
        installed = []
        for bundled in self.ctx.workspace.apps:
            artifact = bundled.model_copy(deep=True)
            try:
                self.check_install_if_needed(artifact, credentials, APP_TO_BE_INSTALLED)
            except EngineError as e:
                self.logger.warning(
                    "bundled_app_failed", path=artifact.path, code=e.code, error=e.message
                )
                continue
            installed.append(artifact.path)
        return installed

    def uninstall(self, artifact: ArtifactRef, credentials: Credentials) -> OperationResult:
        if artifact.type != self.INSTALLED_TYPE:
            raise ValidationError(
                INVALID_APP,
                "The app can not be uninstalled as its type is NOT 'installed'",
            )
        record = self.store.find_by_external_id(artifact.id)
        if record is None:
            raise ValidationError(INVALID_APP, f"The app {artifact.id} is not installed.")
        self.adopt_record(artifact, record)
        return self.handle(artifact, record, credentials, "uninstall")

    def list_installed(self) -> List[Dict[str, Any]]:
        apps = []
        for record in self.store.list_installed():
            app = record.to_dict()
            app["parameters"] = [p.to_dict() for p in self.store.list_parameters(record.id)]
            apps.append(app)
        return apps


def start_workspace(ctx: EngineContext, db: Session, credentials: Credentials) -> OperationResult:
    """First launch of the workspace.

    Installs the bundled apps, then executes or schedules the workflows the
    workspace service lists for it. Later calls do nothing.
    """
    if ctx.workspace.workspace.first_time_launched != NOT_STARTED:
        return OperationResult(status="The workspace has already been started.")

    workflows_controller = WorkflowController(ctx, db)
    workspace_id = workflows_controller.workspace_id()
    apps = AppController(ctx, db).install_bundled(credentials)
    workflows = ctx.workspace_service.get_startup_workflows(workspace_id, credentials.bearer_token)

    outcome = workflows_controller.bootstrap(workflows, credentials)
    ctx.config_manager.update("workspace.first_time_launched", STARTUP_SCHEDULED)
    logger.info(
        "workspace_started",
        apps=len(apps),
        executed=len(outcome["executed"]),
        scheduled=len(outcome["scheduled"]),
        failed=len(outcome["failed"]),
    )
    if not workflows:
        status = "No workflows to execute at startup time."
    else:
        status = "The workspace has been started."
    return OperationResult(status=status, output={"apps": apps, **outcome})
