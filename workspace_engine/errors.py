"""
Status and error codes for the workspace engine.

Every failure reported by the engine carries one of the codes below plus a
human readable message. The table is closed: callers never make up codes of
their own, they pick the matching EngineError subclass instead.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

# Workflow statuses
WORKFLOW_TO_BE_EXECUTED = "WORKFLOW_TO_BE_EXECUTED"
WORKFLOW_TO_BE_SCHEDULED = "WORKFLOW_TO_BE_SCHEDULED"
WORKFLOW_INSTALLED = "WORKFLOW_INSTALLED"
WORKFLOW_EXECUTED = "WORKFLOW_EXECUTED"
FAILED_TO_INSTALL_WORKFLOW = "FAILED_TO_INSTALL_WORKFLOW"
FAILED_TO_EXECUTE_TASK = "FAILED_TO_EXECUTE_TASK"

# App statuses
APP_TO_BE_INSTALLED = "to be installed"
APP_INSTALLED = "installed"
APP_STARTED = "started"
APP_STOPPED = "stopped"
APP_EXECUTED = "executed"
APP_UNINSTALLED = "uninstalled"
APP_FAILED_TO_INSTALL = "Failed to install"
APP_FAILED_TO_EXECUTE = "Failed to execute"
APP_FAILED_TO_START = "Failed to start"
APP_FAILED_TO_STOP = "Failed to stop"
APP_FAILED_TO_UNINSTALL = "Failed to uninstall"

# Error codes
STATUS_OK = "STATUS_OK"
INVALID_AWORKFLOW = "INVALID_AWORKFLOW"
INVALID_AWORKFLOW_SCHEDULE = "INVALID_AWORKFLOW_SCHEDULE"
INVALID_APP = "INVALID_APP"
FAILED_TO_AUTHENTICATE = "FAILED_TO_AUTHENTICATE"
FAILED_TO_LOAD_CONFIG = "FAILED_TO_LOAD_CONFIG"
FAILED_TO_PARSE_WORKSPACE_ID = "FAILED_TO_PARSE_WORKSPACE_ID"
WORKFLOW_TYPE_IS_MISSING = "WORKFLOW_TYPE_IS_MISSING"
WORKFLOW_TARGET_IS_MISSING = "WORKFLOW_TARGET_IS_MISSING"
WORKFLOW_TYPE_IS_NOT_SUPPORTED = "WORKFLOW_TYPE_IS_NOT_SUPPORTED"
WORKFLOW_TARGET_IS_NOT_SUPPORTED = "WORKFLOW_TARGET_IS_NOT_SUPPORTED"
FAILED_TO_SAVE = "FAILED_TO_SAVE"
FAILED_TO_CONNECT_TO_DB = "FAILED_TO_CONNECT_TO_DB"
STATUS_FAILED_TO_RETRIEVE_PERSONAL_TOKEN = "STATUS_FAILED_TO_RETRIEVE_PERSONAL_TOKEN"
STATUS_FAILED_TO_SCHEDULE_TASK = "STATUS_FAILED_TO_SCHEDULE_TASK"
STATUS_FAILED_TO_LOAD_STARTUP_WORKFLOWS = "STATUS_FAILED_TO_LOAD_STARTUP_WORKFLOWS"
FAILED_TO_CHECK_A_DEPENDENCY_PACKAGE = "Failed to check a dependency package"
FAILED_TO_DOWNLOAD_UPDATE = "FAILED_TO_DOWNLOAD_UPDATE"
UPDATE_SIZE_MISMATCH = "UPDATE_SIZE_MISMATCH"
INVALID_ARCHIVE_PATH = "INVALID_ARCHIVE_PATH"
FAILED_TO_APPLY_UPDATE = "FAILED_TO_APPLY_UPDATE"

# App operation -> (status on success, status on failure)
APP_OPERATION_STATUSES = {
    "install": (APP_INSTALLED, APP_FAILED_TO_INSTALL),
    "start": (APP_STARTED, APP_FAILED_TO_START),
    "stop": (APP_STOPPED, APP_FAILED_TO_STOP),
    "execute": (APP_EXECUTED, APP_FAILED_TO_EXECUTE),
    "uninstall": (APP_UNINSTALLED, APP_FAILED_TO_UNINSTALL),
}


class EngineError(Exception):
    """Base error carrying a stable code and a message."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the Code/Message shape returned to clients."""
        return {"Code": self.code, "Message": self.message}


class ValidationError(EngineError):
    """Malformed input or a parameter id unknown to the store."""


class AuthenticationError(EngineError):
    """The caller could not be authenticated or a token could not be fetched."""

    def __init__(self, message: str, code: str = FAILED_TO_AUTHENTICATE):
        super().__init__(code, message)


class InstallError(EngineError):
    """Clone, checkout or record creation failed during install."""


class RepoError(EngineError):
    """The version control client failed."""

    def __init__(self, message: str, code: str = FAILED_TO_INSTALL_WORKFLOW):
        super().__init__(code, message)


class ClassificationError(EngineError):
    """A type/target tag is missing or not supported."""


class ExecutionError(EngineError):
    """The task runner exited non-zero or could not be started."""

    def __init__(self, code: str, message: str, exit_code: Optional[int] = None, report_url: str = ""):
        super().__init__(code, message)
        self.exit_code = exit_code
        self.report_url = report_url


class PersistenceError(EngineError):
    """The record store rejected a write or could not be reached."""

    def __init__(self, message: str, code: str = FAILED_TO_SAVE):
        super().__init__(code, message)


class ConfigError(EngineError):
    """The workspace document could not be loaded or written."""

    def __init__(self, message: str):
        super().__init__(FAILED_TO_LOAD_CONFIG, message)


class ServiceError(EngineError):
    """A remote service answered with an error."""


class UpdateError(EngineError):
    """Downloading or applying an update failed."""


class IntegrityError(UpdateError):
    """Downloaded byte count differs from the declared content length."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            UPDATE_SIZE_MISMATCH,
            f"Downloaded {actual} bytes, expected {expected}.",
        )
        self.expected = expected
        self.actual = actual


class ArchivePathError(UpdateError):
    """An archive entry resolves outside its staging directory."""

    def __init__(self, entry: str):
        super().__init__(INVALID_ARCHIVE_PATH, f"Illegal file path in archive: {entry}")
        self.entry = entry
