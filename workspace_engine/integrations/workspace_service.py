"""
Workspace service client.
"""

import logging
from typing import Any, List, Optional

import httpx
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ..config import EndpointSection
from ..errors import FAILED_TO_DOWNLOAD_UPDATE, STATUS_FAILED_TO_LOAD_STARTUP_WORKFLOWS, ServiceError
from ..schemas import ArtifactRef, UpdateCheckRequest, UpdateManifest

logger = logging.getLogger(__name__)

_workflow_list = TypeAdapter(List[ArtifactRef])


class WorkspaceService:
    """Update checks and workspace lookups against the workspace service."""

    def __init__(
        self,
        settings: EndpointSection,
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ):
        self.endpoint = settings.endpoint.rstrip("/")
        self.client = client or httpx.Client(timeout=timeout)

    def _json(self, response: httpx.Response, code: str, what: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            logger.error(f"Unreadable {what} response: {e}")
            raise ServiceError(code, f"The {what} response could not be read: {e}") from e

    def check_update(self, workspace_id: str, request: UpdateCheckRequest) -> UpdateManifest:
        """Ask which components have a newer version available."""
        url = f"{self.endpoint}/workspaces/{workspace_id}/engine/checkupdate"
        try:
            response = self.client.post(url, json=request.model_dump(by_alias=True))
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to check for updates: {e}")
            raise ServiceError(FAILED_TO_DOWNLOAD_UPDATE, f"Update check failed: {e}") from e

        body = self._json(response, FAILED_TO_DOWNLOAD_UPDATE, "update check")
        try:
            return UpdateManifest.model_validate(body)
        except PydanticValidationError as e:
            logger.error(f"Invalid update check response: {e}")
            raise ServiceError(
                FAILED_TO_DOWNLOAD_UPDATE, f"Invalid update check response: {e}"
            ) from e

    def get_startup_workflows(self, workspace_id: str, bearer_token: str) -> List[ArtifactRef]:
        """Workflows the workspace was created with."""
        url = f"{self.endpoint}/workspaces/{workspace_id}"
        try:
            response = self.client.get(url, headers={"Authorization": bearer_token})
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to load the workspace {workspace_id}: {e}")
            raise ServiceError(
                STATUS_FAILED_TO_LOAD_STARTUP_WORKFLOWS,
                "Failed to load workflows from the workspace service.",
            ) from e

        body = self._json(response, STATUS_FAILED_TO_LOAD_STARTUP_WORKFLOWS, "workspace")
        if not isinstance(body, dict):
            body = {}
        workflows = body.get("workflows", body.get("Workflows")) or []
        try:
            return _workflow_list.validate_python(workflows)
        except PydanticValidationError as e:
            logger.error(f"Invalid workflows in the workspace {workspace_id}: {e}")
            raise ServiceError(
                STATUS_FAILED_TO_LOAD_STARTUP_WORKFLOWS,
                "Failed to load workflows from the workspace service.",
            ) from e
