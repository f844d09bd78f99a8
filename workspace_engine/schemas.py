"""
Request and response models exchanged with callers and remote services.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ParameterIn(BaseModel):
    """A parameter of an artifact as supplied by the caller."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    name: str
    description: str = ""
    usage: str = ""
    displayed: bool = True
    type: str = ""
    format: str = ""
    default: str = ""
    required: bool = False
    allowed_values: List[str] = Field(default_factory=list)
    masked: bool = False
    actual_values: List[str] = Field(default_factory=list)


class ScheduleIn(BaseModel):
    start: bool = False
    end: bool = False
    cron_expression: str = ""
    time_zone: str = ""


class ArtifactRef(BaseModel):
    """
    Reference to a workflow or an app as it arrives at the engine.

    ``id`` is the source-control project id (the external id). The
    server-of-record fields (``internal_id``, ``path``, ``http_url_to_repo``
    and, once installed, ``type`` and ``topics``) are overwritten from the
    store for artifacts that are already installed.
    """

    model_config = ConfigDict(extra="ignore")

    id: int = Field(..., ge=0)
    internal_id: Optional[str] = None
    name: str = ""
    path: str = Field(..., min_length=1)
    http_url_to_repo: str = ""
    topics: List[str] = Field(default_factory=list)
    type: str = ""
    parameters: List[ParameterIn] = Field(default_factory=list)
    schedule: Optional[ScheduleIn] = None

    def parameter(self, name: str) -> Optional[ParameterIn]:
        for param in self.parameters:
            if param.name == name:
                return param
        return None


class OperationResponse(BaseModel):
    """Code/Message/Output shape rendered for every lifecycle call."""

    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(alias="Code")
    message: str = Field(alias="Message")
    output: Optional[Dict[str, Any]] = Field(default=None, alias="Output")


class UpdateCheckRequest(BaseModel):
    """Versions reported to the workspace service."""

    model_config = ConfigDict(populate_by_name=True)

    engine_version: str = Field(default="", alias="engineVersion")
    guard_version: str = Field(default="", alias="guardVersion")
    ui_version: str = Field(default="", alias="uiVersion")
    wsp_type: str = Field(default="", alias="wspType")


class UpdateManifest(BaseModel):
    """Per-component update availability returned by the workspace service."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    ui_update_available: bool = Field(default=False, alias="uiUpdateAvailable")
    ui_download_url: str = Field(default="", alias="uiDownloadUrl")
    ui_version: str = Field(default="", alias="uiVersion")
    engine_update_available: bool = Field(default=False, alias="engineUpdateAvailable")
    engine_download_url: str = Field(default="", alias="engineDownloadUrl")
    engine_version: str = Field(default="", alias="engineVersion")
    guard_update_available: bool = Field(default=False, alias="guardUpdateAvailable")
    guard_download_url: str = Field(default="", alias="guardDownloadUrl")
    guard_version: str = Field(default="", alias="guardVersion")
