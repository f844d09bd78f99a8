"""
SQLAlchemy models for the workspace engine.
"""

import uuid
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from .base import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class ArtifactMixin:
    """Columns shared by workflows and apps."""

    id = Column(String(36), primary_key=True, default=_new_id)
    # Id of the source-control project backing the artifact
    external_id = Column(BigInteger, nullable=False, index=True)
    name = Column(String(255), nullable=False, default="")
    status = Column(String(100), nullable=False, index=True)
    workspace_id = Column(String(36), nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=func.now())
    path = Column(String(500), nullable=False, default="")
    http_url_to_repo = Column(String(1000), nullable=False, default="")
    type = Column(String(100), nullable=False, default="")
    topics = Column(JSON, nullable=False, default=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "external_id": self.external_id,
            "name": self.name,
            "status": self.status,
            "workspace_id": self.workspace_id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "path": self.path,
            "http_url_to_repo": self.http_url_to_repo,
            "type": self.type,
            "topics": list(self.topics or []),
        }


class ParameterMixin:
    """Columns shared by workflow and app parameters."""

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    usage = Column(Text, nullable=False, default="")
    displayed = Column(Boolean, nullable=False, default=True)
    type = Column(String(100), nullable=False, default="")
    format = Column(String(100), nullable=False, default="")
    default = Column(Text, nullable=False, default="")
    required = Column(Boolean, nullable=False, default=False)
    allowed_values = Column(JSON, nullable=False, default=list)
    masked = Column(Boolean, nullable=False, default=False)
    actual_values = Column(JSON, nullable=False, default=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "usage": self.usage,
            "displayed": self.displayed,
            "type": self.type,
            "format": self.format,
            "default": self.default,
            "required": self.required,
            "allowed_values": list(self.allowed_values or []),
            "masked": self.masked,
            "actual_values": list(self.actual_values or []),
        }


class WorkflowModel(ArtifactMixin, Base):
    """An installed workflow."""

    __tablename__ = "workflows"

    __table_args__ = (Index("ix_workflows_timestamp", "timestamp"),)


class WorkflowParameterModel(ParameterMixin, Base):
    """A declared parameter of a workflow and its last supplied values."""

    __tablename__ = "workflow_parameters"

    workflow_id = Column(
        String(36),
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )


class WorkflowScheduleModel(Base):
    """Schedule of a workflow; one row per (workflow, name)."""

    __tablename__ = "workflow_schedules"

    id = Column(String(36), primary_key=True, default=_new_id)
    workflow_id = Column(
        String(36),
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(255), nullable=False)
    start = Column(Boolean, nullable=False, default=False)
    end = Column(Boolean, nullable=False, default=False)
    cron_expression = Column(String(255), nullable=False, default="")
    time_zone = Column(String(100), nullable=False, default="")
    timestamp = Column(DateTime(timezone=True), nullable=False, default=func.now())

    __table_args__ = (
        UniqueConstraint("workflow_id", "name", name="uq_workflow_schedules_workflow_name"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "name": self.name,
            "start": self.start,
            "end": self.end,
            "cron_expression": self.cron_expression,
            "time_zone": self.time_zone,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


class AppModel(ArtifactMixin, Base):
    """An installed app."""

    __tablename__ = "apps"


class AppParameterModel(ParameterMixin, Base):
    """A declared parameter of an app and its last supplied values."""

    __tablename__ = "app_parameters"

    app_id = Column(
        String(36),
        ForeignKey("apps.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
