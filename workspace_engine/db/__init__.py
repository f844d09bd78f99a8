"""
Database package for the workspace engine.
"""

from .base import Base, get_session_local, init_database
from .models import (
    AppModel,
    AppParameterModel,
    WorkflowModel,
    WorkflowParameterModel,
    WorkflowScheduleModel,
)

__all__ = [
    "Base",
    "get_session_local",
    "init_database",
    "AppModel",
    "AppParameterModel",
    "WorkflowModel",
    "WorkflowParameterModel",
    "WorkflowScheduleModel",
]
