"""
Record store services for the workspace engine.

Thin wrappers over a SQLAlchemy session. Writes commit immediately and
return the number of rows affected; a failed write is rolled back and raised
as PersistenceError so callers can report FAILED_TO_SAVE.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Type

from sqlalchemy import desc, func
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import FAILED_TO_CONNECT_TO_DB, PersistenceError
from ..schemas import ParameterIn, ScheduleIn
from .models import (
    AppModel,
    AppParameterModel,
    WorkflowModel,
    WorkflowParameterModel,
    WorkflowScheduleModel,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _RecordService:
    """Commit/rollback handling shared by all services."""

    def __init__(self, db: Session):
        self.db = db

    def _commit(self, what: str) -> None:
        try:
            self.db.commit()
        except OperationalError as e:
            self.db.rollback()
            logger.error(f"Failed to connect to the db while saving {what}: {e}")
            raise PersistenceError(
                "Failed to connect to the db.", code=FAILED_TO_CONNECT_TO_DB
            ) from e
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to save {what}: {e}")
            raise PersistenceError(f"Failed to save the {what} in the db.") from e

    def create(self, record) -> int:
        """Insert a record."""
        self.db.add(record)
        self._commit(record.__tablename__)
        return 1

    def save(self, record) -> int:
        """Persist changes to a record, inserting it when it is new."""
        self.db.add(record)
        self._commit(record.__tablename__)
        return 1


class ArtifactService(_RecordService):
    """Records of one artifact kind and their parameters."""

    model: Type = None
    parameter_model: Type = None
    parameter_fk: str = ""

    def get(self, artifact_id: str):
        return self.db.get(self.model, artifact_id)

    def find_by_external_id(self, external_id: int):
        """Get an artifact by the id of its source-control project."""
        return (
            self.db.query(self.model)
            .filter(self.model.external_id == external_id)
            .first()
        )

    def list_parameters(self, artifact_id: str) -> List:
        fk = getattr(self.parameter_model, self.parameter_fk)
        return (
            self.db.query(self.parameter_model)
            .filter(fk == artifact_id)
            .order_by(self.parameter_model.name)
            .all()
        )

    def _new_parameter(self, artifact_id: str, param: ParameterIn, keep_id: bool = True):
        values = param.model_dump(exclude={"id"})
        values[self.parameter_fk] = artifact_id
        if keep_id and param.id:
            values["id"] = param.id
        return self.parameter_model(**values)

    def create_installed(self, record, params: Iterable[ParameterIn]) -> int:
        """Insert an installed artifact and its parameters in one commit."""
        self.db.add(record)
        for param in params:
            self.db.add(self._new_parameter(record.id, param))
        self._commit(record.__tablename__)
        return 1

    def update_parameters(self, artifact_id: str, params: Iterable[ParameterIn]) -> int:
        """Store the supplied actual values.

        Existing parameters are matched by id, then by name; anything else is
        added under a fresh id.
        """
        stored = self.list_parameters(artifact_id)
        by_id = {p.id: p for p in stored}
        by_name = {p.name: p for p in stored}
        rows = 0
        for param in params:
            current = by_id.get(param.id) if param.id else None
            if current is None:
                current = by_name.get(param.name)
            if current is not None:
                current.actual_values = list(param.actual_values)
            else:
                self.db.add(self._new_parameter(artifact_id, param, keep_id=False))
            rows += 1
        if rows:
            self._commit(self.parameter_model.__tablename__)
        return rows


class WorkflowService(ArtifactService):
    """Service for managing workflows in the database."""

    model = WorkflowModel
    parameter_model = WorkflowParameterModel
    parameter_fk = "workflow_id"

    def history(self, limit: int = 5) -> List[WorkflowModel]:
        """Most recently used workflows, one per name."""
        latest = (
            self.db.query(
                WorkflowModel.name.label("name"),
                func.max(WorkflowModel.timestamp).label("timestamp"),
            )
            .group_by(WorkflowModel.name)
            .subquery()
        )
        return (
            self.db.query(WorkflowModel)
            .join(
                latest,
                (WorkflowModel.name == latest.c.name)
                & (WorkflowModel.timestamp == latest.c.timestamp),
            )
            .order_by(desc(WorkflowModel.timestamp))
            .limit(limit)
            .all()
        )


class AppService(ArtifactService):
    """Service for managing apps in the database."""

    model = AppModel
    parameter_model = AppParameterModel
    parameter_fk = "app_id"

    def list_installed(self) -> List[AppModel]:
        return self.db.query(AppModel).order_by(AppModel.name).all()

    def delete(self, app: AppModel) -> int:
        """Delete an app together with its parameters."""
        self.db.query(AppParameterModel).filter(
            AppParameterModel.app_id == app.id
        ).delete(synchronize_session=False)
        rows = self.db.query(AppModel).filter(AppModel.id == app.id).delete(
            synchronize_session=False
        )
        self._commit("app")
        return rows


class ScheduleService(_RecordService):
    """Service for workflow schedules; one row per (workflow, name)."""

    def find(self, workflow_id: str, name: str) -> Optional[WorkflowScheduleModel]:
        return (
            self.db.query(WorkflowScheduleModel)
            .filter(
                WorkflowScheduleModel.workflow_id == workflow_id,
                WorkflowScheduleModel.name == name,
            )
            .first()
        )

    def upsert(
        self, workflow_id: str, name: str, schedule: ScheduleIn
    ) -> WorkflowScheduleModel:
        """Update the schedule for (workflow_id, name) or create it."""
        record = self.find(workflow_id, name)
        if record is None:
            record = WorkflowScheduleModel(workflow_id=workflow_id, name=name)
            self.db.add(record)
        record.start = schedule.start
        record.end = schedule.end
        record.cron_expression = schedule.cron_expression
        record.time_zone = schedule.time_zone
        record.timestamp = _utcnow()
        self._commit("schedule")
        return record

    def list_startup(self) -> List[WorkflowScheduleModel]:
        """Schedules flagged to run when the workspace starts."""
        return (
            self.db.query(WorkflowScheduleModel)
            .filter(WorkflowScheduleModel.start.is_(True))
            .order_by(WorkflowScheduleModel.timestamp)
            .all()
        )
