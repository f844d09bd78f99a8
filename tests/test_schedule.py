"""Tests for workflow schedules and startup tasks."""

import pytest

from conftest import with_stored_ids
from workspace_engine.db.models import WorkflowScheduleModel
from workspace_engine.engine.lifecycle import STARTUP_DONE, WorkflowController
from workspace_engine.errors import (
    FAILED_TO_EXECUTE_TASK,
    INVALID_AWORKFLOW_SCHEDULE,
    STATUS_FAILED_TO_SCHEDULE_TASK,
    WORKFLOW_EXECUTED,
    EngineError,
    ValidationError,
)


@pytest.fixture
def controller(ctx, db):
    return WorkflowController(ctx, db)


class TestSchedule:
    def test_two_calls_leave_one_row(self, controller, make_workflow, credentials, db):
        first = controller.schedule(
            make_workflow(schedule={"start": True, "end": False, "cron_expression": "0 * * * *"}),
            credentials,
        )
        record = controller.store.find_by_external_id(42)
        again = with_stored_ids(
            make_workflow(schedule={"start": False, "end": True}),
            controller.store.list_parameters(record.id),
        )
        second = controller.schedule(again, credentials)

        rows = db.query(WorkflowScheduleModel).all()
        assert len(rows) == 1
        assert second.id == first.id
        assert (rows[0].start, rows[0].end) == (False, True)
        assert rows[0].cron_expression == ""
        assert rows[0].workflow_id == record.id
        assert rows[0].name == "demo"

    def test_schedule_does_not_run_the_task(self, controller, process_runner, make_workflow, credentials):
        controller.schedule(make_workflow(schedule={"start": True}), credentials)

        assert process_runner.runs == []

    def test_missing_schedule(self, controller, repo_client, make_workflow, credentials):
        with pytest.raises(ValidationError) as exc_info:
            controller.schedule(make_workflow(), credentials)

        assert exc_info.value.code == INVALID_AWORKFLOW_SCHEDULE
        assert repo_client.clones == []

    def test_install_failure(self, controller, repo_client, make_workflow, credentials):
        repo_client.fail_clone = True

        with pytest.raises(EngineError) as exc_info:
            controller.schedule(make_workflow(schedule={"start": True}), credentials)

        assert exc_info.value.code == STATUS_FAILED_TO_SCHEDULE_TASK

    def test_actual_values_stored(self, controller, make_workflow, credentials):
        controller.schedule(make_workflow(schedule={"start": True}), credentials)
        record = controller.store.find_by_external_id(42)
        again = with_stored_ids(
            make_workflow(
                schedule={"start": True},
                parameters=[{"name": "ok_prompt", "actual_values": ["scheduled"]}],
            ),
            controller.store.list_parameters(record.id),
        )

        controller.schedule(again, credentials)

        assert controller.store.list_parameters(record.id)[0].actual_values == ["scheduled"]


class TestStartupTasks:
    def test_runs_start_flagged_workflows_once(self, ctx, controller, process_runner, make_workflow, credentials):
        controller.schedule(make_workflow(schedule={"start": True}), credentials)
        controller.schedule(
            make_workflow(id=43, name="later", path="acme/later", parameters=[], schedule={"start": False}),
            credentials,
        )

        result = controller.run_startup_tasks(credentials)

        assert result.ok
        assert len(process_runner.runs) == 1
        assert process_runner.variables_seen[0]["ok_prompt"] == "hello"
        assert controller.store.find_by_external_id(42).status == WORKFLOW_EXECUTED
        assert ctx.workspace.workspace.first_time_launched == STARTUP_DONE

        again = controller.run_startup_tasks(credentials)

        assert again.ok
        assert len(process_runner.runs) == 1

    def test_failure_reported_and_flag_set(self, ctx, controller, process_runner, make_workflow, credentials):
        controller.schedule(make_workflow(schedule={"start": True}), credentials)
        process_runner.exit_code = 5

        result = controller.run_startup_tasks(credentials)

        assert result.error.code == FAILED_TO_EXECUTE_TASK
        assert result.error.exit_code == 5
        assert ctx.workspace.workspace.first_time_launched == STARTUP_DONE

    def test_flag_written_to_disk(self, ctx, controller, credentials, workspace_config_path):
        controller.run_startup_tasks(credentials)

        assert "first_time_launched: 2" in workspace_config_path.read_text()
