"""Create workflow and app tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
import sqlalchemy as sa
from alembic import op

# revision identifiers
revision = "001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _artifact_columns() -> list:
    return [
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("external_id", sa.BigInteger, nullable=False, index=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("status", sa.String(100), nullable=False, index=True),
        sa.Column("workspace_id", sa.String(36), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("path", sa.String(500), nullable=False),
        sa.Column("http_url_to_repo", sa.String(1000), nullable=False),
        sa.Column("type", sa.String(100), nullable=False),
        sa.Column("topics", sa.JSON, nullable=False),
    ]


def _parameter_columns(fk_name: str, parent: str) -> list:
    return [
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            fk_name,
            sa.String(36),
            sa.ForeignKey(f"{parent}.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("usage", sa.Text, nullable=False),
        sa.Column("displayed", sa.Boolean, nullable=False),
        sa.Column("type", sa.String(100), nullable=False),
        sa.Column("format", sa.String(100), nullable=False),
        sa.Column("default", sa.Text, nullable=False),
        sa.Column("required", sa.Boolean, nullable=False),
        sa.Column("allowed_values", sa.JSON, nullable=False),
        sa.Column("masked", sa.Boolean, nullable=False),
        sa.Column("actual_values", sa.JSON, nullable=False),
    ]


def upgrade() -> None:
    op.create_table("workflows", *_artifact_columns())
    op.create_index("ix_workflows_timestamp", "workflows", ["timestamp"])

    op.create_table(
        "workflow_parameters", *_parameter_columns("workflow_id", "workflows")
    )

    op.create_table(
        "workflow_schedules",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "workflow_id",
            sa.String(36),
            sa.ForeignKey("workflows.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("start", sa.Boolean, nullable=False),
        sa.Column("end", sa.Boolean, nullable=False),
        sa.Column("cron_expression", sa.String(255), nullable=False),
        sa.Column("time_zone", sa.String(100), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "workflow_id", "name", name="uq_workflow_schedules_workflow_name"
        ),
    )

    op.create_table("apps", *_artifact_columns())

    op.create_table("app_parameters", *_parameter_columns("app_id", "apps"))


def downgrade() -> None:
    op.drop_table("app_parameters")
    op.drop_table("apps")
    op.drop_table("workflow_schedules")
    op.drop_table("workflow_parameters")
    op.drop_index("ix_workflows_timestamp", table_name="workflows")
    op.drop_table("workflows")
