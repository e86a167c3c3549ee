"""create action engine tables

Revision ID: 0001_action_engine_tables
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_action_engine_tables"
down_revision = None
branch_labels = None
depends_on = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def _json(name: str, default: str = "{}") -> sa.Column:
    return sa.Column(
        name,
        postgresql.JSONB(astext_type=sa.Text()),
        nullable=False,
        server_default=default,
    )


def _context_columns() -> list[sa.Column]:
    return [
        sa.Column("agent_kind", sa.Text(), nullable=False),
        sa.Column("metric_type", sa.Text(), nullable=False),
        sa.Column("metric_subtype", sa.Text(), nullable=True),
        sa.Column("category", sa.Text(), nullable=True),
        sa.Column("campaign_id", sa.Text(), nullable=True),
        sa.Column("region", sa.Text(), nullable=True),
        sa.Column("platform", sa.Text(), nullable=True),
    ]


def upgrade() -> None:
    # ---- action_rules ----
    op.create_table(
        "action_rules",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("agent_kind", sa.Text(), nullable=False),
        sa.Column("action_kind", sa.Text(), nullable=False),
        sa.Column("metric_type", sa.Text(), nullable=False),
        sa.Column("metric_subtype", sa.Text(), nullable=True),
        sa.Column("category", sa.Text(), nullable=True),
        sa.Column("condition", sa.Text(), nullable=False),
        sa.Column("threshold", sa.Float(), nullable=False),
        sa.Column("time_window_seconds", sa.Integer(), nullable=False, server_default="3600"),
        sa.Column("consecutive_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("cooldown_seconds", sa.Integer(), nullable=False, server_default="3600"),
        sa.Column("priority", sa.Text(), nullable=False, server_default="medium"),
        sa.Column("max_retries", sa.Integer(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        _json("campaign_ids", "[]"),
        _json("regions", "[]"),
        _json("platforms", "[]"),
        sa.Column("fallback_action_kind", sa.Text(), nullable=True),
        _json("action_config_json"),
        sa.Column("last_triggered", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trigger_count", sa.Integer(), nullable=False, server_default="0"),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_action_rules_agent_enabled", "action_rules", ["agent_kind", "enabled"])

    # ---- action_logs ----
    op.create_table(
        "action_logs",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("rule_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("parent_action_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("agent_kind", sa.Text(), nullable=False),
        sa.Column("action_kind", sa.Text(), nullable=False),
        sa.Column("campaign_id", sa.Text(), nullable=True),
        sa.Column("context_key", sa.Text(), nullable=True),
        sa.Column("metric_type", sa.Text(), nullable=True),
        _json("metric_context"),
        sa.Column("triggered_by", sa.Text(), nullable=False, server_default="manual"),
        sa.Column("trigger_value", sa.Float(), nullable=True),
        sa.Column("threshold", sa.Float(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Text(), nullable=False, server_default="medium"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="0"),
        _json("action_config_json"),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("execution_time_ms", sa.Integer(), nullable=True),
        _json("impact_metrics"),
        _json("rollback_data"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("learned_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["rule_id"], ["action_rules.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["parent_action_id"], ["action_logs.id"]),
    )
    op.create_index("ix_action_logs_context_status", "action_logs", ["context_key", "status"])
    op.create_index("ix_action_logs_agent_created", "action_logs", ["agent_kind", "created_at"])

    # ---- metric_weights ----
    op.create_table(
        "metric_weights",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("context_key", sa.Text(), nullable=False),
        *_context_columns(),
        sa.Column("weight", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column("baseline_weight", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column("threshold", sa.Float(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="0.5"),
        sa.Column("performance_score", sa.Float(), nullable=False, server_default="3.0"),
        sa.Column("sample_size", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("adjustment_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("previous_version_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_adjustment", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["previous_version_id"], ["metric_weights.id"]),
        sa.UniqueConstraint("context_key", "version", name="uq_metric_weights_context_version"),
    )
    op.create_index(
        "ix_metric_weights_context_active",
        "metric_weights",
        ["context_key", "is_active"],
    )

    # ---- learning_logs ----
    op.create_table(
        "learning_logs",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("context_key", sa.Text(), nullable=False),
        sa.Column("agent_kind", sa.Text(), nullable=False),
        sa.Column("metric_type", sa.Text(), nullable=False),
        _json("metric_context"),
        sa.Column("trigger_type", sa.Text(), nullable=False),
        sa.Column("learning_type", sa.Text(), nullable=False),
        sa.Column("adjustment_type", sa.Text(), nullable=False),
        sa.Column("previous_value", sa.Float(), nullable=True),
        sa.Column("new_value", sa.Float(), nullable=True),
        sa.Column("learning_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("sample_size", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("validated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("rolled_back", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("actual_improvement", sa.Float(), nullable=True),
        sa.Column("action_log_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("weight_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("batch_id", sa.Uuid(as_uuid=True), nullable=True),
        _json("details_json"),
        _created_at(),
        sa.ForeignKeyConstraint(["action_log_id"], ["action_logs.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["weight_id"], ["metric_weights.id"]),
    )
    op.create_index(
        "ix_learning_logs_context_created",
        "learning_logs",
        ["context_key", "created_at"],
    )

    # ---- learning_insights ----
    op.create_table(
        "learning_insights",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("parent_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("context_key", sa.Text(), nullable=False),
        sa.Column("agent_kind", sa.Text(), nullable=False),
        sa.Column("metric_type", sa.Text(), nullable=True),
        sa.Column("campaign_id", sa.Text(), nullable=True),
        sa.Column("insight_type", sa.Text(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("recommendation", sa.Text(), nullable=False),
        sa.Column("priority", sa.Text(), nullable=False),
        sa.Column("impact", sa.Text(), nullable=False, server_default="medium"),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="0"),
        _json("supporting_data"),
        sa.Column("dismissed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("dismissed_reason", sa.Text(), nullable=True),
        sa.Column("validated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("implemented_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["parent_id"], ["learning_insights.id"]),
    )
    op.create_index(
        "ix_learning_insights_context_type",
        "learning_insights",
        ["context_key", "insight_type"],
    )

    # ---- agent_metrics ----
    op.create_table(
        "agent_metrics",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_context_columns(),
        sa.Column("value", sa.Float(), nullable=False),
        sa.Column("previous_value", sa.Float(), nullable=True),
        sa.Column("sample_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("performance", sa.Text(), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        _created_at(),
    )
    op.create_index(
        "ix_agent_metrics_stream",
        "agent_metrics",
        ["agent_kind", "metric_type", "recorded_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_agent_metrics_stream", table_name="agent_metrics")
    op.drop_table("agent_metrics")
    op.drop_index("ix_learning_insights_context_type", table_name="learning_insights")
    op.drop_table("learning_insights")
    op.drop_index("ix_learning_logs_context_created", table_name="learning_logs")
    op.drop_table("learning_logs")
    op.drop_index("ix_metric_weights_context_active", table_name="metric_weights")
    op.drop_table("metric_weights")
    op.drop_index("ix_action_logs_agent_created", table_name="action_logs")
    op.drop_index("ix_action_logs_context_status", table_name="action_logs")
    op.drop_table("action_logs")
    op.drop_index("ix_action_rules_agent_enabled", table_name="action_rules")
    op.drop_table("action_rules")
