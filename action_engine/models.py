import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from action_engine.db import Base

_Json = JSONB().with_variant(JSON, "sqlite")


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class AgentKind(str, enum.Enum):
    CONTENT = "content"
    EMAIL = "email"
    SOCIAL = "social"
    SUPPORT = "support"
    TREND = "trend"
    SEO = "seo"
    AD = "ad"


class TriggerCondition(str, enum.Enum):
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    EQUALS = "equals"
    CHANGE_PERCENT = "change_percent"


class ActionPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
    EMERGENCY = "emergency"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    ActionPriority.LOW: 1,
    ActionPriority.MEDIUM: 2,
    ActionPriority.HIGH: 3,
    ActionPriority.CRITICAL: 4,
    ActionPriority.EMERGENCY: 5,
}


class ActionStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ActionStatus.COMPLETED, ActionStatus.FAILED, ActionStatus.CANCELLED)


class LearningTriggerType(str, enum.Enum):
    ACTION_OUTCOME = "action_outcome"
    SCHEDULED_ANALYSIS = "scheduled_analysis"
    MANUAL = "manual"


class LearningType(str, enum.Enum):
    WEIGHT_ADJUSTMENT = "weight_adjustment"
    THRESHOLD_CALIBRATION = "threshold_calibration"
    CONFIDENCE_TUNING = "confidence_tuning"
    ROLLBACK = "rollback"


class AdjustmentType(str, enum.Enum):
    INCREASE = "increase"
    DECREASE = "decrease"
    CALIBRATE = "calibrate"
    ROLLBACK = "rollback"
    NONE = "none"


class InsightType(str, enum.Enum):
    PERFORMANCE = "performance"
    TREND = "trend"
    ENGAGEMENT = "engagement"


class InsightPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class InsightStatus(str, enum.Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    IMPLEMENTED = "implemented"
    ARCHIVED = "archived"


class PerformanceLabel(str, enum.Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    AVERAGE = "average"
    POOR = "poor"
    CRITICAL = "critical"

    @property
    def score(self) -> int:
        return _LABEL_SCORE[self]


_LABEL_SCORE = {
    PerformanceLabel.EXCELLENT: 5,
    PerformanceLabel.GOOD: 4,
    PerformanceLabel.AVERAGE: 3,
    PerformanceLabel.POOR: 2,
    PerformanceLabel.CRITICAL: 1,
}


# ---------------------------------------------------------------------------
# Rules and action logs
# ---------------------------------------------------------------------------


class ActionRule(Base):
    __tablename__ = "action_rules"
    __table_args__ = (
        Index("ix_action_rules_agent_enabled", "agent_kind", "enabled"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    agent_kind: Mapped[str] = mapped_column(Text, nullable=False)
    action_kind: Mapped[str] = mapped_column(Text, nullable=False)
    metric_type: Mapped[str] = mapped_column(Text, nullable=False)
    metric_subtype: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(Text, nullable=True)
    condition: Mapped[str] = mapped_column(Text, nullable=False)
    threshold: Mapped[float] = mapped_column(Float, nullable=False)
    time_window_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=3600)
    consecutive_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    cooldown_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=3600)
    priority: Mapped[str] = mapped_column(Text, nullable=False, default=ActionPriority.MEDIUM.value)
    max_retries: Mapped[int | None] = mapped_column(Integer, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    campaign_ids: Mapped[list] = mapped_column(_Json, nullable=False, default=list)
    regions: Mapped[list] = mapped_column(_Json, nullable=False, default=list)
    platforms: Mapped[list] = mapped_column(_Json, nullable=False, default=list)
    fallback_action_kind: Mapped[str | None] = mapped_column(Text, nullable=True)
    action_config_json: Mapped[dict] = mapped_column(_Json, nullable=False, default=dict)
    last_triggered: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    trigger_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ActionLog(Base):
    __tablename__ = "action_logs"
    __table_args__ = (
        Index("ix_action_logs_context_status", "context_key", "status"),
        Index("ix_action_logs_agent_created", "agent_kind", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    rule_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("action_rules.id", ondelete="SET NULL"), nullable=True
    )
    parent_action_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("action_logs.id"), nullable=True
    )
    agent_kind: Mapped[str] = mapped_column(Text, nullable=False)
    action_kind: Mapped[str] = mapped_column(Text, nullable=False)
    campaign_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    context_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    metric_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    metric_context: Mapped[dict] = mapped_column(_Json, nullable=False, default=dict)
    triggered_by: Mapped[str] = mapped_column(Text, nullable=False, default="manual")
    trigger_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    threshold: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(Text, nullable=False, default=ActionStatus.PENDING.value)
    priority: Mapped[str] = mapped_column(Text, nullable=False, default=ActionPriority.MEDIUM.value)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    action_config_json: Mapped[dict] = mapped_column(_Json, nullable=False, default=dict)
    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    execution_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    impact_metrics: Mapped[dict] = mapped_column(_Json, nullable=False, default=dict)
    rollback_data: Mapped[dict] = mapped_column(_Json, nullable=False, default=dict)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    learned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )


# ---------------------------------------------------------------------------
# Learning
# ---------------------------------------------------------------------------


class MetricWeight(Base):
    __tablename__ = "metric_weights"
    __table_args__ = (
        UniqueConstraint("context_key", "version", name="uq_metric_weights_context_version"),
        Index("ix_metric_weights_context_active", "context_key", "is_active"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    context_key: Mapped[str] = mapped_column(Text, nullable=False)
    agent_kind: Mapped[str] = mapped_column(Text, nullable=False)
    metric_type: Mapped[str] = mapped_column(Text, nullable=False)
    metric_subtype: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(Text, nullable=True)
    campaign_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    region: Mapped[str | None] = mapped_column(Text, nullable=True)
    platform: Mapped[str | None] = mapped_column(Text, nullable=True)
    weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    baseline_weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    threshold: Mapped[float | None] = mapped_column(Float, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    performance_score: Mapped[float] = mapped_column(Float, nullable=False, default=3.0)
    sample_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    adjustment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    previous_version_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("metric_weights.id"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_adjustment: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )


class LearningLog(Base):
    __tablename__ = "learning_logs"
    __table_args__ = (
        Index("ix_learning_logs_context_created", "context_key", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    context_key: Mapped[str] = mapped_column(Text, nullable=False)
    agent_kind: Mapped[str] = mapped_column(Text, nullable=False)
    metric_type: Mapped[str] = mapped_column(Text, nullable=False)
    metric_context: Mapped[dict] = mapped_column(_Json, nullable=False, default=dict)
    trigger_type: Mapped[str] = mapped_column(Text, nullable=False)
    learning_type: Mapped[str] = mapped_column(Text, nullable=False)
    adjustment_type: Mapped[str] = mapped_column(Text, nullable=False)
    previous_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    new_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    learning_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    sample_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    validated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    rolled_back: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    actual_improvement: Mapped[float | None] = mapped_column(Float, nullable=True)
    action_log_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("action_logs.id", ondelete="SET NULL"), nullable=True
    )
    weight_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("metric_weights.id"), nullable=True
    )
    batch_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    details_json: Mapped[dict] = mapped_column(_Json, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )


class LearningInsight(Base):
    __tablename__ = "learning_insights"
    __table_args__ = (
        Index("ix_learning_insights_context_type", "context_key", "insight_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    parent_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("learning_insights.id"), nullable=True
    )
    context_key: Mapped[str] = mapped_column(Text, nullable=False)
    agent_kind: Mapped[str] = mapped_column(Text, nullable=False)
    metric_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    campaign_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    insight_type: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    recommendation: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[str] = mapped_column(Text, nullable=False)
    impact: Mapped[str] = mapped_column(Text, nullable=False, default="medium")
    status: Mapped[str] = mapped_column(Text, nullable=False, default=InsightStatus.PENDING.value)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    supporting_data: Mapped[dict] = mapped_column(_Json, nullable=False, default=dict)
    dismissed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    dismissed_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    implemented_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )


# ---------------------------------------------------------------------------
# Externally written metric observations
# ---------------------------------------------------------------------------


class AgentMetric(Base):
    __tablename__ = "agent_metrics"
    __table_args__ = (
        Index("ix_agent_metrics_stream", "agent_kind", "metric_type", "recorded_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    agent_kind: Mapped[str] = mapped_column(Text, nullable=False)
    metric_type: Mapped[str] = mapped_column(Text, nullable=False)
    metric_subtype: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(Text, nullable=True)
    campaign_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    region: Mapped[str | None] = mapped_column(Text, nullable=True)
    platform: Mapped[str | None] = mapped_column(Text, nullable=True)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    previous_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    sample_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    performance: Mapped[str | None] = mapped_column(Text, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
