"""Pydantic schemas for the action and learning API endpoints."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from action_engine.models import ActionPriority, AgentKind, InsightStatus, TriggerCondition


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class ActionRuleCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    agent_kind: AgentKind
    action_kind: str = Field(min_length=1)
    metric_type: str = Field(min_length=1)
    metric_subtype: str | None = None
    category: str | None = None
    condition: TriggerCondition
    threshold: float
    time_window_seconds: int = Field(default=3600, gt=0)
    consecutive_count: int = Field(default=1, ge=1)
    cooldown_seconds: int = Field(default=3600, ge=0)
    priority: ActionPriority = ActionPriority.MEDIUM
    max_retries: int | None = Field(default=None, ge=0)
    enabled: bool = True
    campaign_ids: list[str] = Field(default_factory=list)
    regions: list[str] = Field(default_factory=list)
    platforms: list[str] = Field(default_factory=list)
    fallback_action_kind: str | None = None
    action_config_json: dict[str, Any] = Field(default_factory=dict)


class ActionRuleUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    action_kind: str | None = None
    metric_subtype: str | None = None
    category: str | None = None
    condition: TriggerCondition | None = None
    threshold: float | None = None
    time_window_seconds: int | None = Field(default=None, gt=0)
    consecutive_count: int | None = Field(default=None, ge=1)
    cooldown_seconds: int | None = Field(default=None, ge=0)
    priority: ActionPriority | None = None
    max_retries: int | None = Field(default=None, ge=0)
    enabled: bool | None = None
    campaign_ids: list[str] | None = None
    regions: list[str] | None = None
    platforms: list[str] | None = None
    fallback_action_kind: str | None = None
    action_config_json: dict[str, Any] | None = None


class TriggerActionRequest(BaseModel):
    agent_kind: AgentKind
    action_kind: str
    config: dict[str, Any] = Field(default_factory=dict)
    campaign_id: str | None = None
    metric_type: str | None = None
    priority: ActionPriority | None = None


class RunChecksRequest(BaseModel):
    agent_kinds: list[AgentKind] | None = None
    campaign_ids: list[str] | None = None
    dry_run: bool = False


class ProcessOutcomeRequest(BaseModel):
    force_analysis: bool = False


class BatchLearningRequest(BaseModel):
    agent_kind: AgentKind | None = None
    metric_type: str | None = None
    time_window_hours: int = Field(default=24, ge=1, le=168)
    force_run: bool = False


class LearningConfigUpdate(BaseModel):
    learning_rate: float | None = None
    confidence_threshold: float | None = None
    minimum_sample_size: int | None = None
    max_adjustment_percent: float | None = None
    decay_rate: float | None = None
    stability_weight: float | None = None
    weight_min: float | None = None
    weight_max: float | None = None
    rollback_on_failure: bool | None = None
    settle_delay_seconds: int | None = None
    settle_delay_overrides: dict[str, int] | None = None
    history_window_hours: int | None = None
    max_cas_retries: int | None = None
    threshold_calibration: bool | None = None
    confidence_tuning: bool | None = None


class MetricContextIn(BaseModel):
    agent_kind: AgentKind
    metric_type: str
    metric_subtype: str | None = None
    category: str | None = None
    campaign_id: str | None = None
    region: str | None = None
    platform: str | None = None


class RecordMetricRequest(MetricContextIn):
    value: float
    recorded_at: datetime | None = None
    previous_value: float | None = None
    sample_count: int = Field(default=1, ge=1)
    performance: str | None = None


class MetricWeightUpdate(BaseModel):
    weight: float | None = Field(default=None, gt=0)
    threshold: float | None = None
    confidence: float | None = Field(default=None, ge=0, le=1)
    reason: str | None = None


class InsightStatusUpdate(BaseModel):
    status: InsightStatus


class DismissInsightRequest(BaseModel):
    reason: str | None = None
    user_feedback: str | None = None
    user_rating: int | None = Field(default=None, ge=1, le=5)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class ActionRuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    description: str | None = None
    agent_kind: str
    action_kind: str
    metric_type: str
    metric_subtype: str | None = None
    category: str | None = None
    condition: str
    threshold: float
    time_window_seconds: int
    consecutive_count: int
    cooldown_seconds: int
    priority: str
    max_retries: int | None = None
    enabled: bool
    campaign_ids: list[str] = []
    regions: list[str] = []
    platforms: list[str] = []
    fallback_action_kind: str | None = None
    action_config_json: dict[str, Any] = {}
    last_triggered: datetime | None = None
    trigger_count: int
    created_at: datetime
    updated_at: datetime | None = None


class ActionLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    rule_id: uuid.UUID | None = None
    parent_action_id: uuid.UUID | None = None
    agent_kind: str
    action_kind: str
    campaign_id: str | None = None
    context_key: str | None = None
    metric_type: str | None = None
    triggered_by: str
    trigger_value: float | None = None
    threshold: float | None = None
    status: str
    priority: str
    retry_count: int
    max_retries: int
    action_config_json: dict[str, Any] = {}
    executed_at: datetime | None = None
    completed_at: datetime | None = None
    execution_time_ms: int | None = None
    impact_metrics: dict[str, Any] = {}
    error_message: str | None = None
    learned_at: datetime | None = None
    created_at: datetime


class FeedbackAnalysisOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    action_log_id: str
    status: str
    context_key: str | None = None
    success: bool
    improvement: float | None = None
    confidence: float
    sample_size: int
    validated: bool
    rolled_back: bool
    weight_version: int | None = None
    previous_weight: float | None = None
    new_weight: float | None = None
    recommendation: str = ""
    adjustments: list[dict[str, Any]] = []
    error: str | None = None


class ActionResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    success: bool
    action_log_id: str
    action_kind: str
    agent_kind: str
    status: str
    retry_count: int
    message: str = ""
    error: str | None = None
    impact_metrics: dict[str, Any] = {}
    fallback: ActionResultOut | None = None
    analysis: FeedbackAnalysisOut | None = None


class ActionRunSummaryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    started_at: datetime
    finished_at: datetime | None = None
    dry_run: bool
    skipped_tick: bool
    cancelled: bool
    rules_evaluated: int
    contexts_evaluated: int
    triggered: int
    executed: int
    succeeded: int
    failed: int
    decisions: list[dict[str, Any]] = []
    actions: list[dict[str, Any]] = []
    errors: list[dict[str, Any]] = []


class ActionSpecOut(BaseModel):
    action_kind: str
    description: str
    compatible_agents: list[str]
    required_params: list[str]
    optional_params: list[str]
    fallback_action_kind: str | None = None
    priority: str
    requires_campaign: bool
    max_retries: int


class BatchLearningResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    batch_id: str
    analyses: list[FeedbackAnalysisOut] = []
    actions_processed: int
    contexts_processed: int
    contexts_skipped: int
    contexts_failed: int
    applied: int
    unvalidated: int
    rolled_back: int
    pending: int
    average_confidence: float
    average_improvement: float
    cancelled: bool
    errors: list[dict[str, Any]] = []


class MetricWeightOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    context_key: str
    agent_kind: str
    metric_type: str
    metric_subtype: str | None = None
    category: str | None = None
    campaign_id: str | None = None
    region: str | None = None
    platform: str | None = None
    weight: float
    baseline_weight: float
    threshold: float | None = None
    confidence: float
    performance_score: float
    sample_size: int
    adjustment_count: int
    version: int
    previous_version_id: uuid.UUID | None = None
    is_active: bool
    last_adjustment: datetime | None = None
    created_at: datetime


class LearningLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    context_key: str
    agent_kind: str
    metric_type: str
    trigger_type: str
    learning_type: str
    adjustment_type: str
    previous_value: float | None = None
    new_value: float | None = None
    learning_rate: float
    confidence: float
    sample_size: int
    validated: bool
    rolled_back: bool
    actual_improvement: float | None = None
    action_log_id: uuid.UUID | None = None
    weight_id: uuid.UUID | None = None
    batch_id: uuid.UUID | None = None
    details_json: dict[str, Any] = {}
    created_at: datetime


class AgentMetricOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    agent_kind: str
    metric_type: str
    metric_subtype: str | None = None
    category: str | None = None
    campaign_id: str | None = None
    region: str | None = None
    platform: str | None = None
    value: float
    previous_value: float | None = None
    sample_count: int
    performance: str | None = None
    recorded_at: datetime


class LearningInsightOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    parent_id: uuid.UUID | None = None
    context_key: str
    agent_kind: str
    metric_type: str | None = None
    campaign_id: str | None = None
    insight_type: str
    title: str
    description: str
    recommendation: str
    priority: str
    impact: str
    status: str
    confidence: float
    supporting_data: dict[str, Any] = {}
    dismissed: bool
    dismissed_reason: str | None = None
    validated_at: datetime | None = None
    implemented_at: datetime | None = None
    archived_at: datetime | None = None
    created_at: datetime


class InsightRunResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    contexts_scanned: int
    created: list[LearningInsightOut] = []
    duplicates_skipped: int
