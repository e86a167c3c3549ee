"""FastAPI routers for rule-driven actions and outcome learning.

Sync endpoints with ``get_db``; every handler delegates to the shared
``ActionEngine`` returned by ``get_action_engine``.
"""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from action_engine.db import get_db
from action_engine.exceptions import (
    ActionEngineError,
    ConfigurationError,
    InvalidTransitionError,
    NotFoundError,
    WeightUpdateError,
)
from action_engine.schemas import (
    ActionLogOut,
    ActionResultOut,
    ActionRuleCreate,
    ActionRuleOut,
    ActionRuleUpdate,
    ActionRunSummaryOut,
    ActionSpecOut,
    AgentMetricOut,
    BatchLearningRequest,
    BatchLearningResultOut,
    DismissInsightRequest,
    FeedbackAnalysisOut,
    InsightRunResultOut,
    InsightStatusUpdate,
    LearningConfigUpdate,
    LearningInsightOut,
    LearningLogOut,
    MetricWeightOut,
    MetricWeightUpdate,
    ProcessOutcomeRequest,
    RecordMetricRequest,
    RunChecksRequest,
    TriggerActionRequest,
)
from action_engine.services.engine import ActionEngine
from action_engine.services.metrics import MetricContext

actions_router = APIRouter(prefix="/api/actions", tags=["actions"])
learning_router = APIRouter(prefix="/api/learning", tags=["learning"])

_engine = ActionEngine()


def get_action_engine() -> ActionEngine:
    return _engine


def _http_error(exc: ActionEngineError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        status_code = 404
    elif isinstance(exc, (InvalidTransitionError, WeightUpdateError)):
        status_code = 409
    elif isinstance(exc, ConfigurationError):
        status_code = 422
    else:
        status_code = 500
    return HTTPException(status_code=status_code, detail={"message": exc.message, "details": exc.details})


def _context(
    agent_kind: str,
    metric_type: str,
    metric_subtype: str | None = None,
    category: str | None = None,
    campaign_id: str | None = None,
    region: str | None = None,
    platform: str | None = None,
) -> MetricContext:
    return MetricContext(
        agent_kind=agent_kind,
        metric_type=metric_type,
        metric_subtype=metric_subtype,
        category=category,
        campaign_id=campaign_id,
        region=region,
        platform=platform,
    )


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


@actions_router.post("/trigger", response_model=ActionResultOut)
def trigger_action(
    payload: TriggerActionRequest,
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    """Run an action on demand, outside any rule."""
    try:
        result = engine.trigger_action(
            db,
            payload.agent_kind.value,
            payload.action_kind,
            payload.config,
            campaign_id=payload.campaign_id,
            metric_type=payload.metric_type,
            priority=payload.priority.value if payload.priority else None,
        )
    except ActionEngineError as exc:
        raise _http_error(exc) from exc
    return ActionResultOut.model_validate(result)


@actions_router.post("/check", response_model=ActionRunSummaryOut)
def run_action_checks(
    payload: RunChecksRequest,
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    """Evaluate every enabled rule now and execute what fires."""
    summary = engine.run_action_checks(
        db,
        agent_kinds=[a.value for a in payload.agent_kinds] if payload.agent_kinds else None,
        campaign_ids=payload.campaign_ids,
        dry_run=payload.dry_run,
    )
    return ActionRunSummaryOut.model_validate(summary)


@actions_router.get("/supported", response_model=list[ActionSpecOut])
def get_supported_actions(
    agent_kind: str | None = None,
    engine: ActionEngine = Depends(get_action_engine),
):
    return [
        ActionSpecOut(
            action_kind=spec.action_kind,
            description=spec.description,
            compatible_agents=sorted(spec.compatible_agents),
            required_params=list(spec.required_params),
            optional_params=list(spec.optional_params),
            fallback_action_kind=spec.fallback_action_kind,
            priority=spec.priority.value,
            requires_campaign=spec.requires_campaign,
            max_retries=spec.retry_policy.max_retries,
        )
        for spec in engine.get_supported_actions(agent_kind)
    ]


@actions_router.get("/conditions", response_model=list[dict[str, Any]])
def get_common_trigger_conditions(engine: ActionEngine = Depends(get_action_engine)):
    return engine.get_common_trigger_conditions()


@actions_router.get("/status")
def get_runner_status(
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    return engine.get_runner_status(db)


@actions_router.get("/stats")
def get_action_stats(
    agent_kind: str | None = None,
    hours: int = Query(default=24, ge=1, le=720),
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    return engine.get_action_stats(db, agent_kind=agent_kind, hours=hours)


# ---- rules ------------------------------------------------------------------


@actions_router.post("/rules", response_model=ActionRuleOut, status_code=201)
def create_rule(
    payload: ActionRuleCreate,
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    try:
        return engine.create_rule(db, payload.model_dump(mode="json"))
    except ActionEngineError as exc:
        raise _http_error(exc) from exc


@actions_router.get("/rules", response_model=list[ActionRuleOut])
def list_rules(
    agent_kind: str | None = None,
    enabled: bool | None = None,
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    return engine.list_rules(db, agent_kind=agent_kind, enabled=enabled)


@actions_router.get("/rules/{rule_id}", response_model=ActionRuleOut)
def get_rule(
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    try:
        return engine.get_rule(db, rule_id)
    except ActionEngineError as exc:
        raise _http_error(exc) from exc


@actions_router.patch("/rules/{rule_id}", response_model=ActionRuleOut)
def update_rule(
    rule_id: uuid.UUID,
    payload: ActionRuleUpdate,
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    try:
        return engine.update_rule(db, rule_id, payload.model_dump(mode="json", exclude_unset=True))
    except ActionEngineError as exc:
        raise _http_error(exc) from exc


@actions_router.delete("/rules/{rule_id}", status_code=204)
def delete_rule(
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    try:
        engine.delete_rule(db, rule_id)
    except ActionEngineError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


# ---- logs -------------------------------------------------------------------


@actions_router.get("/logs", response_model=list[ActionLogOut])
def get_action_logs(
    agent_kind: str | None = None,
    action_kind: str | None = None,
    status: str | None = None,
    campaign_id: str | None = None,
    rule_id: uuid.UUID | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    return engine.get_action_logs(
        db,
        agent_kind=agent_kind,
        action_kind=action_kind,
        status=status,
        campaign_id=campaign_id,
        rule_id=rule_id,
        limit=limit,
        offset=offset,
    )


@actions_router.get("/logs/{action_log_id}", response_model=ActionLogOut)
def get_action_log(
    action_log_id: uuid.UUID,
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    try:
        return engine.get_action_log(db, action_log_id)
    except ActionEngineError as exc:
        raise _http_error(exc) from exc


# ---------------------------------------------------------------------------
# Learning
# ---------------------------------------------------------------------------


@learning_router.post("/metrics", response_model=AgentMetricOut, status_code=201)
def record_metric(
    payload: RecordMetricRequest,
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    """Ingest one metric observation."""
    context = _context(
        payload.agent_kind.value,
        payload.metric_type,
        payload.metric_subtype,
        payload.category,
        payload.campaign_id,
        payload.region,
        payload.platform,
    )
    return engine.record_metric(
        db,
        context,
        payload.value,
        recorded_at=payload.recorded_at,
        previous_value=payload.previous_value,
        sample_count=payload.sample_count,
        performance=payload.performance,
    )


@learning_router.post("/outcomes/{action_log_id}", response_model=FeedbackAnalysisOut)
def process_action_outcome(
    action_log_id: uuid.UUID,
    payload: ProcessOutcomeRequest | None = None,
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    force = payload.force_analysis if payload else False
    try:
        analysis = engine.process_action_outcome(db, action_log_id, force_analysis=force)
    except ActionEngineError as exc:
        raise _http_error(exc) from exc
    return FeedbackAnalysisOut.model_validate(analysis)


@learning_router.post("/batch", response_model=BatchLearningResultOut)
def process_batch_learning(
    payload: BatchLearningRequest,
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    try:
        result = engine.process_batch_learning(
            db,
            agent_kind=payload.agent_kind.value if payload.agent_kind else None,
            metric_type=payload.metric_type,
            time_window_hours=payload.time_window_hours,
            force_run=payload.force_run,
        )
    except ActionEngineError as exc:
        raise _http_error(exc) from exc
    return BatchLearningResultOut.model_validate(result)


@learning_router.post("/scheduled")
def run_scheduled_learning(
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    result = engine.run_scheduled_learning(db)
    return {
        "batch": BatchLearningResultOut.model_validate(result.batch),
        "insights": InsightRunResultOut.model_validate(result.insights),
    }


@learning_router.get("/weights", response_model=MetricWeightOut)
def get_metric_weights(
    agent_kind: str,
    metric_type: str,
    metric_subtype: str | None = None,
    category: str | None = None,
    campaign_id: str | None = None,
    region: str | None = None,
    platform: str | None = None,
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    context = _context(agent_kind, metric_type, metric_subtype, category, campaign_id, region, platform)
    weight = engine.get_metric_weights(db, context)
    if weight is None:
        raise HTTPException(status_code=404, detail="No active weight for context")
    return weight


@learning_router.patch("/weights", response_model=MetricWeightOut)
def update_metric_weight(
    payload: MetricWeightUpdate,
    agent_kind: str,
    metric_type: str,
    metric_subtype: str | None = None,
    category: str | None = None,
    campaign_id: str | None = None,
    region: str | None = None,
    platform: str | None = None,
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    context = _context(agent_kind, metric_type, metric_subtype, category, campaign_id, region, platform)
    try:
        return engine.update_metric_weight(db, context, **payload.model_dump())
    except ActionEngineError as exc:
        raise _http_error(exc) from exc


@learning_router.get("/weights/history", response_model=list[MetricWeightOut])
def get_weight_history(
    agent_kind: str,
    metric_type: str,
    metric_subtype: str | None = None,
    category: str | None = None,
    campaign_id: str | None = None,
    region: str | None = None,
    platform: str | None = None,
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    context = _context(agent_kind, metric_type, metric_subtype, category, campaign_id, region, platform)
    return engine.get_weight_history(db, context)


@learning_router.get("/logs", response_model=list[LearningLogOut])
def list_learning_logs(
    agent_kind: str | None = None,
    context_key: str | None = None,
    learning_type: str | None = None,
    trigger_type: str | None = None,
    hours: int | None = Query(default=None, ge=1, le=720),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    return engine.list_learning_logs(
        db,
        agent_kind=agent_kind,
        context_key=context_key,
        learning_type=learning_type,
        trigger_type=trigger_type,
        hours=hours,
        limit=limit,
        offset=offset,
    )


@learning_router.get("/config")
def get_learning_config(engine: ActionEngine = Depends(get_action_engine)):
    return engine.learning_config.to_dict()


@learning_router.patch("/config")
def update_learning_config(
    payload: LearningConfigUpdate,
    engine: ActionEngine = Depends(get_action_engine),
):
    try:
        config = engine.update_config(**payload.model_dump(exclude_none=True))
    except ActionEngineError as exc:
        raise _http_error(exc) from exc
    return config.to_dict()


@learning_router.get("/stats")
def get_learning_stats(
    agent_kind: str | None = None,
    hours: int = Query(default=24, ge=1, le=720),
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    return engine.get_learning_stats(db, agent_kind=agent_kind, hours=hours)


# ---- insights ---------------------------------------------------------------


@learning_router.post("/insights/generate", response_model=InsightRunResultOut)
def generate_insights(
    agent_kind: str | None = None,
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    return InsightRunResultOut.model_validate(engine.generate_insights(db, agent_kind=agent_kind))


@learning_router.get("/insights", response_model=list[LearningInsightOut])
def list_insights(
    agent_kind: str | None = None,
    insight_type: str | None = None,
    status: str | None = None,
    include_dismissed: bool = False,
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    return engine.list_insights(
        db,
        agent_kind=agent_kind,
        insight_type=insight_type,
        status=status,
        include_dismissed=include_dismissed,
        limit=limit,
    )


@learning_router.patch("/insights/{insight_id}/status", response_model=LearningInsightOut)
def update_insight_status(
    insight_id: uuid.UUID,
    payload: InsightStatusUpdate,
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    try:
        return engine.update_insight_status(db, insight_id, payload.status.value)
    except ActionEngineError as exc:
        raise _http_error(exc) from exc


@learning_router.post("/insights/{insight_id}/dismiss", response_model=LearningInsightOut)
def dismiss_insight(
    insight_id: uuid.UUID,
    payload: DismissInsightRequest,
    db: Session = Depends(get_db),
    engine: ActionEngine = Depends(get_action_engine),
):
    try:
        return engine.dismiss_insight(
            db,
            insight_id,
            reason=payload.reason,
            user_feedback=payload.user_feedback,
            user_rating=payload.user_rating,
        )
    except ActionEngineError as exc:
        raise _http_error(exc) from exc
