"""Action engine: the single entry point wiring rules, actions and learning together.

The engine owns the action registry, the trigger evaluator, the action runner,
the learning configuration and the batch scheduler. Every operation takes the
caller's SQLAlchemy ``Session`` first, the same way the route handlers receive
one from ``get_db``.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from action_engine.exceptions import InvalidRuleError, WeightUpdateError
from action_engine.models import (
    ActionLog,
    ActionRule,
    ActionStatus,
    AgentMetric,
    LearningInsight,
    LearningLog,
    MetricWeight,
)
from action_engine.services.actions import ActionConfig, ActionRegistry, ActionSpec, build_default_registry
from action_engine.services.evaluator import TriggerDecision, TriggerEvaluator
from action_engine.services.feedback import (
    BatchLearningResult,
    FeedbackAnalysis,
    FeedbackLoopEngine,
    LearningConfig,
)
from action_engine.services.insights import InsightGenerator, InsightRunResult
from action_engine.services.metrics import MetricContext, MetricSource, SqlMetricSource
from action_engine.services.repository import ActionRepository
from action_engine.services.runner import (
    CONFIGURATION_ERROR_KEY,
    ActionRequest,
    ActionResult,
    ActionRunner,
    configured_max_retries,
)
from action_engine.services.scheduler import ActionRunSummary, BatchScheduler

logger = logging.getLogger(__name__)

# Starter rules offered to operators when they set up a new agent.
COMMON_TRIGGER_CONDITIONS: list[dict[str, Any]] = [
    {
        "name": "High cost per click",
        "metric_type": "cost_per_click",
        "condition": "greater_than",
        "threshold": 5.0,
        "suggested_action": "adjust_budget_down",
        "description": "Cut spend when clicks get expensive",
    },
    {
        "name": "Low conversion rate",
        "metric_type": "conversion_rate",
        "condition": "less_than",
        "threshold": 0.02,
        "suggested_action": "optimize_targeting",
        "description": "Retarget when fewer than 2% of visitors convert",
    },
    {
        "name": "High bounce rate",
        "metric_type": "bounce_rate",
        "condition": "greater_than",
        "threshold": 0.8,
        "suggested_action": "refresh_content",
        "description": "Refresh landing content when most visitors leave",
    },
    {
        "name": "Budget nearly exhausted",
        "metric_type": "budget_usage",
        "condition": "greater_than",
        "threshold": 0.9,
        "suggested_action": "notify_team",
        "description": "Warn the team before the budget runs out",
    },
    {
        "name": "Performance drop",
        "metric_type": "performance_score",
        "condition": "change_percent",
        "threshold": -25.0,
        "suggested_action": "schedule_review",
        "description": "Review when the score drops by a quarter",
    },
]

# Rule fields whose change requires the action to be re-validated.
_ACTION_FIELDS = frozenset({"agent_kind", "action_kind", "action_config_json", "fallback_action_kind"})


@dataclass
class ScheduledLearningResult:
    batch: BatchLearningResult
    insights: InsightRunResult


class ActionEngine:
    """Façade over the adaptive performance-action loop."""

    def __init__(
        self,
        registry: ActionRegistry | None = None,
        metric_source: MetricSource | None = None,
        *,
        learning_config: LearningConfig | None = None,
        scheduler_options: dict[str, Any] | None = None,
    ) -> None:
        self.registry = registry or build_default_registry()
        self._metric_source = metric_source
        self.learning_config = learning_config or LearningConfig.from_settings()
        self.evaluator = TriggerEvaluator()
        self.runner = ActionRunner(self.registry)
        self.scheduler = BatchScheduler(self, **(scheduler_options or {}))
        self._config_lock = threading.Lock()

    # ------------------------------------------------------------------
    # wiring
    # ------------------------------------------------------------------

    def metric_source_for(self, db: Session) -> MetricSource:
        """The injected source, or the ``agent_metrics`` table behind *db*."""
        if self._metric_source is not None:
            return self._metric_source
        return SqlMetricSource(db.get_bind())

    def feedback_for(self, db: Session) -> FeedbackLoopEngine:
        return FeedbackLoopEngine(self.metric_source_for(db), self.learning_config)

    def insights_for(self, db: Session) -> InsightGenerator:
        return InsightGenerator(self.metric_source_for(db))

    # ------------------------------------------------------------------
    # actions
    # ------------------------------------------------------------------

    def trigger_action(
        self,
        db: Session,
        agent_kind: str,
        action_kind: str,
        config: dict[str, Any] | ActionConfig | None = None,
        *,
        campaign_id: str | None = None,
        metric_type: str | None = None,
        priority: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ActionResult:
        """Run an action on demand.

        When *metric_type* is given the action is tied to that metric context:
        the latest observation becomes the trigger value and the outcome is
        fed to the learning loop immediately.

        Raises
        ------
        ConfigurationError
            Unknown action, incompatible agent, or missing parameters. A
            FAILED action log is persisted before raising.
        """
        if not isinstance(config, ActionConfig):
            config = ActionConfig.from_dict(config)

        context = None
        trigger_value = None
        if metric_type is not None:
            context = MetricContext(agent_kind=agent_kind, metric_type=metric_type, campaign_id=campaign_id)
            snapshot = self.metric_source_for(db).get_snapshot(context)
            if snapshot is not None:
                trigger_value = snapshot.value

        request = ActionRequest(
            agent_kind=agent_kind,
            action_kind=action_kind,
            config=config,
            campaign_id=campaign_id,
            context=context,
            trigger_value=trigger_value,
            priority=priority,
            triggered_by="manual",
        )
        if context is None:
            return self.runner.run(db, request, cancel_event=cancel_event)

        with self.scheduler.locks.hold(context.key):
            result = self.runner.run(db, request, cancel_event=cancel_event)
            result.analysis = self._learn_immediately(db, result)
        return result

    def execute_rule(
        self,
        db: Session,
        rule: ActionRule,
        decision: TriggerDecision,
        *,
        cancel_event: threading.Event | None = None,
    ) -> ActionResult:
        """Run the action of a fired rule. The caller holds the context lock."""
        request = ActionRequest(
            agent_kind=rule.agent_kind,
            action_kind=rule.action_kind,
            config=ActionConfig.from_dict(rule.action_config_json),
            campaign_id=decision.context.campaign_id if decision.context else None,
            context=decision.context,
            rule=rule,
            trigger_value=decision.value,
            threshold=rule.threshold,
            triggered_by="rule",
        )
        result = self.runner.run(db, request, cancel_event=cancel_event)
        result.analysis = self._learn_immediately(db, result)
        logger.info(
            "Rule %s fired '%s' on %s: %s",
            rule.id,
            rule.action_kind,
            decision.context_key,
            result.status,
        )
        return result

    def _learn_immediately(self, db: Session, result: ActionResult) -> FeedbackAnalysis | None:
        try:
            return self.feedback_for(db).process_outcome(db, uuid.UUID(result.action_log_id))
        except WeightUpdateError as exc:
            logger.warning("Immediate learning failed for action %s: %s", result.action_log_id, exc.message)
            return None

    def run_action_checks(
        self,
        db: Session,
        *,
        agent_kinds: list[str] | None = None,
        campaign_ids: list[str] | None = None,
        dry_run: bool = False,
        cancel_event: threading.Event | None = None,
        now: datetime | None = None,
    ) -> ActionRunSummary:
        return self.scheduler.run_tick(
            db,
            agent_kinds=agent_kinds,
            campaign_ids=campaign_ids,
            dry_run=dry_run,
            cancel_event=cancel_event,
            now=now,
        )

    def get_supported_actions(self, agent_kind: str | None = None) -> list[ActionSpec]:
        if agent_kind is None:
            return self.registry.list_specs()
        return self.registry.compatible_actions(agent_kind)

    @staticmethod
    def get_common_trigger_conditions() -> list[dict[str, Any]]:
        return [dict(item) for item in COMMON_TRIGGER_CONDITIONS]

    def record_metric(
        self,
        db: Session,
        context: MetricContext,
        value: float,
        *,
        recorded_at: datetime | None = None,
        previous_value: float | None = None,
        sample_count: int = 1,
        performance: str | None = None,
    ) -> AgentMetric:
        """Store one observation in ``agent_metrics``.

        ``previous_value`` defaults to the stream's latest stored value.
        """
        if previous_value is None:
            latest = SqlMetricSource(db.get_bind()).get_snapshot(context)
            if latest is not None:
                previous_value = latest.value
        row = AgentMetric(
            **context.to_dict(),
            value=value,
            previous_value=previous_value,
            sample_count=sample_count,
            performance=performance,
            recorded_at=recorded_at or datetime.now(tz=timezone.utc),
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        return row

    # ------------------------------------------------------------------
    # learning
    # ------------------------------------------------------------------

    def process_action_outcome(
        self, db: Session, action_log_id: uuid.UUID, *, force_analysis: bool = False
    ) -> FeedbackAnalysis:
        return self.feedback_for(db).process_outcome(db, action_log_id, force_analysis=force_analysis)

    def process_batch_learning(
        self,
        db: Session,
        *,
        agent_kind: str | None = None,
        metric_type: str | None = None,
        time_window_hours: int = 24,
        force_run: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> BatchLearningResult:
        return self.feedback_for(db).process_batch(
            db,
            agent_kind=agent_kind,
            metric_type=metric_type,
            time_window_hours=time_window_hours,
            force_run=force_run,
            cancel_event=cancel_event,
        )

    def run_scheduled_learning(
        self, db: Session, *, cancel_event: threading.Event | None = None
    ) -> ScheduledLearningResult:
        batch = self.feedback_for(db).run_scheduled(db, cancel_event=cancel_event)
        insights = self.insights_for(db).generate(db)
        return ScheduledLearningResult(batch=batch, insights=insights)

    def get_metric_weights(self, db: Session, context: MetricContext) -> MetricWeight | None:
        return ActionRepository(db).get_active_weight(context.key)

    def get_weight_history(self, db: Session, context: MetricContext) -> list[MetricWeight]:
        return ActionRepository(db).weight_history(context.key)

    def update_metric_weight(
        self,
        db: Session,
        context: MetricContext,
        *,
        weight: float | None = None,
        threshold: float | None = None,
        confidence: float | None = None,
        reason: str | None = None,
    ) -> MetricWeight:
        """Manually override the active weight of *context* as a new version."""
        return self.feedback_for(db).override_weight(
            db, context, weight=weight, threshold=threshold, confidence=confidence, reason=reason
        )

    @staticmethod
    def list_learning_logs(
        db: Session,
        *,
        agent_kind: str | None = None,
        context_key: str | None = None,
        learning_type: str | None = None,
        trigger_type: str | None = None,
        hours: int | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[LearningLog]:
        since = datetime.now(tz=timezone.utc) - timedelta(hours=hours) if hours else None
        return ActionRepository(db).list_learning_logs(
            since=since,
            agent_kind=agent_kind,
            context_key=context_key,
            learning_type=learning_type,
            trigger_type=trigger_type,
            newest_first=True,
            limit=limit,
            offset=offset,
        )

    def update_config(self, **changes: Any) -> LearningConfig:
        """Replace the learning configuration; invalid values leave it untouched."""
        with self._config_lock:
            self.learning_config = self.learning_config.updated(**changes)
        logger.info("Learning configuration updated: %s", sorted(changes))
        return self.learning_config

    def get_learning_stats(self, db: Session, *, agent_kind: str | None = None, hours: int = 24) -> dict[str, Any]:
        return self.feedback_for(db).learning_stats(db, agent_kind=agent_kind, hours=hours)

    # ------------------------------------------------------------------
    # insights
    # ------------------------------------------------------------------

    def generate_insights(self, db: Session, *, agent_kind: str | None = None) -> InsightRunResult:
        return self.insights_for(db).generate(db, agent_kind=agent_kind)

    @staticmethod
    def list_insights(
        db: Session,
        *,
        agent_kind: str | None = None,
        insight_type: str | None = None,
        status: str | None = None,
        include_dismissed: bool = False,
        limit: int = 50,
    ) -> list[LearningInsight]:
        return ActionRepository(db).list_insights(
            agent_kind=agent_kind,
            insight_type=insight_type,
            status=status,
            include_dismissed=include_dismissed,
            limit=limit,
        )

    @staticmethod
    def update_insight_status(db: Session, insight_id: uuid.UUID, status: str) -> LearningInsight:
        return InsightGenerator.update_status(db, insight_id, status)

    @staticmethod
    def dismiss_insight(
        db: Session,
        insight_id: uuid.UUID,
        *,
        reason: str | None = None,
        user_feedback: str | None = None,
        user_rating: int | None = None,
    ) -> LearningInsight:
        return InsightGenerator.dismiss(
            db, insight_id, reason=reason, user_feedback=user_feedback, user_rating=user_rating
        )

    # ------------------------------------------------------------------
    # rules
    # ------------------------------------------------------------------

    def create_rule(self, db: Session, values: dict[str, Any]) -> ActionRule:
        """Validate the rule's action against the registry, then persist it.

        Raises
        ------
        InvalidRuleError, UnknownActionError, IncompatibleAgentError, MissingParameterError
        """
        self._validate_rule_action(values)
        return ActionRepository(db).create_rule(values)

    def update_rule(self, db: Session, rule_id: uuid.UUID, updates: dict[str, Any]) -> ActionRule:
        repo = ActionRepository(db)
        if _ACTION_FIELDS & set(updates):
            rule = repo.get_rule(rule_id)
            merged = {
                "agent_kind": rule.agent_kind,
                "action_kind": rule.action_kind,
                "action_config_json": rule.action_config_json,
                "fallback_action_kind": rule.fallback_action_kind,
            }
            merged.update({k: v for k, v in updates.items() if k in _ACTION_FIELDS})
            self._validate_rule_action(merged)
        return repo.update_rule(rule_id, updates)

    @staticmethod
    def delete_rule(db: Session, rule_id: uuid.UUID) -> None:
        ActionRepository(db).delete_rule(rule_id)

    @staticmethod
    def get_rule(db: Session, rule_id: uuid.UUID) -> ActionRule:
        return ActionRepository(db).get_rule(rule_id)

    @staticmethod
    def list_rules(
        db: Session, *, agent_kind: str | None = None, enabled: bool | None = None
    ) -> list[ActionRule]:
        return ActionRepository(db).list_rules(agent_kind=agent_kind, enabled=enabled)

    def _validate_rule_action(self, values: dict[str, Any]) -> None:
        agent_kind = values.get("agent_kind")
        action_kind = values.get("action_kind")
        if not agent_kind or not action_kind:
            raise InvalidRuleError(
                "Rule requires agent_kind and action_kind",
                details={"agent_kind": agent_kind, "action_kind": action_kind},
            )
        config = ActionConfig.from_dict(values.get("action_config_json"))
        self.registry.validate(agent_kind, action_kind, config, check_campaign=False)
        fallback = values.get("fallback_action_kind")
        if fallback:
            if fallback == action_kind:
                raise InvalidRuleError(
                    "A rule cannot fall back to its own action",
                    details={"action_kind": action_kind},
                )
            self.registry.spec_for(fallback)

    # ------------------------------------------------------------------
    # action log queries
    # ------------------------------------------------------------------

    @staticmethod
    def get_action_log(db: Session, action_log_id: uuid.UUID) -> ActionLog:
        return ActionRepository(db).get_action_log(action_log_id)

    @staticmethod
    def get_action_logs(db: Session, **filters: Any) -> list[ActionLog]:
        return ActionRepository(db).list_action_logs(**filters)

    @staticmethod
    def get_action_stats(
        db: Session, *, agent_kind: str | None = None, hours: int = 24
    ) -> dict[str, Any]:
        since = datetime.now(tz=timezone.utc) - timedelta(hours=hours)
        stmt = select(ActionLog).where(ActionLog.created_at >= since)
        if agent_kind is not None:
            stmt = stmt.where(ActionLog.agent_kind == agent_kind)
        logs = db.execute(stmt).scalars().all()

        by_status: dict[str, int] = {}
        by_action: dict[str, int] = {}
        by_agent: dict[str, int] = {}
        for log in logs:
            by_status[log.status] = by_status.get(log.status, 0) + 1
            by_action[log.action_kind] = by_action.get(log.action_kind, 0) + 1
            by_agent[log.agent_kind] = by_agent.get(log.agent_kind, 0) + 1

        completed = by_status.get(ActionStatus.COMPLETED.value, 0)
        failed = by_status.get(ActionStatus.FAILED.value, 0)
        finished = completed + failed
        timings = [log.execution_time_ms for log in logs if log.execution_time_ms is not None]
        return {
            "total": len(logs),
            "by_status": by_status,
            "by_action_kind": by_action,
            "by_agent_kind": by_agent,
            "success_rate": completed / finished if finished else 0.0,
            "average_execution_time_ms": sum(timings) / len(timings) if timings else 0.0,
            "fallbacks": sum(1 for log in logs if log.parent_action_id is not None),
            "configuration_errors": sum(
                1 for log in logs if (log.impact_metrics or {}).get(CONFIGURATION_ERROR_KEY)
            ),
            "retries": sum(log.retry_count for log in logs),
            "retry_budget": sum(configured_max_retries(log) for log in logs),
            "window_hours": hours,
        }

    def get_runner_status(self, db: Session) -> dict[str, Any]:
        rules = ActionRepository(db).list_rules()
        status = self.scheduler.status()
        status.update(
            {
                "rules_total": len(rules),
                "rules_enabled": sum(1 for r in rules if r.enabled),
                "registered_actions": len(self.registry.list_specs()),
                "learning_config": self.learning_config.to_dict(),
            }
        )
        return status
