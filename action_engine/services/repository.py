"""Persistence for rules, action logs, weight versions, learning logs and insights.

The repository owns the optimistic compare-and-swap on ``MetricWeight``: a
new version is written only if the version it was computed from is still the
active one.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from action_engine.exceptions import InvalidRuleError, NotFoundError, WeightVersionConflict
from action_engine.models import (
    ActionLog,
    ActionPriority,
    ActionRule,
    ActionStatus,
    InsightStatus,
    LearningInsight,
    LearningLog,
    MetricWeight,
    TriggerCondition,
)
from action_engine.services.metrics import MetricContext, as_utc

logger = logging.getLogger(__name__)

RULE_FIELDS = (
    "name",
    "description",
    "agent_kind",
    "action_kind",
    "metric_type",
    "metric_subtype",
    "category",
    "condition",
    "threshold",
    "time_window_seconds",
    "consecutive_count",
    "cooldown_seconds",
    "priority",
    "max_retries",
    "enabled",
    "campaign_ids",
    "regions",
    "platforms",
    "fallback_action_kind",
    "action_config_json",
)


def validate_rule_fields(values: dict[str, Any]) -> None:
    """Raise ``InvalidRuleError`` if a rule definition is malformed."""
    problems: list[str] = []
    condition = values.get("condition")
    if condition not in {c.value for c in TriggerCondition}:
        problems.append(f"unknown condition '{condition}'")
    if values.get("priority", ActionPriority.MEDIUM.value) not in {p.value for p in ActionPriority}:
        problems.append(f"unknown priority '{values.get('priority')}'")
    threshold = values.get("threshold")
    if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
        problems.append("threshold must be numeric")
    elif condition == TriggerCondition.CHANGE_PERCENT.value and threshold == 0:
        problems.append("change_percent threshold must be non-zero")
    if values.get("cooldown_seconds", 0) < 0:
        problems.append("cooldown_seconds must be >= 0")
    if values.get("time_window_seconds", 1) <= 0:
        problems.append("time_window_seconds must be > 0")
    if values.get("consecutive_count", 1) < 1:
        problems.append("consecutive_count must be >= 1")
    max_retries = values.get("max_retries")
    if max_retries is not None and max_retries < 0:
        problems.append("max_retries must be >= 0")
    for name in ("agent_kind", "action_kind", "metric_type", "name"):
        if not values.get(name):
            problems.append(f"{name} is required")
    if problems:
        raise InvalidRuleError(
            "Invalid action rule: " + "; ".join(problems),
            details={"problems": problems, "rule": values.get("name")},
        )


def rule_context(rule: ActionRule) -> MetricContext:
    """The unscoped metric context a rule watches."""
    return MetricContext(
        agent_kind=rule.agent_kind,
        metric_type=rule.metric_type,
        metric_subtype=rule.metric_subtype,
        category=rule.category,
    )


class ActionRepository:
    def __init__(self, db: Session) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def create_rule(self, values: dict[str, Any], *, seed_weight: bool = True) -> ActionRule:
        """Insert a rule and seed its context's first weight version in one transaction."""
        validate_rule_fields(values)
        rule = ActionRule(**{k: v for k, v in values.items() if k in RULE_FIELDS})
        try:
            self.db.add(rule)
            self.db.flush()
            if seed_weight:
                self.seed_weight(rule_context(rule), threshold=float(rule.threshold))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(rule)
        logger.info("Created action rule %s (%s -> %s)", rule.id, rule.metric_type, rule.action_kind)
        return rule

    def get_rule(self, rule_id: uuid.UUID) -> ActionRule:
        rule = self.db.get(ActionRule, rule_id)
        if rule is None:
            raise NotFoundError("Action rule not found", details={"rule_id": str(rule_id)})
        return rule

    def list_rules(
        self, *, agent_kind: str | None = None, enabled: bool | None = None
    ) -> list[ActionRule]:
        stmt = select(ActionRule)
        if agent_kind is not None:
            stmt = stmt.where(ActionRule.agent_kind == agent_kind)
        if enabled is not None:
            stmt = stmt.where(ActionRule.enabled.is_(enabled))
        rules = self.db.execute(stmt).scalars().all()
        return sorted(rules, key=lambda r: (-ActionPriority(r.priority).rank, as_utc(r.created_at), str(r.id)))

    def list_enabled_rules(self, agent_kinds: list[str] | None = None) -> list[ActionRule]:
        rules = self.list_rules(enabled=True)
        if agent_kinds:
            rules = [r for r in rules if r.agent_kind in agent_kinds]
        return rules

    def update_rule(self, rule_id: uuid.UUID, updates: dict[str, Any]) -> ActionRule:
        rule = self.get_rule(rule_id)
        merged = {name: getattr(rule, name) for name in RULE_FIELDS}
        merged.update({k: v for k, v in updates.items() if k in RULE_FIELDS})
        validate_rule_fields(merged)
        for name, value in updates.items():
            if name in RULE_FIELDS:
                setattr(rule, name, value)
        rule.updated_at = datetime.now(tz=timezone.utc)
        self.db.commit()
        self.db.refresh(rule)
        return rule

    def delete_rule(self, rule_id: uuid.UUID) -> None:
        rule = self.get_rule(rule_id)
        self.db.delete(rule)
        self.db.commit()

    def claim_trigger(self, rule: ActionRule, when: datetime) -> bool:
        """Atomically record a firing of *rule* if its cooldown has elapsed.

        Returns False when another writer fired the rule within the cooldown
        first. The caller commits on success and rolls back otherwise.
        """
        cutoff = when - timedelta(seconds=rule.cooldown_seconds or 0)
        result = self.db.execute(
            update(ActionRule)
            .where(
                ActionRule.id == rule.id,
                or_(ActionRule.last_triggered.is_(None), ActionRule.last_triggered <= cutoff),
            )
            .values(last_triggered=when, trigger_count=ActionRule.trigger_count + 1)
            .execution_options(synchronize_session=False)
        )
        self.db.expire(rule, ["last_triggered", "trigger_count"])
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Action logs
    # ------------------------------------------------------------------

    def create_action_log(self, **values: Any) -> ActionLog:
        parent_id = values.get("parent_action_id")
        if parent_id is not None and self.db.get(ActionLog, parent_id) is None:
            raise NotFoundError(
                "Parent action log must exist before a child references it",
                details={"parent_action_id": str(parent_id)},
            )
        log = ActionLog(**values)
        self.db.add(log)
        self.db.flush()
        return log

    def get_action_log(self, action_log_id: uuid.UUID) -> ActionLog:
        log = self.db.get(ActionLog, action_log_id)
        if log is None:
            raise NotFoundError("Action log not found", details={"action_log_id": str(action_log_id)})
        return log

    def list_action_logs(
        self,
        *,
        agent_kind: str | None = None,
        action_kind: str | None = None,
        status: str | None = None,
        campaign_id: str | None = None,
        rule_id: uuid.UUID | None = None,
        since: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ActionLog]:
        stmt = select(ActionLog)
        if agent_kind is not None:
            stmt = stmt.where(ActionLog.agent_kind == agent_kind)
        if action_kind is not None:
            stmt = stmt.where(ActionLog.action_kind == action_kind)
        if status is not None:
            stmt = stmt.where(ActionLog.status == status)
        if campaign_id is not None:
            stmt = stmt.where(ActionLog.campaign_id == campaign_id)
        if rule_id is not None:
            stmt = stmt.where(ActionLog.rule_id == rule_id)
        if since is not None:
            stmt = stmt.where(ActionLog.created_at >= since)
        stmt = stmt.order_by(ActionLog.created_at.desc()).offset(offset).limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def unlearned_action_logs(
        self,
        *,
        since: datetime,
        agent_kind: str | None = None,
        metric_type: str | None = None,
    ) -> list[ActionLog]:
        """Terminal COMPLETED/FAILED logs with a metric context that learning has not consumed."""
        stmt = select(ActionLog).where(
            ActionLog.status.in_([ActionStatus.COMPLETED.value, ActionStatus.FAILED.value]),
            ActionLog.learned_at.is_(None),
            ActionLog.context_key.is_not(None),
            ActionLog.created_at >= since,
        )
        if agent_kind is not None:
            stmt = stmt.where(ActionLog.agent_kind == agent_kind)
        if metric_type is not None:
            stmt = stmt.where(ActionLog.metric_type == metric_type)
        stmt = stmt.order_by(ActionLog.created_at.asc())
        return list(self.db.execute(stmt).scalars().all())

    # ------------------------------------------------------------------
    # Weight versions
    # ------------------------------------------------------------------

    def get_active_weight(self, context_key: str) -> MetricWeight | None:
        stmt = (
            select(MetricWeight)
            .where(MetricWeight.context_key == context_key, MetricWeight.is_active.is_(True))
            .order_by(MetricWeight.version.desc())
            .limit(1)
        )
        return self.db.execute(stmt).scalars().first()

    def latest_version(self, context_key: str) -> int:
        stmt = select(func.max(MetricWeight.version)).where(MetricWeight.context_key == context_key)
        return self.db.execute(stmt).scalar() or 0

    def weight_history(self, context_key: str) -> list[MetricWeight]:
        stmt = (
            select(MetricWeight)
            .where(MetricWeight.context_key == context_key)
            .order_by(MetricWeight.version.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def seed_weight(
        self, context: MetricContext, *, threshold: float | None, weight: float = 1.0
    ) -> MetricWeight | None:
        """Write version 1 for *context* unless a version already exists."""
        if self.latest_version(context.key) > 0:
            return None
        seeded = MetricWeight(
            context_key=context.key,
            agent_kind=context.agent_kind,
            metric_type=context.metric_type,
            metric_subtype=context.metric_subtype,
            category=context.category,
            campaign_id=context.campaign_id,
            region=context.region,
            platform=context.platform,
            weight=weight,
            baseline_weight=weight,
            threshold=threshold,
            version=1,
            is_active=True,
        )
        self.db.add(seeded)
        self.db.flush()
        return seeded

    def swap_active_weight(self, expected: MetricWeight | None, replacement: MetricWeight) -> None:
        """Deactivate *expected* and activate *replacement*, or raise ``WeightVersionConflict``.

        The deactivation is a conditional UPDATE on the expected row; zero
        affected rows means another writer moved the active pointer first.
        The unique ``(context_key, version)`` constraint catches concurrent
        inserts of the same version number. The caller rolls back on conflict.
        """
        if expected is not None:
            result = self.db.execute(
                update(MetricWeight)
                .where(MetricWeight.id == expected.id, MetricWeight.is_active.is_(True))
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            self.db.expire(expected, ["is_active"])
            if result.rowcount != 1:
                raise WeightVersionConflict(
                    "Active weight version changed during update",
                    details={"context_key": expected.context_key, "expected_version": expected.version},
                )
        replacement.is_active = True
        self.db.add(replacement)
        try:
            self.db.flush()
        except IntegrityError as exc:
            raise WeightVersionConflict(
                "Weight version already written by a concurrent update",
                details={"context_key": replacement.context_key, "version": replacement.version},
            ) from exc

    def reactivate_weight(self, current: MetricWeight, restored: MetricWeight) -> None:
        """Compare-and-swap the active pointer from *current* back to *restored*."""
        result = self.db.execute(
            update(MetricWeight)
            .where(MetricWeight.id == current.id, MetricWeight.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        self.db.expire(current, ["is_active"])
        if result.rowcount != 1:
            raise WeightVersionConflict(
                "Active weight version changed during rollback",
                details={"context_key": current.context_key, "expected_version": current.version},
            )
        restored.is_active = True
        self.db.flush()

    # ------------------------------------------------------------------
    # Learning logs
    # ------------------------------------------------------------------

    def add_learning_log(self, **values: Any) -> LearningLog:
        entry = LearningLog(**values)
        self.db.add(entry)
        self.db.flush()
        return entry

    def learning_logs_for_action(self, action_log_id: uuid.UUID) -> list[LearningLog]:
        stmt = (
            select(LearningLog)
            .where(LearningLog.action_log_id == action_log_id)
            .order_by(LearningLog.created_at.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_learning_logs(
        self,
        *,
        since: datetime | None = None,
        agent_kind: str | None = None,
        context_key: str | None = None,
        learning_type: str | None = None,
        trigger_type: str | None = None,
        newest_first: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[LearningLog]:
        stmt = select(LearningLog)
        if since is not None:
            stmt = stmt.where(LearningLog.created_at >= since)
        if agent_kind is not None:
            stmt = stmt.where(LearningLog.agent_kind == agent_kind)
        if context_key is not None:
            stmt = stmt.where(LearningLog.context_key == context_key)
        if learning_type is not None:
            stmt = stmt.where(LearningLog.learning_type == learning_type)
        if trigger_type is not None:
            stmt = stmt.where(LearningLog.trigger_type == trigger_type)
        order = LearningLog.created_at.desc() if newest_first else LearningLog.created_at.asc()
        stmt = stmt.order_by(order, LearningLog.id).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    # ------------------------------------------------------------------
    # Insights
    # ------------------------------------------------------------------

    def create_insight(self, **values: Any) -> LearningInsight:
        parent_id = values.get("parent_id")
        if parent_id is not None and self.db.get(LearningInsight, parent_id) is None:
            raise NotFoundError(
                "Parent insight must exist before a child references it",
                details={"parent_id": str(parent_id)},
            )
        insight = LearningInsight(**values)
        self.db.add(insight)
        self.db.flush()
        return insight

    def get_insight(self, insight_id: uuid.UUID) -> LearningInsight:
        insight = self.db.get(LearningInsight, insight_id)
        if insight is None:
            raise NotFoundError("Insight not found", details={"insight_id": str(insight_id)})
        return insight

    def open_insight_exists(self, context_key: str, insight_type: str) -> bool:
        stmt = select(LearningInsight.id).where(
            LearningInsight.context_key == context_key,
            LearningInsight.insight_type == insight_type,
            LearningInsight.status != InsightStatus.ARCHIVED.value,
            LearningInsight.dismissed.is_(False),
        )
        return self.db.execute(stmt.limit(1)).first() is not None

    def list_insights(
        self,
        *,
        agent_kind: str | None = None,
        insight_type: str | None = None,
        status: str | None = None,
        include_dismissed: bool = False,
        limit: int = 50,
    ) -> list[LearningInsight]:
        stmt = select(LearningInsight)
        if agent_kind is not None:
            stmt = stmt.where(LearningInsight.agent_kind == agent_kind)
        if insight_type is not None:
            stmt = stmt.where(LearningInsight.insight_type == insight_type)
        if status is not None:
            stmt = stmt.where(LearningInsight.status == status)
        if not include_dismissed:
            stmt = stmt.where(LearningInsight.dismissed.is_(False))
        stmt = stmt.order_by(LearningInsight.created_at.desc()).limit(limit)
        return list(self.db.execute(stmt).scalars().all())
