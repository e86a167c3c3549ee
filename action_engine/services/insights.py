"""Insight generator: turns clusters of outcomes into reviewable recommendations.

Insights are created PENDING and only move forward through explicit review:
PENDING -> VALIDATED -> IMPLEMENTED, or PENDING/VALIDATED -> ARCHIVED.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from action_engine.exceptions import InvalidTransitionError
from action_engine.models import (
    ActionLog,
    ActionStatus,
    InsightPriority,
    InsightStatus,
    InsightType,
    LearningInsight,
    LearningType,
    PerformanceLabel,
)
from action_engine.services.feedback import performance_label
from action_engine.services.metrics import MetricContext, MetricSnapshot, MetricSource
from action_engine.services.repository import ActionRepository
from action_engine.services.runner import CONFIGURATION_ERROR_KEY
from action_engine.settings import settings

logger = logging.getLogger(__name__)

POOR_LABELS = {PerformanceLabel.POOR.value, PerformanceLabel.CRITICAL.value}
MIN_TREND_POINTS = 3

_STATUS_TRANSITIONS: dict[InsightStatus, frozenset[InsightStatus]] = {
    InsightStatus.PENDING: frozenset({InsightStatus.VALIDATED, InsightStatus.ARCHIVED}),
    InsightStatus.VALIDATED: frozenset({InsightStatus.IMPLEMENTED, InsightStatus.ARCHIVED}),
    InsightStatus.IMPLEMENTED: frozenset(),
    InsightStatus.ARCHIVED: frozenset(),
}

_STATUS_TIMESTAMP = {
    InsightStatus.VALIDATED: "validated_at",
    InsightStatus.IMPLEMENTED: "implemented_at",
    InsightStatus.ARCHIVED: "archived_at",
}


@dataclass
class InsightRunResult:
    contexts_scanned: int = 0
    created: list[LearningInsight] = field(default_factory=list)
    duplicates_skipped: int = 0


@dataclass(frozen=True)
class _Candidate:
    insight_type: InsightType
    priority: InsightPriority
    title: str
    description: str
    recommendation: str
    confidence: float
    supporting_data: dict[str, Any]


class InsightGenerator:
    """Scans recent outcomes per context and emits ``LearningInsight`` rows."""

    def __init__(
        self,
        metric_source: MetricSource,
        *,
        lookback_hours: int | None = None,
        performance_band: float | None = None,
        trend_ratio: float | None = None,
        cluster_size: int | None = None,
        watched_metric_types: list[str] | None = None,
    ) -> None:
        self.metric_source = metric_source
        self.lookback_hours = lookback_hours or settings.INSIGHT_LOOKBACK_HOURS
        self.performance_band = performance_band or settings.INSIGHT_PERFORMANCE_BAND
        self.trend_ratio = trend_ratio if trend_ratio is not None else settings.INSIGHT_TREND_RATIO
        self.cluster_size = cluster_size or settings.INSIGHT_ENGAGEMENT_CLUSTER_SIZE
        self.watched_metric_types = set(
            watched_metric_types if watched_metric_types is not None else settings.INSIGHT_WATCHED_METRIC_TYPES
        )

    # ------------------------------------------------------------------
    # generation
    # ------------------------------------------------------------------

    def generate(
        self,
        db: Session,
        *,
        agent_kind: str | None = None,
        now: datetime | None = None,
    ) -> InsightRunResult:
        now = now or datetime.now(tz=timezone.utc)
        since = now - timedelta(hours=self.lookback_hours)
        repo = ActionRepository(db)
        result = InsightRunResult()

        stmt = select(ActionLog).where(
            ActionLog.status.in_([ActionStatus.COMPLETED.value, ActionStatus.FAILED.value]),
            ActionLog.context_key.is_not(None),
            ActionLog.created_at >= since,
        )
        if agent_kind is not None:
            stmt = stmt.where(ActionLog.agent_kind == agent_kind)
        logs = db.execute(stmt.order_by(ActionLog.created_at.asc())).scalars().all()

        improvements: dict[uuid.UUID, float] = {}
        for entry in repo.list_learning_logs(since=since, agent_kind=agent_kind):
            if (
                entry.action_log_id is not None
                and entry.learning_type == LearningType.WEIGHT_ADJUSTMENT.value
                and entry.actual_improvement is not None
            ):
                improvements[entry.action_log_id] = entry.actual_improvement

        by_context: dict[str, list[ActionLog]] = {}
        for log in logs:
            by_context.setdefault(log.context_key, []).append(log)

        for context_key, group in by_context.items():
            result.contexts_scanned += 1
            context = MetricContext.from_dict(group[0].metric_context)
            scores = self._outcome_scores(group, improvements)
            history = self.metric_source.get_history(
                context, timedelta(hours=self.lookback_hours), now=now
            )

            parent_id: uuid.UUID | None = None
            performance = self._performance_candidate(context, scores)
            if performance is not None:
                created = self._emit(repo, context, performance, parent_id=None)
                if created is None:
                    result.duplicates_skipped += 1
                else:
                    result.created.append(created)
                    parent_id = created.id

            for candidate in (
                self._trend_candidate(context, history),
                self._engagement_candidate(context, scores, history),
            ):
                if candidate is None:
                    continue
                created = self._emit(repo, context, candidate, parent_id=parent_id)
                if created is None:
                    result.duplicates_skipped += 1
                else:
                    result.created.append(created)

        db.commit()
        logger.info(
            "Insight run: %d contexts scanned, %d insights created, %d duplicates skipped",
            result.contexts_scanned,
            len(result.created),
            result.duplicates_skipped,
        )
        return result

    @staticmethod
    def _outcome_scores(logs: list[ActionLog], improvements: dict[uuid.UUID, float]) -> list[int]:
        scores = []
        for log in logs:
            if (log.impact_metrics or {}).get(CONFIGURATION_ERROR_KEY):
                continue
            if log.status == ActionStatus.FAILED.value:
                scores.append(performance_label(None, failed=True).score)
                continue
            improvement = improvements.get(log.id)
            if improvement is not None:
                scores.append(performance_label(improvement).score)
        return scores

    def _performance_candidate(self, context: MetricContext, scores: list[int]) -> _Candidate | None:
        if not scores:
            return None
        average = sum(scores) / len(scores)
        if average >= self.performance_band:
            return None
        return _Candidate(
            insight_type=InsightType.PERFORMANCE,
            priority=InsightPriority.HIGH,
            title=f"Low {context.metric_type} performance for {context.agent_kind} agent",
            description=(
                f"Average outcome score is {average:.2f} over {len(scores)} actions, "
                f"below the {self.performance_band:.1f} band."
            ),
            recommendation="Review the rules driving this context and consider a different corrective action.",
            confidence=min(1.0, len(scores) / 5),
            supporting_data={"average_score": average, "outcomes": len(scores)},
        )

    def _trend_candidate(
        self, context: MetricContext, history: list[MetricSnapshot]
    ) -> _Candidate | None:
        comparable = [s for s in history if s.previous_value is not None]
        if len(comparable) < MIN_TREND_POINTS:
            return None
        decreasing = sum(1 for s in comparable if s.value < s.previous_value)
        ratio = decreasing / len(comparable)
        if ratio <= self.trend_ratio:
            return None
        return _Candidate(
            insight_type=InsightType.TREND,
            priority=InsightPriority.MEDIUM,
            title=f"Decreasing {context.metric_type} trend",
            description=(
                f"{decreasing} of {len(comparable)} recent observations decreased "
                f"({ratio:.0%})."
            ),
            recommendation="Investigate what changed upstream and tighten monitoring on this metric.",
            confidence=ratio,
            supporting_data={"decreasing": decreasing, "observations": len(comparable), "ratio": ratio},
        )

    def _engagement_candidate(
        self,
        context: MetricContext,
        scores: list[int],
        history: list[MetricSnapshot],
    ) -> _Candidate | None:
        if context.metric_type not in self.watched_metric_types:
            return None
        poor_outcomes = sum(1 for s in scores if s <= PerformanceLabel.POOR.score)
        poor_observations = sum(1 for s in history if s.performance in POOR_LABELS)
        cluster = poor_outcomes + poor_observations
        if cluster < self.cluster_size:
            return None
        return _Candidate(
            insight_type=InsightType.ENGAGEMENT,
            priority=InsightPriority.MEDIUM,
            title=f"{context.metric_type} clustering at poor performance",
            description=(
                f"{cluster} poor or critical results for {context.metric_type} "
                f"({poor_outcomes} action outcomes, {poor_observations} observations)."
            ),
            recommendation="Refresh content or adjust targeting for this audience.",
            confidence=min(1.0, cluster / (self.cluster_size * 2)),
            supporting_data={
                "metric_type": context.metric_type,
                "poor_outcomes": poor_outcomes,
                "poor_observations": poor_observations,
            },
        )

    @staticmethod
    def _emit(
        repo: ActionRepository,
        context: MetricContext,
        candidate: _Candidate,
        *,
        parent_id: uuid.UUID | None,
    ) -> LearningInsight | None:
        if repo.open_insight_exists(context.key, candidate.insight_type.value):
            return None
        return repo.create_insight(
            parent_id=parent_id,
            context_key=context.key,
            agent_kind=context.agent_kind,
            metric_type=context.metric_type,
            campaign_id=context.campaign_id,
            insight_type=candidate.insight_type.value,
            title=candidate.title,
            description=candidate.description,
            recommendation=candidate.recommendation,
            priority=candidate.priority.value,
            impact=candidate.priority.value,
            status=InsightStatus.PENDING.value,
            confidence=candidate.confidence,
            supporting_data=candidate.supporting_data,
        )

    # ------------------------------------------------------------------
    # review
    # ------------------------------------------------------------------

    @staticmethod
    def update_status(db: Session, insight_id: uuid.UUID, status: str) -> LearningInsight:
        """Advance an insight's status; each status timestamp is written once."""
        insight = ActionRepository(db).get_insight(insight_id)
        current = InsightStatus(insight.status)
        try:
            target = InsightStatus(status)
        except ValueError as exc:
            raise InvalidTransitionError(
                f"Unknown insight status '{status}'", details={"insight_id": str(insight_id)}
            ) from exc
        if target not in _STATUS_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Cannot move insight from '{current.value}' to '{target.value}'",
                details={"insight_id": str(insight_id), "from": current.value, "to": target.value},
            )
        stamp = _STATUS_TIMESTAMP[target]
        if getattr(insight, stamp) is None:
            setattr(insight, stamp, datetime.now(tz=timezone.utc))
        insight.status = target.value
        db.commit()
        db.refresh(insight)
        return insight

    @staticmethod
    def dismiss(
        db: Session,
        insight_id: uuid.UUID,
        *,
        reason: str | None = None,
        user_feedback: str | None = None,
        user_rating: int | None = None,
    ) -> LearningInsight:
        insight = ActionRepository(db).get_insight(insight_id)
        insight.dismissed = True
        insight.dismissed_reason = reason
        if user_feedback is not None or user_rating is not None:
            data = dict(insight.supporting_data or {})
            if user_feedback is not None:
                data["user_feedback"] = user_feedback
            if user_rating is not None:
                data["user_rating"] = user_rating
            insight.supporting_data = data
        db.commit()
        db.refresh(insight)
        return insight
